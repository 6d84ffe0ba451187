import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from detailing.api.problem_details import domain_problem, http_problem, server_problem, validation_problem
from detailing.api.routes_bookings import router as bookings_router
from detailing.api.routes_metrics import router as metrics_router
from detailing.domain.errors import DomainError
from detailing.infra.db import dispose_engine
from detailing.infra.logging import clear_log_context, configure_logging, update_log_context
from detailing.infra.metrics import Metrics
from detailing.infra.tracing import configure_tracing, instrument_fastapi
from detailing.services import AppServices, build_app_services
from detailing.settings import settings

logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("detailing.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("request_id", request_id)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(
                status_code=status_code,
                route=getattr(route, "path", None),
                latency_ms=latency_ms,
            )
            request_logger.info("request", extra={"latency_ms": latency_ms})
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client: Metrics) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        route_label = "unmatched"
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_5xx(request.method, route_label)
            raise
        finally:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            duration = time.perf_counter() - start
            self.metrics.record_http_latency(request.method, route_label, status_code, duration)
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, route_label)
        return response


def create_app(app_settings, *, services: AppServices | None = None, tracer_provider=None) -> FastAPI:
    if tracer_provider is None:
        configure_tracing(service_name=app_settings.app_name)
    configure_logging()

    services = services or build_app_services(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = getattr(app.state, "services", None) or services
        app.state.metrics = getattr(app.state, "metrics", None) or app.state.services.metrics
        app.state.app_settings = getattr(app.state, "app_settings", app_settings)
        logger.info(
            "app_started",
            extra={
                "extra": {
                    "payment_gateway_mode": app_settings.payment_gateway_mode,
                    "tax_mode": app_settings.tax_mode,
                    "pricing_catalog_version": services.catalog.pricing_catalog_version,
                }
            },
        )
        yield
        await dispose_engine()

    app = FastAPI(title="Detailing Bookings", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.state.metrics = services.metrics
    app.state.app_settings = app_settings

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=services.metrics)
    app.add_middleware(RequestIdMiddleware)

    # OTel instrumentation must be added last so it wraps all middleware.
    instrument_fastapi(app, tracer_provider=tracer_provider)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return validation_problem(request, exc)

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        if exc.status_code >= 500:
            logger.warning(
                "domain_error",
                extra={"extra": {"error_type": type(exc).__name__, "path": request.url.path}},
            )
        return domain_problem(request, exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return http_problem(request, exc)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=error_type,
        )
        logger.exception(
            "unhandled_exception",
            extra={"request_id": request_id, "path": request.url.path, "error_type": error_type},
        )
        return server_problem(request)

    app.include_router(bookings_router)
    if app_settings.metrics_enabled:
        app.include_router(metrics_router)
    return app


def create_default_app() -> FastAPI:
    return create_app(settings)
