"""RFC 7807 responses for booking and payment failures.

Every body says whether repeating the same request may succeed
(``retryable``). Retryable failures also carry ``Retry-After``.
"""

import uuid
from http import HTTPStatus
from typing import Any, Iterable

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from detailing.domain.errors import PROBLEM_BASE, DomainError

PROBLEM_TYPE_VALIDATION = f"{PROBLEM_BASE}/validation-error"
PROBLEM_TYPE_DOMAIN = f"{PROBLEM_BASE}/domain-error"
PROBLEM_TYPE_SERVER = f"{PROBLEM_BASE}/server-error"

RETRY_AFTER_SECONDS = 5
VALIDATION_DETAIL = "Request validation failed; nothing was charged or changed."
SERVER_DETAIL = "Unexpected error; the booking state on the server is authoritative, re-fetch before retrying."

_REQUEST_PARTS = {"body", "query", "path", "header"}


def request_id_for(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    if not request_id:
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def _default_type(status_code: int) -> str:
    if status_code == 422:
        return PROBLEM_TYPE_VALIDATION
    return PROBLEM_TYPE_SERVER if status_code >= 500 else PROBLEM_TYPE_DOMAIN


def _status_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def problem_details(
    request: Request,
    *,
    status: int,
    title: str | None,
    detail: str,
    errors: list[dict[str, Any]] | None = None,
    type_: str | None = None,
    retryable: bool = False,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = request_id_for(request)
    response_headers = {"X-Request-ID": request_id, **(headers or {})}
    if retryable:
        response_headers.setdefault("Retry-After", str(RETRY_AFTER_SECONDS))
    return JSONResponse(
        status_code=status,
        content={
            "type": type_ or _default_type(status),
            "title": title or _status_phrase(status),
            "status": status,
            "detail": detail,
            "retryable": retryable,
            "request_id": request_id,
            "errors": errors or [],
        },
        headers=response_headers,
        media_type="application/problem+json",
    )


def domain_problem(request: Request, exc: DomainError) -> JSONResponse:
    return problem_details(
        request,
        status=exc.status_code,
        title=exc.title,
        detail=exc.detail,
        errors=exc.errors,
        type_=exc.type or PROBLEM_TYPE_DOMAIN,
        retryable=exc.retryable,
    )


def _field_name(location: Iterable[Any]) -> str:
    return ".".join(str(part) for part in location if part not in _REQUEST_PARTS) or "body"


def validation_problem(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": _field_name(error.get("loc", ())), "message": error.get("msg", "Invalid value")}
        for error in exc.errors()
    ]
    return problem_details(
        request,
        status=422,
        title="Validation Error",
        detail=VALIDATION_DETAIL,
        errors=errors,
        type_=PROBLEM_TYPE_VALIDATION,
    )


def http_problem(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else None
    return problem_details(
        request,
        status=exc.status_code,
        title=message or "HTTP Error",
        detail=message or "Request failed",
        headers=exc.headers,
    )


def server_problem(request: Request) -> JSONResponse:
    return problem_details(
        request,
        status=500,
        title="Internal Server Error",
        detail=SERVER_DETAIL,
        type_=PROBLEM_TYPE_SERVER,
    )
