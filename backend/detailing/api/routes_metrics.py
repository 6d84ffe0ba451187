import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from detailing.infra.metrics import Metrics

router = APIRouter()

_SCRAPE_HEADERS = {"Cache-Control": "no-store"}


def _bearer_credentials(request: Request) -> str | None:
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def require_scrape_access(request: Request) -> Metrics:
    """Return the metrics registry once the scraper is allowed to read it.

    A configured ``METRICS_TOKEN`` is always enforced. In prod the token is
    mandatory, so a missing one is a server misconfiguration.
    """
    metrics_client: Metrics | None = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not metrics_client.enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")

    app_settings = request.app.state.app_settings
    token = (app_settings.metrics_token or "").strip()
    if not token:
        if app_settings.app_env == "prod":
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Metrics token misconfigured")
        return metrics_client

    provided = _bearer_credentials(request)
    if provided is None or not secrets.compare_digest(provided.encode(), token.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": 'Bearer realm="metrics"'},
        )
    return metrics_client


@router.get("/metrics", include_in_schema=False)
async def scrape_metrics(metrics_client: Metrics = Depends(require_scrape_access)) -> Response:
    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type, headers=_SCRAPE_HEADERS)
