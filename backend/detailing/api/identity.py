import logging
import secrets

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from detailing.domain.bookings.schemas import Caller, CallerRole
from detailing.infra.logging import update_log_context
from detailing.settings import Settings

logger = logging.getLogger(__name__)

CALLER_ROLE_HEADER = "X-Caller-Role"
CALLER_ID_HEADER = "X-Caller-Id"
EDGE_ROLES = {CallerRole.customer, CallerRole.guest, CallerRole.worker}

security = HTTPBasic(auto_error=False)


class CallerAuthException(HTTPException):
    def __init__(self, *, reason: str, detail: str = "Caller identity required", basic: bool = False) -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Basic"} if basic else None,
        )
        self.reason = reason


def _app_settings(request: Request) -> Settings:
    return request.app.state.app_settings


async def get_caller(request: Request) -> Caller:
    """Identity asserted by the upstream edge; only customer, guest and worker roles are accepted here."""
    raw_role = (request.headers.get(CALLER_ROLE_HEADER) or "").strip().lower()
    caller_id = (request.headers.get(CALLER_ID_HEADER) or "").strip()
    if not raw_role or not caller_id:
        raise CallerAuthException(reason="missing_headers")
    try:
        role = CallerRole(raw_role)
    except ValueError:
        raise CallerAuthException(reason="unknown_role", detail="Unknown caller role") from None
    if role not in EDGE_ROLES:
        raise CallerAuthException(reason="admin_via_headers", detail="Admin calls require Basic credentials")
    if role == CallerRole.guest:
        caller_id = caller_id.lower()
    update_log_context(role=role.value)
    return Caller(role=role, id=caller_id)


async def require_admin(
    request: Request, credentials: HTTPBasicCredentials | None = Depends(security)
) -> Caller:
    app_settings = _app_settings(request)
    username = app_settings.admin_basic_username
    password = app_settings.admin_basic_password
    if not username or not password:
        logger.warning("admin_auth_unconfigured", extra={"extra": {"path": request.url.path}})
        raise CallerAuthException(reason="unconfigured_credentials", detail="Invalid authentication", basic=True)
    if credentials is None:
        raise CallerAuthException(reason="missing_credentials", detail="Invalid authentication", basic=True)
    if not (
        secrets.compare_digest(credentials.username, username)
        and secrets.compare_digest(credentials.password, password)
    ):
        logger.warning("admin_auth_failed", extra={"extra": {"path": request.url.path}})
        raise CallerAuthException(reason="bad_credentials", detail="Invalid authentication", basic=True)
    update_log_context(role=CallerRole.admin.value)
    return Caller(role=CallerRole.admin, id=credentials.username)
