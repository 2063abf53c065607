import logging
import secrets
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.security.utils import get_authorization_scheme_param

from app.infra.logging import update_log_context
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)


class AdminAuthException(HTTPException):
    def __init__(self, *, reason: str, detail: str = "Invalid authentication") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Basic"},
        )
        self.reason = reason


@dataclass
class AdminIdentity:
    username: str


security = HTTPBasic(auto_error=False)


def _resolve_request_id(request: Request) -> str | None:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return request.headers.get("X-Request-ID")


def _log_admin_auth_failure(
    request: Request, *, reason: str, credentials: HTTPBasicCredentials | None
) -> None:
    authorization_header = request.headers.get("Authorization")
    scheme, _ = get_authorization_scheme_param(authorization_header)
    payload = {
        "reason": reason,
        "path": request.url.path,
        "method": request.method,
        "request_id": _resolve_request_id(request),
        "has_authorization_header": authorization_header is not None,
        "auth_scheme": scheme.lower() if scheme else None,
    }
    if credentials and credentials.username:
        payload["presented_username"] = credentials.username
    logger.warning("admin_auth_failed", extra={"extra": payload})
    metrics.record_auth_failure("admin", reason)


def _authenticate_credentials(credentials: HTTPBasicCredentials | None) -> AdminIdentity:
    username = settings.admin_basic_username
    password = settings.admin_basic_password
    if not username or not password:
        logger.warning("admin_auth_unconfigured")
        raise AdminAuthException(reason="unconfigured_credentials")
    if credentials is None:
        raise AdminAuthException(reason="missing_credentials")
    username_ok = secrets.compare_digest(credentials.username.encode(), username.encode())
    password_ok = secrets.compare_digest(credentials.password.encode(), password.encode())
    if not (username_ok and password_ok):
        raise AdminAuthException(reason="invalid_credentials")
    return AdminIdentity(username=username)


async def require_admin(
    request: Request, credentials: HTTPBasicCredentials | None = Depends(security)
) -> AdminIdentity:
    """Single shared back-office login over HTTP Basic."""
    cached: AdminIdentity | None = getattr(request.state, "admin_identity", None)
    if cached is not None:
        return cached
    try:
        identity = _authenticate_credentials(credentials)
    except AdminAuthException as exc:
        _log_admin_auth_failure(request, reason=exc.reason, credentials=credentials)
        raise
    request.state.admin_identity = identity
    update_log_context(admin=identity.username)
    return identity
