from __future__ import annotations

import hmac
from dataclasses import dataclass

import structlog
from fastapi import Header, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from chapter_tutor.api.v1.errors import ApiError
from chapter_tutor.core.settings import settings

logger = structlog.get_logger(__name__)

bearer_auth = HTTPBearer(
    auto_error=False,
    scheme_name="BearerAuth",
    description="Authorization Bearer token. Use TUTOR_SERVICE_SECRET as token value.",
)
service_secret_auth = APIKeyHeader(
    name="X-Service-Secret",
    auto_error=False,
    scheme_name="ServiceSecretAuth",
    description="Service secret header for calls from the web tier.",
)


@dataclass(frozen=True)
class Principal:
    user_id: str
    auth_mode: str


def _secret_configured() -> bool:
    expected = str(settings.TUTOR_SERVICE_SECRET or "").strip()
    return bool(expected and expected != "development-secret")


async def require_service_auth(
    bearer_credentials: HTTPAuthorizationCredentials | None = Security(bearer_auth),
    x_service_secret: str | None = Security(service_secret_auth),
) -> str:
    """
    Enforces the service secret only in deployed environments.
    Returns the auth mode that admitted the caller.
    """
    if not settings.is_deployed_environment:
        logger.debug("service_auth_bypass", auth_mode="local_bypass")
        return "local_bypass"

    if not _secret_configured():
        raise ApiError(
            status_code=500,
            code="AUTH_MISCONFIGURED",
            message="Service secret must be configured in deployed environments",
        )

    bearer = None
    if bearer_credentials and str(bearer_credentials.scheme or "").lower() == "bearer":
        bearer = (bearer_credentials.credentials or "").strip() or None
    header_secret = x_service_secret.strip() if x_service_secret else None
    candidate = bearer or header_secret
    caller_auth_mode = "bearer" if bearer else ("x_service_secret" if header_secret else "missing")

    expected = str(settings.TUTOR_SERVICE_SECRET).strip().encode("utf-8")
    if not candidate or not hmac.compare_digest(candidate.encode("utf-8"), expected):
        logger.warning("service_auth_failed", caller_auth_mode=caller_auth_mode)
        raise ApiError(
            status_code=401,
            code="UNAUTHORIZED",
            message="Unauthorized",
            details="Missing or invalid service token",
        )
    return caller_auth_mode


async def require_principal(
    bearer_credentials: HTTPAuthorizationCredentials | None = Security(bearer_auth),
    x_service_secret: str | None = Security(service_secret_auth),
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> Principal:
    """
    Verifies the caller and resolves the student on whose behalf it acts.
    Locally a missing X-User-Id falls back to DEFAULT_LOCAL_USER_ID.
    """
    auth_mode = await require_service_auth(bearer_credentials, x_service_secret)
    user_id = str(x_user_id or "").strip()
    if not user_id:
        if auth_mode != "local_bypass":
            raise ApiError(
                status_code=401,
                code="UNAUTHORIZED",
                message="Unauthorized",
                details="X-User-Id header is required",
            )
        user_id = settings.DEFAULT_LOCAL_USER_ID
    return Principal(user_id=user_id, auth_mode=auth_mode)
