import hmac

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from removal_engine.config import settings

bearer_scheme = HTTPBearer(auto_error=False)


def _matches(presented: str | None, expected: str | None) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """Scheduler callers must present CRON_SECRET as a bearer token."""
    if credentials is None or not _matches(credentials.credentials, settings.cron_secret):
        raise _unauthorized()
    return "scheduler"


def require_operator(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """Operator endpoints are closed entirely unless OPERATOR_API_KEY is configured."""
    if credentials is None or not _matches(credentials.credentials, settings.operator_api_key):
        raise _unauthorized()
    return "operator"


def verify_webhook_secret(x_webhook_secret: str | None = Header(default=None)) -> None:
    if not _matches(x_webhook_secret, settings.email_webhook_secret):
        raise _unauthorized()
