from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from moneytree.core.config import settings
from moneytree.core.security import constant_time_equals
from moneytree.services.dispatcher import SyncDispatcher

bearer_scheme = HTTPBearer(auto_error=False)


def require_operator(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """Guard operator endpoints with the static ``OPERATOR_API_TOKEN``."""
    if not settings.operator_api_token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Operator API is not configured",
        )
    if credentials is None or not constant_time_equals(
        credentials.credentials, settings.operator_api_token
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid operator token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_dispatcher() -> SyncDispatcher:
    return SyncDispatcher.default()
