from fastapi import Header, HTTPException, status

from src.auth.credentials import constant_time_equals
from src.config import settings


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Extract token from 'Bearer <token>' header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def is_internal_caller(authorization: str | None, internal_token: str | None) -> bool:
    """Service-role bearer or the configured internal token."""
    bearer = _extract_bearer_token(authorization)
    if bearer and constant_time_equals(bearer, settings.supabase_service_role_key):
        return True
    expected = settings.sheets_internal_token
    if expected and internal_token and constant_time_equals(internal_token, expected):
        return True
    return False


async def require_internal_caller(
    authorization: str | None = Header(None),
    x_internal_token: str | None = Header(None),
) -> None:
    """
    Internal-only endpoints (export pipeline, metrics). Not exposed to webhook producers.
    """
    if not is_internal_caller(authorization, x_internal_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized - internal only",
        )
