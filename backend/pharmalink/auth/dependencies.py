"""FastAPI dependencies for Bearer-authenticated REST endpoints."""
from typing import Optional

from fastapi import Header, HTTPException

from .service import AuthenticatedUser, get_token_service


async def get_current_user(
    authorization: Optional[str] = Header(None),
) -> AuthenticatedUser:
    """Resolve the caller from an ``Authorization: Bearer <token>`` header.

    Raises:
        HTTPException: 401 if the header is missing or the token is unusable.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Access token required")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Access token required")

    user = get_token_service().validate_token(token.strip())
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user
