"""Authentication module (JWT bearer tokens).

The chat core only needs a validated user identity. Tokens are issued by the
PharmaLink account service; this module verifies them and resolves the
caller for REST requests and WebSocket handshakes.

Services:
    - TokenService: HS256 JWT verification (and minting for tooling/tests).
    - get_current_user: FastAPI dependency for Bearer-authenticated routes.
"""
from .service import AuthenticatedUser, TokenService, UserType, get_token_service
from .dependencies import get_current_user

__all__ = [
    "AuthenticatedUser",
    "TokenService",
    "UserType",
    "get_current_user",
    "get_token_service",
]
