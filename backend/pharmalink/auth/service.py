"""JWT token verification for PharmaLink users.

Tokens are HS256-signed JWTs carrying:
    - userId: integer id of the user in the accounts database
    - user_type: patient, doctor, pharmacist or facility_admin
    - exp: expiry (seconds since epoch)

validate_token() never raises: every decoding problem (missing token,
malformed token, bad signature, expired, missing claims) yields None, so
callers on an unauthenticated channel cannot learn why a token was refused.
"""
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import jwt
from pydantic import BaseModel, Field, ValidationError

from pharmalink.config import get_config

logger = logging.getLogger(__name__)

# Default lifetime for tokens minted by create_access_token()
DEFAULT_TOKEN_EXPIRE_MINUTES = 60


class UserType(str, Enum):
    """Account role of a PharmaLink user."""
    PATIENT = "patient"
    DOCTOR = "doctor"
    PHARMACIST = "pharmacist"
    FACILITY_ADMIN = "facility_admin"


class AuthenticatedUser(BaseModel):
    """Identity resolved from a verified token."""
    userId: int = Field(..., ge=1, description="User ID")
    userType: UserType = Field(..., description="Account role")

    @property
    def is_professional(self) -> bool:
        return self.userType in (UserType.DOCTOR, UserType.PHARMACIST)


class TokenService:
    """Verifies (and, for tooling, mints) PharmaLink access tokens."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm

    def validate_token(self, token: Optional[str]) -> Optional[AuthenticatedUser]:
        """Resolve a token to a user identity.

        Args:
            token: Raw JWT (without any "Bearer " prefix).

        Returns:
            AuthenticatedUser on success, None if the token is unusable.
        """
        if not token:
            return None

        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Rejected expired token")
            return None
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected invalid token: {e}")
            return None

        # Older tokens carry "id" instead of "userId"
        user_id = claims.get("userId", claims.get("id"))
        try:
            return AuthenticatedUser(userId=user_id, userType=claims.get("user_type"))
        except ValidationError:
            logger.debug("Rejected token with missing or malformed identity claims")
            return None

    def create_access_token(
        self,
        user_id: int,
        user_type: UserType,
        expires_minutes: float = DEFAULT_TOKEN_EXPIRE_MINUTES,
    ) -> str:
        """Mint a signed token. Negative expiry produces an already-expired token."""
        expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
        claims = {
            "userId": user_id,
            "user_type": UserType(user_type).value,
            "exp": expire,
        }
        return jwt.encode(claims, self._secret_key, algorithm=self._algorithm)


def get_token_service() -> TokenService:
    """Build a TokenService from the configured JWT secrets."""
    jwt_secrets = get_config().secrets.jwt
    return TokenService(jwt_secrets.secret_key, jwt_secrets.algorithm)
