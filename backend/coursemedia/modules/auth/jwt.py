"""JWT verification and principal resolution.

Tokens are issued by the marketplace's auth service; this module only
verifies them and turns them into a Principal.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from coursemedia.core.config import settings
from coursemedia.core.exceptions import AuthenticationRequired, Forbidden

ROLE_ADMIN = "ADMIN"
ROLE_STUDENT = "STUDENT"


class TokenPayload(BaseModel):
    """JWT token payload structure."""

    sub: str  # User ID
    exp: datetime
    iat: datetime
    type: str = "access"
    role: str = ROLE_STUDENT


@dataclass(frozen=True)
class Principal:
    """The authenticated caller."""

    user_id: uuid.UUID
    role: str = ROLE_STUDENT

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def create_token(
    user_id: uuid.UUID,
    role: str = ROLE_STUDENT,
    expires_delta: timedelta = timedelta(minutes=30),
    token_type: str = "access",
) -> str:
    """Create a signed token. Used by tooling and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "exp": now + expires_delta,
        "iat": now,
        "type": token_type,
        "role": role,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> TokenPayload | None:
    """Decode and validate a JWT token.

    Args:
        token: Encoded JWT token

    Returns:
        TokenPayload | None: Decoded payload if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
        )
        return TokenPayload(
            sub=payload["sub"],
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            type=payload.get("type", "access"),
            role=payload.get("role", ROLE_STUDENT),
        )
    except (JWTError, KeyError, TypeError, ValueError):
        return None


def principal_from_token(token: str) -> Optional[Principal]:
    """Resolve a principal from an access token, or None if invalid."""
    payload = decode_token(token)
    if payload is None or payload.type != "access":
        return None
    # jose already rejects expired tokens; this guards clock-less payloads.
    if payload.exp < datetime.now(timezone.utc):
        return None
    try:
        return Principal(user_id=uuid.UUID(payload.sub), role=payload.role.upper())
    except ValueError:
        return None


# FastAPI dependencies
security = HTTPBearer(auto_error=False)


async def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Principal]:
    """Principal for the request, or None when no valid token was sent."""
    if credentials is None:
        return None
    return principal_from_token(credentials.credentials)


async def get_current_principal(
    principal: Optional[Principal] = Depends(get_optional_principal),
) -> Principal:
    """Require an authenticated principal."""
    if principal is None:
        raise AuthenticationRequired("Authentication required")
    return principal


async def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """Require an administrator."""
    if not principal.is_admin:
        raise Forbidden("Administrator access required")
    return principal
