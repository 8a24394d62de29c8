"""Structured session tokens and the authenticated identity shape."""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from pydantic import BaseModel
import uuid

from .config import settings


class Identity(BaseModel):
    """Who is calling. Both token encodings resolve to this shape."""

    namespace: str
    user_id: int
    username: str
    role: str = ""
    token: str = ""
    xsrf: str = ""

    @property
    def is_privileged(self) -> bool:
        return self.role.lower() in {r.lower() for r in settings.privileged_roles}

    @property
    def is_readonly(self) -> bool:
        return self.role.lower() in {r.lower() for r in settings.readonly_roles}


# ============================================================================
# Structured Token Management
# ============================================================================

def is_structured_token(token: Optional[str]) -> bool:
    """A token with three dot-separated segments is structured; anything else is opaque."""
    return bool(token) and token.count(".") == 2


def create_access_token(
    user_id: int,
    username: str,
    role: str,
    namespace: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a structured (JWT) session token.

    Args:
        user_id: Id of the user object
        username: Login name
        role: Role name
        namespace: Namespace the token is valid for
        expires_delta: Token lifetime (default: settings.jwt_expire_seconds)

    Returns:
        Encoded JWT token
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(seconds=settings.jwt_expire_seconds))
    to_encode = {
        "userId": user_id,
        "username": username,
        "role": role,
        "database": namespace,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a structured token.

    Args:
        token: JWT token string

    Returns:
        Decoded token payload or None if invalid or expired
    """
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def identity_from_claims(token: str, namespace: str) -> Optional[Identity]:
    """
    Build an identity from a structured token.

    Returns None when the signature or expiry is invalid, the payload lacks
    a user id, or the token was issued for another namespace.
    """
    payload = decode_token(token)
    if not payload:
        return None

    if str(payload.get("database", "")).lower() != namespace.lower():
        return None

    try:
        user_id = int(payload.get("userId"))
    except (TypeError, ValueError):
        return None

    return Identity(
        namespace=namespace,
        user_id=user_id,
        username=str(payload.get("username", "")),
        role=str(payload.get("role", "")).lower(),
        token=token,
    )
