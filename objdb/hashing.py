"""Legacy-compatible password digests, opaque session tokens and XSRF values.

Every client of the legacy system computes or compares these byte for byte,
so the formulas are fixed:

- password digest: ``sha1(SALT + USERNAME.upper() + namespace + password)``
- XSRF value: ``sha1(SALT + TOKEN.upper() + namespace + namespace)[:22]``
- opaque token: ``md5(str(time) + random hex)``

All functions are pure and safe to call from any number of tasks at once.
"""
import hashlib
import secrets
import time
from typing import Any, Optional

from .config import settings
from .errors import InvalidArgument

XSRF_LENGTH = 22


def _require_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str):
        raise InvalidArgument(
            f"{field_name} must be a string",
            {"field": field_name, "type": type(value).__name__},
        )
    return value


def legacy_salt(first: str, second: str, namespace: str, secret: Optional[str] = None) -> str:
    """Concatenate the fixed secret with the upper-cased first component."""
    first = _require_str(first, "first")
    second = _require_str(second, "second")
    namespace = _require_str(namespace, "namespace")
    return (secret if secret is not None else settings.legacy_salt) + first.upper() + namespace + second


def derive_password_digest(username: str, password: str, namespace: str, secret: Optional[str] = None) -> str:
    """
    Compute the stored password digest for a user.

    Args:
        username: Login name (case-insensitive)
        password: Raw password
        namespace: Namespace name
        secret: Overrides the configured salt

    Returns:
        40 lower-case hex characters

    Raises:
        InvalidArgument: If any component is not a string
    """
    _require_str(username, "username")
    _require_str(password, "password")
    salted = legacy_salt(username, password, namespace, secret)
    return hashlib.sha1(salted.encode("utf-8")).hexdigest()


def derive_xsrf(token: str, namespace: str, secret: Optional[str] = None) -> str:
    """
    Derive the anti-forgery value bound to a session token.

    No server state is involved, so any replica can verify a value.

    Raises:
        InvalidArgument: If token or namespace is not a string
    """
    _require_str(token, "token")
    _require_str(namespace, "namespace")
    salted = legacy_salt(token, namespace, namespace, secret)
    return hashlib.sha1(salted.encode("utf-8")).hexdigest()[:XSRF_LENGTH]


def verify_xsrf(value: Any, token: str, namespace: str) -> bool:
    """Check a submitted XSRF value against the one derived from the token."""
    if not isinstance(value, str) or not value:
        return False
    return secrets.compare_digest(value.encode("utf-8"), derive_xsrf(token, namespace).encode("utf-8"))


def derive_opaque_token(seed: Optional[str] = None) -> str:
    """
    Generate a 32-char opaque session token.

    Uniqueness is probabilistic; the caller inserts it under the store's
    constraints and regenerates on collision.

    Args:
        seed: Optional extra entropy mixed in after the time and random parts
    """
    if seed is not None:
        _require_str(seed, "seed")
    material = f"{time.time():.6f}{secrets.token_hex(8)}{seed or ''}"
    return hashlib.md5(material.encode("utf-8")).hexdigest()
