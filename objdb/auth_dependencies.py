"""FastAPI dependencies for request parameters, authentication and admin access."""
from fastapi import Depends, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, Iterable, Optional, Tuple
import json
import logging
import secrets

from .accounts import AccountRepository
from .auth import Identity
from .config import settings
from .dispatcher import is_mutation
from .errors import Forbidden, InvalidArgument, Unauthorized
from .hashing import verify_xsrf
from .negotiator import TokenSource, extract_token

logger = logging.getLogger(__name__)

# Security scheme for Swagger UI
admin_key_header = APIKeyHeader(name=settings.api_key_header, auto_error=False)

FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


# ============================================================================
# Request Parameters
# ============================================================================

def _plain(value: Any) -> Any:
    """JSON body values as the strings a form would have carried."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else ""
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)


def merge_items(items: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    """
    Fold ``(key, value)`` pairs into a parameter dict.

    A key that repeats, or ends with ``[]``, collects its values into a list.
    """
    params: Dict[str, Any] = {}
    for key, value in items:
        is_list = key.endswith("[]")
        name = key[:-2] if is_list else key
        if name not in params:
            params[name] = [value] if is_list else value
        elif isinstance(params[name], list):
            params[name].append(value)
        else:
            params[name] = [params[name], value]
    return params


async def get_request_params(request: Request) -> Dict[str, Any]:
    """
    Merge query string and body parameters.

    Form bodies and JSON object bodies are both accepted; body values win
    over query values of the same name.

    Raises:
        InvalidArgument: If a JSON body is not a JSON object
    """
    params = merge_items(request.query_params.multi_items())
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return params

    content_type = request.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        raw = await request.body()
        if not raw.strip():
            return params
        try:
            body = json.loads(raw)
        except ValueError as e:
            raise InvalidArgument("Request body is not valid JSON") from e
        if not isinstance(body, dict):
            raise InvalidArgument("Request body must be a JSON object")
        for key, value in body.items():
            params[key.removesuffix("[]")] = _plain(value)
    elif content_type.startswith(FORM_TYPES):
        form = await request.form()
        body_params = merge_items(
            (key, value) for key, value in form.multi_items() if isinstance(value, str)
        )
        params.update(body_params)
    return params


# ============================================================================
# Session Authentication
# ============================================================================

def check_xsrf(
    identity: Identity,
    params: Optional[Dict[str, Any]],
    source: Optional[TokenSource],
    namespace: str,
) -> None:
    """
    Verify the ``_xsrf`` value sent with a mutation.

    A supplied value must match the one derived from the session token.
    Cookie sessions must supply one when ``settings.require_xsrf`` is on;
    header tokens are not sent by browsers on their own and are exempt.

    Raises:
        Forbidden: On a missing or mismatched value
    """
    value = (params or {}).get("_xsrf")
    if isinstance(value, (list, tuple)):
        value = value[-1] if value else None
    if not value:
        if source == TokenSource.COOKIE and settings.require_xsrf:
            raise Forbidden("XSRF value required", {"namespace": namespace})
        return
    if not verify_xsrf(value, identity.token, namespace):
        logger.warning(f"XSRF mismatch in {namespace} for user {identity.user_id}")
        raise Forbidden("Invalid XSRF value", {"namespace": namespace})


async def resolve_identity(
    request: Request,
    db: AsyncSession,
    namespace: str,
    params: Optional[Dict[str, Any]] = None,
    action: Optional[str] = None,
) -> Optional[Identity]:
    """
    Resolve the caller of a namespace request.

    Usage:
        identity = await resolve_identity(request, db, db_name, params, "object")
        if identity is None:
            raise Unauthorized("Authentication required")

    Args:
        request: Incoming request (cookies and headers)
        db: Store session
        namespace: Namespace the request addresses
        params: Merged request parameters
        action: Action code, which decides whether a ``token`` parameter
            counts and whether ``_xsrf`` is checked

    Returns:
        Identity if a valid token was presented, None otherwise

    Raises:
        Forbidden: When a mutation carries a bad ``_xsrf`` value
    """
    token, source = extract_token(namespace, request.cookies, request.headers, params, action)
    if not token:
        return None

    identity = await AccountRepository(db, namespace).resolve_token(token)
    if identity is None:
        logger.info(f"Rejected session token in {namespace}: source={source.value if source else '-'}")
        return None
    if source == TokenSource.PARAMETER:
        logger.debug(f"Token accepted from request parameter in {namespace} for {action}")
    if is_mutation(action):
        check_xsrf(identity, params, source, namespace)
    return identity


async def require_identity(
    request: Request,
    db: AsyncSession,
    namespace: str,
    params: Optional[Dict[str, Any]] = None,
    action: Optional[str] = None,
) -> Identity:
    """
    Same as ``resolve_identity`` but raises for anonymous callers.

    Raises:
        Unauthorized: If no valid token was presented
    """
    identity = await resolve_identity(request, db, namespace, params, action)
    if identity is None:
        raise Unauthorized("Authentication required", {"namespace": namespace})
    return identity


# ============================================================================
# Admin API Key
# ============================================================================

async def require_admin_key(api_key: Optional[str] = Depends(admin_key_header)) -> str:
    """
    Guard for namespace administration.

    Usage:
        @app.post("/my/_new_db")
        async def new_db(_: str = Depends(require_admin_key)):
            ...

    Raises:
        Forbidden: If no admin key is configured or the header does not match
    """
    if not settings.admin_api_key:
        raise Forbidden("Namespace administration is disabled")
    if not api_key or not secrets.compare_digest(api_key, settings.admin_api_key):
        raise Forbidden("Invalid API key")
    return api_key
