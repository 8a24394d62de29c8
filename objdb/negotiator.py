"""Protocol negotiation: response format, credential source and rendering.

Two independent axes decide how a request is answered: whether the caller
is authenticated and which format it asked for. Format flags and token
sources are checked in a fixed priority order that legacy clients rely on.
"""
from enum import Enum
from html import escape
from typing import Any, Mapping, Optional, Tuple
from urllib.parse import quote
import json
import logging

from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from .config import settings
from .dispatcher import PARAM_TOKEN_ACTIONS, ActionResult
from .errors import InvalidArgument, ObjdbError, Unauthorized, create_error_response, status_code_for

logger = logging.getLogger(__name__)

JSON_MEDIA_TYPE = "application/json"
XHR_MARKER = "xmlhttprequest"


class ResponseFormat(str, Enum):
    HTML = "html"
    JSON_FULL = "json"
    JSON_COMPACT = "json_data"
    JSON_KEYVALUE = "json_kv"

    @property
    def is_json(self) -> bool:
        return self is not ResponseFormat.HTML


class AuthState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"


class TokenSource(str, Enum):
    COOKIE = "cookie"
    AUTHORIZATION = "authorization"
    X_AUTHORIZATION = "x-authorization"
    PARAMETER = "parameter"


# Query flags in priority order
_FORMAT_FLAGS = (
    ("JSON_DATA", ResponseFormat.JSON_COMPACT),
    ("JSON_KV", ResponseFormat.JSON_KEYVALUE),
    ("JSON", ResponseFormat.JSON_FULL),
    ("json", ResponseFormat.JSON_FULL),
    ("JSON_CR", ResponseFormat.JSON_FULL),
    ("JSON_HR", ResponseFormat.JSON_FULL),
)


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value or ""


def resolve_format(params: Mapping[str, Any], headers: Mapping[str, str]) -> ResponseFormat:
    """
    Decide the response format.

    Priority: explicit query flag, ``Accept: application/json``,
    ``Content-Type: application/json``, ``X-Requested-With``. Nothing
    matching means HTML.
    """
    for flag, fmt in _FORMAT_FLAGS:
        if flag in params:
            return fmt
    if JSON_MEDIA_TYPE in _header(headers, "accept").lower():
        return ResponseFormat.JSON_FULL
    if JSON_MEDIA_TYPE in _header(headers, "content-type").lower():
        return ResponseFormat.JSON_FULL
    if _header(headers, "x-requested-with").lower() == XHR_MARKER:
        return ResponseFormat.JSON_FULL
    return ResponseFormat.HTML


def _strip_bearer(value: str) -> str:
    value = value.strip()
    if value[:7].lower() == "bearer ":
        return value[7:].strip()
    return value


def extract_token(
    namespace: str,
    cookies: Mapping[str, str],
    headers: Mapping[str, str],
    params: Optional[Mapping[str, Any]] = None,
    action: Optional[str] = None,
) -> Tuple[Optional[str], Optional[TokenSource]]:
    """
    Find the session token.

    Priority: the cookie named after the namespace, ``Authorization``
    (with or without ``Bearer``), ``X-Authorization``, then a ``token``
    parameter for the legacy query actions only.

    Returns:
        (token, source), both None when the caller is anonymous
    """
    cookie = cookies.get(namespace)
    if cookie:
        return cookie, TokenSource.COOKIE

    authorization = _strip_bearer(_header(headers, "authorization"))
    if authorization:
        return authorization, TokenSource.AUTHORIZATION

    alternate = _strip_bearer(_header(headers, "x-authorization"))
    if alternate:
        return alternate, TokenSource.X_AUTHORIZATION

    if params and action in PARAM_TOKEN_ACTIONS:
        value = params.get("token")
        if isinstance(value, (list, tuple)):
            value = value[-1] if value else None
        if value:
            return str(value), TokenSource.PARAMETER

    return None, None


def auth_state(identity: Any) -> AuthState:
    """Authentication axis of a request, from its resolved identity."""
    return AuthState.ANONYMOUS if identity is None else AuthState.AUTHENTICATED


# ============================================================================
# Cookies
# ============================================================================

def set_session_cookies(response: Response, namespace: str, token: str, xsrf: str) -> None:
    """Session cookie ``<db>`` and XSRF cookie ``<db>_xsrf``, both for ``cookie_expire`` seconds."""
    response.set_cookie(namespace, token, max_age=settings.cookie_expire, path="/")
    response.set_cookie(f"{namespace}_xsrf", xsrf, max_age=settings.cookie_expire, path="/")


def clear_session_cookies(response: Response, namespace: str) -> None:
    response.delete_cookie(namespace, path="/")
    response.delete_cookie(f"{namespace}_xsrf", path="/")


# ============================================================================
# Rendering
# ============================================================================

def html_page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    """Bare HTML page; the real UI is served elsewhere."""
    content = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{escape(title)}</title></head><body>{body}</body></html>"
    )
    return HTMLResponse(content, status_code=status_code)


def action_redirect_url(namespace: str, result: ActionResult, next_act: Optional[str] = None) -> str:
    """``/<db>/<next_act>/<id>?<args>#<obj>``"""
    act = next_act or result.next_act or ""
    url = f"/{namespace}/{act}"
    if result.id:
        url += f"/{result.id}"
    if result.args:
        url += f"?{result.args}"
    if result.obj is not None:
        url += f"#{result.obj}"
    return url


def render_result(
    namespace: str,
    fmt: ResponseFormat,
    result: Any,
    params: Optional[Mapping[str, Any]] = None,
) -> Response:
    """
    Answer a dispatched action.

    Mutations give the legacy envelope as JSON, or a redirect in HTML mode
    (``next_act`` from the request wins; ``nul`` means an empty body).
    Queries give their data as JSON, or a page holding it in HTML mode.
    """
    params = params or {}
    if isinstance(result, ActionResult):
        if fmt.is_json:
            return JSONResponse(result.envelope())
        next_act = params.get("next_act")
        if isinstance(next_act, (list, tuple)):
            next_act = next_act[-1] if next_act else None
        effective = next_act or result.next_act
        if effective == "nul":
            return Response(content="", media_type="text/html")
        return RedirectResponse(action_redirect_url(namespace, result, effective), status_code=302)

    if fmt.is_json:
        return JSONResponse(result)
    body = f"<pre>{escape(json.dumps(result, ensure_ascii=False, indent=1))}</pre>"
    return html_page(namespace, body)


def login_redirect(namespace: str, uri: Optional[str] = None) -> RedirectResponse:
    url = f"/{namespace}"
    if uri:
        url += f"?uri={quote(uri, safe='/')}"
    return RedirectResponse(url, status_code=302)


def render_error(
    namespace: Optional[str],
    fmt: ResponseFormat,
    error: Exception,
    uri: Optional[str] = None,
) -> Response:
    """
    Answer a failed request in the negotiated format.

    JSON callers get the structured error object with the class status.
    HTML callers get a login redirect for missing credentials and an error
    page for everything else; never a bare 500 for a known error.
    """
    if isinstance(error, InvalidArgument) and error.message == "Invalid database":
        if fmt.is_json:
            return JSONResponse([{"error": "Invalid database"}], status_code=200)
        return html_page("Invalid database", "<h1>Invalid database</h1>", status_code=400)

    status_code = status_code_for(error)
    if fmt.is_json:
        return JSONResponse(create_error_response(error), status_code=status_code)

    if isinstance(error, Unauthorized) and namespace:
        return login_redirect(namespace, uri)
    message = error.message if isinstance(error, ObjdbError) else "An internal error occurred."
    return html_page("Error", f"<h1>{escape(message)}</h1>", status_code=status_code)
