"""
Legacy-compatible object database service.

Serves the legacy route table over the generic object engine: session
authentication, the schema and data action vocabulary, listings, metadata
and reports, each answered as HTML or JSON depending on the request.

Usage:
    uvicorn services.legacy.main:app --host 0.0.0.0 --port 8000
"""
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, Mapping, Optional
import time

from objdb.accounts import AccountRepository
from objdb.auth import create_access_token, identity_from_claims
from objdb.auth_dependencies import get_request_params, require_admin_key, require_identity, resolve_identity
from objdb.base_types import USER
from objdb.cache import get_cache
from objdb.config import settings
from objdb.database import bounded, close_databases, get_session, init_databases
from objdb.dispatcher import ACTION_VERSION, ActionDispatcher, ActionKind, find_action_key, resolve_action
from objdb.errors import InvalidArgument, ObjdbError, Unauthorized
from objdb.logging_config import log_error, log_request, log_response, setup_logging
from objdb.namespaces import create_namespace, namespace_exists, require_namespace
from objdb.negotiator import (
    AuthState,
    ResponseFormat,
    auth_state,
    clear_session_cookies,
    extract_token,
    html_page,
    render_error,
    render_result,
    resolve_format,
    set_session_cookies,
)
from objdb.reports import ReportRunner, load_reports, rows_to_csv
from objdb.validation import validate_namespace

SERVICE_NAME = "legacy"
SERVICE_VERSION = "1.0.0"

logger = setup_logging(SERVICE_NAME, settings.log_level, settings.log_format)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open store connections on startup and close them on shutdown."""
    await init_databases()
    logger.info(f"Legacy service started (environment={settings.environment})")
    yield
    await close_databases()
    logger.info("Legacy service stopped")


app = FastAPI(title="Object Database Legacy API", version=SERVICE_VERSION, lifespan=lifespan)


# ============================================================================
# Helpers
# ============================================================================

def _param(params: Mapping[str, Any], name: str, default: str = "") -> str:
    value = params.get(name, default)
    if isinstance(value, (list, tuple)):
        value = value[-1] if value else default
    return default if value is None else str(value)


async def _negotiate(request: Request) -> Dict[str, Any]:
    """Parse parameters and remember the response format for the error handlers."""
    params = await get_request_params(request)
    request.state.response_format = resolve_format(params, request.headers)
    return params


def _format(request: Request) -> ResponseFormat:
    fmt = getattr(request.state, "response_format", None)
    if fmt is None:
        fmt = resolve_format(request.query_params, request.headers)
    return fmt


def _credential_error(db: str, fmt: ResponseFormat, message: str, status_code: int = 401) -> Response:
    """Credential failures keep the legacy ``[{"error": ...}]`` shape with HTTP 200."""
    if fmt.is_json:
        return JSONResponse([{"error": message}], status_code=200)
    return html_page(db, f"<h1>{message}</h1>", status_code=status_code)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ObjdbError)
async def objdb_error_handler(request: Request, exc: ObjdbError):
    """Answer engine errors in the negotiated format."""
    return render_error(request.path_params.get("db"), _format(request), exc, uri=request.url.path)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {type(exc).__name__}")
    return render_error(request.path_params.get("db"), _format(request), exc)


# ============================================================================
# Service Endpoints
# ============================================================================

@app.get("/health")
async def health():
    """Liveness probe."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "action_version": ACTION_VERSION,
    }


@app.post("/my/_new_db")
async def new_database(
    request: Request,
    _: str = Depends(require_admin_key),
    db: AsyncSession = Depends(get_session),
):
    """
    Create a namespace with its system rows and first administrator.

    - **db**: Namespace name
    - **login**: Administrator login (default ``admin``)
    - **pwd**: Administrator password
    """
    params = await _negotiate(request)
    name = _param(params, "db")
    password = _param(params, "pwd") or _param(params, "password")
    if not password:
        raise InvalidArgument("Administrator password required")
    user_id = await create_namespace(db, name, _param(params, "login", "admin") or "admin", password)
    logger.info(f"Namespace {name} created via admin endpoint")
    return {"db": name, "id": user_id, "msg": ""}


# ============================================================================
# Session Endpoints
# ============================================================================

@app.post("/{db}/auth")
async def authenticate(db: str, request: Request, session: AsyncSession = Depends(get_session)):
    """
    Password login.

    Sets the ``<db>`` and ``<db>_xsrf`` cookies; JSON callers get
    ``{_xsrf, token, id, msg}``, HTML callers a redirect to ``uri``.
    """
    params = await _negotiate(request)
    fmt = _format(request)
    validate_namespace(db)

    login = (_param(params, "login") or _param(params, "user")).lower()
    password = _param(params, "pwd") or _param(params, "password")
    if not login or not password:
        return _credential_error(db, fmt, "Login and password required", status_code=400)
    if not await namespace_exists(session, db):
        return _credential_error(db, fmt, f"{db} does not exist", status_code=404)

    accounts = AccountRepository(session, db)
    user = await accounts.find_user(login)
    if user is None or not await accounts.verify_password(user, password):
        logger.warning(f"Login failed in {db}")
        return _credential_error(
            db, fmt,
            f"Wrong credentials for user {login} in {db}. Please send login and password as POST-parameters.",
        )

    msg = ""
    if "change" in params:
        msg = await accounts.change_password(user, password, _param(params, "npw1"), _param(params, "npw2"))
        if "[err" in msg:
            if fmt.is_json:
                return JSONResponse({"_xsrf": "", "token": "", "id": 0, "msg": msg})
            return HTMLResponse(msg)

    token, xsrf = await accounts.open_session(user)
    logger.info(f"Login succeeded in {db}: user={user.id}")

    if fmt.is_json:
        response: Response = JSONResponse({"_xsrf": xsrf, "token": token, "id": user.id, "msg": msg})
    else:
        uri = _param(params, "uri")
        response = RedirectResponse(uri if uri.startswith(f"/{db}") else f"/{db}", status_code=302)
    set_session_cookies(response, db, token, xsrf)
    return response


@app.post("/{db}/jwt")
async def authenticate_jwt(db: str, request: Request, session: AsyncSession = Depends(get_session)):
    """Exchange a structured token for a fresh opaque session: ``{_xsrf, token, id, user}``."""
    params = await _negotiate(request)
    validate_namespace(db)
    await require_namespace(session, db)

    claims = identity_from_claims(_param(params, "jwt"), db)
    if claims is None:
        raise Unauthorized("Invalid JWT", {"namespace": db})

    accounts = AccountRepository(session, db)
    user = await accounts.arena.get(claims.user_id)
    if user is None or user.t != USER:
        raise Unauthorized("User not found", {"namespace": db})

    token, xsrf = await accounts.open_session(user, rotate=True)
    response = JSONResponse({"_xsrf": xsrf, "token": token, "id": user.id, "user": user.val})
    set_session_cookies(response, db, token, xsrf)
    return response


@app.post("/{db}/token")
async def issue_structured_token(db: str, request: Request, session: AsyncSession = Depends(get_session)):
    """Issue a structured token for an authenticated caller."""
    params = await _negotiate(request)
    validate_namespace(db)
    await require_namespace(session, db)
    identity = await require_identity(request, session, db, params)

    access_token = create_access_token(identity.user_id, identity.username, identity.role, db)
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": settings.jwt_expire_seconds,
    }


@app.get("/{db}/xsrf")
async def session_info(db: str, request: Request, session: AsyncSession = Depends(get_session)):
    """Current session: ``{_xsrf, token, user, role, id, msg}``; an empty shape when anonymous."""
    empty = {"_xsrf": "", "token": None, "user": "", "role": "", "id": 0, "msg": ""}
    params = await _negotiate(request)
    validate_namespace(db)
    if not await namespace_exists(session, db):
        return empty

    identity = await resolve_identity(request, session, db, params)
    if auth_state(identity) == AuthState.ANONYMOUS:
        response = JSONResponse(empty)
        if request.cookies.get(db):
            clear_session_cookies(response, db)
        return response
    return {
        "_xsrf": identity.xsrf,
        "token": identity.token,
        "user": identity.username,
        "role": identity.role,
        "id": str(identity.user_id),
        "msg": "",
    }


@app.api_route("/{db}/exit", methods=["GET", "POST"])
async def logout(db: str, request: Request, session: AsyncSession = Depends(get_session)):
    """Delete the opaque token and clear the session cookies."""
    params = await _negotiate(request)
    fmt = _format(request)
    validate_namespace(db)

    token, _ = extract_token(db, request.cookies, request.headers)
    if token and await namespace_exists(session, db):
        await AccountRepository(session, db).revoke_token(token)
    logger.info(f"Logout from {db}")

    if fmt.is_json:
        response: Response = JSONResponse({"message": "", "db": db, "login": "", "details": ""})
    else:
        response = RedirectResponse(f"/{db}", status_code=302)
    clear_session_cookies(response, db)
    return response


# ============================================================================
# Reports
# ============================================================================

async def _report(db: str, report_id: Optional[str], request: Request, session: AsyncSession) -> Response:
    start_time = time.time()
    params = await _negotiate(request)
    fmt = _format(request)
    validate_namespace(db)
    log_request(logger, db, "report", report=report_id or "-")

    try:
        await require_namespace(session, db)
        await require_identity(request, session, db, params, "report")
        runner = ReportRunner(session, db, load_reports())
        key = report_id or _param(params, "id")
        if not key:
            result: Any = runner.list_reports()
        else:
            result = await bounded(lambda: runner.run(key, params), read=True, session=session)
    except Exception as e:
        log_error(logger, db, e, action="report")
        log_response(logger, db, "report", False, (time.time() - start_time) * 1000)
        raise

    log_response(logger, db, "report", True, (time.time() - start_time) * 1000)
    if key and _param(params, "format").lower() == "csv" and isinstance(result, list):
        report = runner.catalog.find(key)
        return Response(
            rows_to_csv([c.name for c in report.columns], result),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{report.name}.csv"'},
        )
    return render_result(db, fmt, result, params)


@app.api_route("/{db}/report", methods=["GET", "POST"])
async def report_list(db: str, request: Request, session: AsyncSession = Depends(get_session)):
    """List reports, or run the one named by ``id``."""
    return await _report(db, None, request, session)


@app.api_route("/{db}/report/{report_id}", methods=["GET", "POST"])
async def report_run(db: str, report_id: str, request: Request, session: AsyncSession = Depends(get_session)):
    """Run a report by id or name; ``format=csv`` for CSV, ``RECORD_COUNT`` for a count."""
    return await _report(db, report_id, request, session)


# ============================================================================
# Action Dispatch
# ============================================================================

async def _run_action(
    db: str,
    action: str,
    target: Optional[str],
    request: Request,
    session: AsyncSession,
    params: Optional[Dict[str, Any]] = None,
) -> Response:
    """
    Validate, authenticate, dispatch and render one action.

    The namespace name and the action code are checked before any store
    access. Engine errors propagate to the exception handlers so the
    request transaction is rolled back.
    """
    start_time = time.time()
    if params is None:
        params = await _negotiate(request)
    fmt = _format(request)
    validate_namespace(db)
    spec = resolve_action(action)
    log_request(logger, db, spec.code, target=target or "-")

    try:
        await require_namespace(session, db)
        identity = await resolve_identity(request, session, db, params, spec.code)
        dispatcher = ActionDispatcher(session, db, identity, get_cache())
        result = await bounded(
            lambda: dispatcher.dispatch(action, target, params),
            read=spec.kind == ActionKind.QUERY,
            session=session,
        )
    except Exception as e:
        log_error(logger, db, e, action=spec.code)
        log_response(logger, db, spec.code, False, (time.time() - start_time) * 1000)
        raise

    log_response(logger, db, spec.code, True, (time.time() - start_time) * 1000)
    return render_result(db, fmt, result, params)


@app.get("/{db}")
async def namespace_home(db: str, request: Request, session: AsyncSession = Depends(get_session)):
    """Entry page: login data for anonymous callers, the session for signed-in ones."""
    params = await _negotiate(request)
    fmt = _format(request)
    validate_namespace(db)
    identity = None
    if await namespace_exists(session, db):
        identity = await resolve_identity(request, session, db, params)

    state = auth_state(identity)
    if fmt.is_json:
        if state == AuthState.ANONYMOUS:
            return JSONResponse({"message": "", "db": db, "login": "", "details": ""})
        return JSONResponse({
            "user": identity.username,
            "role": identity.role,
            "id": identity.user_id,
            "_xsrf": identity.xsrf,
        })
    if state == AuthState.ANONYMOUS:
        form = (
            f'<form method="post" action="/{db}/auth">'
            '<input name="login"><input name="pwd" type="password">'
            '<button type="submit">Login</button></form>'
        )
        return html_page(db, form)
    return html_page(db, f"<p>{identity.username}</p>")


@app.post("/{db}")
async def namespace_post(db: str, request: Request, session: AsyncSession = Depends(get_session)):
    """Legacy form posts that carry the action as a literal key (``?_m_save&id=5``)."""
    params = await _negotiate(request)
    action = find_action_key(params)
    if action is None:
        return await namespace_home(db, request, session)
    return await _run_action(db, action, _param(params, "id") or None, request, session, params)


@app.api_route("/{db}/{action}", methods=["GET", "POST"])
async def legacy_action(db: str, action: str, request: Request, session: AsyncSession = Depends(get_session)):
    """Run an action that takes no id (``_d_new``, ``_dict``, ``metadata``, ``terms``)."""
    return await _run_action(db, action, None, request, session)


@app.api_route("/{db}/{action}/{target}", methods=["GET", "POST"])
async def legacy_target_action(
    db: str,
    action: str,
    target: str,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """Run an action against a type, object or requisite id."""
    return await _run_action(db, action, target, request, session)
