"""
Tournament registration - main FastAPI application.
"""

import asyncio
import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from audit import log_action
from auth import Role, Session, SessionManager, resolve_role
from config import Config, config
from database import AuditEntry, RegistrationStore, StoreError
from lichess_client import CsrfMismatch, LichessClient, ProviderError, parse_callback
from registration import (
    AdminAction, Forbidden, PageView, RegistrationService, RegistrationWindow, UnknownAction
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class SensitiveDataFilter(logging.Filter):
    """Filter to redact OAuth secrets from log messages."""

    SENSITIVE_PATTERNS = [
        (re.compile(r'([?&]code=)[^&\s"]+', re.IGNORECASE), r'\1[REDACTED]'),
        (re.compile(r'([?&]state=)[^&\s"]+', re.IGNORECASE), r'\1[REDACTED]'),
        (re.compile(r'([?&]code_verifier=)[^&\s"]+', re.IGNORECASE), r'\1[REDACTED]'),
        (re.compile(r'([?&]client_secret=)[^&\s"]+', re.IGNORECASE), r'\1[REDACTED]'),
        (re.compile(r'([?&]access_token=)[^&\s"]+', re.IGNORECASE), r'\1[REDACTED]'),
    ]

    @classmethod
    def redact(cls, text: str) -> str:
        for pattern, replacement in cls.SENSITIVE_PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def _redact_arg(self, arg):
        # Numbers stay numbers so %d placeholders still format
        if isinstance(arg, (int, float)):
            return arg
        text = str(arg)
        redacted = self.redact(text)
        return redacted if redacted != text else arg

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.redact(record.msg)
        # uvicorn's access formatter unpacks record.args, so redact them in place
        if isinstance(record.args, tuple):
            record.args = tuple(self._redact_arg(arg) for arg in record.args)
        elif isinstance(record.args, dict):
            record.args = {k: self._redact_arg(v) for k, v in record.args.items()}
        return True


# httpx logs outbound request URLs; uvicorn.access logs the callback's query string
sensitive_filter = SensitiveDataFilter()
for logger_name in ("httpx", "uvicorn.access"):
    logging.getLogger(logger_name).addFilter(sensitive_filter)

# Rate limiter - disabled in test mode
limiter = Limiter(key_func=get_remote_address, enabled=not config.TESTING)


class PageRenderer:
    """
    Turns a PageView into a response.

    HTML templates are not part of this service; the default rendering is
    the page name plus its context as JSON. Swap in a subclass to render
    markup.
    """

    def __init__(self, site_name: str):
        self.site_name = site_name

    def render(self, request: Request, view: PageView, status_code: int = 200) -> Response:
        content = {"page": view.name, "site_name": self.site_name}
        content.update(view.context)
        return JSONResponse(content, status_code=status_code)


# ============================================================
# DEPENDENCIES
# ============================================================

def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_service(request: Request) -> RegistrationService:
    return request.app.state.service


def get_provider(request: Request) -> LichessClient:
    return request.app.state.provider


def get_renderer(request: Request) -> PageRenderer:
    return request.app.state.renderer


def get_store(request: Request) -> RegistrationStore:
    return request.app.state.store


def get_current_session(
    request: Request, sessions: SessionManager = Depends(get_sessions)
) -> Optional[Session]:
    """Get current session from the session cookie."""
    return sessions.read_session(request)


def get_role(
    request: Request, session: Optional[Session] = Depends(get_current_session)
) -> Optional[Role]:
    """Resolve the caller's role once per request."""
    return resolve_role(session, request.app.state.config.TOURNAMENT_DIRECTOR)


def get_client_ip(request: Request) -> Optional[str]:
    """Get real client IP, handling proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs: "client, proxy1, proxy2"
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=303)


router = APIRouter()


# ============================================================
# PUBLIC ENDPOINTS
# ============================================================

@router.get("/")
async def home(
    request: Request,
    session: Optional[Session] = Depends(get_current_session),
    service: RegistrationService = Depends(get_service),
    renderer: PageRenderer = Depends(get_renderer),
):
    """Landing page for the current registration phase."""
    view = await asyncio.to_thread(service.home, session)
    return renderer.render(request, view)


@router.get("/qualification")
async def qualification(
    request: Request,
    session: Optional[Session] = Depends(get_current_session),
    service: RegistrationService = Depends(get_service),
    renderer: PageRenderer = Depends(get_renderer),
):
    """Seeded qualification list."""
    entrants = await asyncio.to_thread(service.qualification)
    ctx = {"entrants": [asdict(e) for e in entrants]}
    if session:
        ctx["username"] = session.display_name
    return renderer.render(request, PageView("qualification", ctx))


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


# ============================================================
# AUTHENTICATION
# ============================================================

@router.get("/auth")
@limiter.limit(config.RATE_LIMIT_AUTH)
async def auth(
    request: Request,
    provider: LichessClient = Depends(get_provider),
    sessions: SessionManager = Depends(get_sessions),
):
    """Start a login: remember the handshake and send the browser to the provider."""
    url, handshake = provider.begin_login()
    response = redirect(url)
    sessions.store_handshake(response, handshake)
    return response


def _login_failed(
    request: Request, sessions: SessionManager, renderer: PageRenderer,
    status_code: int, detail: str,
) -> Response:
    response = renderer.render(request, PageView("loginfailed", {"detail": detail}), status_code)
    response.headers["Cache-Control"] = "no-store"
    # Clears the handshake cookie; it was already consumed
    sessions.take_handshake(request, response)
    return response


@router.get("/oauth_redirect")
@limiter.limit(config.RATE_LIMIT_AUTH)
async def oauth_redirect(
    request: Request,
    provider: LichessClient = Depends(get_provider),
    sessions: SessionManager = Depends(get_sessions),
    renderer: PageRenderer = Depends(get_renderer),
    store: RegistrationStore = Depends(get_store),
):
    """Provider callback: verify state, exchange the code and establish a session."""
    response = redirect("/")
    response.headers["Cache-Control"] = "no-store"
    stored = sessions.take_handshake(request, response)

    try:
        outcome = parse_callback(request.query_params)
        if outcome.denied:
            logger.warning(f"OAuth error: {outcome.error} - {outcome.error_description}")
            return response
        user = await provider.complete_login(outcome.code, outcome.state, stored)
    except CsrfMismatch as e:
        logger.warning(f"OAuth callback rejected: {e}")
        return _login_failed(request, sessions, renderer, 400, "Login could not be verified")
    except ProviderError as e:
        logger.error(f"Identity provider failure: {e}")
        return _login_failed(request, sessions, renderer, 502, "Identity provider unavailable")

    await asyncio.to_thread(
        log_action,
        store,
        actor_id=user.subject_id,
        action="login",
        target_id=user.subject_id,
        details=user.display_name,
        ip_address=get_client_ip(request),
    )
    sessions.establish_session(response, user)
    return response


@router.post("/logout")
async def logout(
    request: Request,
    session: Optional[Session] = Depends(get_current_session),
    sessions: SessionManager = Depends(get_sessions),
    store: RegistrationStore = Depends(get_store),
):
    """Logout and clear the session."""
    if session:
        await asyncio.to_thread(
            log_action,
            store,
            actor_id=session.subject_id,
            action="logout",
            target_id=session.subject_id,
            ip_address=get_client_ip(request),
        )
    response = redirect("/")
    sessions.destroy_session(response)
    return response


# ============================================================
# REGISTRATION
# ============================================================

@router.post("/register")
async def register(
    request: Request,
    comment: Optional[str] = Form(None, alias="optional-comment"),
    session: Optional[Session] = Depends(get_current_session),
    service: RegistrationService = Depends(get_service),
):
    """Submit a registration for the logged-in caller."""
    if session is None:
        return redirect("/")

    audit = AuditEntry(
        action="register",
        actor_id=session.subject_id,
        target_id=session.subject_id,
        ip_address=get_client_ip(request),
    )
    await asyncio.to_thread(service.register, session, comment, audit)
    return redirect("/")


# ============================================================
# TOURNAMENT DIRECTOR
# ============================================================

@router.get("/admin")
async def admin(
    request: Request,
    session: Optional[Session] = Depends(get_current_session),
    role: Optional[Role] = Depends(get_role),
    service: RegistrationService = Depends(get_service),
    renderer: PageRenderer = Depends(get_renderer),
):
    """All registrations for review."""
    if session is None:
        return redirect("/auth")

    registrations = await asyncio.to_thread(service.registrations, role)
    return renderer.render(request, PageView("admin", {
        "username": session.display_name,
        "registrations": [r.to_dict() for r in registrations],
    }))


@router.get("/admin/review/{who}")
async def admin_review(
    request: Request,
    who: str,
    session: Optional[Session] = Depends(get_current_session),
    role: Optional[Role] = Depends(get_role),
    service: RegistrationService = Depends(get_service),
    renderer: PageRenderer = Depends(get_renderer),
):
    """One registration with its comments."""
    if session is None:
        return redirect("/auth")

    registration = await asyncio.to_thread(service.registration, role, who)
    return renderer.render(request, PageView("adminreview", {
        "username": session.display_name,
        "registration": registration.to_dict() if registration else None,
    }))


@router.post("/admin/action/{what}/{who}")
async def admin_action(
    request: Request,
    what: str,
    who: str,
    comment: Optional[str] = Form(None, alias="optional-comment"),
    session: Optional[Session] = Depends(get_current_session),
    role: Optional[Role] = Depends(get_role),
    service: RegistrationService = Depends(get_service),
):
    """Approve, reject or withdraw a registration."""
    # Unknown actions are a 400 whether or not the caller is logged in
    action = AdminAction.parse(what)
    if session is None:
        return redirect("/")

    audit = AuditEntry(
        action=action.value,
        actor_id=session.subject_id,
        target_id=who,
        details=comment or None,
        ip_address=get_client_ip(request),
    )
    try:
        await asyncio.to_thread(service.review, role, action, who, comment, audit)
    except Forbidden:
        logger.warning(f"Non-director {session.subject_id} attempted {action.value} on {who}")
        return redirect("/")

    return redirect("/admin")


# ============================================================
# ERROR HANDLERS AND MIDDLEWARE
# ============================================================

async def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"Registration store failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Registration store unavailable"})


async def unknown_action_handler(request: Request, exc: UnknownAction):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def forbidden_handler(request: Request, exc: Forbidden):
    """Authenticated but not the tournament director: show the access-denied page."""
    session = request.app.state.sessions.read_session(request)
    ctx = {"username": session.display_name} if session else {}
    return request.app.state.renderer.render(request, PageView("accessdenied", ctx), status_code=403)


async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "form-action 'self' https:; "
        "frame-ancestors 'none';"
    )

    # HSTS - only on production (not localhost)
    host = request.headers.get("host", "")
    if not host.startswith("localhost") and not host.startswith("127.0.0.1") and not host.startswith("testserver"):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response


def create_app(
    cfg: Config = config,
    store: Optional[RegistrationStore] = None,
    sessions: Optional[SessionManager] = None,
    provider: Optional[LichessClient] = None,
    service: Optional[RegistrationService] = None,
    renderer: Optional[PageRenderer] = None,
) -> FastAPI:
    """
    Build the application with its collaborators.

    Anything not passed in is built from configuration. Handlers only reach
    collaborators through ``app.state``.
    """
    cfg.validate()

    http = httpx.AsyncClient()
    store = store or RegistrationStore.from_config(cfg)
    sessions = sessions or SessionManager.from_config(cfg)
    provider = provider or LichessClient.from_config(http, cfg)
    service = service or RegistrationService(store, RegistrationWindow.from_config(cfg))
    renderer = renderer or PageRenderer(cfg.SITE_NAME)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - startup and shutdown."""
        store.init_db()
        logger.info(
            f"Registration window {service.window.opens_at.isoformat()} to "
            f"{service.window.closes_at.isoformat()}, currently {service.phase().value}"
        )
        yield
        await http.aclose()
        store.pool.close()

    app = FastAPI(
        title=cfg.SITE_NAME,
        description="Tournament registration with provider login and director review.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = cfg
    app.state.store = store
    app.state.sessions = sessions
    app.state.provider = provider
    app.state.service = service
    app.state.renderer = renderer

    # Add rate limiter to app
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(UnknownAction, unknown_action_handler)
    app.add_exception_handler(Forbidden, forbidden_handler)
    app.middleware("http")(security_headers_middleware)

    app.include_router(router)
    return app


app = create_app()


# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
