# guest_house/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to SessionLifecycle operations.
#   - It MUST NOT make verification decisions itself (those live in
#     lifecycle.py) and MUST NOT talk to the provider directly (truid.py).
#   - It translates lifecycle Outcomes into redirects / templates / statuses.
#
# Key modules / responsibilities:
#   - config.py     : environment-driven settings (pydantic-settings)
#   - users.py      : in-memory user directory
#   - storage.py    : auth sessions + check/link-code indices + per-session locks
#   - truid.py      : provider client (OAuth2 token cache, coverage, checks)
#   - lifecycle.py  : sign-in state machine
#   - audit.py      : append-only hash-chained audit log
#
# State:
#   - The cookie (Starlette SessionMiddleware) carries at most user_id and
#     auth_session_id; everything else is in the stores created by create_app().
#
# WARNING (DEPLOYMENT):
# - Stores are process memory. Run ONE Uvicorn worker.
# -----------------------------------------------------------------------------

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

from fastapi import FastAPI, Form, Request
from fastapi.responses import PlainTextResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
import uvicorn

from .audit import AuditLog
from .config import Settings
from .lifecycle import BrowserSession, Outcome, SessionLifecycle
from .storage import AuthSessionStore
from .truid import TruIdClient
from .users import UserStore

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# -----------------------------------------------------------------------------
# Request helpers
# -----------------------------------------------------------------------------
def _client_ip(request: Request, trust_proxy: bool) -> str:
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else ""


def _browser(request: Request) -> BrowserSession:
    return BrowserSession(request.session)


def _respond(request: Request, outcome: Outcome) -> Response:
    if outcome.redirect_to is not None:
        return RedirectResponse(outcome.redirect_to, status_code=outcome.status_code)
    if outcome.template is not None:
        return templates.TemplateResponse(
            request,
            outcome.template,
            outcome.context,
            status_code=outcome.status_code,
        )
    return Response(status_code=outcome.status_code)


# -----------------------------------------------------------------------------
# Application factory
# -----------------------------------------------------------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    truid: Optional[TruIdClient] = None,
    users: Optional[UserStore] = None,
    auth_sessions: Optional[AuthSessionStore] = None,
    audit: Optional[AuditLog] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    # stores define __len__, so an empty injected store is falsy: test for None
    if settings is None:
        settings = Settings()
    if truid is None:
        truid = TruIdClient.from_settings(settings)
    if users is None:
        users = UserStore()
    if auth_sessions is None:
        auth_sessions = AuthSessionStore(clock=clock)
    if audit is None and settings.AUDIT_ENABLED:
        audit = AuditLog(settings.AUDIT_DIR)

    lifecycle = SessionLifecycle(
        users,
        auth_sessions,
        truid,
        base_url=settings.APP_BASE_URL,
        session_ttl_seconds=settings.SESSION_MAX_AGE_SECONDS,
        audit=audit,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Visit {settings.APP_BASE_URL}/guest-house to start")
        yield
        truid.close()

    app = FastAPI(title="Guest House", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.lifecycle = lifecycle

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET,
        session_cookie=settings.SESSION_COOKIE_NAME,
        max_age=settings.SESSION_MAX_AGE_SECONDS,
        same_site="strict",
        https_only=settings.APP_BASE_URL.startswith("https://"),
    )

    # -------------------------------------------------------------------------
    # Errors: one top-level handler, generic body, full cause in the log
    # -------------------------------------------------------------------------
    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error(f"unhandled error on {request.method} {request.url.path}", exc_info=exc)
        return PlainTextResponse("Something went wrong", status_code=500)

    # -------------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------------
    @app.get("/guest-house")
    def home(request: Request):
        return _respond(request, lifecycle.home(_browser(request)))

    @app.get("/guest-house/magic-link")
    def magic_link_page(request: Request):
        return templates.TemplateResponse(request, "magic-link.html", {})

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------
    @app.get("/guest-house/auth/sign-in")
    def sign_in_page(request: Request):
        return _respond(request, lifecycle.sign_in_page(_browser(request)))

    @app.post("/guest-house/auth/sign-in")
    def sign_in(request: Request, phone_number: Optional[str] = Form(None)):
        outcome = lifecycle.start_sign_in(
            _browser(request),
            phone_number,
            _client_ip(request, settings.TRUST_PROXY),
        )
        return _respond(request, outcome)

    @app.post("/guest-house/auth/sign-out")
    def sign_out(request: Request):
        return _respond(request, lifecycle.sign_out(_browser(request)))

    # -------------------------------------------------------------------------
    # Verification callbacks
    # -------------------------------------------------------------------------
    @app.get("/guest-house/verification/handle-check")
    def handle_check(
        request: Request,
        check_id: Optional[str] = None,
        code: Optional[str] = None,
        error: Optional[str] = None,
    ):
        outcome = lifecycle.handle_check(_browser(request), check_id, code, error)
        return _respond(request, outcome)

    @app.get("/guest-house/verification/handle-link")
    def handle_link(request: Request, code: Optional[str] = None):
        return _respond(request, lifecycle.handle_magic_link(_browser(request), code))

    # -------------------------------------------------------------------------
    # Onboarding
    # -------------------------------------------------------------------------
    @app.get("/guest-house/onboarding")
    def onboarding_page(request: Request):
        return _respond(request, lifecycle.onboarding_page(_browser(request)))

    @app.post("/guest-house/onboarding")
    def onboarding(request: Request, email: Optional[str] = Form(None)):
        return _respond(request, lifecycle.finish_onboarding(_browser(request), email))

    return app


def run() -> None:
    settings = Settings()
    configure_logging(settings)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=3000, workers=1)
