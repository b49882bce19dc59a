"""
Web app authentication service.
OIDC authorization code flow with PKCE against the configured provider; local users
provisioned on first login; browser identified afterwards by a server-side session.
GET /login, /callback, /me; POST /logout.
"""
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.engine import Engine

from webapp_auth.auth import SessionAuthenticator, get_current_user, get_session
from webapp_auth.callback import CallbackVerifier
from webapp_auth.config import Settings
from webapp_auth.database import init_db, make_engine, make_session_factory
from webapp_auth.errors import AuthError
from webapp_auth.flow_store import start_login
from webapp_auth.logout import LogoutCoordinator
from webapp_auth.models import User
from webapp_auth.provider import OIDCProvider
from webapp_auth.sessions import Session, SessionStore, write_session_cookie
from webapp_auth.users import SqlUserStore, UserProvisioner

logger = logging.getLogger(__name__)
router = APIRouter()


def _with_session_cookie(request: Request, response, session: Session):
    settings: Settings = request.app.state.settings
    write_session_cookie(
        response,
        session,
        cookie_name=settings.session_cookie_name,
        max_age=settings.session_ttl,
        secure=settings.session_cookie_secure,
    )
    return response


@router.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "webapp_auth"}


@router.get("/login")
def login(request: Request, session: Session = Depends(get_session)):
    """Bind a fresh state + PKCE verifier to the session and redirect to the provider."""
    url = start_login(session, request.app.state.provider)
    logger.info("Login started")
    return _with_session_cookie(request, RedirectResponse(url=url, status_code=302), session)


@router.get("/callback")
def callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    session: Session = Depends(get_session),
):
    """
    Provider redirect target. On success the session is bound to the local user and the
    browser goes to the frontend; any rejection is a 401 from the AuthError handler.
    """
    app_state = request.app.state
    app_state.callback_verifier.complete(session, code=code, state=state, error=error)
    response = RedirectResponse(url=app_state.settings.frontend_url, status_code=302)
    return _with_session_cookie(request, response, session)


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    """Summary of the logged-in user."""
    return {"id": user.id, "name": user.display_name, "email": user.email}


@router.post("/logout")
def logout(request: Request, session: Session = Depends(get_session)):
    """Destroy the session; the client follows logout_url to end the provider session."""
    logout_url = request.app.state.logout_coordinator.logout(session)
    return _with_session_cookie(request, JSONResponse({"logout_url": logout_url}), session)


async def auth_error_handler(request: Request, exc: AuthError):
    # Fixed, generic description per error class; details stay in the logs
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


def create_app(
    settings: Settings | None = None,
    *,
    http_client: httpx.Client | None = None,
    session_store: SessionStore | None = None,
    engine: Engine | None = None,
) -> FastAPI:
    """
    Wire components from explicit settings (Settings.from_env() if omitted).
    Raises ConfigurationError when the provider is not configured.
    """
    settings = settings or Settings.from_env()
    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.Client(timeout=settings.http_timeout)
    if engine is None:
        engine = make_engine(settings.database_url)
    init_db(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_http_client:
            http_client.close()

    app = FastAPI(title="Web App Auth", version="1.0.0", lifespan=lifespan)

    provider = OIDCProvider(settings, http_client)
    user_store = SqlUserStore(make_session_factory(engine))
    app.state.settings = settings
    app.state.provider = provider
    app.state.session_store = session_store or SessionStore(ttl=settings.session_ttl)
    app.state.user_store = user_store
    app.state.authenticator = SessionAuthenticator()
    app.state.callback_verifier = CallbackVerifier(provider, UserProvisioner(user_store))
    app.state.logout_coordinator = LogoutCoordinator(provider)

    app.add_exception_handler(AuthError, auth_error_handler)
    app.include_router(router, tags=["auth"])
    logger.info("Configured OIDC provider at %s for client %s", provider.base_url, settings.client_id)
    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "webapp_auth.main:create_app",
        factory=True,
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
