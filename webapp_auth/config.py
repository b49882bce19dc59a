"""
Web app configuration. Read once from the environment at startup and passed
explicitly into each component; nothing reads os.environ after that.
"""
import os
from dataclasses import dataclass

from webapp_auth.errors import ConfigurationError

OPENID_SCOPE = "openid"
OFFLINE_ACCESS_SCOPE = "offline_access"
DEFAULT_SCOPE = "openid offline_access profile email"


def _ensure_required_scopes(scope: str) -> str:
    scopes = scope.split()
    if OPENID_SCOPE not in scopes:
        scopes.insert(0, OPENID_SCOPE)
    if OFFLINE_ACCESS_SCOPE not in scopes:
        scopes.append(OFFLINE_ACCESS_SCOPE)
    return " ".join(scopes)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    # Identity provider base URL; "/oidc" is appended if missing
    issuer: str
    client_id: str
    client_secret: str = ""
    redirect_uri: str = "http://127.0.0.1:8000/callback"
    post_logout_redirect_uri: str = "http://127.0.0.1:3000/login"
    scope: str = DEFAULT_SCOPE
    # Where /callback sends the browser after a successful login
    frontend_url: str = "http://127.0.0.1:3000/"
    database_url: str = "sqlite:///./webapp_auth.db"
    # Seconds; applies to every discovery, JWKS and token request
    http_timeout: float = 10.0
    discovery_ttl: int = 3600
    jwks_lifespan: int = 300
    session_cookie_name: str = "session_id"
    session_cookie_secure: bool = False
    session_ttl: int = 24 * 60 * 60

    def __post_init__(self):
        if not self.issuer or not self.issuer.strip():
            raise ConfigurationError("OAUTH_ISSUER is not set")
        if not self.client_id or not self.client_id.strip():
            raise ConfigurationError("OAUTH_CLIENT_ID is not set")
        object.__setattr__(self, "scope", _ensure_required_scopes(self.scope))

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from OAUTH_* / APP_* environment variables. Raises ConfigurationError."""
        return cls(
            issuer=os.environ.get("OAUTH_ISSUER", ""),
            client_id=os.environ.get("OAUTH_CLIENT_ID", ""),
            client_secret=os.environ.get("OAUTH_CLIENT_SECRET", ""),
            redirect_uri=os.environ.get("OAUTH_REDIRECT_URI", "http://127.0.0.1:8000/callback"),
            post_logout_redirect_uri=os.environ.get(
                "OAUTH_POST_LOGOUT_REDIRECT_URI", "http://127.0.0.1:3000/login"
            ),
            scope=os.environ.get("OAUTH_SCOPE", DEFAULT_SCOPE),
            frontend_url=os.environ.get("APP_FRONTEND_URL", "http://127.0.0.1:3000/"),
            database_url=os.environ.get("APP_DATABASE_URL", "sqlite:///./webapp_auth.db"),
            http_timeout=float(os.environ.get("OAUTH_HTTP_TIMEOUT", "10")),
            discovery_ttl=int(os.environ.get("OAUTH_DISCOVERY_TTL", "3600")),
            jwks_lifespan=int(os.environ.get("OAUTH_JWKS_LIFESPAN", "300")),
            session_cookie_name=os.environ.get("APP_SESSION_COOKIE", "session_id"),
            session_cookie_secure=_env_bool("APP_SESSION_COOKIE_SECURE", False),
            session_ttl=int(os.environ.get("APP_SESSION_TTL", str(24 * 60 * 60))),
        )
