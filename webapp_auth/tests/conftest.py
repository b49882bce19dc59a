"""
Pytest configuration for webapp_auth: in-memory SQLite, and a stub identity provider
served through httpx.MockTransport (discovery, JWKS, token endpoint) that signs
identity tokens with throwaway RSA keys.
"""
import base64
import json
import time
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key
from fastapi.testclient import TestClient

from webapp_auth.config import Settings
from webapp_auth.database import init_db, make_engine, make_session_factory
from webapp_auth.main import create_app
from webapp_auth.provider import OIDCProvider
from webapp_auth.sessions import SessionStore

ISSUER = "https://id.example.test"
BASE_URL = f"{ISSUER}/oidc"
CLIENT_ID = "test-client"
CLIENT_SECRET = "test-secret"


def _b64_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key, kid: str) -> dict:
    numbers = public_key.public_numbers()
    return {"kty": "RSA", "kid": kid, "alg": "RS256", "use": "sig", "n": _b64_uint(numbers.n), "e": _b64_uint(numbers.e)}


def new_rsa_key():
    return generate_private_key(65537, 2048)


class StubProvider:
    """In-process identity provider. Flip the attributes to change its behaviour."""

    def __init__(self):
        self.keys = {"stub-key-1": new_rsa_key()}
        self.signing_kid = "stub-key-1"
        self.subject = "user-sub-1"
        self.email = "alice@example.test"
        self.name = "Alice"
        self.discovery_issuer = BASE_URL
        self.signing_algorithms = ["RS256"]
        self.discovery_down = False
        self.token_status = 200
        self.token_raises: Exception | None = None
        self.omit_id_token = False
        self.next_id_token: str | None = None
        self.discovery_calls = 0
        self.jwks_calls = 0
        self.token_requests: list[dict] = []

    @property
    def token_endpoint_reached(self) -> bool:
        return bool(self.token_requests)

    def sign_id_token(self, private_key=None, kid: str | None = None, algorithm: str = "RS256", **overrides) -> str:
        now = int(time.time())
        claims = {
            "iss": BASE_URL,
            "sub": self.subject,
            "aud": CLIENT_ID,
            "iat": now,
            "exp": now + 300,
            "email": self.email,
            "name": self.name,
        }
        claims.update(overrides)
        kid = kid or self.signing_kid
        key = private_key if private_key is not None else self.keys[kid]
        return jwt.encode(claims, key, algorithm=algorithm, headers={"kid": kid})

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path == "/oidc/.well-known/openid-configuration":
            self.discovery_calls += 1
            if self.discovery_down:
                raise httpx.ConnectError("provider down", request=request)
            return httpx.Response(
                200,
                json={
                    "issuer": self.discovery_issuer,
                    "authorization_endpoint": f"{BASE_URL}/auth",
                    "token_endpoint": f"{BASE_URL}/token",
                    "jwks_uri": f"{BASE_URL}/jwks",
                    "end_session_endpoint": f"{BASE_URL}/session/end",
                    "id_token_signing_alg_values_supported": self.signing_algorithms,
                },
            )
        if request.method == "GET" and path == "/oidc/jwks":
            self.jwks_calls += 1
            return httpx.Response(
                200, json={"keys": [public_key_to_jwk(k.public_key(), kid) for kid, k in self.keys.items()]}
            )
        if request.method == "POST" and path == "/oidc/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode("ascii")).items()}
            form["_authorization"] = request.headers.get("authorization")
            self.token_requests.append(form)
            if self.token_raises is not None:
                raise self.token_raises
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={"error": "invalid_grant", "error_description": "Authorization code already used"},
                )
            body = {"access_token": "opaque-access", "token_type": "Bearer", "expires_in": 3600}
            if not self.omit_id_token:
                body["id_token"] = self.next_id_token or self.sign_id_token()
            return httpx.Response(200, content=json.dumps(body), headers={"content-type": "application/json"})
        return httpx.Response(404, json={"error": "not_found"})


@pytest.fixture
def stub():
    return StubProvider()


@pytest.fixture
def http_client(stub):
    client = httpx.Client(transport=httpx.MockTransport(stub.handle), timeout=5.0)
    yield client
    client.close()


@pytest.fixture
def settings():
    return Settings(
        issuer=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uri="http://127.0.0.1:8000/callback",
        post_logout_redirect_uri="http://127.0.0.1:3000/login",
        frontend_url="http://127.0.0.1:3000/",
        database_url="sqlite:///:memory:",
    )


@pytest.fixture
def provider(settings, http_client):
    return OIDCProvider(settings, http_client)


@pytest.fixture
def engine():
    engine = make_engine("sqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def session_store():
    return SessionStore(ttl=3600)


@pytest.fixture
def app(settings, http_client, session_store, engine):
    return create_app(settings, http_client=http_client, session_store=session_store, engine=engine)


@pytest.fixture
def client(app):
    return TestClient(app)
