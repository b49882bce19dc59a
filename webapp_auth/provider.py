"""
Identity provider integration: endpoint normalization, authorization URL,
authorization code exchange, identity token verification, end-session URL.

IdentityProvider is the capability the login flow depends on; OIDCProvider is the
implementation for an OpenID Connect provider whose endpoints hang off a base URL
ending in /oidc.
"""
import logging
from typing import Protocol
from urllib.parse import urlencode

import httpx
import jwt

from webapp_auth.config import Settings
from webapp_auth.discovery import ProviderKeyCache
from webapp_auth.errors import ExchangeFailed, TokenVerificationFailed

logger = logging.getLogger(__name__)

OIDC_PATH_SUFFIX = "/oidc"


def normalize_base_url(issuer: str, suffix: str = OIDC_PATH_SUFFIX) -> str:
    """Strip trailing slashes and make sure the URL ends in exactly one `suffix`."""
    base = issuer.strip().rstrip("/")
    if not base.endswith(suffix):
        base = base + suffix
    return base


def build_authorize_url(
    *,
    base_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
) -> str:
    """Build the provider /auth URL with the code flow + PKCE parameters."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{base_url}/auth?{urlencode(params)}"


def build_end_session_url(*, base_url: str, client_id: str, post_logout_redirect_uri: str) -> str:
    params = {"client_id": client_id, "post_logout_redirect_uri": post_logout_redirect_uri}
    return f"{base_url}/session/end?{urlencode(params)}"


class IdentityProvider(Protocol):
    def authorization_url(self, state: str, code_challenge: str) -> str: ...

    def exchange_code(self, code: str, code_verifier: str) -> str: ...

    def verify_id_token(self, raw_id_token: str) -> dict: ...

    def end_session_url(self) -> str: ...


class OIDCProvider:
    def __init__(self, settings: Settings, http_client: httpx.Client, key_cache: ProviderKeyCache | None = None):
        self.settings = settings
        self.base_url = normalize_base_url(settings.issuer)
        self._http = http_client
        self.key_cache = key_cache or ProviderKeyCache(
            self.base_url,
            http_client,
            discovery_ttl=settings.discovery_ttl,
            jwks_lifespan=settings.jwks_lifespan,
        )

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url}/token"

    def authorization_url(self, state: str, code_challenge: str) -> str:
        return build_authorize_url(
            base_url=self.base_url,
            client_id=self.settings.client_id,
            redirect_uri=self.settings.redirect_uri,
            scope=self.settings.scope,
            state=state,
            code_challenge=code_challenge,
        )

    def end_session_url(self) -> str:
        return build_end_session_url(
            base_url=self.base_url,
            client_id=self.settings.client_id,
            post_logout_redirect_uri=self.settings.post_logout_redirect_uri,
        )

    def exchange_code(self, code: str, code_verifier: str) -> str:
        """
        POST the authorization code + PKCE verifier to the token endpoint and return the raw
        id_token. Raises ExchangeFailed on transport errors or provider rejection,
        TokenVerificationFailed if the response carries no id_token.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.redirect_uri,
            "client_id": self.settings.client_id,
            "code_verifier": code_verifier,
        }
        auth = (self.settings.client_id, self.settings.client_secret) if self.settings.client_secret else None
        try:
            r = self._http.post(
                self.token_endpoint,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            # Includes timeouts; the flow state is already gone from the session
            raise ExchangeFailed(f"token request failed: {type(e).__name__}") from e

        if r.status_code != 200:
            err = ""
            if r.headers.get("content-type", "").startswith("application/json"):
                try:
                    body = r.json()
                    err = body.get("error", "") if isinstance(body, dict) else ""
                except ValueError:
                    pass
            raise ExchangeFailed(f"token endpoint returned {r.status_code} {err}".strip())

        try:
            body = r.json()
        except ValueError as e:
            raise ExchangeFailed("token response is not JSON") from e
        id_token = body.get("id_token") if isinstance(body, dict) else None
        if not isinstance(id_token, str) or not id_token:
            raise TokenVerificationFailed("no id_token in token response")
        # access_token / refresh_token are not used by this app
        return id_token

    def verify_id_token(self, raw_id_token: str) -> dict:
        """
        Verify signature against the provider's published keys and validate iss, aud, exp.
        Returns decoded claims. Raises TokenVerificationFailed (or ProviderUnavailable).
        """
        metadata = self.key_cache.metadata()
        try:
            header = jwt.get_unverified_header(raw_id_token)
        except jwt.InvalidTokenError as e:
            raise TokenVerificationFailed("malformed id_token") from e

        alg = header.get("alg")
        if alg not in metadata.signing_algorithms:
            raise TokenVerificationFailed(f"id_token algorithm {alg!r} not accepted")

        signing_key = self.key_cache.signing_key(header.get("kid"))
        if signing_key.key_type != _key_type_for(alg):
            raise TokenVerificationFailed(
                f"id_token algorithm {alg!r} does not match {signing_key.key_type} key {header.get('kid')!r}"
            )
        try:
            return jwt.decode(
                raw_id_token,
                signing_key.key,
                algorithms=[alg],
                audience=self.settings.client_id,
                issuer=metadata.issuer,
                options={"require": ["iss", "sub", "aud", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenVerificationFailed("id_token expired") from e
        except jwt.InvalidAudienceError as e:
            raise TokenVerificationFailed("id_token audience mismatch") from e
        except jwt.InvalidIssuerError as e:
            raise TokenVerificationFailed("id_token issuer mismatch") from e
        except (jwt.PyJWTError, TypeError) as e:
            logger.debug("id_token verification failed: %s", e)
            raise TokenVerificationFailed("id_token verification failed") from e


def _key_type_for(alg: str) -> str:
    """JWK `kty` a given JWS algorithm can verify with."""
    if alg.startswith(("RS", "PS")):
        return "RSA"
    if alg.startswith("ES"):
        return "EC"
    return "OKP"
