"""
OpenID Connect discovery document and signing keys (JWKS) for the identity provider.

One cache per process. The discovery document lives for discovery_ttl seconds and
the key set for jwks_lifespan seconds; a token naming an unknown kid forces one
key-set refetch so provider key rotation is picked up without a restart.
"""
import logging
import threading
import time
from dataclasses import dataclass

import httpx
from jwt import PyJWK, PyJWKSet
from jwt.exceptions import PyJWKError, PyJWKSetError

from webapp_auth.errors import ProviderUnavailable, TokenVerificationFailed

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"

# Identity tokens must be signed with a provider key; never HS* with a shared secret
ASYMMETRIC_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512", "EdDSA"}
)


@dataclass
class ProviderMetadata:
    issuer: str
    jwks_uri: str
    signing_algorithms: list[str]
    fetched_at: float

    @classmethod
    def from_document(cls, document: dict, fetched_at: float) -> "ProviderMetadata":
        """Parse the fields we use from a discovery document. Raises ValueError if incomplete."""
        issuer = document.get("issuer")
        jwks_uri = document.get("jwks_uri")
        if not isinstance(issuer, str) or not issuer:
            raise ValueError("discovery document has no issuer")
        if not isinstance(jwks_uri, str) or not jwks_uri:
            raise ValueError("discovery document has no jwks_uri")
        advertised = document.get("id_token_signing_alg_values_supported") or ["RS256"]
        algorithms = [a for a in advertised if a in ASYMMETRIC_ALGORITHMS]
        if not algorithms:
            raise ValueError("provider advertises no supported signing algorithm")
        return cls(issuer=issuer, jwks_uri=jwks_uri, signing_algorithms=algorithms, fetched_at=fetched_at)


class ProviderKeyCache:
    """Thread-safe cache of discovery metadata and the provider's published signing keys."""

    def __init__(
        self,
        base_url: str,
        http_client: httpx.Client,
        *,
        discovery_ttl: int = 3600,
        jwks_lifespan: int = 300,
        clock=time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http_client
        self._discovery_ttl = discovery_ttl
        self._jwks_lifespan = jwks_lifespan
        self._clock = clock
        self._lock = threading.Lock()
        self._metadata: ProviderMetadata | None = None
        self._jwk_set: PyJWKSet | None = None
        self._jwk_set_fetched_at = 0.0

    @property
    def discovery_url(self) -> str:
        return f"{self.base_url}{DISCOVERY_PATH}"

    def _get_json(self, url: str) -> dict:
        r = self._http.get(url, headers={"Accept": "application/json"})
        r.raise_for_status()
        data = r.json()
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object from {url}")
        return data

    def metadata(self) -> ProviderMetadata:
        """
        Cached discovery metadata; refetched after discovery_ttl. If a refetch fails and a
        previous document exists, the previous one is used. Raises ProviderUnavailable otherwise.
        """
        with self._lock:
            cached = self._metadata
        now = self._clock()
        if cached is not None and (now - cached.fetched_at) < self._discovery_ttl:
            return cached

        try:
            metadata = ProviderMetadata.from_document(self._get_json(self.discovery_url), fetched_at=now)
        except (httpx.HTTPError, ValueError) as e:
            if cached is not None:
                logger.warning("Discovery refresh failed (%s); using cached document", type(e).__name__)
                return cached
            logger.error("Discovery fetch from %s failed: %s", self.discovery_url, type(e).__name__)
            raise ProviderUnavailable("discovery document unavailable") from e

        if metadata.issuer.rstrip("/") != self.base_url:
            logger.error("Discovery issuer %s does not match configured %s", metadata.issuer, self.base_url)
            raise ProviderUnavailable("discovery issuer mismatch")

        with self._lock:
            self._metadata = metadata
        return metadata

    def _key_set(self, force: bool = False) -> PyJWKSet:
        with self._lock:
            cached = self._jwk_set
            fetched_at = self._jwk_set_fetched_at
        now = self._clock()
        if not force and cached is not None and (now - fetched_at) < self._jwks_lifespan:
            return cached

        jwks_uri = self.metadata().jwks_uri
        try:
            key_set = PyJWKSet.from_dict(self._get_json(jwks_uri))
        except (httpx.HTTPError, ValueError, PyJWKError, PyJWKSetError) as e:
            if cached is not None:
                logger.warning("JWKS refresh failed (%s); using cached key set", type(e).__name__)
                return cached
            logger.error("JWKS fetch from %s failed: %s", jwks_uri, type(e).__name__)
            raise ProviderUnavailable("signing keys unavailable") from e

        with self._lock:
            self._jwk_set = key_set
            self._jwk_set_fetched_at = now
        return key_set

    def signing_key(self, kid: str | None) -> PyJWK:
        """
        Public key for the token header's kid. Unknown kid triggers one forced refetch.
        Raises TokenVerificationFailed if the provider does not publish a matching key.
        """
        key = _find_key(self._key_set(), kid)
        if key is None:
            logger.info("Signing key %s not in cached JWKS; refetching", kid)
            key = _find_key(self._key_set(force=True), kid)
        if key is None:
            raise TokenVerificationFailed(f"no published signing key for kid={kid}")
        return key


def _find_key(key_set: PyJWKSet, kid: str | None) -> PyJWK | None:
    if kid is None:
        # Tokens without kid are only acceptable when the provider publishes a single key
        return key_set.keys[0] if len(key_set.keys) == 1 else None
    for key in key_set.keys:
        if key.key_id == kid:
            return key
    return None
