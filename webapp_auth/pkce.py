"""
PKCE (RFC 7636) and state generation for login initiation.
S256 only. Entropy comes from the secrets module; if the OS source fails the
process fails with it.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode

STATE_BYTES = 32
# 64 bytes -> 86 chars base64url, inside RFC 7636's 43..128 range
VERIFIER_BYTES = 64


def generate_state() -> str:
    """Opaque value binding the callback to the session that started the login."""
    return secrets.token_urlsafe(STATE_BYTES)


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(VERIFIER_BYTES)


def derive_code_challenge(code_verifier: str) -> str:
    """S256: base64url(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
