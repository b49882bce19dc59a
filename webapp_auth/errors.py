"""
Authentication error taxonomy. Every AuthError maps to a fixed HTTP status and a
generic description; provider responses are never echoed to the browser.
"""


class ConfigurationError(RuntimeError):
    """Provider configuration missing at startup. Fatal; not handled per request."""


class AuthError(Exception):
    status_code = 401
    error = "unauthorized"
    description = "Authentication failed"

    def __init__(self, message: str | None = None):
        # message is for logs only
        super().__init__(message or self.description)

    def to_detail(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class InvalidState(AuthError):
    """Callback state missing or not matching the one bound to the session."""

    error = "invalid_state"
    description = "Invalid or expired login attempt. Please log in again."


class ExchangeFailed(AuthError):
    """Provider rejected the authorization code or the exchange did not complete."""

    error = "exchange_failed"
    description = "Login could not be completed. Please log in again."


class TokenVerificationFailed(AuthError):
    """Identity token signature, issuer, audience or expiry check failed."""

    error = "invalid_token"
    description = "Identity could not be verified."


class ProvisioningConflict(AuthError):
    """Unique external_subject violated on create; callers retry as a lookup."""

    error = "provisioning_conflict"
    description = "Login could not be completed. Please try again."


class UnauthenticatedAccess(AuthError):
    error = "unauthenticated"
    description = "Not authenticated"


class ProviderUnavailable(AuthError):
    """Discovery or key endpoint unreachable and nothing cached to fall back on."""

    status_code = 503
    error = "provider_unavailable"
    description = "Identity provider is unavailable. Please try again later."
