"""
Authorization callback handling.

    Pending -> Exchanging -> Verified -> Authenticated
       |           |            |
       +-----------+------------+--> Rejected

The pending flow is consumed from the session before anything else, so a given
state / verifier pair can reach Authenticated at most once. The state check runs
before any network call.
"""
import enum
import logging
import secrets

from webapp_auth.errors import AuthError, ExchangeFailed, InvalidState, TokenVerificationFailed
from webapp_auth.flow_store import consume_flow
from webapp_auth.models import User
from webapp_auth.provider import IdentityProvider
from webapp_auth.sessions import Session, set_user_id
from webapp_auth.users import UserProvisioner, VerifiedIdentity

logger = logging.getLogger(__name__)


class FlowStatus(str, enum.Enum):
    PENDING = "pending"
    EXCHANGING = "exchanging"
    VERIFIED = "verified"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


class CallbackVerifier:
    def __init__(self, provider: IdentityProvider, provisioner: UserProvisioner):
        self.provider = provider
        self.provisioner = provisioner

    def complete(
        self,
        session: Session,
        *,
        code: str | None,
        state: str | None,
        error: str | None = None,
    ) -> User:
        """
        Finish the login for this session. Returns the local user and records its id in the
        session. Raises an AuthError subclass when the callback is rejected.
        """
        status = FlowStatus.PENDING
        flow = consume_flow(session)
        try:
            if flow is None or not _state_matches(state, flow.state):
                raise InvalidState("no pending login" if flow is None else "state mismatch")
            if error:
                # Provider-side denial (e.g. access_denied); its text is not shown to the user
                raise ExchangeFailed(f"provider returned error={error}")
            if not code:
                raise ExchangeFailed("callback without code")

            status = FlowStatus.EXCHANGING
            raw_id_token = self.provider.exchange_code(code, flow.code_verifier)
            claims = self.provider.verify_id_token(raw_id_token)
            identity = VerifiedIdentity.from_claims(claims)
            if not identity.subject:
                raise TokenVerificationFailed("id_token has no usable sub")
            status = FlowStatus.VERIFIED
        except AuthError as e:
            logger.warning(
                "Login callback rejected in %s: %s (%s)", status.value, type(e).__name__, e
            )
            raise

        user = self.provisioner.provision(identity)
        set_user_id(session, user.id)
        session.save()
        logger.info("Login %s for user id=%s", FlowStatus.AUTHENTICATED.value, user.id)
        return user


def _state_matches(received: str | None, expected: str) -> bool:
    if not received:
        return False
    return secrets.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))
