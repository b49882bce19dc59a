"""
Pending authorization flow (state + PKCE verifier) kept in the browser session
between /login and /callback. One flow per session: starting a new login
replaces any unconsumed one, and the callback consumes it whatever the outcome.
"""
import logging
from dataclasses import dataclass

from webapp_auth.pkce import derive_code_challenge, generate_code_verifier, generate_state
from webapp_auth.provider import IdentityProvider
from webapp_auth.sessions import Session

logger = logging.getLogger(__name__)

STATE_KEY = "oidc_state"
VERIFIER_KEY = "oidc_verifier"


@dataclass(frozen=True)
class AuthFlowState:
    state: str
    code_verifier: str


def store_flow(session: Session, flow: AuthFlowState) -> None:
    session.set(STATE_KEY, flow.state)
    session.set(VERIFIER_KEY, flow.code_verifier)
    session.save()


def consume_flow(session: Session) -> AuthFlowState | None:
    """Remove the pending flow from the session and return it (None if absent or damaged)."""
    state = session.get(STATE_KEY)
    verifier = session.get(VERIFIER_KEY)
    if state is not None or verifier is not None:
        session.delete(STATE_KEY)
        session.delete(VERIFIER_KEY)
        session.save()
    if not isinstance(state, str) or not state or not isinstance(verifier, str) or not verifier:
        return None
    return AuthFlowState(state=state, code_verifier=verifier)


def start_login(session: Session, provider: IdentityProvider) -> str:
    """Generate state + PKCE, bind them to the session, return the provider authorization URL."""
    flow = AuthFlowState(state=generate_state(), code_verifier=generate_code_verifier())
    if STATE_KEY in session:
        logger.debug("Replacing unconsumed login flow in session")
    store_flow(session, flow)
    return provider.authorization_url(flow.state, derive_code_challenge(flow.code_verifier))
