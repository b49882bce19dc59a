"""
Logout: destroy the local session and hand back the provider's end-session URL
so the browser can end the provider session too.
"""
import logging

from webapp_auth.provider import IdentityProvider
from webapp_auth.sessions import Session, get_user_id

logger = logging.getLogger(__name__)


class LogoutCoordinator:
    def __init__(self, provider: IdentityProvider):
        self.provider = provider

    def logout(self, session: Session) -> str:
        """Destroy the session (all keys, id invalidated) and return the end-session URL. Idempotent."""
        user_id = get_user_id(session)
        session.destroy()
        if user_id is not None:
            logger.info("Logout for user id=%s", user_id)
        return self.provider.end_session_url()
