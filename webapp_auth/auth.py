"""
Session authentication for requests after login: session cookie -> local user id.
A missing, expired or malformed session is simply "not logged in".
"""
from fastapi import Depends, Request

from webapp_auth.errors import UnauthenticatedAccess
from webapp_auth.models import User
from webapp_auth.sessions import Session, get_user_id, load_session


class SessionAuthenticator:
    def current_user_id(self, session: Session) -> int | None:
        return get_user_id(session)

    def require_user_id(self, session: Session) -> int:
        user_id = self.current_user_id(session)
        if user_id is None:
            raise UnauthenticatedAccess("no user in session")
        return user_id


def get_session(request: Request) -> Session:
    """Dependency: the browser session for this request (new and unsaved if no cookie)."""
    state = request.app.state
    return load_session(request, state.session_store, state.settings.session_cookie_name)


def get_current_user(request: Request, session: Session = Depends(get_session)) -> User:
    """Dependency: logged-in local user. Raises UnauthenticatedAccess (401)."""
    state = request.app.state
    user_id = state.authenticator.require_user_id(session)
    user = state.user_store.find_by_id(user_id)
    if user is None:
        raise UnauthenticatedAccess("session user no longer exists")
    return user
