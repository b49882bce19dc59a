"""
Server-side browser sessions addressed by an opaque cookie.

Records live in process memory with a sliding expiry. Values are JSON-encoded on
save and decoded on load, so callers see what a generic value store hands back;
the user id is read and written only through get_user_id / set_user_id.
"""
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from fastapi import Request, Response

logger = logging.getLogger(__name__)

USER_ID_KEY = "user_id"
SESSION_ID_BYTES = 32


@dataclass
class _Record:
    payload: str
    expires_at: float


class Session:
    """K/V view of one browser session. Changes reach the store on save()."""

    def __init__(self, store: "SessionStore", session_id: str, values: dict[str, Any], is_new: bool):
        self._store = store
        self._id = session_id
        self._values = values
        self.is_new = is_new
        self.destroyed = False

    @property
    def id(self) -> str:
        return self._id

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def save(self) -> None:
        if self.destroyed:
            return
        self._store._write(self._id, self._values)

    def destroy(self) -> None:
        """Drop every key and invalidate the session id in the store."""
        self._values = {}
        self._store._remove(self._id)
        self.destroyed = True


class SessionStore:
    def __init__(self, ttl: int = 24 * 60 * 60, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._records: dict[str, _Record] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str | None) -> Session:
        """Session for the given id, or a fresh empty one if unknown or expired."""
        now = self._clock()
        if session_id:
            with self._lock:
                record = self._records.get(session_id)
                if record is not None and record.expires_at <= now:
                    del self._records[session_id]
                    record = None
            if record is not None:
                return Session(self, session_id, json.loads(record.payload), is_new=False)
        self._clean_expired(now)
        return Session(self, secrets.token_urlsafe(SESSION_ID_BYTES), {}, is_new=True)

    def contains(self, session_id: str) -> bool:
        with self._lock:
            record = self._records.get(session_id)
        return record is not None and record.expires_at > self._clock()

    def _write(self, session_id: str, values: dict[str, Any]) -> None:
        payload = json.dumps(values)
        with self._lock:
            self._records[session_id] = _Record(payload=payload, expires_at=self._clock() + self.ttl)

    def _remove(self, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)

    def _clean_expired(self, now: float) -> None:
        with self._lock:
            expired = [sid for sid, r in self._records.items() if r.expires_at <= now]
            for sid in expired:
                del self._records[sid]


def coerce_user_id(value: Any) -> int | None:
    """
    Canonical integer user id from whatever the store returned. Integral floats and
    Decimals are accepted (serialization may widen ints); anything else is None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        # is_integer() is False for nan and inf
        return int(value) if value.is_integer() else None
    if isinstance(value, Decimal):
        if value.is_finite() and value == value.to_integral_value():
            return int(value)
        return None
    return None


def get_user_id(session: Session) -> int | None:
    return coerce_user_id(session.get(USER_ID_KEY))


def set_user_id(session: Session, user_id: int) -> None:
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        raise TypeError(f"user id must be an int, got {type(user_id).__name__}")
    session.set(USER_ID_KEY, user_id)


def load_session(request: Request, store: SessionStore, cookie_name: str) -> Session:
    return store.get(request.cookies.get(cookie_name))


def write_session_cookie(
    response: Response,
    session: Session,
    *,
    cookie_name: str,
    max_age: int,
    secure: bool = False,
) -> None:
    """Set the session cookie on the response, or delete it if the session was destroyed."""
    if session.destroyed:
        response.delete_cookie(cookie_name, path="/", httponly=True, secure=secure, samesite="lax")
        return
    response.set_cookie(
        cookie_name,
        session.id,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=secure,
        samesite="lax",
    )
