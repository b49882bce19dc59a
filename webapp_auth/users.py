"""
Local user provisioning from a verified identity.

The provider subject is the only matching key. A first sight creates the row; a
returning subject only has last_login refreshed (email / display_name stay as first
recorded). Losing a create race on the unique subject is retried as a lookup.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from webapp_auth.errors import ProvisioningConflict
from webapp_auth.models import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedIdentity:
    subject: str
    email: str
    display_name: str

    @classmethod
    def from_claims(cls, claims: dict) -> "VerifiedIdentity":
        def _str(name: str) -> str:
            value = claims.get(name)
            return value if isinstance(value, str) else ""

        return cls(subject=_str("sub"), email=_str("email"), display_name=_str("name"))


class UserStore(Protocol):
    def find_by_external_subject(self, subject: str) -> User | None: ...

    def find_by_id(self, user_id: int) -> User | None: ...

    def create(self, user: User) -> User: ...

    def update(self, user: User) -> None: ...


class SqlUserStore:
    """UserStore on SQLAlchemy; one short transaction per call."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def find_by_external_subject(self, subject: str) -> User | None:
        with self._session_factory() as db:
            return db.scalars(select(User).where(User.external_subject == subject)).first()

    def find_by_id(self, user_id: int) -> User | None:
        with self._session_factory() as db:
            return db.get(User, user_id)

    def create(self, user: User) -> User:
        """Insert the user. Raises ProvisioningConflict if external_subject already exists."""
        with self._session_factory() as db:
            db.add(user)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ProvisioningConflict("external_subject already provisioned") from e
            return user

    def update(self, user: User) -> None:
        with self._session_factory() as db:
            db.merge(user)
            db.commit()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserProvisioner:
    def __init__(self, store: UserStore, clock: Callable[[], datetime] = _utc_now):
        self.store = store
        self._clock = clock

    def provision(self, identity: VerifiedIdentity) -> User:
        """Return the one local user for identity.subject, creating it on first login."""
        if not identity.subject:
            raise ValueError("identity has no subject")
        now = self._clock()

        user = self.store.find_by_external_subject(identity.subject)
        if user is None:
            try:
                user = self.store.create(
                    User(
                        external_subject=identity.subject,
                        email=identity.email,
                        display_name=identity.display_name,
                        last_login=now,
                    )
                )
                logger.info("Provisioned new user id=%s", user.id)
                return user
            except ProvisioningConflict:
                # Concurrent callback for the same subject created it first
                logger.info("Concurrent provisioning detected; retrying as lookup")
                user = self.store.find_by_external_subject(identity.subject)
                if user is None:
                    raise

        user.last_login = now
        self.store.update(user)
        return user
