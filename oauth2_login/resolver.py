"""Map an external identity onto exactly one local account.

Lookup order is fixed: the provider-scoped ``oauth_identifier`` first, then
``username`` OR ``email``. The second lookup can match more than one account;
the first row in primary-key order wins and no further tie-break is applied.

A freshly inserted account is re-read through ``fetch_canonical`` so callers
see the row exactly as the database stored it, server defaults included.
The re-read row must carry the new identifier, and a profile without a
username is refused before anything is written.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .errors import ResolutionFailed
from .providers import ExternalIdentity, ProviderAdapter

logger = logging.getLogger(__name__)

# Never a valid hash, so no password comparison can ever succeed against it.
PASSWORD_SENTINEL = "invalid"  # nosec B105


class UserStore(Protocol):
    def find_by_identifier(self, oauth_identifier: str) -> Optional[models.User]:
        ...

    def find_by_username_or_email(
        self, username: str, email: str
    ) -> Optional[models.User]:
        ...

    def insert(self, record: dict[str, Any]) -> models.User:
        ...

    def update_by_key(self, key: int, record: dict[str, Any]) -> models.User:
        ...

    def fetch_canonical(self, username: str) -> Optional[models.User]:
        ...


class SqlAlchemyUserStore:
    """``UserStore`` over the ``users`` table; every write commits on its own."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _active_users(self):
        return self.db.query(models.User).filter(models.User.deleted.is_(False))

    def find_by_identifier(self, oauth_identifier: str) -> Optional[models.User]:
        if not oauth_identifier:
            return None
        return (
            self._active_users()
            .filter(models.User.oauth_identifier == oauth_identifier)
            .order_by(models.User.id.asc())
            .first()
        )

    def find_by_username_or_email(
        self, username: str, email: str
    ) -> Optional[models.User]:
        conditions = []
        if username:
            conditions.append(models.User.username == username)
        if email:
            conditions.append(models.User.email == email)
        if not conditions:
            return None
        return (
            self._active_users()
            .filter(or_(*conditions))
            .order_by(models.User.id.asc())
            .first()
        )

    def insert(self, record: dict[str, Any]) -> models.User:
        user = models.User(**record)
        self.db.add(user)
        self._commit("insert")
        return user

    def update_by_key(self, key: int, record: dict[str, Any]) -> models.User:
        user = self.db.get(models.User, key)
        if user is None:
            raise ResolutionFailed(f"User {key} disappeared during login")
        for column, value in record.items():
            if column != "id":
                setattr(user, column, value)
        self._commit("update")
        return user

    def fetch_canonical(self, username: str) -> Optional[models.User]:
        return (
            self._active_users()
            .filter(models.User.username == username)
            .order_by(models.User.id.asc())
            .first()
        )

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise ResolutionFailed(f"Could not {operation} user record") from exc


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def record_from_user(user: models.User) -> dict[str, Any]:
    return {column.name: getattr(user, column.name) for column in models.User.__table__.columns}


def _login_attributes(adapter: ProviderAdapter, profile: ExternalIdentity) -> dict[str, Any]:
    return {
        "admin": bool(adapter.is_admin_eligible(profile)),
        "disable": False,
        "starttime": None,
        "endtime": adapter.expires_at(profile),
        "oauth_identifier": adapter.identifier(profile),
    }


def resolve_account(
    store: UserStore,
    adapter: ProviderAdapter,
    profile: ExternalIdentity,
    *,
    now: datetime | None = None,
) -> models.User:
    now = now or _now_utc()
    oauth_identifier = adapter.identifier(profile)
    if not adapter.username(profile):
        raise ResolutionFailed("External profile has no username")

    try:
        user = store.find_by_identifier(oauth_identifier)
        if user is None:
            user = store.find_by_username_or_email(
                adapter.username(profile), adapter.email(profile)
            )

        if user is None:
            record = {
                "created_at": now,
                "updated_at": now,
                "password": PASSWORD_SENTINEL,
                **_login_attributes(adapter, profile),
            }
            record = adapter.merge_into_record(profile, record)
            store.insert(record)
            canonical = store.fetch_canonical(record["username"])
            if canonical is None or canonical.oauth_identifier != oauth_identifier:
                raise ResolutionFailed("Inserted user record could not be read back")
            logger.info(
                "Created user %s for %s", canonical.id, oauth_identifier
            )
            return canonical

        record = record_from_user(user)
        record.update(_login_attributes(adapter, profile))
        record["updated_at"] = now
        record = adapter.merge_into_record(profile, record)
        return store.update_by_key(int(user.id), record)
    except SQLAlchemyError as exc:
        raise ResolutionFailed("User store lookup failed") from exc
