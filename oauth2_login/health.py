"""Readiness probes for the login service.

The service can only log someone in when the ``users`` table is reachable,
the login-session store answers and at least one provider is configured.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from . import models
from .config import settings
from .database import engine
from .providers import list_enabled_providers
from .session import ping_login_store

logger = logging.getLogger(__name__)


def user_store_ready() -> bool:
    try:
        with engine.connect() as connection:
            connection.execute(select(models.User.id).limit(1))
        return True
    except SQLAlchemyError as exc:
        logger.warning("User store is not reachable: %s", exc)
        return False


def login_sessions_ready() -> bool:
    if not settings.redis_health_required:
        return True
    return ping_login_store()


def providers_ready() -> bool:
    return bool(list_enabled_providers())


def readiness_state() -> tuple[bool, dict[str, bool]]:
    checks = {
        "user_store": user_store_ready(),
        "login_sessions": login_sessions_ready(),
        "providers": providers_ready(),
    }
    return all(checks.values()), checks
