from __future__ import annotations

import hmac
import secrets
from collections.abc import MutableMapping

from .errors import NoActiveAttempt, OAuthLoginError, StateMismatch

SESSION_STATE_KEY = "oauth2state"


class StateTokenGuard:
    """Anti-forgery state for one login session.

    The stored value is single use: it is removed whatever the outcome of a
    validation, so a callback can never be replayed.
    """

    def __init__(self, session: MutableMapping[str, str]) -> None:
        self._session = session

    def issue(self) -> str:
        state = secrets.token_urlsafe(32)
        self._session[SESSION_STATE_KEY] = state
        return state

    def has_pending(self) -> bool:
        return SESSION_STATE_KEY in self._session

    def clear(self) -> None:
        self._session.pop(SESSION_STATE_KEY, None)

    def require(self, returned_state: str | None) -> None:
        expected = self._session.pop(SESSION_STATE_KEY, None)
        if not expected:
            raise NoActiveAttempt("No OAuth login attempt is in progress")
        if not returned_state or not hmac.compare_digest(
            str(returned_state).encode("utf-8"), str(expected).encode("utf-8")
        ):
            raise StateMismatch("OAuth state does not match the pending login")

    def validate(self, returned_state: str | None) -> bool:
        try:
            self.require(returned_state)
        except OAuthLoginError:
            return False
        return True
