from __future__ import annotations

import enum
import logging
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from typing import Callable, Optional

from . import models, providers
from .errors import OAuthLoginError, TokenExchangeFailed
from .providers import AccessToken, ProviderAdapter
from .resolver import UserStore, resolve_account
from .state_guard import StateTokenGuard

logger = logging.getLogger(__name__)

LOGIN_ATTEMPT = "login"
PROVIDER_PARAM = "oauth-provider"

ProviderFactory = Callable[[str, str], Optional[ProviderAdapter]]


class LoginState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_PROVIDER_SELECTION = "awaiting_provider_selection"
    REDIRECT_ISSUED = "redirect_issued"
    CALLBACK_RECEIVED = "callback_received"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    ABSTAINED = "abstained"


class AuthVerdict(enum.IntEnum):
    """Outcome of ``verify_account`` for an authentication chain.

    ``INCONCLUSIVE`` hands the decision to whatever check runs next.
    """

    FAIL = 0
    INCONCLUSIVE = 100
    PASS = 200


@dataclass(frozen=True)
class LoginResult:
    state: LoginState
    account: Optional[models.User] = None
    redirect_url: Optional[str] = None
    error_code: Optional[str] = None


class LoginOrchestrator:
    """Drives one OAuth login attempt for one request.

    ``begin_login`` either issues the provider redirect, consumes the
    callback, or abstains. Failures never escape: they come back as a
    ``LoginResult`` without an account so other login methods can run.
    """

    def __init__(
        self,
        store: UserStore,
        session: MutableMapping[str, str],
        *,
        callback_base_url: str,
        provider_factory: ProviderFactory = providers.get_provider,
    ) -> None:
        self.store = store
        self.guard = StateTokenGuard(session)
        self.callback_base_url = callback_base_url
        self.provider_factory = provider_factory
        self.state = LoginState.IDLE
        self.adapter: Optional[ProviderAdapter] = None
        self.access_token: Optional[AccessToken] = None

    def begin_login(self, attempt_kind: str, params: Mapping[str, str]) -> LoginResult:
        if attempt_kind != LOGIN_ATTEMPT:
            return self._abstain()

        provider_name = params.get(PROVIDER_PARAM) or ""
        if not provider_name:
            return self._abstain()

        self.state = LoginState.AWAITING_PROVIDER_SELECTION
        adapter = self.provider_factory(provider_name, self.callback_base_url)
        self.adapter = adapter
        if adapter is None:
            logger.warning("OAuth provider %s is not available", provider_name)
            return self._abstain("oauth_provider_unsupported")

        returned_state = params.get("state")
        if not returned_state:
            return self._redirect(adapter)

        self.state = LoginState.CALLBACK_RECEIVED
        try:
            self.guard.require(returned_state)
        except OAuthLoginError as exc:
            logger.info("Ignoring OAuth callback: %s", exc.detail)
            return self._abstain(exc.error_code)

        try:
            account = self._complete_callback(adapter, params)
        except OAuthLoginError as exc:
            logger.warning(
                "OAuth login via %s rejected: %s",
                provider_name,
                exc.detail,
                extra={"error_code": exc.error_code},
            )
            self.state = LoginState.REJECTED
            return LoginResult(state=self.state, error_code=exc.error_code)

        self.state = LoginState.RESOLVED
        return LoginResult(state=self.state, account=account)

    def verify_account(self, account: models.User) -> AuthVerdict:
        if not account.oauth_identifier:
            return AuthVerdict.INCONCLUSIVE
        if self.adapter is None or self.access_token is None:
            return AuthVerdict.INCONCLUSIVE

        try:
            profile = self.adapter.fetch_profile(self.access_token)
        except OAuthLoginError as exc:
            logger.warning("Could not re-check OAuth account %s: %s", account.id, exc.detail)
            return AuthVerdict.INCONCLUSIVE

        if self.adapter.is_active(profile):
            return AuthVerdict.PASS
        return AuthVerdict.INCONCLUSIVE

    def _redirect(self, adapter: ProviderAdapter) -> LoginResult:
        state = self.guard.issue()
        self.state = LoginState.REDIRECT_ISSUED
        return LoginResult(
            state=self.state, redirect_url=adapter.authorization_url(state)
        )

    def _complete_callback(
        self, adapter: ProviderAdapter, params: Mapping[str, str]
    ) -> models.User:
        provider_error = params.get("error")
        if provider_error:
            raise TokenExchangeFailed(
                params.get("error_description") or str(provider_error)
            )

        self.access_token = adapter.exchange_code(params.get("code") or "")
        profile = adapter.fetch_profile(self.access_token)
        return resolve_account(self.store, adapter, profile)

    def _abstain(self, error_code: Optional[str] = None) -> LoginResult:
        self.state = LoginState.ABSTAINED
        return LoginResult(state=self.state, error_code=error_code)
