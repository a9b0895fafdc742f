from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from oauth2_login import login, models, resolver
from oauth2_login.errors import ProfileFetchFailed, TokenExchangeFailed
from oauth2_login.providers import (
    AccessToken,
    ExternalIdentity,
    GitLabProvider,
    OAuthProviderConfig,
)
from oauth2_login.state_guard import SESSION_STATE_KEY

pytestmark = pytest.mark.unit


class ScriptedGitLab(GitLabProvider):
    """GitLab adapter whose network calls return canned data."""

    def __init__(self, profiles=None, exchange_error=None):
        super().__init__(
            OAuthProviderConfig(
                provider="gitlab",
                display_name="GitLab",
                client_id="client-id",
                client_secret="client-secret",
                base_url="https://gitlab.example.com",
                redirect_uri="http://testserver/api/v1/login?oauth-provider=gitlab",
                scopes=("read_user",),
                target_resource="team/app",
            )
        )
        self.profiles = list(profiles or [])
        self.exchange_error = exchange_error
        self.exchanged_codes = []

    def exchange_code(self, code):
        self.exchanged_codes.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return AccessToken(token=f"token-for-{code}")

    def fetch_profile(self, token):
        item = self.profiles.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _profile(state: str = "active", membership=None) -> ExternalIdentity:
    return ExternalIdentity(
        provider="gitlab",
        payload={
            "id": 42,
            "username": "jdoe",
            "email": "jdoe@example.com",
            "name": "Jane Doe",
            "state": state,
        },
        membership=membership,
    )


def _orchestrator(session_store, adapter, db=None, store=None):
    return login.LoginOrchestrator(
        store or resolver.SqlAlchemyUserStore(db),
        session_store,
        callback_base_url="http://testserver/",
        provider_factory=lambda name, base: adapter if name == "gitlab" else None,
    )


def _start(session_store, adapter, db) -> str:
    result = _orchestrator(session_store, adapter, db).begin_login(
        login.LOGIN_ATTEMPT, {login.PROVIDER_PARAM: "gitlab"}
    )
    return result.redirect_url


def test_initial_request_issues_redirect_with_state(session):
    session_store = {}
    adapter = ScriptedGitLab()
    orchestrator = _orchestrator(session_store, adapter, session)

    result = orchestrator.begin_login(login.LOGIN_ATTEMPT, {login.PROVIDER_PARAM: "gitlab"})

    assert result.state is login.LoginState.REDIRECT_ISSUED
    assert result.account is None
    parsed = urlparse(result.redirect_url)
    assert parsed.netloc == "gitlab.example.com"
    assert parsed.path == "/oauth/authorize"
    assert parse_qs(parsed.query)["state"] == [session_store[SESSION_STATE_KEY]]
    assert adapter.exchanged_codes == []


@pytest.mark.parametrize(
    "attempt_kind, params",
    [
        ("password", {login.PROVIDER_PARAM: "gitlab"}),
        (login.LOGIN_ATTEMPT, {}),
        (login.LOGIN_ATTEMPT, {login.PROVIDER_PARAM: ""}),
    ],
)
def test_abstains_without_touching_the_session(session, attempt_kind, params):
    session_store = {}
    orchestrator = _orchestrator(session_store, ScriptedGitLab(), session)

    result = orchestrator.begin_login(attempt_kind, params)

    assert result.state is login.LoginState.ABSTAINED
    assert result.redirect_url is None
    assert session_store == {}


def test_unknown_provider_abstains(session):
    orchestrator = _orchestrator({}, ScriptedGitLab(), session)

    result = orchestrator.begin_login(login.LOGIN_ATTEMPT, {login.PROVIDER_PARAM: "bitbucket"})

    assert result.state is login.LoginState.ABSTAINED
    assert result.error_code == "oauth_provider_unsupported"


def test_callback_resolves_account(session):
    session_store = {}
    adapter = ScriptedGitLab(profiles=[_profile(membership={"access_level": 50})])
    redirect = _start(session_store, adapter, session)
    state = parse_qs(urlparse(redirect).query)["state"][0]

    orchestrator = _orchestrator(session_store, adapter, session)
    result = orchestrator.begin_login(
        login.LOGIN_ATTEMPT,
        {login.PROVIDER_PARAM: "gitlab", "state": state, "code": "abc"},
    )

    assert result.state is login.LoginState.RESOLVED
    assert result.account.username == "jdoe"
    assert result.account.admin is True
    assert adapter.exchanged_codes == ["abc"]
    assert SESSION_STATE_KEY not in session_store
    assert session.query(models.User).count() == 1


def test_callback_with_mismatched_state_never_exchanges(session):
    session_store = {}
    adapter = ScriptedGitLab(profiles=[_profile()])
    _start(session_store, adapter, session)

    result = _orchestrator(session_store, adapter, session).begin_login(
        login.LOGIN_ATTEMPT,
        {login.PROVIDER_PARAM: "gitlab", "state": "forged", "code": "abc"},
    )

    assert result.state is login.LoginState.ABSTAINED
    assert result.error_code == "invalid_oauth_state"
    assert adapter.exchanged_codes == []
    assert SESSION_STATE_KEY not in session_store


def test_callback_without_pending_attempt_abstains(session):
    adapter = ScriptedGitLab(profiles=[_profile()])

    result = _orchestrator({}, adapter, session).begin_login(
        login.LOGIN_ATTEMPT,
        {login.PROVIDER_PARAM: "gitlab", "state": "whatever", "code": "abc"},
    )

    assert result.state is login.LoginState.ABSTAINED
    assert result.error_code == "oauth_no_active_attempt"
    assert adapter.exchanged_codes == []


def test_replayed_callback_is_rejected(session):
    session_store = {}
    adapter = ScriptedGitLab(profiles=[_profile()])
    redirect = _start(session_store, adapter, session)
    params = {
        login.PROVIDER_PARAM: "gitlab",
        "state": parse_qs(urlparse(redirect).query)["state"][0],
        "code": "abc",
    }

    first = _orchestrator(session_store, adapter, session).begin_login(login.LOGIN_ATTEMPT, params)
    second = _orchestrator(session_store, adapter, session).begin_login(login.LOGIN_ATTEMPT, params)

    assert first.account is not None
    assert second.account is None
    assert adapter.exchanged_codes == ["abc"]


def test_exchange_failure_rejects_without_writing(session):
    session_store = {}
    adapter = ScriptedGitLab(exchange_error=TokenExchangeFailed("bad_verification_code"))
    redirect = _start(session_store, adapter, session)
    state = parse_qs(urlparse(redirect).query)["state"][0]

    result = _orchestrator(session_store, adapter, session).begin_login(
        login.LOGIN_ATTEMPT,
        {login.PROVIDER_PARAM: "gitlab", "state": state, "code": "expired"},
    )

    assert result.state is login.LoginState.REJECTED
    assert result.account is None
    assert result.error_code == "oauth_exchange_failed"
    assert session.query(models.User).count() == 0


def test_provider_error_parameter_rejects_before_exchange(session):
    session_store = {}
    adapter = ScriptedGitLab()
    redirect = _start(session_store, adapter, session)
    state = parse_qs(urlparse(redirect).query)["state"][0]

    result = _orchestrator(session_store, adapter, session).begin_login(
        login.LOGIN_ATTEMPT,
        {
            login.PROVIDER_PARAM: "gitlab",
            "state": state,
            "error": "access_denied",
            "error_description": "The user denied access",
        },
    )

    assert result.state is login.LoginState.REJECTED
    assert result.error_code == "oauth_exchange_failed"
    assert adapter.exchanged_codes == []


def test_profile_failure_rejects_without_writing(session):
    session_store = {}
    adapter = ScriptedGitLab(profiles=[ProfileFetchFailed("boom")])
    redirect = _start(session_store, adapter, session)
    state = parse_qs(urlparse(redirect).query)["state"][0]

    result = _orchestrator(session_store, adapter, session).begin_login(
        login.LOGIN_ATTEMPT,
        {login.PROVIDER_PARAM: "gitlab", "state": state, "code": "abc"},
    )

    assert result.state is login.LoginState.REJECTED
    assert result.error_code == "oauth_profile_fetch_failed"
    assert session.query(models.User).count() == 0


def _resolved(session, profiles):
    session_store = {}
    adapter = ScriptedGitLab(profiles=profiles)
    redirect = _start(session_store, adapter, session)
    orchestrator = _orchestrator(session_store, adapter, session)
    result = orchestrator.begin_login(
        login.LOGIN_ATTEMPT,
        {
            login.PROVIDER_PARAM: "gitlab",
            "state": parse_qs(urlparse(redirect).query)["state"][0],
            "code": "abc",
        },
    )
    return orchestrator, result.account


def test_verify_account_passes_for_active_remote_account(session):
    orchestrator, account = _resolved(session, [_profile(), _profile()])
    assert orchestrator.verify_account(account) is login.AuthVerdict.PASS


def test_verify_account_is_inconclusive_for_blocked_remote_account(session):
    orchestrator, account = _resolved(session, [_profile(), _profile(state="blocked")])
    assert orchestrator.verify_account(account) is login.AuthVerdict.INCONCLUSIVE


def test_verify_account_is_inconclusive_when_recheck_fails(session):
    orchestrator, account = _resolved(session, [_profile(), ProfileFetchFailed("down")])
    assert orchestrator.verify_account(account) is login.AuthVerdict.INCONCLUSIVE


def test_verify_account_skips_local_only_accounts(session):
    orchestrator, _ = _resolved(session, [_profile()])
    local = models.User(username="local", password="hash", oauth_identifier="")
    assert orchestrator.verify_account(local) is login.AuthVerdict.INCONCLUSIVE


def test_verify_account_without_login_attempt_is_inconclusive(session):
    orchestrator = _orchestrator({}, ScriptedGitLab(), session)
    account = models.User(username="jdoe", password="x", oauth_identifier="gitlab|42")
    assert orchestrator.verify_account(account) is login.AuthVerdict.INCONCLUSIVE


def test_nameless_profile_is_rejected_without_an_account(session):
    session_store = {}
    nameless = ExternalIdentity(provider="gitlab", payload={"id": 2, "state": "active"})
    adapter = ScriptedGitLab(profiles=[nameless])
    redirect = _start(session_store, adapter, session)

    result = _orchestrator(session_store, adapter, session).begin_login(
        login.LOGIN_ATTEMPT,
        {
            login.PROVIDER_PARAM: "gitlab",
            "state": parse_qs(urlparse(redirect).query)["state"][0],
            "code": "abc",
        },
    )

    assert result.state is login.LoginState.REJECTED
    assert result.account is None
    assert result.error_code == "oauth_resolution_failed"
    assert session.query(models.User).count() == 0
