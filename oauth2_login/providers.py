from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from .config import settings
from .errors import ProfileFetchFailed, TokenExchangeFailed

_GITHUB_API_URL = "https://api.github.com"
_GITHUB_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}


@dataclass(frozen=True)
class OAuthProviderConfig:
    provider: str
    display_name: str
    client_id: str
    client_secret: str
    base_url: str
    redirect_uri: str
    scopes: tuple[str, ...]
    target_resource: str | None = None
    timeout: float = 10.0


@dataclass(frozen=True)
class AccessToken:
    token: str
    token_type: str = "bearer"
    expires_in: int | None = None


@dataclass(frozen=True)
class ExternalIdentity:
    provider: str
    payload: dict[str, Any]
    membership: dict[str, Any] | None = None
    email: str | None = None


class _NotFound(Exception):
    pass


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"true", "1", "yes"}
    if isinstance(value, int):
        return value != 0
    return False


def _fetch_json(
    url: str,
    *,
    access_token: str,
    timeout: float,
    params: dict[str, str] | None = None,
    headers: dict[str, str] | None = None,
) -> Any:
    request_headers = {"Authorization": f"Bearer {access_token}"}
    if headers:
        request_headers.update(headers)
    try:
        response = httpx.get(
            url,
            params=params,
            headers=request_headers,
            timeout=timeout,
        )
    except httpx.HTTPError:
        raise ProfileFetchFailed("Could not fetch OAuth profile")

    if response.status_code == 404:
        raise _NotFound(url)
    if response.status_code >= 400:
        raise ProfileFetchFailed("OAuth profile lookup failed")

    try:
        return response.json()
    except ValueError:
        raise ProfileFetchFailed("OAuth profile response was invalid")


def _fetch_profile_json(url: str, **kwargs: Any) -> dict[str, Any]:
    try:
        payload = _fetch_json(url, **kwargs)
    except _NotFound:
        raise ProfileFetchFailed("OAuth profile lookup failed")
    if not isinstance(payload, dict):
        raise ProfileFetchFailed("OAuth profile response was invalid")
    return payload


def _fetch_optional_json(url: str, **kwargs: Any) -> dict[str, Any] | None:
    try:
        payload = _fetch_json(url, **kwargs)
    except _NotFound:
        return None
    if not isinstance(payload, dict):
        raise ProfileFetchFailed("OAuth membership response was invalid")
    return payload


class ProviderAdapter(ABC):
    """Uniform view of one identity provider.

    ``authorization_url``, ``exchange_code`` and ``fetch_profile`` talk to the
    provider. Everything else is a pure function of an ``ExternalIdentity``.
    """

    authorize_path: str = ""
    token_path: str = ""
    sends_grant_type = True

    def __init__(self, config: OAuthProviderConfig) -> None:
        self.config = config

    @property
    def name(self) -> str:
        return self.config.provider

    def authorization_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "state": state,
        }
        return f"{self._authorize_endpoint()}?{urlencode(params)}"

    def exchange_code(self, code: str) -> AccessToken:
        if not code:
            raise TokenExchangeFailed("OAuth callback is missing code")

        payload = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code": code,
            "redirect_uri": self.config.redirect_uri,
        }
        if self.sends_grant_type:
            payload["grant_type"] = "authorization_code"
        try:
            response = httpx.post(
                self._token_endpoint(),
                data=payload,
                headers={"Accept": "application/json"},
                timeout=self.config.timeout,
            )
        except httpx.HTTPError:
            raise TokenExchangeFailed("Could not reach OAuth provider")

        try:
            token_payload = response.json()
        except ValueError:
            raise TokenExchangeFailed("OAuth token response was invalid")
        if not isinstance(token_payload, dict):
            raise TokenExchangeFailed("OAuth token response was invalid")

        if response.status_code >= 400 or "error" in token_payload:
            message = str(
                token_payload.get("error_description")
                or token_payload.get("error")
                or "OAuth code exchange failed"
            )
            raise TokenExchangeFailed(message)

        access_token = token_payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise TokenExchangeFailed("OAuth provider did not return an access token")

        expires_in = token_payload.get("expires_in")
        return AccessToken(
            token=access_token,
            token_type=str(token_payload.get("token_type") or "bearer"),
            expires_in=int(expires_in) if isinstance(expires_in, int) else None,
        )

    @abstractmethod
    def fetch_profile(self, token: AccessToken) -> ExternalIdentity:
        ...

    @abstractmethod
    def identifier(self, profile: ExternalIdentity) -> str:
        ...

    @abstractmethod
    def username(self, profile: ExternalIdentity) -> str:
        ...

    def email(self, profile: ExternalIdentity) -> str:
        if profile.email:
            return profile.email
        email = profile.payload.get("email")
        return str(email) if isinstance(email, str) else ""

    @abstractmethod
    def is_admin_eligible(self, profile: ExternalIdentity) -> bool:
        ...

    def expires_at(self, profile: ExternalIdentity) -> datetime | None:
        return None

    @abstractmethod
    def is_active(self, profile: ExternalIdentity) -> bool:
        ...

    def merge_into_record(
        self, profile: ExternalIdentity, record: dict[str, Any]
    ) -> dict[str, Any]:
        merged = dict(record)
        merged["username"] = self.username(profile)
        merged["email"] = self.email(profile)
        name = profile.payload.get("name")
        if isinstance(name, str) and name:
            merged["real_name"] = name
        return merged

    def _authorize_endpoint(self) -> str:
        return f"{self.config.base_url}{self.authorize_path}"

    def _token_endpoint(self) -> str:
        return f"{self.config.base_url}{self.token_path}"

    def _remote_id(self, profile: ExternalIdentity) -> str:
        raw_id = profile.payload.get("id")
        return str(raw_id) if raw_id is not None else ""


class GitLabProvider(ProviderAdapter):
    """GitLab, optionally tied to one project.

    Membership in ``target_resource`` (``group/project``) decides admin
    eligibility and carries the membership expiry date.
    """

    authorize_path = "/oauth/authorize"
    token_path = "/oauth/token"

    def __init__(
        self, config: OAuthProviderConfig, *, admin_access_level: int = 40
    ) -> None:
        super().__init__(config)
        self.admin_access_level = admin_access_level

    def fetch_profile(self, token: AccessToken) -> ExternalIdentity:
        api_url = f"{self.config.base_url}/api/v4"
        user = _fetch_profile_json(
            f"{api_url}/user",
            access_token=token.token,
            timeout=self.config.timeout,
        )
        if user.get("id") is None or not user.get("username"):
            raise ProfileFetchFailed("OAuth profile did not include an id and username")

        membership = None
        if self.config.target_resource:
            project = quote(self.config.target_resource, safe="")
            membership = _fetch_optional_json(
                f"{api_url}/projects/{project}/members/all/{user['id']}",
                access_token=token.token,
                timeout=self.config.timeout,
            )
        return ExternalIdentity(provider=self.name, payload=user, membership=membership)

    def identifier(self, profile: ExternalIdentity) -> str:
        return f"{self.name}|{self._remote_id(profile)}"

    def username(self, profile: ExternalIdentity) -> str:
        return str(profile.payload.get("username") or "")

    def is_admin_eligible(self, profile: ExternalIdentity) -> bool:
        if not profile.membership:
            return False
        try:
            access_level = int(profile.membership.get("access_level", 0))
        except (TypeError, ValueError):
            return False
        return access_level >= self.admin_access_level

    def expires_at(self, profile: ExternalIdentity) -> datetime | None:
        if not profile.membership:
            return None
        raw = profile.membership.get("expires_at")
        if not isinstance(raw, str) or not raw:
            return None
        try:
            expires = datetime.strptime(raw, "%Y-%m-%d")
        except ValueError:
            return None
        return expires.replace(tzinfo=timezone.utc)

    def is_active(self, profile: ExternalIdentity) -> bool:
        return profile.payload.get("state") == "active"


class GitHubProvider(ProviderAdapter):
    """GitHub; admin eligibility comes from the permission on one repository."""

    authorize_path = "/login/oauth/authorize"
    token_path = "/login/oauth/access_token"
    sends_grant_type = False
    _admin_permissions = frozenset({"admin", "maintain"})

    def fetch_profile(self, token: AccessToken) -> ExternalIdentity:
        user = _fetch_profile_json(
            f"{_GITHUB_API_URL}/user",
            access_token=token.token,
            timeout=self.config.timeout,
            headers=_GITHUB_HEADERS,
        )
        if user.get("id") is None or not user.get("login"):
            raise ProfileFetchFailed("OAuth profile did not include an id and username")

        email = user.get("email") if isinstance(user.get("email"), str) else None
        if not email:
            email = _select_github_email(token.token, timeout=self.config.timeout)

        membership = None
        if self.config.target_resource:
            membership = _fetch_optional_json(
                f"{_GITHUB_API_URL}/repos/{self.config.target_resource}"
                f"/collaborators/{quote(str(user['login']), safe='')}/permission",
                access_token=token.token,
                timeout=self.config.timeout,
                headers=_GITHUB_HEADERS,
            )
        return ExternalIdentity(
            provider=self.name,
            payload=user,
            membership=membership,
            email=email,
        )

    def identifier(self, profile: ExternalIdentity) -> str:
        return f"{self.name}|{self._remote_id(profile)}"

    def username(self, profile: ExternalIdentity) -> str:
        return str(profile.payload.get("login") or "")

    def is_admin_eligible(self, profile: ExternalIdentity) -> bool:
        if not profile.membership:
            return False
        return profile.membership.get("permission") in self._admin_permissions

    def is_active(self, profile: ExternalIdentity) -> bool:
        return not profile.payload.get("suspended_at")


def _select_github_email(access_token: str, *, timeout: float) -> str | None:
    try:
        payload = _fetch_json(
            f"{_GITHUB_API_URL}/user/emails",
            access_token=access_token,
            timeout=timeout,
            headers=_GITHUB_HEADERS,
        )
    except (ProfileFetchFailed, _NotFound):
        return None

    if not isinstance(payload, list):
        return None
    candidates = [
        item
        for item in payload
        if isinstance(item, dict) and _to_bool(item.get("verified"))
    ]
    candidates.sort(key=lambda item: not _to_bool(item.get("primary")))
    for item in candidates:
        email = item.get("email")
        if isinstance(email, str) and email:
            return email
    return None


@dataclass(frozen=True)
class _ProviderDefinition:
    display_name: str
    adapter_class: type[ProviderAdapter]
    scopes: tuple[str, ...]


_PROVIDERS: dict[str, _ProviderDefinition] = {
    "gitlab": _ProviderDefinition("GitLab", GitLabProvider, ("read_user", "read_api")),
    "github": _ProviderDefinition("GitHub", GitHubProvider, ("read:user", "user:email")),
}


def _provider_settings(provider: str) -> tuple[str, str, str, str | None] | None:
    if provider == "gitlab":
        client_id = settings.oauth_gitlab_client_id
        client_secret = settings.oauth_gitlab_client_secret
        base_url = settings.oauth_gitlab_server
        target = settings.oauth_gitlab_repository_name
    elif provider == "github":
        client_id = settings.oauth_github_client_id
        client_secret = settings.oauth_github_client_secret
        base_url = "https://github.com"
        target = settings.oauth_github_repository
    else:
        return None

    if not client_id or not client_secret:
        return None
    return str(client_id), str(client_secret), base_url.rstrip("/"), target or None


def callback_url(base_url: str, provider: str) -> str:
    base = settings.oauth_public_base_url or base_url
    query = urlencode({"oauth-provider": provider})
    return f"{str(base).rstrip('/')}/api/{settings.api_latest_version}/login?{query}"


def get_provider(provider: str, callback_base_url: str) -> ProviderAdapter | None:
    definition = _PROVIDERS.get(provider)
    credentials = _provider_settings(provider)
    if definition is None or credentials is None:
        return None

    client_id, client_secret, base_url, target = credentials
    config = OAuthProviderConfig(
        provider=provider,
        display_name=definition.display_name,
        client_id=client_id,
        client_secret=client_secret,
        base_url=base_url,
        redirect_uri=callback_url(callback_base_url, provider),
        scopes=definition.scopes,
        target_resource=target,
        timeout=settings.oauth_http_timeout_seconds,
    )
    if definition.adapter_class is GitLabProvider:
        return GitLabProvider(
            config, admin_access_level=settings.oauth_gitlab_admin_access_level
        )
    return definition.adapter_class(config)


def list_enabled_providers() -> list[tuple[str, str]]:
    return [
        (provider, definition.display_name)
        for provider, definition in _PROVIDERS.items()
        if _provider_settings(provider) is not None
    ]
