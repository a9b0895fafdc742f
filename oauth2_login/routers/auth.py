from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from .. import database, login, models, oauth2, providers, resolver, schemas, session
from ..config import settings

router = APIRouter(tags=["Authentication"])


def _login_url(provider: str) -> str:
    query = urlencode({login.PROVIDER_PARAM: provider})
    return f"/api/{settings.api_latest_version}/login?{query}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _within_validity_window(account: models.User, now: datetime) -> bool:
    if account.starttime is not None and _as_utc(account.starttime) > now:
        return False
    if account.endtime is not None and _as_utc(account.endtime) <= now:
        return False
    return True


def _login_failed() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"detail": "OAuth login failed", "error_code": "oauth_login_failed"},
    )


@router.get("/auth/oauth/providers", response_model=schemas.OAuthProvidersResponse)
def oauth_providers():
    return schemas.OAuthProvidersResponse(
        providers=[
            schemas.OAuthProvider(
                provider=provider,
                display_name=display_name,
                login_url=_login_url(provider),
            )
            for provider, display_name in providers.list_enabled_providers()
        ]
    )


@router.get("/login", response_model=schemas.Token)
def oauth_login(
    request: Request,
    oauth_provider: Optional[str] = Query(default=None, alias=login.PROVIDER_PARAM),
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    db: Session = Depends(database.get_db),
    login_session: session.RedisLoginSession = Depends(session.get_login_session),
):
    params = {
        login.PROVIDER_PARAM: oauth_provider or "",
        "state": state or "",
        "code": code or "",
        "error": error or "",
        "error_description": error_description or "",
    }
    orchestrator = login.LoginOrchestrator(
        resolver.SqlAlchemyUserStore(db),
        login_session,
        callback_base_url=str(request.base_url),
    )
    try:
        result = orchestrator.begin_login(login.LOGIN_ATTEMPT, params)
    except RedisError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "detail": "Login session backend is unavailable",
                "error_code": "login_session_unavailable",
            },
        )

    if result.redirect_url is not None:
        response = RedirectResponse(
            result.redirect_url, status_code=status.HTTP_303_SEE_OTHER
        )
        return session.bind_session_cookie(response, login_session)

    account = result.account
    if account is None:
        raise _login_failed()
    if orchestrator.verify_account(account) is not login.AuthVerdict.PASS:
        raise _login_failed()
    if account.disable or not _within_validity_window(
        account, datetime.now(timezone.utc)
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"detail": "Account is not active", "error_code": "account_expired"},
        )
    return oauth2.issue_access_token(int(account.id))
