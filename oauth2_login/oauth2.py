from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jwt import InvalidTokenError
from sqlalchemy.orm import Session

from . import database, models, schemas
from .config import settings

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"/api/{settings.api_latest_version}/login")

ACCESS_TOKEN_TYPE = "access"  # nosec B105
BEARER_TOKEN_TYPE = "bearer"  # nosec B105


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "detail": "Could not validate credentials",
            "error_code": "invalid_credentials",
        },
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(
    data: dict[str, Any], expires_minutes: int | None = None
) -> str:
    to_encode = data.copy()
    expire_minutes = (
        settings.access_token_expire_minutes
        if expires_minutes is None
        else expires_minutes
    )
    now = datetime.now(timezone.utc)
    to_encode.update(
        {
            "iss": settings.token_issuer,
            "aud": settings.token_audience,
            "iat": now,
            "nbf": now,
            "exp": now + timedelta(minutes=expire_minutes),
            "jti": uuid.uuid4().hex,
            "token_type": ACCESS_TOKEN_TYPE,
        }
    )
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_access_token(token: str) -> schemas.TokenData:
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            audience=settings.token_audience,
            issuer=settings.token_issuer,
            options={"require": ["exp", "user_id", "token_type"]},
        )
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise _credentials_exception()
        return schemas.TokenData(id=int(payload["user_id"]))
    except (InvalidTokenError, ValueError, TypeError):
        raise _credentials_exception()


def issue_access_token(user_id: int) -> schemas.Token:
    return schemas.Token(
        access_token=create_access_token({"user_id": user_id}),
        token_type=BEARER_TOKEN_TYPE,
    )


def get_current_user(
    token: str = Depends(oauth2_scheme), db: Session = Depends(database.get_db)
) -> models.User:
    token_data = verify_access_token(token)
    user = (
        db.query(models.User)
        .filter(models.User.id == token_data.id, models.User.deleted.is_(False))
        .first()
    )
    if user is None or user.disable:
        raise _credentials_exception()
    return user
