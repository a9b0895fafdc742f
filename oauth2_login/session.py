from __future__ import annotations

import secrets
from collections.abc import Iterator, MutableMapping
from functools import lru_cache
from typing import Any

from fastapi import Request
from redis import Redis
from redis.exceptions import RedisError
from starlette.responses import Response

from .config import settings

_SESSION_KEY_PREFIX = "oauth2:session:"
_MISSING = object()


@lru_cache(maxsize=1)
def get_redis_client() -> Redis:
    timeout = settings.redis_socket_timeout_seconds
    return Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )


def reset_redis_client() -> None:
    get_redis_client.cache_clear()


def ping_login_store() -> bool:
    try:
        return bool(get_redis_client().ping())
    except RedisError:
        return False


class RedisLoginSession(MutableMapping[str, str]):
    """Per-visitor scratch space for an in-flight login, kept in a Redis hash.

    The hash expires ``ttl_seconds`` after the last write, so an abandoned
    login attempt cleans itself up.
    """

    def __init__(
        self,
        redis_client: Redis,
        session_id: str,
        *,
        ttl_seconds: int,
        is_new: bool = False,
    ) -> None:
        self._redis = redis_client
        self.session_id = session_id
        self.ttl_seconds = ttl_seconds
        self.is_new = is_new

    @property
    def key(self) -> str:
        return f"{_SESSION_KEY_PREFIX}{self.session_id}"

    def __getitem__(self, item: str) -> str:
        value = self._redis.hget(self.key, item)
        if value is None:
            raise KeyError(item)
        return str(value)

    def __setitem__(self, item: str, value: str) -> None:
        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(self.key, item, value)
        pipe.expire(self.key, self.ttl_seconds)
        pipe.execute()

    def __delitem__(self, item: str) -> None:
        if not self._redis.hdel(self.key, item):
            raise KeyError(item)

    def __iter__(self) -> Iterator[str]:
        return iter(self._redis.hkeys(self.key))

    def __len__(self) -> int:
        return int(self._redis.hlen(self.key))

    def pop(self, item: str, default: Any = _MISSING) -> Any:
        # Read and delete in one MULTI so two concurrent callbacks cannot
        # both consume the same value.
        pipe = self._redis.pipeline(transaction=True)
        pipe.hget(self.key, item)
        pipe.hdel(self.key, item)
        value, _ = pipe.execute()
        if value is None:
            if default is _MISSING:
                raise KeyError(item)
            return default
        return str(value)


def get_login_session(request: Request) -> RedisLoginSession:
    session_id = request.cookies.get(settings.login_session_cookie_name)
    is_new = not session_id
    if is_new:
        session_id = secrets.token_urlsafe(32)
    return RedisLoginSession(
        get_redis_client(),
        str(session_id),
        ttl_seconds=settings.login_session_ttl_seconds,
        is_new=is_new,
    )


def bind_session_cookie(response: Response, session: RedisLoginSession) -> Response:
    response.set_cookie(
        settings.login_session_cookie_name,
        session.session_id,
        max_age=session.ttl_seconds,
        httponly=True,
        secure=settings.login_session_cookie_secure,
        samesite="lax",
    )
    return response
