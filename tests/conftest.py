import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-the-login-suite")
os.environ.setdefault("REDIS_HEALTH_REQUIRED", "false")
os.environ.setdefault("METRICS_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from oauth2_login import database
from oauth2_login import session as login_session
from oauth2_login.config import settings
from oauth2_login.main import app

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._calls = []

    def __getattr__(self, name):
        method = getattr(self._redis, name)

        def _queue(*args, **kwargs):
            self._calls.append((method, args, kwargs))
            return self

        return _queue

    def execute(self):
        results = [method(*args, **kwargs) for method, args, kwargs in self._calls]
        self._calls = []
        return results


class FakeRedis:
    def __init__(self):
        self.hashes = {}
        self.ttls = {}

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = str(value)
        return 1

    def hdel(self, key, *fields):
        stored = self.hashes.get(key, {})
        removed = 0
        for field in fields:
            if field in stored:
                del stored[field]
                removed += 1
        return removed

    def hkeys(self, key):
        return list(self.hashes.get(key, {}))

    def hlen(self, key):
        return len(self.hashes.get(key, {}))

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def ping(self):
        return True

    def pipeline(self, transaction=True):
        return FakePipeline(self)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def session():
    database.Base.metadata.drop_all(bind=engine)
    database.Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session, fake_redis, monkeypatch):
    def override_get_db():
        try:
            yield session
        finally:
            pass

    monkeypatch.setattr(login_session, "get_redis_client", lambda: fake_redis)
    app.dependency_overrides[database.get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(database.get_db, None)


@pytest.fixture
def gitlab_settings(monkeypatch):
    for provider in ["gitlab", "github"]:
        monkeypatch.setattr(settings, f"oauth_{provider}_client_id", None)
        monkeypatch.setattr(settings, f"oauth_{provider}_client_secret", None)
    monkeypatch.setattr(settings, "oauth_public_base_url", None)
    monkeypatch.setattr(settings, "oauth_gitlab_client_id", "gitlab-client-id")
    monkeypatch.setattr(settings, "oauth_gitlab_client_secret", "gitlab-client-secret")
    monkeypatch.setattr(settings, "oauth_gitlab_server", "https://gitlab.example.com")
    monkeypatch.setattr(settings, "oauth_gitlab_repository_name", "team/app")
    monkeypatch.setattr(settings, "oauth_gitlab_admin_access_level", 40)
    return settings
