from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qsl, urlencode

from fastapi import FastAPI
from pythonjsonlogger.json import JsonFormatter

from .config import settings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_SERVICE_NAME = "oauth2-login"
_UNMETERED_PATHS = ["/health", "/ready", "/metrics"]
# Query parameters of the provider callback that must never leave the process.
_SENSITIVE_PARAMS = frozenset({"code", "state"})
_FILTERED = "[Filtered]"


def configure_structured_logging(level: str | None = None) -> bool:
    root = logging.getLogger()
    if getattr(root, "_json_logging_configured", False):
        return False

    handler = logging.StreamHandler()
    handler.setFormatter(
        JsonFormatter(
            _LOG_FORMAT,
            rename_fields={"levelname": "level"},
            static_fields={"service": _SERVICE_NAME},
        )
    )
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    setattr(root, "_json_logging_configured", True)
    return True


def configure_metrics(app: FastAPI) -> bool:
    if not (settings.enable_optional_observability and settings.metrics_enabled):
        return False
    if any(getattr(route, "path", None) == "/metrics" for route in app.routes):
        return False

    try:
        from prometheus_fastapi_instrumentator import Instrumentator
    except ImportError:
        return False

    Instrumentator(excluded_handlers=_UNMETERED_PATHS).instrument(app).expose(
        app, endpoint="/metrics", include_in_schema=False
    )
    return True


def scrub_oauth_params(event: dict[str, Any], _hint: Any = None) -> dict[str, Any]:
    request = event.get("request")
    if not isinstance(request, dict):
        return event

    query = request.get("query_string")
    if isinstance(query, str) and query:
        pairs = [
            (key, _FILTERED if key in _SENSITIVE_PARAMS else value)
            for key, value in parse_qsl(query, keep_blank_values=True)
        ]
        request["query_string"] = urlencode(pairs, safe="[]")

    url = request.get("url")
    if isinstance(url, str) and "?" in url:
        request["url"] = url.split("?", 1)[0]
    return event


def configure_sentry() -> bool:
    if not (settings.enable_optional_observability and settings.sentry_dsn):
        return False

    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    except ImportError:
        return False

    if sentry_sdk.get_client().is_active():
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        send_default_pii=False,
        before_send=scrub_oauth_params,
    )
    return True


def configure_observability(app: FastAPI) -> dict[str, Any]:
    return {
        "logging": configure_structured_logging(),
        "metrics": configure_metrics(app),
        "sentry": configure_sentry(),
    }
