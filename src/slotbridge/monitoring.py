from __future__ import annotations

import logging
from typing import Any, Mapping

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from . import __version__
from .config import Settings

logger = logging.getLogger(__name__)

DEFAULT_TRACES_SAMPLE_RATE = 0.1
FAILED_REQUEST_STATUS_CODES = {*range(500, 600)}
HEALTHCHECK_PATHS = {"/health"}


def _request_path(sampling_context: Mapping[str, Any]) -> str | None:
    scope = sampling_context.get("asgi_scope")
    if isinstance(scope, Mapping):
        path = scope.get("path")
        if isinstance(path, str):
            return path
    return None


def _traces_sampler(sampling_context: Mapping[str, Any]) -> float:
    if _request_path(sampling_context) in HEALTHCHECK_PATHS:
        return 0.0
    return DEFAULT_TRACES_SAMPLE_RATE


def init_sentry(settings: Settings) -> bool:
    dsn = (settings.sentry_dsn or "").strip()
    if not dsn:
        logger.debug("Sentry disabled: no DSN configured")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.environment,
        release=f"slotbridge@{__version__}",
        integrations=[
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            StarletteIntegration(failed_request_status_codes=FAILED_REQUEST_STATUS_CODES),
            FastApiIntegration(
                transaction_style="endpoint",
                failed_request_status_codes=FAILED_REQUEST_STATUS_CODES,
            ),
        ],
        send_default_pii=False,
        traces_sampler=_traces_sampler,
    )
    logger.info("Sentry initialized")
    return True
