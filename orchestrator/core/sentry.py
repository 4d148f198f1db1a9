"""Sentry error tracking for the API and the job workers.

Enabled only when SENTRY_DSN is set; every function here is a no-op otherwise.
Client errors (bad input, quota, unknown job) are expected traffic and are
never reported.
"""

import logging

import sentry_sdk

from orchestrator.core.config import settings
from orchestrator.core.exceptions import OrchestratorError

logger = logging.getLogger(__name__)


def _before_send(event, hint):
    exc_info = hint.get("exc_info")
    if exc_info and isinstance(exc_info[1], OrchestratorError) and exc_info[1].http_status < 500:
        return None
    return event


def init_sentry() -> bool:
    """Initialize Sentry if SENTRY_DSN is configured. Returns True when enabled."""
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    from sentry_sdk.integrations.asyncio import AsyncioIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        release=f"scoring-orchestrator@{settings.app_version}",
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=_before_send,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            AsyncioIntegration(),
        ],
    )
    logger.info("Sentry initialized (env=%s)", settings.app_env)
    return True


def capture_job_crash(job_id: str, tier: str, exc: BaseException) -> None:
    """Report a job that failed with an unexpected exception, tagged with its id and tier."""
    if not settings.sentry_dsn:
        return
    with sentry_sdk.new_scope() as scope:
        scope.set_tag("job_id", job_id)
        scope.set_tag("tier", tier)
        scope.capture_exception(exc)
