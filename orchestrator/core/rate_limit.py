"""Per-IP request throttling using slowapi.

This guards the HTTP surface only; tenant quotas live in
orchestrator.gateway.rate_limiter.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from orchestrator.core.config import settings

# Rate limiter instance keyed by remote address
limiter = Limiter(key_func=get_remote_address)


def submission_limit() -> str:
    return settings.ip_rate_limit
