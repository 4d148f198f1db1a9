"""Error taxonomy shared by the gateway, the job layer and the HTTP API.

Every error carries a stable ``code`` (stored on failed jobs and returned in
API bodies), the HTTP status it maps to, and two classification flags used by
the resilience layer:

  - retryable:     the retry policy may try the call again
  - trips_circuit: the failure counts toward the provider's circuit breaker
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    code = "orchestrator_error"
    http_status = 500
    retryable = False
    trips_circuit = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(OrchestratorError):
    """Malformed input. Never retried, surfaced to the caller immediately."""

    code = "validation_error"
    http_status = 400


class RateLimitExceeded(OrchestratorError):
    """Tenant exceeded its submission quota; the job is never created."""

    code = "rate_limit_exceeded"
    http_status = 429

    def __init__(self, message: str = "", limit: int = 0, retry_after: float = 0.0):
        super().__init__(message)
        self.limit = limit
        self.retry_after = retry_after


class JobNotFoundError(OrchestratorError):
    code = "job_not_found"
    http_status = 404


class AllProvidersFailed(OrchestratorError):
    """Terminal job failure: no provider produced a usable score."""

    code = "all_providers_failed"
    http_status = 502


class InsufficientProviders(AllProvidersFailed):
    """Strict aggregation policy: too few providers succeeded."""

    code = "insufficient_providers"


# ---------------------------------------------------------------------------
# Provider-level errors (captured per provider, never cross the job boundary)
# ---------------------------------------------------------------------------


class ProviderError(OrchestratorError):
    """A provider call failed for a reason not covered by a narrower class."""

    code = "provider_error"
    http_status = 502
    trips_circuit = True

    def __init__(self, message: str = "", provider: str = "", status_code: int = 0):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderTimeout(ProviderError):
    code = "provider_timeout"
    retryable = True


class ProviderNetworkError(ProviderError):
    code = "provider_network_error"
    retryable = True


class ProviderServerError(ProviderError):
    code = "provider_server_error"
    retryable = True


class ProviderRateLimited(ProviderError):
    code = "provider_rate_limited"
    retryable = True


class ProviderAuthError(ProviderError):
    code = "provider_auth_error"


class ProviderResponseError(ProviderError):
    """The provider answered but the reply could not be turned into a score."""

    code = "provider_response_error"


class CircuitOpenError(ProviderError):
    """Call skipped because the provider's circuit is open. Not a fresh failure."""

    code = "circuit_open"
    trips_circuit = False


PROVIDER_ERRORS: dict[str, type[ProviderError]] = {
    cls.code: cls
    for cls in (
        ProviderError,
        ProviderTimeout,
        ProviderNetworkError,
        ProviderServerError,
        ProviderRateLimited,
        ProviderAuthError,
        ProviderResponseError,
        CircuitOpenError,
    )
}

RETRYABLE_CODES = frozenset(code for code, cls in PROVIDER_ERRORS.items() if cls.retryable)
CIRCUIT_FAILURE_CODES = frozenset(code for code, cls in PROVIDER_ERRORS.items() if cls.trips_circuit)


def classify_http_status(status_code: int, message: str = "", provider: str = "") -> ProviderError:
    """Map a remote HTTP status to the matching provider error."""
    if status_code == 429:
        cls: type[ProviderError] = ProviderRateLimited
    elif status_code >= 500:
        cls = ProviderServerError
    elif status_code in (401, 403):
        cls = ProviderAuthError
    else:
        cls = ProviderError
    return cls(message or f"HTTP {status_code}", provider=provider, status_code=status_code)
