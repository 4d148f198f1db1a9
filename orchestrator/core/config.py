from pydantic_settings import BaseSettings, SettingsConfigDict

PLANS = ("free", "starter", "pro", "enterprise")


def _split_names(raw: str) -> list[str]:
    return [name.strip().lower() for name in raw.split(",") if name.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Provider credentials
    openai_api_key: str = ""
    deepseek_api_key: str = ""
    mistral_api_key: str = ""
    grok_api_key: str = ""
    gemini_api_key: str = ""

    # Provider enable flags (a provider also needs its key to be enabled)
    enable_chatgpt: bool = True
    enable_deepseek: bool = True
    enable_mistral: bool = True
    enable_grok: bool = True
    enable_gemini: bool = True

    # Global allow-list and per-tier provider sets (comma-separated, ordered)
    providers: str = "chatgpt,deepseek,mistral,grok,gemini"
    free_tier_providers: str = "chatgpt,deepseek,mistral,grok,gemini"
    pro_tier_providers: str = "chatgpt,deepseek,mistral,grok,gemini"

    # Timeouts
    provider_timeout_seconds: float = 25.0
    job_timeout_seconds: float = 30.0

    # Circuit breaker
    cb_fail_threshold: int = 5
    cb_window_seconds: float = 60.0
    cb_half_open_seconds: float = 60.0

    # Retry policy
    retry_max_attempts: int = 3
    retry_min_backoff_seconds: float = 0.5
    retry_max_backoff_seconds: float = 8.0

    # Tenant rate limits (submissions per window, per plan)
    rate_limit_free: int = 10
    rate_limit_starter: int = 50
    rate_limit_pro: int = 200
    rate_limit_enterprise: int = 1000
    rate_window_seconds: int = 60
    default_plan: str = "free"

    # Per-IP guard on the submission endpoint (slowapi syntax)
    ip_rate_limit: str = "300/minute"

    # Result cache
    cache_ttl_seconds: int = 3600
    cache_low_confidence: bool = False

    # Aggregation
    aggregation_policy: str = "lenient"  # "lenient" | "strict"
    min_success_ratio: float = 0.5  # below this a lenient result is flagged low-confidence
    min_successes: int = 3  # strict policy: fewer successes fails the job

    # Shared state: "memory" (one process) or "redis" (circuits, quotas, cache, jobs
    # and the job queue shared by every process)
    state_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_namespace: str = "orch"
    job_ttl_seconds: int = 86400  # terminal jobs kept in redis

    # Workers
    worker_concurrency: int = 5
    worker_shutdown_grace_seconds: float = 10.0
    job_retention: int = 1000  # terminal jobs kept in memory

    # Tenant resolution: "header" | "subdomain" | "static"
    tenant_resolver: str = "header"
    tenant_header: str = "X-Tenant-ID"
    tenant_static_id: str = "public"

    # App
    app_env: str = "development"
    app_version: str = "1.0.0"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    @property
    def provider_allow_list(self) -> list[str]:
        return _split_names(self.providers)

    def tier_providers(self, tier: str) -> list[str]:
        """Ordered provider names for a provider tier ("free" or "pro")."""
        if tier == "free":
            return _split_names(self.free_tier_providers)
        return _split_names(self.pro_tier_providers)

    def rate_quota(self, plan: str) -> int:
        """Submissions allowed per window for a plan; unknown plans get the free quota."""
        if plan not in PLANS:
            plan = "free"
        return getattr(self, f"rate_limit_{plan}")


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.aggregation_policy not in ("lenient", "strict"):
        errors.append("AGGREGATION_POLICY must be 'lenient' or 'strict'")

    if not 0.0 <= settings.min_success_ratio <= 1.0:
        errors.append("MIN_SUCCESS_RATIO must be between 0 and 1")

    if settings.tenant_resolver not in ("header", "subdomain", "static"):
        errors.append("TENANT_RESOLVER must be one of: header, subdomain, static")

    if settings.state_backend not in ("memory", "redis"):
        errors.append("STATE_BACKEND must be 'memory' or 'redis'")

    if settings.retry_max_attempts < 1:
        errors.append("RETRY_MAX_ATTEMPTS must be at least 1")

    if settings.worker_concurrency < 1:
        errors.append("WORKER_CONCURRENCY must be at least 1")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
