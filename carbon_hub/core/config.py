from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Redis (Celery broker + shared cache store)
    redis_url: str = "redis://localhost:6379/0"

    # Persistent cache
    cache_enabled: bool = True
    cache_backend: str = "memory"  # memory | redis
    cache_prefix: str = "carbon_marketplace:"
    cache_ttl_portfolios: int = 900  # 15 minutes
    cache_ttl_projects: int = 3600  # 1 hour
    cache_ttl_project_details: int = 1800  # 30 minutes
    cache_ttl_quotes: int = 300  # 5 minutes
    cache_ttl_search_results: int = 600  # 10 minutes

    # Outbound vendor requests
    request_timeout: float = 30.0
    max_retries: int = 3
    requests_per_second: int = 10
    rate_window_seconds: float = 1.0
    base_retry_delay: float = 1.0
    max_retry_delay: float = 60.0
    request_logging: bool = True
    dedup_ttl_seconds: float = 30.0  # identical requests replay the prior result this long
    dedup_max_entries: int = 500

    # Fan-out across vendors
    fanout_concurrency: int = 4
    fanout_timeout: float = 45.0

    # CNaught (REST)
    cnaught_api_key: str = ""
    cnaught_base_url: str = "https://api.cnaught.com/v1"
    cnaught_sandbox: bool = False

    # Toucan (GraphQL subgraph, public, no key needed)
    toucan_enabled: bool = True
    toucan_base_url: str = "https://api.thegraph.com"
    toucan_subgraph: str = "/subgraphs/name/toucanprotocol/matic"

    # App
    app_env: str = "development"
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
    def cache_ttls(self) -> dict[str, int]:
        """Default TTL per cached entity type, in seconds."""
        return {
            "portfolios": self.cache_ttl_portfolios,
            "projects": self.cache_ttl_projects,
            "project_details": self.cache_ttl_project_details,
            "quotes": self.cache_ttl_quotes,
            "search_results": self.cache_ttl_search_results,
        }


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.cache_backend not in ("memory", "redis"):
        errors.append(f"CACHE_BACKEND must be 'memory' or 'redis', got {settings.cache_backend!r}")

    if settings.requests_per_second < 1:
        errors.append("REQUESTS_PER_SECOND must be at least 1")

    if settings.max_retries < 1:
        errors.append("MAX_RETRIES must be at least 1")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if settings.cache_backend != "redis":
            errors.append("CACHE_BACKEND must be 'redis' in production (cache is shared across workers)")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
