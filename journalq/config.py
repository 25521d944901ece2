"""
Application configuration management using Pydantic Settings.

This module provides a type-safe, centralized configuration system
that loads from environment variables with sensible defaults.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """
    Application configuration loaded from environment variables.

    All settings can be overridden via .env file or environment variables.
    Settings are validated at startup using Pydantic.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ===== Durable Backend (Redis) =====
    REDIS_URL: str | None = Field(
        default=None,
        description="Redis URL for the durable job backend. Unset = in-process fallback only"
    )

    REDIS_CONNECT_TIMEOUT: float = Field(
        default=3.0,
        gt=0.0,
        le=30.0,
        description="Seconds the startup probe waits for Redis before falling back"
    )

    QUEUE_KEY_PREFIX: str = Field(
        default="journalq",
        description="Prefix for every Redis key written by the queue"
    )

    # ===== Fallback Backend =====
    FALLBACK_DB_PATH: str = Field(
        default=":memory:",
        description="SQLite path for the in-process fallback queue (':memory:' keeps it memory-resident)"
    )

    # ===== Worker Pool =====
    WORKER_CONCURRENCY: int = Field(
        default=3,
        ge=1,
        le=64,
        description="Maximum jobs executing at once in this process"
    )

    WORKER_POLL_INTERVAL: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="Seconds between scheduling ticks"
    )

    # ===== Retry / Backoff =====
    JOB_DEFAULT_ATTEMPTS: int = Field(
        default=3,
        ge=1,
        le=25,
        description="Default ceiling on execution attempts per job"
    )

    RETRY_BASE_DELAY: float = Field(
        default=2.0,
        ge=0.0,
        description="Base backoff delay in seconds"
    )

    RETRY_FACTOR: float = Field(
        default=2.0,
        ge=1.0,
        description="Exponential growth factor between retries"
    )

    RETRY_MAX_DELAY: float = Field(
        default=10.0,
        ge=0.0,
        description="Upper bound on a single backoff delay in seconds"
    )

    RETRY_JITTER: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Fraction of the delay randomly shaved off to spread re-claims"
    )

    # ===== Retention =====
    JOB_RETENTION_SECONDS: int = Field(
        default=86400,
        ge=60,
        description="Terminal jobs older than this are removed by the reaper"
    )

    REAPER_INTERVAL_SECONDS: int = Field(
        default=3600,
        ge=1,
        description="How often the reaper runs"
    )

    JOB_LEASE_SECONDS: float = Field(
        default=60.0,
        ge=1.0,
        le=3600.0,
        description="How long a claim stays valid without renewal before the job counts as stalled"
    )

    # ===== Completion Service =====
    ANTHROPIC_API_KEY: str | None = Field(
        default=None,
        description="Anthropic API key for journal analysis"
    )

    COMPLETION_MODEL: str = Field(
        default="claude-3-5-haiku-20241022",
        description="Model used for analysis and scoring"
    )

    COMPLETION_TIMEOUT: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout for completion calls"
    )

    # ===== Storage =====
    SUPABASE_URL: str | None = Field(
        default=None,
        description="Supabase project URL"
    )

    SUPABASE_SERVICE_KEY: str | None = Field(
        default=None,
        description="Supabase service role key (server-side writes)"
    )

    JOURNAL_TABLE: str = Field(
        default="journal_entries",
        description="Table that receives analysis results"
    )

    MEMORY_LOOP_TABLE: str = Field(
        default="memory_loops",
        description="Table that receives per-user memory loop updates"
    )

    PROGRESS_TABLE: str = Field(
        default="user_progress",
        description="Table that receives per-user emotion trend updates"
    )

    REWARDS_TABLE: str = Field(
        default="user_rewards",
        description="Table that receives unlocked rewards per user"
    )

    # ===== Application Settings =====
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    ALLOWED_ORIGINS: str = Field(
        default="*",
        description="Comma-separated CORS origins"
    )

    ENABLE_WORKER: bool = Field(
        default=True,
        description="Run a worker pool inside the web process"
    )

    @field_validator("REDIS_URL", mode="before")
    @classmethod
    def blank_is_unset(cls, v):
        """Treat an empty REDIS_URL (common in container env files) as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    # ===== Computed Properties =====

    @property
    def redis_configured(self) -> bool:
        """Check if a durable backend has been configured at all."""
        return self.REDIS_URL is not None

    @property
    def completion_configured(self) -> bool:
        return self.ANTHROPIC_API_KEY is not None

    @property
    def supabase_configured(self) -> bool:
        """Check if Supabase is properly configured."""
        return (
            self.SUPABASE_URL is not None
            and self.SUPABASE_SERVICE_KEY is not None
        )

    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()] or ["*"]


# Default configuration instance
# Components accept explicit settings; this is what they fall back to.
config = AppConfig()


if __name__ == "__main__":
    print("Configuration loaded successfully!")
    print(f"Redis: {'✓' if config.redis_configured else '✗ (in-process fallback)'}")
    print(f"Concurrency: {config.WORKER_CONCURRENCY}")
    print(f"Retry: base={config.RETRY_BASE_DELAY}s factor={config.RETRY_FACTOR} max={config.RETRY_MAX_DELAY}s")
    print(f"Completion: {'✓' if config.completion_configured else '✗'}")
    print(f"Supabase: {'✓' if config.supabase_configured else '✗'}")
