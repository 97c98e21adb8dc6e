"""Pydantic configuration schema for the follow-up engine.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on load and hot-reload.

Usage:
    from followup.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

EvictionPolicy = Literal["lru", "lfu", "fifo", "ttl"]


class PriorityThresholds(BaseModel):
    """Days without response at which a candidate becomes high/medium priority."""

    high: int = Field(default=7, ge=1, le=365, description="Days for high priority")
    medium: int = Field(default=3, ge=0, le=365, description="Days for medium priority")

    @model_validator(mode="after")
    def validate_ordering(self) -> "PriorityThresholds":
        """Ensure the high threshold is not below the medium threshold."""
        if self.high < self.medium:
            raise ValueError(
                f"priority_thresholds.high ({self.high}) must be >= "
                f"priority_thresholds.medium ({self.medium})"
            )
        return self


class AnalysisConfig(BaseModel):
    """Per-run analysis settings passed into the analyzer."""

    email_count: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Number of recent sent messages to analyze",
    )
    days_back: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Only consider messages sent within this many days",
    )
    selected_accounts: list[str] = Field(
        default_factory=list,
        description="Only flag threads whose last message came from one of these addresses",
    )
    priority_thresholds: PriorityThresholds = Field(default_factory=PriorityThresholds)
    show_snoozed_emails: bool = Field(
        default=False,
        description="Include snoozed candidates in results",
    )
    show_dismissed_emails: bool = Field(
        default=False,
        description="Include dismissed candidates in results",
    )
    ai_enabled: bool = Field(
        default=True,
        description="Consult the LLM advisor (sentiment, summaries, suggestions)",
    )
    enable_llm_summary: bool = Field(
        default=False,
        description="Ask the advisor for a summary of each candidate",
    )
    enable_llm_suggestions: bool = Field(
        default=False,
        description="Ask the advisor for follow-up suggestions for each candidate",
    )
    auto_refresh_minutes: int = Field(
        default=60,
        ge=1,
        le=1440,
        description="Interval between re-analysis runs in watch mode (minutes)",
    )

    @field_validator("selected_accounts")
    @classmethod
    def normalize_accounts(cls, v: list[str]) -> list[str]:
        """Lower-case and strip account addresses, dropping blanks."""
        return [a.strip().lower() for a in v if a and a.strip()]


class CacheConfig(BaseModel):
    """Cache engine configuration."""

    default_ttl_seconds: float = Field(
        default=24 * 60 * 60,
        gt=0,
        description="TTL for entries stored without an explicit TTL",
    )
    max_memory_bytes: int = Field(
        default=50 * 1024 * 1024,
        ge=1024,
        description="Estimated memory cap for all entries",
    )
    max_entries: int = Field(
        default=10000,
        ge=1,
        description="Maximum number of entries",
    )
    eviction_policy: EvictionPolicy = Field(
        default="lru",
        description="Eviction order: lru, lfu, fifo or ttl",
    )
    cleanup_interval_seconds: float = Field(
        default=5 * 60,
        gt=0,
        description="Interval of the background sweep of expired entries",
    )
    enable_content_hashing: bool = Field(
        default=True,
        description="Detect mutation of cached values with a SHA-256 integrity hash",
    )
    thread_ttl_seconds: float = Field(
        default=20 * 60,
        gt=0,
        description="TTL for resolved conversation threads",
    )
    sentiment_ttl_seconds: float = Field(
        default=6 * 60 * 60,
        gt=0,
        description="TTL for advisor sentiment results",
    )


class RetryConfig(BaseModel):
    """Retry-with-backoff configuration."""

    max_attempts: int = Field(default=3, ge=1, le=20, description="Attempts including the first")
    base_delay_seconds: float = Field(default=1.0, ge=0, description="Delay before the first retry")
    max_delay_seconds: float = Field(default=30.0, ge=0, description="Upper bound on backoff delay")
    backoff_factor: float = Field(default=2.0, ge=1, description="Multiplier per attempt")
    jitter_seconds: float = Field(default=0.1, ge=0, description="Random extra delay added per retry")


class CircuitBreakerConfig(BaseModel):
    """Per-key circuit breaker configuration."""

    failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive failures that open the circuit",
    )
    recovery_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Time the circuit stays open before allowing trial calls",
    )
    half_open_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Trial calls admitted while half-open",
    )


class BatchConfig(BaseModel):
    """Batch executor configuration."""

    batch_size: int = Field(default=10, ge=1, le=500, description="Items per batch")
    max_concurrent_batches: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Batches processed concurrently",
    )
    item_retry: RetryConfig = Field(
        default_factory=lambda: RetryConfig(max_attempts=2, base_delay_seconds=0.5),
        description="Retry policy applied to each item",
    )


class HeuristicsConfig(BaseModel):
    """Thresholds for thread reconstruction and deduplication."""

    lookback_days: float = Field(
        default=3,
        gt=0,
        le=60,
        description="How far before a base message to look for reconstruction context",
    )
    min_body_length: int = Field(
        default=20,
        ge=0,
        description="Normalized bodies shorter than this are ignored as noise",
    )
    dedupe_window_days: float = Field(
        default=3,
        ge=0,
        le=60,
        description="Candidates of the same human thread within this window are merged",
    )
    context_window_size: int = Field(
        default=200,
        ge=1,
        le=5000,
        description="Most recent messages scanned during reconstruction",
    )
    suppression_requires_quote: bool = Field(
        default=False,
        description="Only suppress a base message when a newer reply quotes it",
    )


class AdvisorConfig(BaseModel):
    """LLM advisor configuration."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Claude model used for summaries, suggestions and sentiment",
    )
    max_tokens: int = Field(default=512, ge=16, le=8192, description="Max tokens per response")
    max_body_chars: int = Field(
        default=4000,
        ge=100,
        le=100000,
        description="Body text beyond this length is truncated before sending",
    )


class AppConfig(BaseModel):
    """Root configuration schema for the follow-up engine.

    If validation fails on load, the CLI exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )
    user_email: str | None = Field(
        default=None,
        description="Mailbox owner address (can be overridden on the command line)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    heuristics: HeuristicsConfig = Field(default_factory=HeuristicsConfig)
    advisor: AdvisorConfig = Field(default_factory=AdvisorConfig)

    @field_validator("user_email")
    @classmethod
    def validate_user_email(cls, v: str | None) -> str | None:
        """Require an '@' in the owner address when one is given."""
        if v is None:
            return v
        v = v.strip()
        if "@" not in v:
            raise ValueError(f"user_email '{v}' is not an email address")
        return v
