"""
Configuration management using Pydantic Settings.
Every tunable of the orchestration engine is read from the environment
(prefix ``AGENTCREW_``) or an optional ``.env`` file.
"""
import logging
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SEVERITY_LEVELS = ["low", "medium", "high", "critical"]


class Settings(BaseSettings):
    """Engine settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="AGENTCREW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_name: str = Field(default="AgentCrew", description="Application name")

    # Scheduler
    max_concurrency: int = Field(default=3, ge=1, le=256, description="Sub-tasks running at once, across all tasks")
    default_priority: int = Field(default=5, ge=0, description="Base priority score (lower runs first)")
    task_timeout_s: float = Field(default=600.0, gt=0, description="Hard wall-clock limit per sub-task run")
    poll_interval_s: float = Field(default=0.1, gt=0, description="Dispatch re-poll delay while work is queued")

    # Executor
    executor_max_retries: int = Field(default=3, ge=0, description="Re-attempts per run before reporting failure")
    executor_retry_delay_s: float = Field(default=2.0, ge=0, description="Base delay, multiplied by the attempt number")
    stream_update_interval_s: float = Field(default=0.1, ge=0, description="Minimum spacing of progress events")

    # Exception handling
    auto_retry_enabled: bool = Field(default=True, description="Retry timeouts automatically")
    max_auto_retries: int = Field(default=2, ge=0, description="Automatic retries per sub-task")
    auto_retry_delay_s: float = Field(default=3.0, ge=0, description="Base delay, multiplied by the retry number")
    human_intervention_threshold: str = Field(default="high", description="Lowest severity that needs a human")
    auto_escalation_enabled: bool = Field(default=True, description="Escalate high severity failures")
    escalation_timeout_s: float = Field(default=300.0, gt=0, description="Escalate unanswered tickets after this")
    pause_on_critical: bool = Field(default=True, description="Pause the owning task on critical failures")
    notify_on_exception: bool = Field(default=True, description="Notify peer workers of exceptions")

    # Collaboration
    auto_reply_delay_s: float = Field(default=1.0, ge=0, description="Delay before an automatic answer is sent")
    session_purge_delay_s: float = Field(default=60.0, ge=0, description="Grace period before a closed session is purged")
    stale_session_s: float = Field(default=300.0, gt=0, description="Idle time after which an active session needs attention")

    # Aggregation
    aggregate_on_complete: bool = Field(default=True, description="Build the report when a task finishes")
    include_metrics: bool = Field(default=True, description="Include the metrics table in reports")
    include_agent_details: bool = Field(default=True, description="Include worker names in reports")
    include_timestamps: bool = Field(default=True, description="Include timestamps in reports")

    # Events
    event_queue_size: int = Field(default=1000, ge=1, description="Per-subscriber event buffer")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("human_intervention_threshold")
    @classmethod
    def validate_threshold(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in SEVERITY_LEVELS:
            raise ValueError(f"Threshold must be one of {SEVERITY_LEVELS}")
        return v_lower

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Engine settings
    """
    return Settings()
