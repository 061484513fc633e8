"""
Configuration settings for the mastery-sprint engine.

Uses Pydantic Settings for environment variable management with .env file support.
Every threshold, window and weight used by the analysis pipeline lives here so
calibration runs can override them without code changes (MASTERY_* env vars).
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MASTERY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Storage
    # ========================================
    database_url: str = Field(
        default="sqlite:///data/mastery_sprint.db",
        description="SQLAlchemy connection string for the metric/document stores",
    )
    offline_queue_path: str = Field(
        default="data/offline_queue.json",
        description="JSON file holding deferred writes while a store is unreachable",
    )
    topic_catalog_path: str | None = Field(
        default=None,
        description="Optional JSON topic catalog (prerequisites, difficulty, adjacency)",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging verbosity level",
    )
    log_file: str | None = Field(
        default="logs/mastery_sprint.log",
        description="Log file path (None for stderr only)",
    )

    # ========================================
    # Aggregation
    # ========================================
    aggregation_windows_days: list[int] = Field(
        default=[1, 7, 30],
        description="Rolling windows (days) for per-topic statistics",
    )
    trailing_attempts: int = Field(
        default=10,
        description="Trailing attempts window used for trend detection",
    )
    min_sample_count: int = Field(
        default=3,
        description="Below this many samples a rate is reported as insufficient data",
    )
    trend_margin: float = Field(
        default=5.0,
        description="Accuracy points the later half must move to count as a trend",
    )
    retention_gap_hours: float = Field(
        default=20.0,
        description="Minimum gap before an attempt counts as a recall (retention) attempt",
    )

    # ========================================
    # Weakness Detection
    # ========================================
    target_accuracy: float = Field(default=70.0, description="Accuracy below this flags a weakness")
    target_retention: float = Field(default=60.0, description="7-day retention below this flags a weakness")
    speed_ratio_threshold: float = Field(
        default=1.5,
        description="Topic speed above this multiple of the user average flags a weakness",
    )
    severity_weight_accuracy: float = Field(default=0.4)
    severity_weight_retention: float = Field(default=0.3)
    severity_weight_speed: float = Field(default=0.2)
    severity_weight_trend: float = Field(default=0.1)
    weakness_sla_seconds: float = Field(
        default=5.0,
        description="Soft deadline for a weakness analysis pass",
    )
    improvement_downweight: float = Field(
        default=0.5,
        description="Impact multiplier applied once to a topic that just left the weak set",
    )
    sprint_trigger_severity: float = Field(
        default=0.3,
        description="New/worsened weaknesses at or above this severity trigger follow-ups",
    )

    # ========================================
    # Mastery Model
    # ========================================
    mastery_window_days: int = Field(default=30, description="Hard rolling window for mastery")
    mastery_weight_accuracy: float = Field(default=0.7)
    mastery_weight_retention: float = Field(default=0.3)
    recency_halflife_days: float = Field(default=7.0)
    velocity_snapshots: int = Field(default=5, description="Snapshots used for learning velocity")
    velocity_epsilon: float = Field(
        default=0.5,
        description="Velocity magnitude below which a topic counts as stable",
    )
    strength_threshold: float = Field(default=80.0)
    weakness_mastery_threshold: float = Field(default=60.0)
    max_write_retries: int = Field(default=5, description="Optimistic-concurrency retry budget")
    read_staleness_seconds: float = Field(
        default=300.0,
        description="Staleness budget for cached mastery-model reads",
    )
    read_cache_max_entries: int = Field(
        default=10_000,
        description="Most cached read values kept before the least recent is evicted",
    )
    session_gap_minutes: float = Field(default=30.0)
    default_session_minutes: float = Field(default=30.0)

    # ========================================
    # Spaced Repetition
    # ========================================
    recall_success_threshold: float = Field(default=80.0)
    recall_initial_interval_days: float = Field(default=1.0)
    recall_base_growth: float = Field(default=1.3)
    recall_accuracy_growth: float = Field(
        default=0.02,
        description="Extra growth per accuracy point above the success threshold",
    )
    recall_streak_growth: float = Field(default=0.1)
    recall_streak_cap: int = Field(default=5)
    recall_failure_factor: float = Field(default=0.5)
    recall_max_interval_days: float = Field(default=180.0)
    dormancy_mastery_threshold: float = Field(default=85.0)
    dormancy_days: float = Field(default=21.0)

    # ========================================
    # Sprint Generation
    # ========================================
    sprint_min_exercises: int = Field(default=5)
    sprint_max_exercises: int = Field(default=20)
    sprint_min_minutes: int = Field(default=15)
    sprint_max_minutes: int = Field(default=120)
    sprint_expiry_days: int = Field(default=7)
    max_sprint_weaknesses: int = Field(default=3)
    sprint_min_accuracy_gain: float = Field(default=3.0)
    sprint_improvement_horizon: float = Field(
        default=5.0,
        description="Snapshots of the user's own velocity folded into a sprint target",
    )
    sprint_min_completion: float = Field(default=80.0)
    auto_generate_sprints: bool = Field(
        default=True,
        description="Generate a sprint when a new or worsened weakness crosses the trigger severity",
    )

    # ========================================
    # Feedback
    # ========================================
    decline_history_accuracy: float = Field(
        default=80.0,
        description="Historical accuracy above which a topic counts as previously strong",
    )
    decline_recent_accuracy: float = Field(default=70.0)
    decline_recent_days: int = Field(default=7)
    weekly_focus_topics: int = Field(default=3)

    # ========================================
    # Goal Decomposition
    # ========================================
    goal_base_minutes: float = Field(default=120.0)
    goal_target_accuracy: float = Field(default=80.0)
    goal_target_mastery: float = Field(default=80.0)
    goal_velocity_factor: float = Field(
        default=0.1,
        description="Exponential discount per point of average improvement rate on time estimates",
    )

    # ========================================
    # Collaborators
    # ========================================
    content_provider_url: str | None = Field(
        default=None,
        description="Base URL of the HTTP exercise provider",
    )
    content_provider_timeout: float = Field(default=10.0)
    exercise_bank_path: str | None = Field(
        default=None,
        description="JSON exercise bank used as the local (fallback) content provider",
    )
    retry_attempts: int = Field(default=3)
    retry_backoff_seconds: float = Field(default=0.5)

    def get_aggregation_config(self) -> dict[str, Any]:
        """Get aggregation configuration as a dictionary."""
        return {
            "windows": list(self.aggregation_windows_days),
            "trailing_attempts": self.trailing_attempts,
            "min_samples": self.min_sample_count,
            "trend_margin": self.trend_margin,
            "retention_gap_hours": self.retention_gap_hours,
        }

    def get_weakness_thresholds(self) -> dict[str, float]:
        """Get weakness detection thresholds."""
        return {
            "accuracy": self.target_accuracy,
            "retention": self.target_retention,
            "speed_ratio": self.speed_ratio_threshold,
        }

    def get_severity_weights(self) -> dict[str, float]:
        """Get multi-factor severity weights."""
        return {
            "accuracy": self.severity_weight_accuracy,
            "retention": self.severity_weight_retention,
            "speed": self.severity_weight_speed,
            "trend": self.severity_weight_trend,
        }

    def get_scheduler_config(self) -> dict[str, float]:
        """Get spaced-repetition scheduler configuration."""
        return {
            "success_threshold": self.recall_success_threshold,
            "initial_interval": self.recall_initial_interval_days,
            "base_growth": self.recall_base_growth,
            "accuracy_growth": self.recall_accuracy_growth,
            "streak_growth": self.recall_streak_growth,
            "streak_cap": self.recall_streak_cap,
            "failure_factor": self.recall_failure_factor,
            "max_interval": self.recall_max_interval_days,
            "dormancy_mastery": self.dormancy_mastery_threshold,
            "dormancy_days": self.dormancy_days,
        }

    def get_sprint_bounds(self) -> dict[str, int]:
        """Get sprint size/duration invariants."""
        return {
            "min_exercises": self.sprint_min_exercises,
            "max_exercises": self.sprint_max_exercises,
            "min_minutes": self.sprint_min_minutes,
            "max_minutes": self.sprint_max_minutes,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
