from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    session_name: str = "default"
    log_level: str = "INFO"
    log_file: str = ""
    db_path: Path = Path("data/coach_core.sqlite3")
    rules_config_path: Path = Path("config/rules.yaml")

    # Snapshot history
    history_capacity: int = Field(default=1000, ge=10, le=100_000)
    state_change_capacity: int = Field(default=500, ge=10, le=100_000)
    persistence_interval_seconds: float = Field(default=30.0, ge=1, le=3600)
    cleanup_interval_seconds: float = Field(default=300.0, ge=5, le=86400)
    cleanup_threshold_seconds: float = Field(default=3600.0, ge=10, le=7 * 86400)
    pattern_min_history: int = Field(default=10, ge=2, le=1000)
    pattern_window: int = Field(default=50, ge=2, le=5000)
    pattern_interval_seconds: float = Field(default=10.0, ge=1, le=3600)

    # Decision engine
    max_decisions_per_analysis: int = Field(default=3, ge=1, le=20)
    min_decision_confidence: float = Field(default=0.6, ge=0, le=1)
    high_risk_min_confidence: float = Field(default=0.8, ge=0, le=1)
    max_plan_duration_seconds: float = Field(default=30.0, ge=1, le=600)
    learning_rate: float = Field(default=0.1, gt=0, le=1)
    min_feedback_samples: int = Field(default=3, ge=0, le=100)
    max_confidence_step: float = Field(default=0.2, ge=0.01, le=1)
    adaptation_min_applications: int = Field(default=5, ge=1, le=1000)
    max_adaptations: int = Field(default=5, ge=1, le=100)
    adaptation_period_seconds: float = Field(default=30.0, ge=1, le=3600)

    # Plan executor
    max_concurrent_executions: int = Field(default=5, ge=1, le=64)
    max_steps_per_plan: int = Field(default=30, ge=1, le=500)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0, le=30)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0, le=120)
    execution_history_capacity: int = Field(default=200, ge=1, le=10_000)

    # Outcome monitor
    monitoring_window_seconds: float = Field(default=30.0, ge=1, le=600)
    max_monitoring_window_seconds: float = Field(default=60.0, ge=1, le=1200)
    monitor_sweep_interval_seconds: float = Field(default=1.0, ge=0.1, le=60)
    expired_outcome_confidence: float = Field(default=0.3, ge=0, le=1)
    max_tracked_decisions: int = Field(default=100, ge=1, le=10_000)

    # Default capability set
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2:latest"
    ollama_timeout_seconds: int = Field(default=15, ge=1, le=300)
    ollama_num_predict: int = Field(default=256, ge=32, le=4096)
    ollama_keep_alive: str = "5m"

    # Outbound events
    event_log_capacity: int = Field(default=1000, ge=10, le=100_000)
    alert_webhook_url: str = ""
    alert_webhook_timeout_seconds: int = Field(default=10, ge=2, le=60)
    alert_event_types_csv: str = "error,rule-adapted"

    replay_mode: Literal["realtime", "fast"] = "fast"

    @model_validator(mode="after")
    def validate_windows(self) -> "Settings":
        if self.pattern_window < self.pattern_min_history:
            raise ValueError("PATTERN_WINDOW must be at least PATTERN_MIN_HISTORY")
        if self.monitoring_window_seconds > self.max_monitoring_window_seconds:
            raise ValueError("MONITORING_WINDOW_SECONDS cannot exceed MAX_MONITORING_WINDOW_SECONDS")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("RETRY_MAX_DELAY_SECONDS must be at least RETRY_BASE_DELAY_SECONDS")
        return self


settings = Settings()
