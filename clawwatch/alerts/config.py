"""Alert evaluation configuration.

Controls how often rules are evaluated and the defaults applied when a
rule omits an optional parameter. All settings can be overridden via
``ALERTS_*`` environment variables.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AlertConfig(BaseSettings):
    """Configuration for the rule evaluator."""

    model_config = SettingsConfigDict(
        env_prefix="ALERTS_",
        case_sensitive=False,
        extra="ignore",
    )

    evaluation_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Seconds between periodic evaluation passes",
    )
    default_window_minutes: float = Field(
        default=60.0,
        gt=0.0,
        description="Window used by custom thresholds and session loops without one",
    )
    session_loop_token_threshold: int = Field(
        default=500_000,
        ge=1,
        description="Tokens per session within the window that count as a loop",
    )
    activity_lookback_hours: float = Field(
        default=168.0,
        gt=0.0,
        description="Agents and channels silent for longer are no longer tracked",
    )
