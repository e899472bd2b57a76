"""heartbot configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class ReminderWindowConfig(BaseModel):
    """Tolerance window in minutes-until-due for one automatic reminder marker."""

    marker: str
    label: str
    min_minutes: int
    max_minutes: int


def _default_reminder_windows() -> list[ReminderWindowConfig]:
    return [
        ReminderWindowConfig(marker="24h", label="in 24 hours", min_minutes=1425, max_minutes=1455),
        ReminderWindowConfig(marker="2h", label="in 2 hours", min_minutes=105, max_minutes=135),
        ReminderWindowConfig(marker="15min", label="in 15 minutes", min_minutes=0, max_minutes=20),
    ]


class HeartbeatConfig(BaseModel):
    """Tick cadence, eligibility windows and dedup lookbacks (heartbeat.*)."""

    enabled: bool = True
    interval_minutes: int = 15
    window_minutes: int = 15
    daily_lookback_hours: int = 20
    weekly_lookback_hours: int = 144  # 6 days
    nudge_lookback_hours: int = 24
    job_batch_size: int = 50
    reminder_lookahead_minutes: int = 15
    reminder_batch_size: int = 50
    reminder_list_cap: int = 10
    nudge_list_cap: int = 3
    reminder_windows: list[ReminderWindowConfig] = Field(
        default_factory=_default_reminder_windows
    )

    @model_validator(mode="after")
    def _window_covers_tick(self) -> HeartbeatConfig:
        # A narrower window lets slots fall between two ticks
        if self.window_minutes < self.interval_minutes:
            raise ValueError(
                f"heartbeat.window_minutes ({self.window_minutes}) must be >= "
                f"heartbeat.interval_minutes ({self.interval_minutes})"
            )
        for w in self.reminder_windows:
            if w.min_minutes > w.max_minutes:
                raise ValueError(f"reminder window {w.marker}: min_minutes > max_minutes")
        return self


class AgentCooldownConfig(BaseModel):
    """Minimum minutes between two runs of the same (agent, user) per schedule class."""

    every_tick: int = 12
    daily: int = 20 * 60
    weekly: int = 6 * 24 * 60


class AgentsConfig(BaseModel):
    enabled: bool = True
    cooldowns: AgentCooldownConfig = Field(default_factory=AgentCooldownConfig)


# Channels
class TelegramChannelConfig(BaseModel):
    enabled: bool = False
    bot_token: str = ""


class ChannelsConfig(BaseModel):
    default: str = "telegram"
    telegram: TelegramChannelConfig = Field(default_factory=TelegramChannelConfig)


class GatewayConfig(BaseModel):
    """Delivery gateway behaviour (gateway.*)."""

    preview_chars: int = 200
    queue_batch_size: int = 50
    enforce_daily_limit: bool = True


# API
class ApiConfig(BaseModel):
    """HTTP entrypoint. Empty api_key = no key check."""

    api_key: str = ""


# Database
class DatabaseConfig(BaseModel):
    path: str = "data/heartbot.db"


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings — env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        HEARTBOT_HEARTBEAT__INTERVAL_MINUTES=5
        HEARTBOT_DATABASE__PATH=data/prod.db
        HEARTBOT_CHANNELS__TELEGRAM__BOT_TOKEN=123:abc
    """

    model_config = SettingsConfigDict(
        env_prefix="HEARTBOT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # YAML arrives as init kwargs; env must still win over it
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # ── Computed properties ─────────────────────────────────

    @property
    def api_key_required(self) -> bool:
        """True when an API key is configured for the HTTP entrypoint."""
        return bool(self.api.api_key)

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)
