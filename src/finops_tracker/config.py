"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_TIMEZONE = "Asia/Kolkata"


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".finops_tracker" / "finops.db")
    timezone: str = DEFAULT_TIMEZONE
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    sla_interval: float = 300.0
    daily_interval: float = 3600.0
    notify_timeout: float = 10.0
    overdue_cooldown: int = 30

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("FT_DB_PATH"):
            config.db_path = Path(db)

        if tz := os.environ.get("FT_TIMEZONE"):
            config.timezone = tz

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("FT_SLACK_CHANNEL")

        if interval := os.environ.get("FT_SLA_INTERVAL"):
            config.sla_interval = float(interval)

        if interval := os.environ.get("FT_DAILY_INTERVAL"):
            config.daily_interval = float(interval)

        if timeout := os.environ.get("FT_NOTIFY_TIMEOUT"):
            config.notify_timeout = float(timeout)

        if cooldown := os.environ.get("FT_OVERDUE_COOLDOWN"):
            config.overdue_cooldown = int(cooldown)

        return config


def get_config() -> Config:
    return Config.from_env()
