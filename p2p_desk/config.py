"""
Trade Desk - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the trade desk core.

Values come from dataclass defaults, optionally overridden by
environment variables (a local .env file is honoured).

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv


# ============================================================
# LIFECYCLE CONFIGURATION
# ============================================================

@dataclass
class LifecycleConfig:
    """Offer lifecycle configuration."""

    default_ttl_hours: float = 24.0
    """Offer lifetime when the creator gives none."""

    max_ttl_hours: float = 24.0 * 7
    """Upper bound for a creator-supplied lifetime."""

    notification_timeout_seconds: float = 10.0
    """Bound on each dispatcher call."""


# ============================================================
# KARMA CONFIGURATION
# ============================================================

@dataclass
class KarmaConfig:
    """
    Reputation deltas.

    Star ratings are banded so that 5 stars weighs like a positive
    vote and 1-2 stars like a negative one.
    """

    positive_delta: int = 2
    """Delta of a positive vote."""

    negative_delta: int = -1
    """Delta of a negative vote."""

    star_deltas: Dict[int, int] = field(default_factory=lambda: {
        5: 2,
        4: 1,
        3: 0,
        2: -1,
        1: -1,
    })
    """Delta applied per star rating."""

    direct_scope_id: int = 0
    """Scope used for trades that carry no group."""

    leaderboard_limit: int = 10


# ============================================================
# SWEEP CONFIGURATION
# ============================================================

@dataclass
class SweepConfig:
    """Expiration sweep configuration."""

    enabled: bool = True

    interval_seconds: float = 1800.0
    """Single sweep cadence (30 minutes)."""

    retract_expired: bool = True
    """Whether to retract announcements of expired offers."""


# ============================================================
# TELEGRAM CONFIGURATION
# ============================================================

@dataclass
class TelegramConfig:
    """Bot API delivery settings."""

    bot_token: str = ""
    broadcast_chat_ids: List[str] = field(default_factory=list)
    """Chats that receive offers with no scope."""

    request_timeout_seconds: float = 10.0
    max_per_minute: int = 20
    max_per_hour: int = 300

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

@dataclass
class DatabaseConfig:
    url: Optional[str] = None
    """Async URL; None falls back to DATABASE_URL."""

    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20


# ============================================================
# MAIN CONFIGURATION
# ============================================================

@dataclass
class DeskConfig:
    """Complete trade desk configuration."""

    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    karma: KarmaConfig = field(default_factory=KarmaConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> "DeskConfig":
        """Build configuration from the environment (and .env)."""
        load_dotenv()

        config = cls()
        config.database.url = os.getenv("DATABASE_URL") or None
        config.telegram.bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
        config.telegram.broadcast_chat_ids = [
            chat_id.strip()
            for chat_id in os.getenv("TELEGRAM_CHAT_IDS", "").split(",")
            if chat_id.strip()
        ]

        ttl = os.getenv("OFFER_TTL_HOURS")
        if ttl:
            config.lifecycle.default_ttl_hours = float(ttl)

        interval = os.getenv("SWEEP_INTERVAL_SECONDS")
        if interval:
            config.sweep.interval_seconds = float(interval)

        config.log_level = os.getenv("LOG_LEVEL", config.log_level)
        config.log_format = os.getenv("LOG_FORMAT", config.log_format)
        return config

    @classmethod
    def for_testing(cls) -> "DeskConfig":
        """In-process configuration: sqlite, no Telegram, no sweep loop."""
        return cls(
            lifecycle=LifecycleConfig(notification_timeout_seconds=1.0),
            sweep=SweepConfig(enabled=False, interval_seconds=0.05),
            telegram=TelegramConfig(),
            database=DatabaseConfig(url="sqlite+aiosqlite://"),
            log_level="DEBUG",
        )
