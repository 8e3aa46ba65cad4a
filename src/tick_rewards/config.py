"""Runtime configuration for sync, rewards and the remote client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_DB_PATH = ".tick_rewards.db"
DEFAULT_API_BASE_URL = "https://api.ticktick.com/open/v1"


@dataclass(slots=True)
class RemoteSettings:
    """TickTick Open API settings."""

    access_token: str | None = None
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class SyncSettings:
    """Reconciliation and polling settings."""

    poll_seconds: float = 180.0
    max_backoff_factor: int = 5
    classifier_concurrency: int = 4
    rollover_min_delta_seconds: int = 60
    cursor_guard_seconds: float = 1.0
    initial_lookback_hours: int = 168
    evidence_fallback: bool = True
    timezone: str | None = None
    recent_buffer_size: int = 100


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        return cls(
            db_path=db_path or Path(os.getenv("TICK_REWARDS_DB_PATH", DEFAULT_DB_PATH)),
            remote=RemoteSettings(
                access_token=os.getenv("TICK_REWARDS_ACCESS_TOKEN", "").strip() or None,
                api_base_url=os.getenv("TICK_REWARDS_API_BASE_URL", DEFAULT_API_BASE_URL),
                request_timeout_seconds=float(
                    os.getenv("TICK_REWARDS_REQUEST_TIMEOUT_SECONDS", "30"),
                ),
                max_retries=int(os.getenv("TICK_REWARDS_MAX_RETRIES", "3")),
            ),
            sync=SyncSettings(
                poll_seconds=float(os.getenv("TICK_REWARDS_POLL_SECONDS", "180")),
                max_backoff_factor=int(os.getenv("TICK_REWARDS_MAX_BACKOFF_FACTOR", "5")),
                classifier_concurrency=int(
                    os.getenv("TICK_REWARDS_CLASSIFIER_CONCURRENCY", "4"),
                ),
                rollover_min_delta_seconds=int(
                    os.getenv("TICK_REWARDS_ROLLOVER_MIN_DELTA_SECONDS", "60"),
                ),
                cursor_guard_seconds=float(os.getenv("TICK_REWARDS_CURSOR_GUARD_SECONDS", "1")),
                initial_lookback_hours=int(
                    os.getenv("TICK_REWARDS_INITIAL_LOOKBACK_HOURS", "168"),
                ),
                evidence_fallback=_env_bool("TICK_REWARDS_EVIDENCE_FALLBACK", default=True),
                timezone=os.getenv("TICK_REWARDS_TIMEZONE", "").strip() or None,
                recent_buffer_size=int(os.getenv("TICK_REWARDS_RECENT_BUFFER_SIZE", "100")),
            ),
        )

    def local_tz(self) -> tzinfo | None:
        """Zone for weekday and time-range scopes; None means system local time."""

        if self.sync.timezone is None:
            return None
        try:
            return ZoneInfo(self.sync.timezone)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(
                f"TICK_REWARDS_TIMEZONE is not a known time zone: {self.sync.timezone!r}",
            ) from error

    def validate_for_sync(self) -> None:
        """Raise configuration error if a sync cannot run with these settings."""

        if not self.remote.access_token:
            raise ValueError(
                "An access token is required. Set TICK_REWARDS_ACCESS_TOKEN.",
            )
        parsed = urlparse(self.remote.api_base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid TICK_REWARDS_API_BASE_URL: "
                f"{self.remote.api_base_url!r}. Expected an absolute http(s) URL.",
            )
        if self.remote.request_timeout_seconds <= 0:
            raise ValueError("TICK_REWARDS_REQUEST_TIMEOUT_SECONDS must be > 0.")
        if self.remote.max_retries < 0:
            raise ValueError("TICK_REWARDS_MAX_RETRIES must be >= 0.")
        if self.sync.poll_seconds <= 0:
            raise ValueError("TICK_REWARDS_POLL_SECONDS must be > 0.")
        if self.sync.max_backoff_factor < 1:
            raise ValueError("TICK_REWARDS_MAX_BACKOFF_FACTOR must be >= 1.")
        if self.sync.classifier_concurrency <= 0:
            raise ValueError("TICK_REWARDS_CLASSIFIER_CONCURRENCY must be > 0.")
        if self.sync.rollover_min_delta_seconds <= 0:
            raise ValueError("TICK_REWARDS_ROLLOVER_MIN_DELTA_SECONDS must be > 0.")
        if self.sync.cursor_guard_seconds < 0:
            raise ValueError("TICK_REWARDS_CURSOR_GUARD_SECONDS must be >= 0.")
        if self.sync.initial_lookback_hours <= 0:
            raise ValueError("TICK_REWARDS_INITIAL_LOOKBACK_HOURS must be > 0.")
        if self.sync.recent_buffer_size <= 0:
            raise ValueError("TICK_REWARDS_RECENT_BUFFER_SIZE must be > 0.")
        self.local_tz()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
