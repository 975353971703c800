from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog


logger = structlog.get_logger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except ValueError:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


@dataclass(frozen=True)
class ScoutSettings:
    db_path: str = field(default_factory=lambda: _env_str("SCOUT_DB_PATH", "scout.db"))

    # Alerting is disabled entirely when no destination is configured.
    alert_url: str = field(default_factory=lambda: os.getenv("SCOUT_ALERT_URL", "").strip())
    alert_timeout_seconds: float = field(default_factory=lambda: _env_float("SCOUT_ALERT_TIMEOUT_SECONDS", 15.0))

    # Patrol loop.
    tick_seconds: float = field(default_factory=lambda: _env_float("SCOUT_TICK_SECONDS", 60.0))
    concurrency: int = field(default_factory=lambda: _env_int("SCOUT_CONCURRENCY", 20))
    request_timeout_seconds: float = field(default_factory=lambda: _env_float("SCOUT_REQUEST_TIMEOUT_SECONDS", 15.0))
    patrol_timeout_seconds: float = field(default_factory=lambda: _env_float("SCOUT_PATROL_TIMEOUT_SECONDS", 45.0))
    # IANA name used for work-time windows; empty means the host's local time.
    timezone: str = field(default_factory=lambda: os.getenv("SCOUT_TIMEZONE", "").strip())
    snapshot_retention_days: int = field(default_factory=lambda: _env_int("SCOUT_SNAPSHOT_RETENTION_DAYS", 30))

    api_host: str = field(default_factory=lambda: _env_str("SCOUT_API_HOST", "0.0.0.0"))
    api_port: int = field(default_factory=lambda: _env_int("SCOUT_API_PORT", 8120))
    log_level: str = field(default_factory=lambda: _env_str("LOG_LEVEL", "INFO"))

    @property
    def alerts_enabled(self) -> bool:
        return bool(self.alert_url)

    def load_timezone(self) -> tzinfo | None:
        if not self.timezone:
            return None
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            logger.warning("Unknown timezone, falling back to local time", timezone=self.timezone)
            return None


def get_settings() -> ScoutSettings:
    """Settings provider; re-reads the environment on every call."""
    return ScoutSettings()
