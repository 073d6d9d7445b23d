# booking_backend/settings.py
import logging
import os
from dataclasses import dataclass, field
from datetime import time
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent  # project root

logger = logging.getLogger(__name__)


def _safe_int(env_var: str, default: str) -> int:
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer for {env_var}: {raw!r}") from None


def _safe_float(env_var: str, default: str) -> float:
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid float for {env_var}: {raw!r}") from None


def _safe_bool(env_var: str, default: str) -> bool:
    raw = os.getenv(env_var, default).strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean for {env_var}: {raw!r}")


def _safe_time(env_var: str, default: str) -> time:
    """Parse an HH:MM wall-clock time."""
    raw = os.getenv(env_var, default)
    try:
        return time.fromisoformat(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid HH:MM time for {env_var}: {raw!r}") from None


def _safe_weekdays(env_var: str, default: str) -> Tuple[int, ...]:
    """Comma separated weekday numbers, Monday=0 ... Sunday=6."""
    raw = os.getenv(env_var, default)
    try:
        days = tuple(int(x) for x in raw.split(",") if x.strip())
    except ValueError:
        raise ValueError(f"Invalid weekday list for {env_var}: {raw!r}") from None
    return days


@dataclass
class Settings:
    # === business calendar ===
    TIMEZONE: str = os.getenv("BOOKING_TIMEZONE", "America/New_York")
    DEFAULT_OPEN_TIME: time = _safe_time("DEFAULT_OPEN_TIME", "08:00")
    DEFAULT_CLOSE_TIME: time = _safe_time("DEFAULT_CLOSE_TIME", "17:00")
    CLOSED_WEEKDAYS: Tuple[int, ...] = field(
        default_factory=lambda: _safe_weekdays("CLOSED_WEEKDAYS", "5,6")
    )

    # === booking horizon ===
    MIN_LEAD_TIME_MIN: int = _safe_int("MIN_LEAD_TIME_MIN", "120")
    MAX_ADVANCE_DAYS: int = _safe_int("MAX_ADVANCE_DAYS", "30")
    SLOT_LENGTH_MIN: int = _safe_int("SLOT_LENGTH_MIN", "120")

    # === distance (HQ origin, Hoboken NJ) ===
    ORIGIN_LAT: float = _safe_float("ORIGIN_LAT", "40.7439")
    ORIGIN_LNG: float = _safe_float("ORIGIN_LNG", "-74.0324")
    ROAD_FACTOR: float = _safe_float("ROAD_FACTOR", "1.0")
    DATA_POSTAL_PATH: str = os.getenv(
        "DATA_POSTAL_PATH", str(BASE_DIR / "data" / "postal_locations.csv")
    )

    # === assignment & commit ===
    AUTO_ASSIGN: bool = _safe_bool("AUTO_ASSIGN", "true")
    MAX_COMMIT_RETRIES: int = _safe_int("MAX_COMMIT_RETRIES", "3")
    RETRY_BACKOFF_SEC: float = _safe_float("RETRY_BACKOFF_SEC", "0.05")
    LOCK_TIMEOUT_SEC: float = _safe_float("LOCK_TIMEOUT_SEC", "5.0")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


def validate_settings(cfg: Settings) -> None:
    """Range-check configuration values; raises ValueError naming the field."""
    if cfg.DEFAULT_OPEN_TIME >= cfg.DEFAULT_CLOSE_TIME:
        raise ValueError(
            f"DEFAULT_OPEN_TIME must be before DEFAULT_CLOSE_TIME, "
            f"got {cfg.DEFAULT_OPEN_TIME}-{cfg.DEFAULT_CLOSE_TIME}"
        )
    for day in cfg.CLOSED_WEEKDAYS:
        if not 0 <= day <= 6:
            raise ValueError(f"CLOSED_WEEKDAYS entries must be 0..6, got {day}")
    if cfg.MIN_LEAD_TIME_MIN < 0:
        raise ValueError(f"MIN_LEAD_TIME_MIN must be >= 0, got {cfg.MIN_LEAD_TIME_MIN}")
    if cfg.MAX_ADVANCE_DAYS < 1:
        raise ValueError(f"MAX_ADVANCE_DAYS must be >= 1, got {cfg.MAX_ADVANCE_DAYS}")
    if cfg.SLOT_LENGTH_MIN < 15:
        raise ValueError(f"SLOT_LENGTH_MIN must be >= 15, got {cfg.SLOT_LENGTH_MIN}")
    if not -90.0 <= cfg.ORIGIN_LAT <= 90.0 or not -180.0 <= cfg.ORIGIN_LNG <= 180.0:
        raise ValueError(
            f"ORIGIN_LAT/ORIGIN_LNG out of range: {cfg.ORIGIN_LAT}, {cfg.ORIGIN_LNG}"
        )
    if cfg.ROAD_FACTOR < 1.0:
        raise ValueError(f"ROAD_FACTOR must be >= 1.0, got {cfg.ROAD_FACTOR}")
    if cfg.MAX_COMMIT_RETRIES < 1:
        raise ValueError(
            f"MAX_COMMIT_RETRIES must be >= 1, got {cfg.MAX_COMMIT_RETRIES}"
        )
    if cfg.LOCK_TIMEOUT_SEC <= 0:
        raise ValueError(f"LOCK_TIMEOUT_SEC must be > 0, got {cfg.LOCK_TIMEOUT_SEC}")


settings = Settings()
validate_settings(settings)
