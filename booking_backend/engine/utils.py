# utils.py
from __future__ import annotations

import hashlib
from datetime import datetime, timezone, tzinfo
from typing import Iterable, List

import numpy as np

EARTH_RADIUS_MILES = 3958.8


def haversine_miles_many(lat: float, lon: float, coords: np.ndarray) -> np.ndarray:
    """Great-circle miles from (lat, lon) to every row of an (n, 2) [lat, lon] array.

    For ranking only; DistanceResolver reports geodesic miles.
    """
    if coords.size == 0:
        return np.empty(0, dtype=float)
    lat1 = np.radians(lat)
    lon1 = np.radians(lon)
    lat2 = np.radians(coords[:, 0])
    lon2 = np.radians(coords[:, 1])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    c = 2 * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))
    return EARTH_RADIUS_MILES * c


def as_aware(value: datetime, tz: tzinfo) -> datetime:
    """Attach ``tz`` to naive datetimes; aware ones are returned unchanged."""
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value


def to_utc(value: datetime, tz: tzinfo) -> datetime:
    return as_aware(value, tz).astimezone(timezone.utc)


def lock_key_hash(key: str) -> int:
    """Stable signed 64-bit id for a lock key (pg_advisory_xact_lock takes bigint)."""
    digest = hashlib.md5(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def sorted_keys(keys: Iterable[str]) -> List[str]:
    """Deduplicated keys in acquisition order."""
    return sorted({k for k in keys if k})
