from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class Window:
    """Half-open interval [start, end). Both ends are timezone-aware."""

    start: datetime
    end: datetime

    def overlaps(self, other: "Window") -> bool:
        return self.start < other.end and other.start < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class PostalPoint:
    postal_code: str
    city: str
    state: str
    county: Optional[str]
    lat: float
    lon: float


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float


def normalize_postal_code(code) -> str:
    # CSV readers turn "07030" into 7030
    s = str(code).strip()
    if s.isdigit() and len(s) < 5:
        s = s.zfill(5)
    return s


def load_postal_csv(path: str) -> Tuple[Dict[str, PostalPoint], List[str]]:
    df = pd.read_csv(path, dtype={"postal_code": str})
    required = {"postal_code", "city", "state", "latitude", "longitude"}
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"postal_locations.csv missing columns: {missing}")

    points: Dict[str, PostalPoint] = {}
    codes_in_order: List[str] = []

    for _, r in df.iterrows():
        code = normalize_postal_code(r["postal_code"])
        county = r["county"] if "county" in df.columns else None
        point = PostalPoint(
            postal_code=code,
            city=str(r["city"]).strip(),
            state=str(r["state"]).strip().upper(),
            county=None if county is None or pd.isna(county) else str(county).strip(),
            lat=float(r["latitude"]),
            lon=float(r["longitude"]),
        )
        if not (-90.0 <= point.lat <= 90.0 and -180.0 <= point.lon <= 180.0):
            raise ValueError(f"postal_locations.csv: bad coordinates for {code}")
        if code not in points:
            codes_in_order.append(code)
        points[code] = point

    return points, codes_in_order


def coordinate_matrix(points: Dict[str, PostalPoint], codes: List[str]) -> np.ndarray:
    """(n, 2) array of [lat, lon] in the order of ``codes``."""
    if not codes:
        return np.empty((0, 2), dtype=float)
    return np.array([[points[c].lat, points[c].lon] for c in codes], dtype=float)
