import logging
from typing import Dict, Iterable, List, Optional

import numpy as np
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models import PostalLocation
from .data import PostalPoint, coordinate_matrix, load_postal_csv, normalize_postal_code
from .utils import haversine_miles_many

logger = logging.getLogger(__name__)


class PostalLocationIndex:
    """In-memory postal code -> point lookup.

    Built once at startup (from the ``postal_locations`` table or the seed CSV)
    so distance resolution never touches the database on the commit path.
    """

    def __init__(self, points: Dict[str, PostalPoint], codes: Optional[List[str]] = None):
        self.points = points
        self.codes = list(codes) if codes is not None else list(points.keys())
        self._coords = coordinate_matrix(points, self.codes)

    def __len__(self) -> int:
        return len(self.points)

    def __contains__(self, code) -> bool:
        return self.lookup(code) is not None

    @classmethod
    def from_csv(cls, path: str) -> "PostalLocationIndex":
        points, codes = load_postal_csv(path)
        logger.info("Loaded %d postal locations from %s", len(points), path)
        return cls(points, codes)

    @classmethod
    def from_rows(cls, rows: Iterable[PostalLocation]) -> "PostalLocationIndex":
        points: Dict[str, PostalPoint] = {}
        for r in rows:
            code = normalize_postal_code(r.postal_code)
            points[code] = PostalPoint(
                postal_code=code,
                city=r.city,
                state=r.state,
                county=r.county,
                lat=float(r.latitude),
                lon=float(r.longitude),
            )
        return cls(points)

    @classmethod
    def from_session(cls, db: Session) -> "PostalLocationIndex":
        rows = db.execute(select(PostalLocation)).scalars().all()
        logger.info("Loaded %d postal locations from database", len(rows))
        return cls.from_rows(rows)

    def lookup(self, postal_code) -> Optional[PostalPoint]:
        if postal_code is None:
            return None
        code = normalize_postal_code(postal_code)
        if not code:
            return None
        point = self.points.get(code)
        if point is None and "-" in code:
            # ZIP+4
            point = self.points.get(code.split("-", 1)[0])
        return point

    def nearest(self, lat: float, lon: float) -> Optional[PostalPoint]:
        """Closest known postal code to a bare coordinate."""
        if not self.codes:
            return None
        d = haversine_miles_many(lat, lon, self._coords)
        return self.points[self.codes[int(np.argmin(d))]]
