import logging
from typing import Any, Mapping, Optional

from geopy.distance import geodesic

from ..schemas_extra import PostalCodeArea, RadiusArea
from .data import GeoPoint, normalize_postal_code
from .postal import PostalLocationIndex

logger = logging.getLogger(__name__)


def _coord(address: Mapping[str, Any], key: str) -> Optional[float]:
    raw = address.get(key)
    if raw is None or raw == "":
        return None
    return float(raw)


class DistanceResolver:
    """Road-equivalent miles from the company origin to an address.

    Distance is an enrichment: anything unresolvable comes back as ``None``
    and is logged, never raised.
    """

    def __init__(
        self,
        index: PostalLocationIndex,
        origin_lat: float,
        origin_lng: float,
        road_factor: float = 1.0,
    ):
        self.index = index
        self.origin = GeoPoint(origin_lat, origin_lng)
        self.road_factor = road_factor

    def miles_between(self, a: GeoPoint, b: GeoPoint) -> float:
        return geodesic((a.lat, a.lon), (b.lat, b.lon)).miles * self.road_factor

    def locate(self, address: Mapping[str, Any]) -> Optional[GeoPoint]:
        """Explicit lat/lng first, then the postal code, else None."""
        try:
            lat = _coord(address, "latitude")
            lng = _coord(address, "longitude")
            if lat is not None and lng is not None:
                if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
                    logger.warning("Ignoring out-of-range coordinates %s,%s", lat, lng)
                else:
                    return GeoPoint(lat, lng)
            point = self.index.lookup(address.get("postal_code"))
            if point is not None:
                return GeoPoint(point.lat, point.lon)
        except (TypeError, ValueError) as exc:
            logger.warning("Address location failed: %s", exc)
        return None

    def resolve(self, address: Mapping[str, Any]) -> Optional[float]:
        point = self.locate(address)
        if point is None:
            logger.warning(
                "Distance unknown for postal_code=%s", address.get("postal_code")
            )
            return None
        return round(self.miles_between(self.origin, point), 2)

    def postal_code_of(self, address: Mapping[str, Any]) -> Optional[str]:
        code = address.get("postal_code")
        if code:
            return normalize_postal_code(code)
        point = self.locate(address)
        if point is None:
            return None
        nearest = self.index.nearest(point.lat, point.lon)
        return nearest.postal_code if nearest else None

    def base_of(self, vehicle) -> GeoPoint:
        if vehicle.base_lat is not None and vehicle.base_lng is not None:
            return GeoPoint(float(vehicle.base_lat), float(vehicle.base_lng))
        point = self.index.lookup(vehicle.base_postal_code)
        if point is not None:
            return GeoPoint(point.lat, point.lon)
        return self.origin

    def covers(self, vehicle, address: Mapping[str, Any]) -> Optional[bool]:
        """Whether the vehicle's service area covers the address.

        None when the vehicle has no service area or the address cannot be
        placed; callers treat that as eligible.
        """
        area = vehicle.service_area
        if area is None:
            return None
        if isinstance(area, PostalCodeArea):
            code = self.postal_code_of(address)
            if code is None:
                return None
            allowed = {normalize_postal_code(c) for c in area.postal_codes}
            return code in allowed or code.split("-", 1)[0] in allowed
        if isinstance(area, RadiusArea):
            point = self.locate(address)
            if point is None:
                return None
            return self.miles_between(self.base_of(vehicle), point) <= area.max_radius_miles
        return None
