from . import (
    routes_availability,
    routes_bookings,
    routes_catalog,
)

__all__ = [
    "routes_bookings",
    "routes_availability",
    "routes_catalog",
]
