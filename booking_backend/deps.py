# booking_backend/deps.py
import logging
import os
from functools import lru_cache

from sqlalchemy.exc import SQLAlchemyError

from .database import SessionLocal, get_db  # noqa: F401  (re-exported for routers)
from .engine.postal import PostalLocationIndex
from .engine.scheduler import BookingScheduler
from .settings import settings

logger = logging.getLogger(__name__)


def load_postal_index() -> PostalLocationIndex:
    """Postal reference data: the database table first, the seed CSV otherwise."""
    try:
        with SessionLocal() as db:
            index = PostalLocationIndex.from_session(db)
    except SQLAlchemyError as exc:
        logger.warning("postal_locations table unavailable: %s", exc)
        index = PostalLocationIndex({})
    if len(index) == 0 and os.path.exists(settings.DATA_POSTAL_PATH):
        index = PostalLocationIndex.from_csv(settings.DATA_POSTAL_PATH)
    if len(index) == 0:
        logger.warning("No postal reference data; distances will be unknown")
    return index


@lru_cache
def get_scheduler() -> BookingScheduler:
    return BookingScheduler(SessionLocal, settings, index=load_postal_index())
