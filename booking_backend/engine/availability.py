import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..errors import (
    AdvanceTooFarError,
    InsufficientNoticeError,
    InvalidWindowError,
    OutOfHoursError,
)
from ..models import AvailabilityOverride
from ..settings import Settings
from .data import Window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DayHours:
    date: date
    open: time
    close: time
    closed: bool
    reason: Optional[str] = None
    source: str = "default"  # 'override' | 'default'

    def as_details(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "open": self.open.isoformat(timespec="minutes"),
            "close": self.close.isoformat(timespec="minutes"),
            "closed": self.closed,
            "reason": self.reason,
        }


class AvailabilityCalendar:
    def __init__(self, cfg: Settings):
        self.cfg = cfg
        self.tz = ZoneInfo(cfg.TIMEZONE)

    # ---------- hours ----------
    def resolve_hours(self, db: Session, day: date) -> DayHours:
        ov = db.get(AvailabilityOverride, day)
        if ov is not None:
            if ov.closed:
                return DayHours(
                    day,
                    self.cfg.DEFAULT_OPEN_TIME,
                    self.cfg.DEFAULT_CLOSE_TIME,
                    True,
                    ov.reason,
                    "override",
                )
            open_t = ov.open_time or self.cfg.DEFAULT_OPEN_TIME
            close_t = ov.close_time or self.cfg.DEFAULT_CLOSE_TIME
            if open_t >= close_t:
                logger.warning(
                    "Override for %s has open %s >= close %s, treating as closed",
                    day,
                    open_t,
                    close_t,
                )
                return DayHours(day, open_t, close_t, True, ov.reason, "override")
            return DayHours(day, open_t, close_t, False, ov.reason, "override")

        closed = day.weekday() in self.cfg.CLOSED_WEEKDAYS
        return DayHours(
            day,
            self.cfg.DEFAULT_OPEN_TIME,
            self.cfg.DEFAULT_CLOSE_TIME,
            closed,
            day.strftime("%A") if closed else None,
        )

    def local_date(self, moment: datetime) -> date:
        return moment.astimezone(self.tz).date()

    def at(self, day: date, t: time) -> datetime:
        return datetime.combine(day, t, tzinfo=self.tz)

    # ---------- validation ----------
    def check_shape(self, window: Window) -> None:
        if window.end <= window.start:
            raise InvalidWindowError(
                "Window end must be after start",
                {
                    "field": "window",
                    "start": window.start.isoformat(),
                    "end": window.end.isoformat(),
                },
            )

    def validate_window(self, db: Session, window: Window, now: datetime) -> DayHours:
        self.check_shape(window)

        day = self.local_date(window.start)
        hours = self.resolve_hours(db, day)
        if hours.closed:
            raise OutOfHoursError(
                f"Closed on {day.isoformat()}"
                + (f" ({hours.reason})" if hours.reason else ""),
                hours.as_details(),
            )
        # last instant inside [start, end) must be on the same calendar date
        if self.local_date(window.end - timedelta(microseconds=1)) != day:
            raise OutOfHoursError(
                "Window spans more than one calendar date", hours.as_details()
            )
        if window.start < self.at(day, hours.open) or window.end > self.at(
            day, hours.close
        ):
            raise OutOfHoursError(
                f"Window must fall within {hours.open:%H:%M}-{hours.close:%H:%M} "
                f"on {day.isoformat()}",
                hours.as_details(),
            )

        earliest = now + timedelta(minutes=self.cfg.MIN_LEAD_TIME_MIN)
        if window.start < earliest:
            raise InsufficientNoticeError(
                f"Bookings need at least {self.cfg.MIN_LEAD_TIME_MIN} minutes notice",
                {"earliest_start": earliest.isoformat()},
            )
        latest = now + timedelta(days=self.cfg.MAX_ADVANCE_DAYS)
        if window.start > latest:
            raise AdvanceTooFarError(
                f"Bookings can be made at most {self.cfg.MAX_ADVANCE_DAYS} days ahead",
                {"latest_start": latest.isoformat()},
            )
        return hours

    # ---------- slots ----------
    def candidate_windows(
        self, db: Session, day: date, now: datetime
    ) -> tuple[DayHours, List[Window]]:
        """Hourly-starting slots of SLOT_LENGTH_MIN that fit the day's hours."""
        hours = self.resolve_hours(db, day)
        if hours.closed:
            return hours, []

        slot = timedelta(minutes=self.cfg.SLOT_LENGTH_MIN)
        earliest = now + timedelta(minutes=self.cfg.MIN_LEAD_TIME_MIN)
        latest = now + timedelta(days=self.cfg.MAX_ADVANCE_DAYS)
        close_dt = self.at(day, hours.close)

        windows: List[Window] = []
        start = self.at(day, hours.open)
        while start + slot <= close_dt:
            if earliest <= start <= latest:
                windows.append(Window(start, start + slot))
            start += timedelta(hours=1)
        return hours, windows
