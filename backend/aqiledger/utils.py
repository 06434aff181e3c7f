from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone


@dataclass(frozen=True)
class BatchWindow:
    start: datetime
    end: datetime
    hour_index: int

    def as_dict(self) -> dict:
        return {"start": self.start, "end": self.end, "hour_index": self.hour_index}


def ensure_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def batch_window_for(ts: datetime) -> BatchWindow:
    start = ensure_utc(ts).replace(minute=0, second=0, microsecond=0)
    return BatchWindow(start=start, end=start + timedelta(hours=1), hour_index=start.hour)


def build_reading_id(device_id: str, window: BatchWindow) -> str:
    return f"{device_id}_{window.start:%Y%m%d}_H{window.hour_index:02d}"


def month_bounds(day: date) -> tuple[datetime, datetime]:
    """Half-open UTC bounds of the calendar month containing *day*."""

    start = datetime(day.year, day.month, 1, tzinfo=timezone.utc)
    if day.month == 12:
        end = datetime(day.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(day.year, day.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def previous_month_bounds(now: datetime) -> tuple[datetime, datetime]:
    first_of_this_month = ensure_utc(now).date().replace(day=1)
    return month_bounds(first_of_this_month - timedelta(days=1))
