from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def scheduled_minutes(clock: str | None) -> int:
    """Minutes since local midnight for an ``HH:MM`` string, ``-1`` when unset."""
    if not clock:
        return -1
    hours_text, _, minutes_text = clock.strip().partition(":")
    hours = int(hours_text)
    minutes = int(minutes_text)
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"invalid clock value: {clock!r}")
    return hours * 60 + minutes


class LocalClock:
    """Calendar-day and wall-clock view of a UTC instant in one fixed zone."""

    def __init__(self, timezone_name: str, *, now: Callable[[], datetime] = _now_utc) -> None:
        try:
            self._zone = ZoneInfo(timezone_name)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"unknown LOCAL_TIMEZONE: {timezone_name}") from exc
        self._now = now

    @property
    def zone(self) -> ZoneInfo:
        return self._zone

    def now_utc(self) -> datetime:
        return self._now()

    def localize(self, instant: datetime | None = None) -> datetime:
        value = instant or self._now()
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(self._zone)

    def today(self, instant: datetime | None = None) -> str:
        return self.localize(instant).strftime("%Y-%m-%d")

    def now_clock(self, instant: datetime | None = None) -> str:
        return self.localize(instant).strftime("%H:%M")

    def minutes_since_midnight(self, instant: datetime | None = None) -> int:
        local = self.localize(instant)
        return local.hour * 60 + local.minute
