"""
Shift clock.

Nightlife shifts run past midnight, so a shift is named after the
calendar day it started on and the business day rolls over at noon
local time rather than at midnight. A 2am event belongs to last
night's shift.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo

ROLLOVER_HOUR = 12


def shift_date(moment: datetime, tz: tzinfo | None = None) -> str:
    """Return the ISO shift date (``YYYY-MM-DD``) a timestamp belongs to.

    Args:
        moment: The timestamp. Naive values are taken as local wall time.
        tz: Venue timezone used for aware timestamps (default: system local)

    Returns:
        The shift date string
    """
    if moment.tzinfo is not None:
        moment = moment.astimezone(tz)
    if moment.hour < ROLLOVER_HOUR:
        moment = moment - timedelta(days=1)
    return moment.date().isoformat()


@dataclass(frozen=True)
class RolloverContext:
    """Everything a rollover check needs, passed in explicitly each tick."""

    active_shift_date: str
    now: datetime


@dataclass(frozen=True)
class RolloverCheck:
    previous_shift_date: str
    current_shift_date: str

    @property
    def rolled_over(self) -> bool:
        return self.previous_shift_date != self.current_shift_date


def check_rollover(context: RolloverContext, tz: tzinfo | None = None) -> RolloverCheck:
    """Compare the active shift with the shift ``context.now`` falls in."""
    return RolloverCheck(
        previous_shift_date=context.active_shift_date,
        current_shift_date=shift_date(context.now, tz),
    )


class ShiftClock:
    """Source of "now" and of the current shift date.

    The time source is injectable so callers and tests can drive the
    clock across a rollover boundary.
    """

    def __init__(self, now: Callable[[], datetime] | None = None, tz: tzinfo | None = None):
        self._now = now or (lambda: datetime.now().astimezone())
        self.tz = tz

    def now(self) -> datetime:
        return self._now()

    def current_shift_date(self) -> str:
        return shift_date(self.now(), self.tz)

    def check(self, active_shift_date: str) -> RolloverCheck:
        return check_rollover(RolloverContext(active_shift_date=active_shift_date, now=self.now()), self.tz)
