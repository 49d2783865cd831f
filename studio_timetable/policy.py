"""Admission checks consulted before any request changes state.

Every predicate is a plain function over data the caller already loaded and
returns ``True`` when the request may proceed. :func:`require` turns a failed
predicate into :class:`~studio_timetable.errors.ValidationFailed` carrying the
predicate's name.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Collection, Iterable, Optional, Union
from zoneinfo import ZoneInfo

from .errors import ValidationFailed
from .models import ClassRef, MakeupRequest, OccupancyResult, RosterAssignment, Slot, SlotFlags
from .occupancy import week_dates

CAPACITY_OK = "CapacityOK"
TIME_CUTOFF_OK = "TimeCutoffOK"
NO_SELF_CONFLICT = "NoSelfConflict"
ONE_ACTIVE_HOLDING = "OneActiveHoldingPerCycle"
MAKEUP_QUOTA_OK = "MakeupQuotaOK"
NO_DUPLICATE_ORIGINAL = "NoDuplicateOriginal"
NO_DUPLICATE_DESTINATION = "NoDuplicateDestination"
SLOT_ENABLED = "SlotEnabled"
SLOT_UNLOCKED = "SlotUnlocked"
NOT_HOLIDAY = "NotHoliday"
DISTINCT_CLASSES = "DistinctClasses"
OWNS_ORIGINAL = "OwnsOriginal"
DESIRED_SLOT_FULL = "DesiredSlotFull"
NO_DUPLICATE_WAITLIST = "NoDuplicateWaitlist"
WAITLIST_NOTIFIED = "WaitlistNotified"
VALID_RANGE = "ValidDateRange"
COVERS_OCCURRENCE = "CoversOccurrence"
SLOT_MEETS = "SlotMeetsOnDate"


def require(ok: bool, predicate: str, message: str = "") -> None:
    if not ok:
        raise ValidationFailed(predicate, message)


def capacity_ok(occupancy: OccupancyResult) -> bool:
    return not occupancy.disabled and occupancy.seats_available > 0


def time_cutoff_ok(ref: ClassRef, margin_minutes: int, now: datetime, tz: ZoneInfo) -> bool:
    """True while ``now`` is earlier than the class start minus the margin."""
    return now < ref.slot.start_on(ref.date, tz) - timedelta(minutes=margin_minutes)


def no_self_conflict(
    assignments: Iterable[RosterAssignment],
    target: Slot,
    *,
    on: Optional[date] = None,
    vacating: Union[ClassRef, Slot, None] = None,
) -> bool:
    """False when the student already holds ``target`` themselves.

    With ``on`` only an assignment whose enrollment covers that date counts.
    ``vacating`` is the slot (waitlist) or occurrence (makeup) the same
    request gives up, which does not conflict with itself.
    """
    for assignment in assignments:
        if assignment.slot != target:
            continue
        if on is not None and not assignment.covers(on):
            continue
        if isinstance(vacating, Slot) and vacating == target:
            continue
        if isinstance(vacating, ClassRef) and vacating == ClassRef(on, target):
            continue
        return False
    return True


def one_active_holding_per_cycle(active_holdings: Collection) -> bool:
    return len(active_holdings) == 0


def week_holiday_count(
    assignments: Iterable[RosterAssignment], week_of: date, holidays: Collection[date]
) -> int:
    """The student's own occurrences in ``week_of``'s week that fall on a holiday."""
    count = 0
    days = week_dates(week_of)
    for assignment in assignments:
        day = days[assignment.slot.day]
        if assignment.covers(day) and day in holidays:
            count += 1
    return count


def makeup_quota_ok(active_count: int, weekly_frequency: int, holiday_count: int) -> bool:
    return active_count < max(0, weekly_frequency - holiday_count)


def no_duplicate_original(active_makeups: Iterable[MakeupRequest], original: ClassRef) -> bool:
    return all(m.original != original for m in active_makeups)


def no_duplicate_destination(active_makeups: Iterable[MakeupRequest], makeup: ClassRef) -> bool:
    return all(m.makeup != makeup for m in active_makeups)


def slot_enabled(flags: SlotFlags) -> bool:
    return not flags.disabled


def slot_unlocked(flags: SlotFlags, day: date, today: date) -> bool:
    return not flags.is_locked(day, today)


def distinct_classes(original: ClassRef, makeup: ClassRef) -> bool:
    return original != makeup


def owns_original(assignments: Iterable[RosterAssignment], original: ClassRef) -> bool:
    return any(
        a.slot == original.slot and a.covers(original.date) and a.slot.occurs_on(original.date)
        for a in assignments
    )
