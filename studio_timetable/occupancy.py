"""Who actually attends a slot on a date.

:func:`compute_occupancy` merges the recurring roster with the overlay
records. It only reads; sweeps that move records between statuses are run by
the lifecycle layer before it is called.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import List

from .models import (
    ABSENCE,
    AGREED_ABSENCE,
    CAPACITY,
    COMPLETED,
    HOLDING,
    MAKEUP_IN,
    MAKEUP_OUT,
    ACTIVE,
    OccupancyResult,
    Slot,
)
from . import overlay
from .overlay import OverlayStore
from .roster import Roster


def week_dates(week_start: date) -> List[date]:
    """Monday to Friday of the week containing ``week_start``."""
    monday = week_start - timedelta(days=week_start.weekday())
    return [monday + timedelta(days=i) for i in range(5)]


def occurrence_date(slot: Slot, week_start: date) -> date:
    return week_dates(week_start)[slot.day]


def compute_occupancy(
    slot: Slot,
    day: date,
    *,
    roster: Roster,
    store: OverlayStore,
    capacity: int = CAPACITY,
) -> OccupancyResult:
    if not slot.occurs_on(day):
        raise ValueError(f"{slot.label} does not meet on {day:%a %Y-%m-%d}")
    holiday = store.holiday(day)
    result = OccupancyResult(
        slot=slot,
        date=day,
        capacity=capacity,
        holiday=holiday.reason if holiday else None,
    )
    if store.slot_flags(slot).disabled:
        result.disabled = True
        return result

    attending = set()
    for assignment in roster.list_assignments(slot):
        if day < assignment.enrollment_start:
            result.pending_start.add(assignment.student_id)
        elif assignment.covers(day):
            attending.add(assignment.student_id)

    for holding in store.list_active(overlay.HOLDING, where=lambda h: h.covers(day)):
        if holding.student_id in attending:
            attending.discard(holding.student_id)
            result.displaced[holding.student_id] = HOLDING

    for absence in store.list_active(overlay.ABSENCE, date=day):
        if absence.student_id in attending:
            attending.discard(absence.student_id)
            result.displaced[absence.student_id] = ABSENCE
    for student_id in list(attending):
        if day in roster.student(student_id).agreed_absences:
            attending.discard(student_id)
            result.displaced[student_id] = AGREED_ABSENCE

    makeups = store.list(overlay.MAKEUP, where=lambda m: m.status in (ACTIVE, COMPLETED))
    for request in makeups:
        if request.status == ACTIVE and request.original.slot == slot and request.original.date == day:
            if request.student_id in attending:
                attending.discard(request.student_id)
                result.displaced[request.student_id] = MAKEUP_OUT
    for request in makeups:
        if request.makeup.slot == slot and request.makeup.date == day:
            attending.add(request.student_id)
            result.arrivals[request.student_id] = MAKEUP_IN

    result.attending = attending
    result.seats_used = len(attending)
    result.seats_available = max(0, capacity - result.seats_used)
    result.is_full = result.seats_available == 0
    return result


def roster_occupancy(
    slot: Slot,
    today: date,
    *,
    roster: Roster,
    store: OverlayStore,
    capacity: int = CAPACITY,
) -> OccupancyResult:
    """Recurring occupancy of ``slot`` from the roster alone.

    Date-specific holding, absence and makeup records are ignored; every
    assignment that has not ended by ``today`` holds its seat, including ones
    that have not started yet.
    """
    result = OccupancyResult(slot=slot, date=today, capacity=capacity)
    if store.slot_flags(slot).disabled:
        result.disabled = True
        return result
    for assignment in roster.list_assignments(slot):
        if assignment.enrollment_end < today:
            continue
        if assignment.enrollment_start > today:
            result.pending_start.add(assignment.student_id)
        result.attending.add(assignment.student_id)
    result.seats_used = len(result.attending)
    result.seats_available = max(0, capacity - result.seats_used)
    result.is_full = result.seats_available == 0
    return result
