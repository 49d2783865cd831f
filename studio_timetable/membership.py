"""Enrollment arithmetic: holding extensions, session counts, history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Collection, Iterable, List, Optional, Tuple

from .models import (
    ABSENCE,
    AGREED_ABSENCE,
    COMPLETED,
    HOLDING,
    MAKEUP_IN,
    MAKEUP_OUT,
    ACTIVE,
    AbsenceRecord,
    ClassRef,
    HoldingRecord,
    MakeupRequest,
    RosterAssignment,
    RosterStudent,
)

SESSION_WEEKS = 4
# Upper bound for walking the calendar when a schedule cannot complete.
MAX_SEARCH_DAYS = 366 * 2

ATTENDED = "attended"


def occurrences(
    assignments: Iterable[RosterAssignment], start: date, end: date
) -> List[ClassRef]:
    """Every class the assignments put on the calendar between two dates."""
    assignments = list(assignments)
    found: List[ClassRef] = []
    day = start
    while day <= end:
        for a in assignments:
            if a.slot.occurs_on(day) and a.covers(day):
                found.append(ClassRef(day, a.slot))
        day += timedelta(days=1)
    found.sort(key=lambda ref: (ref.date, ref.slot.period))
    return found


def suppressed_occurrences(
    assignments: Iterable[RosterAssignment],
    start: date,
    end: date,
    holidays: Collection[date] = (),
) -> List[ClassRef]:
    """Occurrences a holding over ``start``..``end`` takes away.

    Holidays are skipped since no class would have run on them anyway.
    """
    return [ref for ref in occurrences(assignments, start, end) if ref.date not in holidays]


def extended_end_date(
    start: date,
    total_sessions: int,
    class_weekdays: Collection[int],
    holding: Optional[Tuple[date, date]] = None,
    holidays: Collection[date] = (),
) -> Optional[date]:
    """Date of the last of ``total_sessions`` class days counted from ``start``.

    Days inside ``holding`` and holidays do not count, which pushes the end
    date out by the number of sessions they suppress.
    """
    if not class_weekdays or total_sessions <= 0:
        return None
    count = 0
    day = start
    for _ in range(MAX_SEARCH_DAYS):
        held = holding is not None and holding[0] <= day <= holding[1]
        if day.weekday() in class_weekdays and not held and day not in holidays:
            count += 1
            if count == total_sessions:
                return day
        day += timedelta(days=1)
    return None


@dataclass
class MembershipStats:
    student_id: str
    start: Optional[date]
    end: Optional[date]
    weekly_frequency: int
    total_sessions: int
    completed_sessions: int
    remaining_sessions: int
    remaining_holding: int
    attendance_count: int


def enrollment_window(student: RosterStudent) -> Tuple[Optional[date], Optional[date]]:
    if not student.assignments:
        return None, None
    return (
        min(a.enrollment_start for a in student.assignments),
        max(a.enrollment_end for a in student.assignments),
    )


def holdings_in_cycle(
    student: RosterStudent, holdings: Iterable[HoldingRecord]
) -> List[HoldingRecord]:
    """Active holdings that overlap the student's current enrollment window.

    A holding from an earlier enrollment does not count against a later one.
    """
    start, end = enrollment_window(student)
    if start is None:
        return []
    return [
        h
        for h in holdings
        if h.status == ACTIVE
        and h.student_id == student.student_id
        and h.start <= end
        and h.end >= start
    ]


def membership_stats(
    student: RosterStudent,
    today: date,
    holdings: Iterable[HoldingRecord] = (),
    holidays: Collection[date] = (),
) -> MembershipStats:
    start, _ = enrollment_window(student)
    total = student.weekly_frequency * SESSION_WEEKS
    active = holdings_in_cycle(student, holdings)
    holding = (active[0].start, active[0].end) if active else None
    weekdays = {a.slot.day for a in student.assignments}

    end = extended_end_date(start, total, weekdays, holding, holidays) if start else None
    if start is None or start > today:
        completed = 0
        held = 0
    else:
        past = [
            ref
            for ref in occurrences(
                [_open_ended(a) for a in student.assignments], start, today
            )
            if ref.date not in holidays
        ]
        completed = len(past)
        held = len([r for r in past if holding and holding[0] <= r.date <= holding[1]])
    return MembershipStats(
        student_id=student.student_id,
        start=start,
        end=end,
        weekly_frequency=student.weekly_frequency,
        total_sessions=total,
        completed_sessions=completed,
        remaining_sessions=max(0, total - completed),
        remaining_holding=0 if active else 1,
        attendance_count=max(0, completed - held),
    )


def _open_ended(assignment: RosterAssignment) -> RosterAssignment:
    return RosterAssignment(
        assignment.student_id, assignment.slot, assignment.enrollment_start, date.max
    )


@dataclass
class HistoryEntry:
    ref: ClassRef
    kind: str  # "regular" or "makeup"
    status: str


def attendance_history(
    student: RosterStudent,
    today: date,
    *,
    holdings: Iterable[HoldingRecord] = (),
    absences: Iterable[AbsenceRecord] = (),
    makeups: Iterable[MakeupRequest] = (),
    holidays: Collection[date] = (),
    limit: int = 10,
) -> List[HistoryEntry]:
    """Most recent past classes for ``student``, newest first."""
    start, _ = enrollment_window(student)
    holdings = [h for h in holdings if h.status == ACTIVE]
    absent_days = {a.date for a in absences if a.status == ACTIVE}
    makeups = [m for m in makeups if m.status in (ACTIVE, COMPLETED)]
    moved_out = {m.original for m in makeups}

    entries: List[HistoryEntry] = []
    if start is not None:
        for ref in occurrences(student.assignments, start, today):
            if ref.date in holidays:
                continue
            if any(h.covers(ref.date) for h in holdings):
                status = HOLDING
            elif ref.date in absent_days:
                status = ABSENCE
            elif ref.date in student.agreed_absences:
                status = AGREED_ABSENCE
            elif ref in moved_out:
                status = MAKEUP_OUT
            else:
                status = ATTENDED
            entries.append(HistoryEntry(ref, "regular", status))
    for m in makeups:
        if m.makeup.date <= today:
            entries.append(HistoryEntry(m.makeup, "makeup", MAKEUP_IN))
    entries.sort(key=lambda e: (e.ref.date, e.ref.slot.period), reverse=True)
    return entries[:limit]
