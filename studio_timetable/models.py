"""Data models for slots, roster assignments and overlay records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Set
from zoneinfo import ZoneInfo

CAPACITY = 7
CLASS_MINUTES = 90

# Cutoff margins in minutes before a class starts.
HOLDING_MARGIN = 60
MAKEUP_DESTINATION_MARGIN = 30
VACATE_MARGIN = 10
STARTED_MARGIN = 0

# Sheet schedule codes use Korean day characters, Monday first.
DAY_CODES = "월화수목금"
DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri"]

# Record statuses
ACTIVE = "active"
CANCELLED = "cancelled"
COMPLETED = "completed"
WAITING = "waiting"
NOTIFIED = "notified"
ACCEPTED = "accepted"

# Occupancy tags
HOLDING = "holding"
ABSENCE = "absence"
AGREED_ABSENCE = "agreed-absence"
MAKEUP_OUT = "makeup-out"
MAKEUP_IN = "makeup-in"


@dataclass(frozen=True)
class Period:
    number: int
    start: time
    minutes: int = CLASS_MINUTES
    bookable: bool = True


PERIODS: Dict[int, Period] = {
    1: Period(1, time(10, 0)),
    2: Period(2, time(12, 0)),
    3: Period(3, time(15, 0), minutes=120, bookable=False),  # free training
    4: Period(4, time(18, 0)),
    5: Period(5, time(19, 50)),
    6: Period(6, time(21, 40)),
}
CLASS_PERIODS = [p.number for p in PERIODS.values() if p.bookable]


@dataclass(frozen=True, order=True)
class Slot:
    """A recurring weekly class: weekday (0=Mon, as ``date.weekday()``) and period."""

    day: int
    period: int

    def __post_init__(self) -> None:
        if not 0 <= self.day < len(DAY_CODES):
            raise ValueError(f"day must be Mon-Fri, got {self.day}")
        if self.period not in CLASS_PERIODS:
            raise ValueError(f"period {self.period} is not a class period")

    @property
    def code(self) -> str:
        return f"{DAY_CODES[self.day]}{self.period}"

    @property
    def label(self) -> str:
        return f"{DAY_NAMES[self.day]} P{self.period}"

    @classmethod
    def from_code(cls, code: str) -> "Slot":
        code = code.strip()
        if code[:3] in DAY_NAMES:
            day, rest = DAY_NAMES.index(code[:3]), code[3:].strip().lstrip("Pp-")
        elif code[:1] and code[0] in DAY_CODES:
            day, rest = DAY_CODES.index(code[0]), code[1:].lstrip("-")
        else:
            raise ValueError(f"unrecognised slot code: {code!r}")
        return cls(day, int(rest))

    def occurs_on(self, day: date) -> bool:
        return day.weekday() == self.day

    def start_on(self, day: date, tz: ZoneInfo) -> datetime:
        return datetime.combine(day, PERIODS[self.period].start, tz)

    def end_on(self, day: date, tz: ZoneInfo) -> datetime:
        return self.start_on(day, tz) + timedelta(minutes=PERIODS[self.period].minutes)


def all_slots() -> List[Slot]:
    return [Slot(day, period) for period in CLASS_PERIODS for day in range(len(DAY_CODES))]


@dataclass(frozen=True)
class ClassRef:
    """One occurrence of a slot on a calendar date."""

    date: date
    slot: Slot

    @property
    def label(self) -> str:
        return f"{self.slot.label} {self.date.isoformat()}"


@dataclass
class RosterAssignment:
    student_id: str
    slot: Slot
    enrollment_start: date
    enrollment_end: date

    def covers(self, day: date) -> bool:
        return self.enrollment_start <= day <= self.enrollment_end


@dataclass
class RosterStudent:
    student_id: str
    weekly_frequency: int
    assignments: List[RosterAssignment] = field(default_factory=list)
    agreed_absences: List[date] = field(default_factory=list)
    notes: str = ""
    row: Optional[int] = None  # sheet row number, 1-based


@dataclass
class HoldingRecord:
    id: str
    student_id: str
    start: date
    end: date
    status: str = ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def covers(self, day: date) -> bool:
        return self.status == ACTIVE and self.start <= day <= self.end


@dataclass
class AbsenceRecord:
    id: str
    student_id: str
    date: date
    status: str = ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class MakeupRequest:
    id: str
    student_id: str
    original: ClassRef
    makeup: ClassRef
    status: str = ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class WaitlistRequest:
    id: str
    student_id: str
    current_slot: Slot
    desired_slot: Slot
    status: str = WAITING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class HolidayRecord:
    date: date
    reason: str = ""


@dataclass
class SlotFlags:
    slot: Slot
    disabled: bool = False
    locked_on: Optional[date] = None

    def is_locked(self, day: date, today: date) -> bool:
        """A lock applies to its own date only and lapses once that date has passed."""
        return self.locked_on is not None and self.locked_on == day and day >= today


@dataclass
class CapacityConflictRecord:
    slot: Slot
    date: date
    request_id: str
    seats_used: int
    capacity: int
    detected_at: Optional[datetime] = None


@dataclass
class OccupancyResult:
    slot: Slot
    date: date
    capacity: int
    attending: Set[str] = field(default_factory=set)
    displaced: Dict[str, str] = field(default_factory=dict)
    arrivals: Dict[str, str] = field(default_factory=dict)
    pending_start: Set[str] = field(default_factory=set)
    seats_used: int = 0
    seats_available: int = 0
    is_full: bool = False
    disabled: bool = False
    holiday: Optional[str] = None
