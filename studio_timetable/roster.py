"""Roster provider: recurring student-to-slot assignments.

Sheet rows are normalised once, on load, into :class:`RosterStudent` objects.
Header spellings vary between monthly sheets (``"요일 및 시간"`` vs
``"요일\\n및 시간"``), so headers are compared with whitespace removed.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Dict, Iterable, List, Optional

from .api import APIClient
from .errors import NotFound, ValidationFailed
from .models import RosterAssignment, RosterStudent, Slot
from .util import format_schedule, format_sheet_date, parse_schedule, parse_sheet_date

logger = logging.getLogger(__name__)

HEADER_FIELDS = {
    "이름": "name",
    "name": "name",
    "주횟수": "weekly_frequency",
    "weeklyfrequency": "weekly_frequency",
    "요일및시간": "schedule",
    "schedule": "schedule",
    "시작날짜": "start",
    "startdate": "start",
    "종료날짜": "end",
    "enddate": "end",
    "합의결석": "agreed_absence",
    "결석합의": "agreed_absence",
    "agreedabsence": "agreed_absence",
    "특이사항": "notes",
    "notes": "notes",
    "홀딩사용여부": "holding_used",
    "홀딩시작일": "holding_start",
    "홀딩종료일": "holding_end",
}
HOLDING_USED_MARK = "O"
DEFAULT_WEEKLY_FREQUENCY = 2

_ABSENCE_DATE = re.compile(
    r"(?P<y>\d{4})[-./](?P<m>\d{1,2})[-./](?P<d>\d{1,2})"
    r"|(?<!\d)(?P<digits>\d{8}|\d{6})(?!\d)"
    r"|(?<![\d/])(?P<sm>\d{1,2})/(?P<sd>\d{1,2})(?![\d/])"
)


def normalize_header(header: str) -> str:
    return re.sub(r"\s+", "", str(header)).lower()


def canonical_fields(headers: List[str]) -> Dict[str, int]:
    """Map canonical field names to column indexes; the first match wins."""
    columns: Dict[str, int] = {}
    for index, header in enumerate(headers):
        name = HEADER_FIELDS.get(normalize_header(header))
        if name and name not in columns:
            columns[name] = index
    return columns


def parse_agreed_absences(text: str | None, reference: date) -> List[date]:
    """Extract dates from a free-text agreed-absence note.

    ``M/D`` dates take the year of ``reference`` (the enrollment start), rolling
    into the next year when that would land before it.
    """
    if not text:
        return []
    found: List[date] = []
    for match in _ABSENCE_DATE.finditer(text):
        try:
            if match.group("y"):
                day = date(int(match.group("y")), int(match.group("m")), int(match.group("d")))
            elif match.group("digits"):
                day = parse_sheet_date(match.group("digits"))
                if day is None:
                    continue
            else:
                month, dom = int(match.group("sm")), int(match.group("sd"))
                day = date(reference.year, month, dom)
                if day < reference:
                    day = date(reference.year + 1, month, dom)
        except ValueError:
            logger.warning("Ignoring invalid date %r in note %r", match.group(0), text)
            continue
        if day not in found:
            found.append(day)
    return found


def parse_rows(rows: List[List[str]]) -> List[RosterStudent]:
    """Turn raw sheet rows (title, header, then data) into roster students."""
    if not rows or len(rows) < 2:
        return []
    columns = canonical_fields(rows[1])
    if "name" not in columns:
        raise ValueError("roster sheet has no name column")

    def cell(row: List[str], name: str) -> str:
        index = columns.get(name)
        if index is None or index >= len(row):
            return ""
        return str(row[index] or "").strip()

    students: List[RosterStudent] = []
    for offset, row in enumerate(rows[2:]):
        name = cell(row, "name")
        if not name:
            continue
        slots = parse_schedule(cell(row, "schedule"))
        start = parse_sheet_date(cell(row, "start"))
        end = parse_sheet_date(cell(row, "end"))
        freq_cell = cell(row, "weekly_frequency")
        if freq_cell.isdigit():
            frequency = int(freq_cell)
        else:
            frequency = len(slots) or DEFAULT_WEEKLY_FREQUENCY
        assignments: List[RosterAssignment] = []
        if start and end:
            assignments = [RosterAssignment(name, slot, start, end) for slot in slots]
        elif slots:
            logger.warning("Student %s has no enrollment dates; skipping schedule", name)
        students.append(
            RosterStudent(
                student_id=name,
                weekly_frequency=frequency,
                assignments=assignments,
                agreed_absences=parse_agreed_absences(
                    cell(row, "agreed_absence"), start or date.today()
                ),
                notes=cell(row, "notes"),
                row=offset + 3,
            )
        )
    return students


class Roster:
    """In-memory roster of recurring assignments keyed by student."""

    def __init__(self, students: Iterable[RosterStudent] = ()) -> None:
        self._students: Dict[str, RosterStudent] = {}
        for student in students:
            self.add_student(student)

    def add_student(self, student: RosterStudent) -> None:
        if student.student_id in self._students:
            logger.warning("Duplicate roster entry for %s; keeping the first", student.student_id)
            return
        self._students[student.student_id] = student

    def students(self) -> List[RosterStudent]:
        return list(self._students.values())

    def student(self, student_id: str) -> RosterStudent:
        try:
            return self._students[student_id]
        except KeyError:
            raise NotFound(f"unknown student {student_id}") from None

    def list_assignments(self, slot: Slot) -> List[RosterAssignment]:
        return [
            a
            for s in self._students.values()
            for a in s.assignments
            if a.slot == slot
        ]

    def assignments_for(self, student_id: str) -> List[RosterAssignment]:
        return list(self.student(student_id).assignments)

    def find_assignment(self, student_id: str, slot: Slot) -> Optional[RosterAssignment]:
        for a in self.student(student_id).assignments:
            if a.slot == slot:
                return a
        return None

    def rewrite_assignment_slot(
        self, student_id: str, old_slot: Slot, new_slot: Slot
    ) -> RosterAssignment:
        """Move a student's recurring assignment from ``old_slot`` to ``new_slot``."""
        assignment = self.find_assignment(student_id, old_slot)
        if assignment is None:
            raise NotFound(f"{student_id} has no assignment in {old_slot.label}")
        if self.find_assignment(student_id, new_slot) is not None:
            raise ValidationFailed("NoSelfConflict", f"{student_id} already holds {new_slot.label}")
        assignment.slot = new_slot
        try:
            self._persist(self.student(student_id))
        except Exception:
            assignment.slot = old_slot
            raise
        logger.info("Moved %s from %s to %s", student_id, old_slot.label, new_slot.label)
        return assignment

    def drop_assignment(self, student_id: str, slot: Slot) -> None:
        """Remove a recurring assignment, e.g. when a student leaves a class."""
        student = self.student(student_id)
        assignment = self.find_assignment(student_id, slot)
        if assignment is None:
            raise NotFound(f"{student_id} has no assignment in {slot.label}")
        student.assignments.remove(assignment)
        try:
            self._persist(student)
        except Exception:
            student.assignments.append(assignment)
            raise
        logger.info("Dropped %s from %s", student_id, slot.label)

    def record_holding(
        self, student_id: str, start: date, end: date, new_end: Optional[date]
    ) -> None:
        """Hook for providers that keep holding dates next to the roster row."""

    def _persist(self, student: RosterStudent) -> None:
        """Hook for providers backed by external storage."""


def _column_letter(index: int) -> str:
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


class SheetRoster(Roster):
    """Roster loaded from, and written back to, a monthly registration sheet."""

    def __init__(self, client: APIClient, sheet_name: str) -> None:
        super().__init__()
        self.client = client
        self.sheet_name = sheet_name
        self._columns: Dict[str, int] = {}

    @property
    def sheet_range(self) -> str:
        return f"{self.sheet_name}!A:Z"

    def _cell(self, field: str, row: int) -> str:
        return f"{self.sheet_name}!{_column_letter(self._columns[field])}{row}"

    def load(self) -> "SheetRoster":
        rows = self.client.read_range(self.sheet_range)
        self._students.clear()
        self._columns = canonical_fields(rows[1]) if len(rows) >= 2 else {}
        for student in parse_rows(rows):
            self.add_student(student)
        logger.info("Loaded %d students from %s", len(self._students), self.sheet_name)
        return self

    def record_holding(
        self, student_id: str, start: date, end: date, new_end: Optional[date]
    ) -> None:
        """Mark the holding as used and write its dates and the new end date.

        Columns missing from the sheet are skipped; the overlay keeps the
        holding either way.
        """
        row = self.student(student_id).row
        if row is None:
            raise NotFound(f"no sheet row for {student_id} in {self.sheet_name}")
        values = {
            "holding_used": HOLDING_USED_MARK,
            "holding_start": format_sheet_date(start),
            "holding_end": format_sheet_date(end),
        }
        if new_end is not None:
            values["end"] = format_sheet_date(new_end)
        updates = [
            {"range": self._cell(field, row), "values": [[value]]}
            for field, value in values.items()
            if field in self._columns
        ]
        if not updates:
            logger.warning("No holding columns in %s; %s not recorded", self.sheet_name, student_id)
            return
        self.client.batch_update(updates)
        logger.info("Recorded holding for %s in %s row %d", student_id, self.sheet_name, row)

    def _persist(self, student: RosterStudent) -> None:
        if "schedule" not in self._columns or student.row is None:
            raise NotFound(f"no schedule cell for {student.student_id} in {self.sheet_name}")
        self.client.write_range(
            self._cell("schedule", student.row),
            [[format_schedule([a.slot for a in student.assignments])]],
        )
