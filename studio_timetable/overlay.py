"""Overlay store: holding, absence, makeup and waitlist records plus slot flags.

Records are never deleted; they move through their statuses and stay
queryable. Every write that can change who attends a (slot, date) bumps that
occurrence's generation so admission can detect a concurrent change before it
commits.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .errors import NotFound, StaleGeneration
from .models import (
    ACTIVE,
    NOTIFIED,
    WAITING,
    AbsenceRecord,
    CapacityConflictRecord,
    ClassRef,
    HolidayRecord,
    HoldingRecord,
    MakeupRequest,
    Slot,
    SlotFlags,
    WaitlistRequest,
)

logger = logging.getLogger(__name__)

HOLDING = "holding"
ABSENCE = "absence"
MAKEUP = "makeup"
WAITLIST = "waitlist"

OPEN_STATUSES = {
    HOLDING: {ACTIVE},
    ABSENCE: {ACTIVE},
    MAKEUP: {ACTIVE},
    WAITLIST: {WAITING, NOTIFIED},
}


def _slot(data: dict) -> Slot:
    return Slot(data["day"], data["period"])


def _class_ref(data: dict) -> ClassRef:
    return ClassRef(date.fromisoformat(data["date"]), _slot(data["slot"]))


def _timestamp(value: str | None) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _decode(entity_type: str, data: dict) -> Any:
    stamps = {
        "created_at": _timestamp(data.get("created_at")),
        "updated_at": _timestamp(data.get("updated_at")),
    }
    if entity_type == HOLDING:
        return HoldingRecord(
            data["id"],
            data["student_id"],
            date.fromisoformat(data["start"]),
            date.fromisoformat(data["end"]),
            data["status"],
            **stamps,
        )
    if entity_type == ABSENCE:
        return AbsenceRecord(
            data["id"], data["student_id"], date.fromisoformat(data["date"]), data["status"], **stamps
        )
    if entity_type == MAKEUP:
        return MakeupRequest(
            data["id"],
            data["student_id"],
            _class_ref(data["original"]),
            _class_ref(data["makeup"]),
            data["status"],
            **stamps,
        )
    return WaitlistRequest(
        data["id"],
        data["student_id"],
        _slot(data["current_slot"]),
        _slot(data["desired_slot"]),
        data["status"],
        **stamps,
    )


def _json_default(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"cannot serialise {type(value).__name__}")


class OverlayStore:
    """Thread-safe in-process store, optionally persisted to a JSON file."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._records: Dict[str, Dict[str, Any]] = {
            HOLDING: {},
            ABSENCE: {},
            MAKEUP: {},
            WAITLIST: {},
        }
        self._holidays: Dict[date, HolidayRecord] = {}
        self._flags: Dict[Slot, SlotFlags] = {}
        self._conflicts: List[CapacityConflictRecord] = []
        self._occurrence_gen: Dict[Tuple[Slot, date], int] = {}
        self._date_gen: Dict[date, int] = {}
        self._slot_gen: Dict[Slot, int] = {}
        if self.path and self.path.exists():
            self.load()

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the store lock for a read-decide-write sequence."""
        with self._lock:
            yield

    @staticmethod
    def new_id(entity_type: str) -> str:
        return f"{entity_type}-{uuid.uuid4().hex[:12]}"

    # -- generations ----------------------------------------------------

    def generation(self, slot: Slot, day: date) -> int:
        with self._lock:
            return (
                self._occurrence_gen.get((slot, day), 0)
                + self._date_gen.get(day, 0)
                + self._slot_gen.get(slot, 0)
            )

    def _bump_occurrence(self, ref: ClassRef) -> None:
        key = (ref.slot, ref.date)
        self._occurrence_gen[key] = self._occurrence_gen.get(key, 0) + 1

    def _bump_dates(self, start: date, end: date) -> None:
        day = start
        while day <= end:
            self._date_gen[day] = self._date_gen.get(day, 0) + 1
            day += timedelta(days=1)

    def _bump_slot(self, slot: Slot) -> None:
        self._slot_gen[slot] = self._slot_gen.get(slot, 0) + 1

    def _touch(self, entity_type: str, record: Any) -> None:
        if entity_type == HOLDING:
            self._bump_dates(record.start, record.end)
        elif entity_type == ABSENCE:
            self._bump_dates(record.date, record.date)
        elif entity_type == MAKEUP:
            self._bump_occurrence(record.original)
            self._bump_occurrence(record.makeup)
        else:
            self._bump_slot(record.current_slot)
            self._bump_slot(record.desired_slot)

    # -- records --------------------------------------------------------

    def add(
        self,
        entity_type: str,
        record: Any,
        *,
        guard: Optional[Tuple[Slot, date]] = None,
        expected_generation: Optional[int] = None,
    ) -> Any:
        """Insert ``record``; with ``guard`` the write only lands if that
        occurrence is still at ``expected_generation``."""
        with self._lock:
            if guard is not None and expected_generation is not None:
                actual = self.generation(*guard)
                if actual != expected_generation:
                    raise StaleGeneration(expected_generation, actual)
            self._records[entity_type][record.id] = record
            self._touch(entity_type, record)
            self.save()
        return record

    def get(self, entity_type: str, record_id: str) -> Any:
        with self._lock:
            try:
                return self._records[entity_type][record_id]
            except KeyError:
                raise NotFound(f"no {entity_type} record {record_id}") from None

    def find(self, record_id: str) -> Tuple[str, Any]:
        with self._lock:
            for entity_type, records in self._records.items():
                if record_id in records:
                    return entity_type, records[record_id]
        raise NotFound(f"no record {record_id}")

    def set_status(
        self, entity_type: str, record_id: str, status: str, when: Optional[datetime] = None
    ) -> Any:
        with self._lock:
            record = self.get(entity_type, record_id)
            record.status = status
            record.updated_at = when
            self._touch(entity_type, record)
            self.save()
        logger.info("%s %s -> %s", entity_type, record_id, status)
        return record

    def list(self, entity_type: str, where: Optional[Callable[[Any], bool]] = None, **filters: Any) -> List[Any]:
        with self._lock:
            records = list(self._records[entity_type].values())
        return [
            r
            for r in records
            if all(getattr(r, k) == v for k, v in filters.items())
            and (where is None or where(r))
        ]

    def list_active(
        self, entity_type: str, where: Optional[Callable[[Any], bool]] = None, **filters: Any
    ) -> List[Any]:
        """Records of ``entity_type`` that have not reached a terminal status."""
        open_statuses = OPEN_STATUSES[entity_type]
        return [r for r in self.list(entity_type, where, **filters) if r.status in open_statuses]

    # -- holidays -------------------------------------------------------

    def add_holiday(self, day: date, reason: str = "") -> HolidayRecord:
        with self._lock:
            record = HolidayRecord(day, reason)
            self._holidays[day] = record
            self._bump_dates(day, day)
            self.save()
        logger.info("Holiday added: %s %s", day, reason)
        return record

    def remove_holiday(self, day: date) -> None:
        with self._lock:
            if self._holidays.pop(day, None) is None:
                raise NotFound(f"no holiday on {day}")
            self._bump_dates(day, day)
            self.save()
        logger.info("Holiday removed: %s", day)

    def holiday(self, day: date) -> Optional[HolidayRecord]:
        with self._lock:
            return self._holidays.get(day)

    def holidays(self) -> List[HolidayRecord]:
        with self._lock:
            return sorted(self._holidays.values(), key=lambda h: h.date)

    # -- slot flags -----------------------------------------------------

    def slot_flags(self, slot: Slot) -> SlotFlags:
        with self._lock:
            return self._flags.get(slot) or SlotFlags(slot)

    def toggle_disabled(self, slot: Slot) -> bool:
        with self._lock:
            flags = self._flags.setdefault(slot, SlotFlags(slot))
            flags.disabled = not flags.disabled
            self._bump_slot(slot)
            self.save()
        logger.info("Slot %s disabled=%s", slot.label, flags.disabled)
        return flags.disabled

    def toggle_locked(self, slot: Slot, day: date) -> bool:
        """Lock ``slot`` on ``day``, or unlock it if it is already locked then."""
        with self._lock:
            flags = self._flags.setdefault(slot, SlotFlags(slot))
            flags.locked_on = None if flags.locked_on == day else day
            self._bump_slot(slot)
            self.save()
        locked = flags.locked_on is not None
        logger.info("Slot %s locked=%s on %s", slot.label, locked, day)
        return locked

    def clear_expired_locks(self, today: date) -> List[Slot]:
        cleared: List[Slot] = []
        with self._lock:
            for flags in self._flags.values():
                if flags.locked_on is not None and flags.locked_on < today:
                    flags.locked_on = None
                    cleared.append(flags.slot)
            if cleared:
                self.save()
        for slot in cleared:
            logger.info("Lock on %s expired", slot.label)
        return cleared

    # -- conflicts ------------------------------------------------------

    def flag_conflict(self, conflict: CapacityConflictRecord) -> None:
        with self._lock:
            self._conflicts.append(conflict)
            self.save()
        logger.warning(
            "Capacity overshoot on %s %s: %d/%d (request %s)",
            conflict.slot.label,
            conflict.date,
            conflict.seats_used,
            conflict.capacity,
            conflict.request_id,
        )

    def conflicts(self) -> List[CapacityConflictRecord]:
        with self._lock:
            return list(self._conflicts)

    # -- persistence ----------------------------------------------------

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "records": {
                    kind: [dataclasses.asdict(r) for r in records.values()]
                    for kind, records in self._records.items()
                },
                "holidays": [dataclasses.asdict(h) for h in self._holidays.values()],
                "flags": [dataclasses.asdict(f) for f in self._flags.values()],
                "conflicts": [dataclasses.asdict(c) for c in self._conflicts],
            }

    def save(self) -> None:
        if not self.path:
            return
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, default=_json_default, ensure_ascii=False, indent=2)
            tmp.replace(self.path)

    def load(self) -> None:
        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        with self._lock:
            for kind, rows in data.get("records", {}).items():
                self._records[kind] = {row["id"]: _decode(kind, row) for row in rows}
            self._holidays = {
                date.fromisoformat(h["date"]): HolidayRecord(date.fromisoformat(h["date"]), h["reason"])
                for h in data.get("holidays", [])
            }
            self._flags = {}
            for f in data.get("flags", []):
                slot = _slot(f["slot"])
                locked_on = date.fromisoformat(f["locked_on"]) if f["locked_on"] else None
                self._flags[slot] = SlotFlags(slot, f["disabled"], locked_on)
            self._conflicts = [
                CapacityConflictRecord(
                    _slot(c["slot"]),
                    date.fromisoformat(c["date"]),
                    c["request_id"],
                    c["seats_used"],
                    c["capacity"],
                    _timestamp(c.get("detected_at")),
                )
                for c in data.get("conflicts", [])
            ]
        logger.debug("Loaded overlay state from %s", self.path)
