"""Request lifecycle: holding, absence, makeup and waitlist state machines.

:class:`ScheduleService` is the entry point callers use. Time-driven
transitions (makeup completion, waitlist notification, lock expiry) are swept
synchronously at the start of every occupancy read and admission decision,
since the roster and overlay can change underneath us without notice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from . import ics_builder, overlay, policy, util
from .errors import AlreadyStarted, AlreadyTerminal, CapacityConflict, NotFound
from .membership import (
    SESSION_WEEKS,
    attendance_history,
    enrollment_window,
    extended_end_date,
    holdings_in_cycle,
    membership_stats,
    occurrences,
    suppressed_occurrences,
)
from .models import (
    ACCEPTED,
    ACTIVE,
    CANCELLED,
    CAPACITY,
    COMPLETED,
    HOLDING_MARGIN,
    MAKEUP_DESTINATION_MARGIN,
    NOTIFIED,
    STARTED_MARGIN,
    VACATE_MARGIN,
    WAITING,
    AbsenceRecord,
    CapacityConflictRecord,
    ClassRef,
    HolidayRecord,
    HoldingRecord,
    MakeupRequest,
    OccupancyResult,
    Slot,
    WaitlistRequest,
    all_slots,
)
from .occupancy import compute_occupancy, roster_occupancy, week_dates
from .overlay import OverlayStore
from .roster import Roster

logger = logging.getLogger(__name__)


@dataclass
class HoldingResult:
    record: HoldingRecord
    suppressed: List[ClassRef]
    new_end_date: Optional[date]

    @property
    def suppressed_count(self) -> int:
        return len(self.suppressed)


class ScheduleService:
    def __init__(
        self,
        roster: Roster,
        store: OverlayStore,
        *,
        tz: ZoneInfo,
        clock: Optional[Callable[[], datetime]] = None,
        capacity: int = CAPACITY,
    ) -> None:
        self.roster = roster
        self.store = store
        self.tz = tz
        self.clock = clock or (lambda: util.now(tz))
        self.capacity = capacity

    def now(self) -> datetime:
        return self.clock().astimezone(self.tz)

    def today(self) -> date:
        return self.now().date()

    def _holiday_dates(self) -> set:
        return {h.date for h in self.store.holidays()}

    def _compute(self, slot: Slot, day: date) -> OccupancyResult:
        return compute_occupancy(
            slot, day, roster=self.roster, store=self.store, capacity=self.capacity
        )

    def _roster_compute(self, slot: Slot) -> OccupancyResult:
        return roster_occupancy(
            slot, self.today(), roster=self.roster, store=self.store, capacity=self.capacity
        )

    # -- sweeps ---------------------------------------------------------

    def complete_makeups(self) -> List[MakeupRequest]:
        """Mark every active makeup whose class has started as completed."""
        now = self.now()
        done = []
        for request in self.store.list_active(overlay.MAKEUP):
            if request.makeup.slot.start_on(request.makeup.date, self.tz) <= now:
                done.append(self.store.set_status(overlay.MAKEUP, request.id, COMPLETED, now))
        return done

    def notify_waitlists(self) -> List[WaitlistRequest]:
        """Notify waiting requests, oldest first, for seats the roster has freed.

        Seats already offered to a notified request are not offered twice.
        """
        now = self.now()
        notified: List[WaitlistRequest] = []
        open_requests = self.store.list_active(overlay.WAITLIST)
        for slot in sorted({r.desired_slot for r in open_requests if r.status == WAITING}):
            occupancy = self._roster_compute(slot)
            if not policy.capacity_ok(occupancy):
                continue
            pending = [r for r in open_requests if r.desired_slot == slot]
            offered = sum(1 for r in pending if r.status == NOTIFIED)
            seats = occupancy.seats_available - offered
            waiting = sorted(
                (r for r in pending if r.status == WAITING),
                key=lambda r: r.created_at or datetime.min.replace(tzinfo=self.tz),
            )
            for request in waiting[: max(0, seats)]:
                notified.append(self.store.set_status(overlay.WAITLIST, request.id, NOTIFIED, now))
        return notified

    def run_sweeps(self) -> None:
        self.complete_makeups()
        self.notify_waitlists()
        self.store.clear_expired_locks(self.today())

    # -- reads ----------------------------------------------------------

    def occupancy(self, slot: Slot, day: date) -> OccupancyResult:
        self.run_sweeps()
        return self._compute(slot, day)

    def week_view(self, week_start: date) -> Dict[Slot, OccupancyResult]:
        self.run_sweeps()
        days = week_dates(week_start)
        return {slot: self._compute(slot, days[slot.day]) for slot in all_slots()}

    def conflicts(self) -> List[CapacityConflictRecord]:
        return self.store.conflicts()

    def membership(self, student_id: str):
        student = self.roster.student(student_id)
        return membership_stats(
            student,
            self.today(),
            self.store.list_active(overlay.HOLDING, student_id=student_id),
            self._holiday_dates(),
        )

    def history(self, student_id: str, limit: int = 10):
        self.run_sweeps()
        return attendance_history(
            self.roster.student(student_id),
            self.today(),
            holdings=self.store.list(overlay.HOLDING, student_id=student_id),
            absences=self.store.list(overlay.ABSENCE, student_id=student_id),
            makeups=self.store.list(overlay.MAKEUP, student_id=student_id),
            holidays=self._holiday_dates(),
            limit=limit,
        )

    # -- holding --------------------------------------------------------

    def request_holding(self, student_id: str, start: date, end: date) -> HoldingResult:
        policy.require(start <= end, policy.VALID_RANGE, "holding must end on or after its start")
        student = self.roster.student(student_id)
        now = self.now()
        holidays = self._holiday_dates()
        with self.store.locked():
            policy.require(
                policy.one_active_holding_per_cycle(
                    holdings_in_cycle(
                        student, self.store.list_active(overlay.HOLDING, student_id=student_id)
                    )
                ),
                policy.ONE_ACTIVE_HOLDING,
                "holding already used for this enrollment",
            )
            suppressed = suppressed_occurrences(student.assignments, start, end, holidays)
            policy.require(bool(suppressed), policy.COVERS_OCCURRENCE, "no classes fall in that range")
            policy.require(
                policy.time_cutoff_ok(suppressed[0], HOLDING_MARGIN, now, self.tz),
                policy.TIME_CUTOFF_OK,
                f"holding must be requested {HOLDING_MARGIN} minutes before class",
            )
            enrollment_start, _ = enrollment_window(student)
            new_end = None
            if enrollment_start:
                new_end = extended_end_date(
                    enrollment_start,
                    student.weekly_frequency * SESSION_WEEKS,
                    {a.slot.day for a in student.assignments},
                    (start, end),
                    holidays,
                )
            # A failed sheet write leaves no holding record.
            self.roster.record_holding(student_id, start, end, new_end)
            record = HoldingRecord(
                OverlayStore.new_id(overlay.HOLDING), student_id, start, end, ACTIVE, now, now
            )
            self.store.add(overlay.HOLDING, record)

        logger.info(
            "Holding %s for %s: %s..%s, %d classes suppressed",
            record.id, student_id, start, end, len(suppressed),
        )
        return HoldingResult(record, suppressed, new_end)

    def cancel_holding(self, holding_id: str) -> HoldingRecord:
        record = self.store.get(overlay.HOLDING, holding_id)
        if record.status != ACTIVE:
            raise AlreadyTerminal(holding_id, record.status)
        assignments = self.roster.student(record.student_id).assignments
        suppressed = suppressed_occurrences(
            assignments, record.start, record.end, self._holiday_dates()
        )
        if suppressed and not policy.time_cutoff_ok(
            suppressed[0], STARTED_MARGIN, self.now(), self.tz
        ):
            raise AlreadyStarted("holding has already begun")
        return self.store.set_status(overlay.HOLDING, holding_id, CANCELLED, self.now())

    # -- absence --------------------------------------------------------

    def request_absence(self, student_id: str, day: date) -> AbsenceRecord:
        student = self.roster.student(student_id)
        classes = occurrences(student.assignments, day, day)
        policy.require(bool(classes), policy.COVERS_OCCURRENCE, f"no class on {day}")
        if not policy.time_cutoff_ok(classes[0], STARTED_MARGIN, self.now(), self.tz):
            raise AlreadyStarted()
        existing = self.store.list_active(overlay.ABSENCE, student_id=student_id, date=day)
        if existing:
            return existing[0]
        now = self.now()
        record = AbsenceRecord(OverlayStore.new_id(overlay.ABSENCE), student_id, day, ACTIVE, now, now)
        self.store.add(overlay.ABSENCE, record)
        logger.info("Absence %s for %s on %s", record.id, student_id, day)
        return record

    def cancel_absence(self, absence_id: str) -> AbsenceRecord:
        record = self.store.get(overlay.ABSENCE, absence_id)
        if record.status != ACTIVE:
            raise AlreadyTerminal(absence_id, record.status)
        classes = occurrences(
            self.roster.student(record.student_id).assignments, record.date, record.date
        )
        if classes and not policy.time_cutoff_ok(classes[0], STARTED_MARGIN, self.now(), self.tz):
            raise AlreadyStarted()
        return self.store.set_status(overlay.ABSENCE, absence_id, CANCELLED, self.now())

    # -- makeup ---------------------------------------------------------

    def request_makeup(self, student_id: str, original: ClassRef, makeup: ClassRef) -> MakeupRequest:
        self.run_sweeps()
        now = self.now()
        student = self.roster.student(student_id)
        assignments = student.assignments

        policy.require(
            makeup.slot.occurs_on(makeup.date),
            policy.SLOT_MEETS,
            f"{makeup.slot.label} does not meet on {makeup.date}",
        )
        policy.require(
            policy.distinct_classes(original, makeup),
            policy.DISTINCT_CLASSES,
            "makeup class must differ from the original",
        )
        policy.require(
            policy.owns_original(assignments, original),
            policy.OWNS_ORIGINAL,
            f"{student_id} is not enrolled in {original.label}",
        )
        policy.require(
            policy.time_cutoff_ok(original, VACATE_MARGIN, now, self.tz),
            policy.TIME_CUTOFF_OK,
            f"original class starts within {VACATE_MARGIN} minutes",
        )
        policy.require(
            policy.time_cutoff_ok(makeup, MAKEUP_DESTINATION_MARGIN, now, self.tz),
            policy.TIME_CUTOFF_OK,
            f"makeup class starts within {MAKEUP_DESTINATION_MARGIN} minutes",
        )
        policy.require(
            policy.no_self_conflict(assignments, makeup.slot, on=makeup.date, vacating=original),
            policy.NO_SELF_CONFLICT,
            f"{student_id} already attends {makeup.label}",
        )
        flags = self.store.slot_flags(makeup.slot)
        policy.require(policy.slot_enabled(flags), policy.SLOT_ENABLED, f"{makeup.slot.label} is disabled")
        policy.require(
            policy.slot_unlocked(flags, makeup.date, self.today()),
            policy.SLOT_UNLOCKED,
            f"{makeup.label} is closed to makeups",
        )
        policy.require(
            self.store.holiday(makeup.date) is None,
            policy.NOT_HOLIDAY,
            f"{makeup.date} is a holiday",
        )
        active = self.store.list_active(overlay.MAKEUP, student_id=student_id)
        policy.require(
            policy.no_duplicate_original(active, original),
            policy.NO_DUPLICATE_ORIGINAL,
            f"{original.label} already has a makeup",
        )
        policy.require(
            policy.no_duplicate_destination(active, makeup),
            policy.NO_DUPLICATE_DESTINATION,
            f"{student_id} already joins {makeup.label} by makeup",
        )
        holiday_count = policy.week_holiday_count(assignments, original.date, self._holiday_dates())
        policy.require(
            policy.makeup_quota_ok(len(active), student.weekly_frequency, holiday_count),
            policy.MAKEUP_QUOTA_OK,
            "weekly makeup allowance used up",
        )

        generation = self.store.generation(makeup.slot, makeup.date)
        policy.require(
            policy.capacity_ok(self._compute(makeup.slot, makeup.date)),
            policy.CAPACITY_OK,
            f"{makeup.label} is full",
        )
        record = MakeupRequest(
            OverlayStore.new_id(overlay.MAKEUP), student_id, original, makeup, ACTIVE, now, now
        )
        self._commit_makeup(record, generation)
        logger.info("Makeup %s for %s: %s -> %s", record.id, student_id, original.label, makeup.label)
        return record

    def _commit_makeup(self, record: MakeupRequest, generation: int) -> None:
        guard = (record.makeup.slot, record.makeup.date)
        with self.store.locked():
            current = self.store.generation(*guard)
            if current != generation:
                logger.info("%s changed during admission, re-checking capacity", record.makeup.label)
                if not policy.capacity_ok(self._compute(*guard)):
                    raise CapacityConflict(f"{record.makeup.label} filled up; choose another class")
                generation = current
            self.store.add(overlay.MAKEUP, record, guard=guard, expected_generation=generation)
        after = self._compute(*guard)
        if after.seats_used > after.capacity:
            self.store.flag_conflict(
                CapacityConflictRecord(
                    guard[0], guard[1], record.id, after.seats_used, after.capacity, self.now()
                )
            )

    def cancel_makeup(self, request_id: str) -> MakeupRequest:
        self.complete_makeups()
        record = self.store.get(overlay.MAKEUP, request_id)
        if record.status != ACTIVE:
            raise AlreadyTerminal(request_id, record.status)
        # Started classes were completed by the sweep above.
        now = self.now()
        policy.require(
            policy.time_cutoff_ok(record.makeup, MAKEUP_DESTINATION_MARGIN, now, self.tz),
            policy.TIME_CUTOFF_OK,
            f"makeup class starts within {MAKEUP_DESTINATION_MARGIN} minutes",
        )
        return self.store.set_status(overlay.MAKEUP, request_id, CANCELLED, now)

    # -- waitlist -------------------------------------------------------

    def request_waitlist(self, student_id: str, current_slot: Slot, desired_slot: Slot) -> WaitlistRequest:
        self.run_sweeps()
        assignments = self.roster.assignments_for(student_id)
        policy.require(
            current_slot != desired_slot, policy.DISTINCT_CLASSES, "desired class is the current one"
        )
        if self.roster.find_assignment(student_id, current_slot) is None:
            raise NotFound(f"{student_id} has no assignment in {current_slot.label}")
        policy.require(
            policy.no_self_conflict(assignments, desired_slot, vacating=current_slot),
            policy.NO_SELF_CONFLICT,
            f"{student_id} already attends {desired_slot.label}",
        )
        policy.require(
            policy.slot_enabled(self.store.slot_flags(desired_slot)),
            policy.SLOT_ENABLED,
            f"{desired_slot.label} is disabled",
        )
        with self.store.locked():
            policy.require(
                not self.store.list_active(
                    overlay.WAITLIST, student_id=student_id, desired_slot=desired_slot
                ),
                policy.NO_DUPLICATE_WAITLIST,
                f"already waiting for {desired_slot.label}",
            )
            policy.require(
                not policy.capacity_ok(self._roster_compute(desired_slot)),
                policy.DESIRED_SLOT_FULL,
                f"{desired_slot.label} has open seats",
            )
            now = self.now()
            record = WaitlistRequest(
                OverlayStore.new_id(overlay.WAITLIST),
                student_id,
                current_slot,
                desired_slot,
                WAITING,
                now,
                now,
            )
            self.store.add(overlay.WAITLIST, record)
        logger.info(
            "Waitlist %s for %s: %s -> %s", record.id, student_id, current_slot.label, desired_slot.label
        )
        return record

    def accept_waitlist(self, request_id: str) -> WaitlistRequest:
        self.run_sweeps()
        record = self.store.get(overlay.WAITLIST, request_id)
        if record.status in (ACCEPTED, CANCELLED):
            raise AlreadyTerminal(request_id, record.status)
        policy.require(
            record.status == NOTIFIED,
            policy.WAITLIST_NOTIFIED,
            f"{record.desired_slot.label} has no free seat yet",
        )
        with self.store.locked():
            policy.require(
                policy.no_self_conflict(
                    self.roster.assignments_for(record.student_id),
                    record.desired_slot,
                    vacating=record.current_slot,
                ),
                policy.NO_SELF_CONFLICT,
                f"{record.student_id} already attends {record.desired_slot.label}",
            )
            if not policy.capacity_ok(self._roster_compute(record.desired_slot)):
                raise CapacityConflict(
                    f"{record.desired_slot.label} filled up again", request_id=request_id
                )
            self.roster.rewrite_assignment_slot(
                record.student_id, record.current_slot, record.desired_slot
            )
            accepted = self.store.set_status(overlay.WAITLIST, request_id, ACCEPTED, self.now())
            stale = self.store.list_active(
                overlay.WAITLIST, student_id=record.student_id, current_slot=record.current_slot
            )
            for other in stale:
                self.store.set_status(overlay.WAITLIST, other.id, CANCELLED, self.now())
        return accepted

    def cancel_waitlist(self, request_id: str) -> WaitlistRequest:
        record = self.store.get(overlay.WAITLIST, request_id)
        if record.status in (ACCEPTED, CANCELLED):
            raise AlreadyTerminal(request_id, record.status)
        return self.store.set_status(overlay.WAITLIST, request_id, CANCELLED, self.now())

    # -- coach controls -------------------------------------------------

    def toggle_slot_disabled(self, slot: Slot) -> bool:
        return self.store.toggle_disabled(slot)

    def toggle_slot_locked(self, slot: Slot, day: date) -> bool:
        policy.require(slot.occurs_on(day), policy.SLOT_MEETS, f"{slot.label} does not meet on {day}")
        return self.store.toggle_locked(slot, day)

    def add_holiday(self, day: date, reason: str = "") -> HolidayRecord:
        return self.store.add_holiday(day, reason)

    def remove_holiday(self, day: date) -> None:
        self.store.remove_holiday(day)

    # -- export ---------------------------------------------------------

    def export_calendar(self, student_id: str, start: date, end: date) -> str:
        self.run_sweeps()
        student = self.roster.student(student_id)
        displaced: Dict[ClassRef, str] = {}
        for ref in occurrences(student.assignments, start, end):
            result = self._compute(ref.slot, ref.date)
            if result.disabled:
                displaced[ref] = "disabled"
            elif student_id in result.displaced:
                displaced[ref] = result.displaced[student_id]
            elif result.holiday is not None:
                displaced[ref] = "holiday"
        makeups = [
            m.makeup
            for m in self.store.list(overlay.MAKEUP, student_id=student_id)
            if m.status in (ACTIVE, COMPLETED) and start <= m.makeup.date <= end
        ]
        return ics_builder.build_student_ics(
            student_id,
            student.assignments,
            displaced,
            makeups,
            tz=self.tz,
            start=start,
            end=end,
        )
