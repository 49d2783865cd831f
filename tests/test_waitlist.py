from datetime import date, datetime, timedelta
import threading
from zoneinfo import ZoneInfo

import pytest

from studio_timetable.errors import AlreadyTerminal, CapacityConflict, NotFound, ValidationFailed
from studio_timetable.lifecycle import ScheduleService
from studio_timetable.models import RosterAssignment, RosterStudent, Slot
from studio_timetable.overlay import OverlayStore
from studio_timetable.roster import Roster

TZ = ZoneInfo("Asia/Seoul")
MON1 = Slot.from_code("월1")
TUE2 = Slot.from_code("화2")
THU4 = Slot.from_code("목4")
FRI5 = Slot.from_code("금5")


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def make_student(name, *codes):
    slots = [Slot.from_code(c) for c in codes]
    return RosterStudent(
        name,
        len(slots),
        [RosterAssignment(name, s, date(2026, 1, 5), date(2026, 3, 27)) for s in slots],
    )


def make_service(*students):
    crowd = [make_student(f"s{i}", "화2") for i in range(7)]
    clock = FakeClock(datetime(2026, 2, 1, 9, 0, tzinfo=TZ))
    roster = Roster(crowd + list(students))
    return ScheduleService(roster, OverlayStore(), tz=TZ, clock=clock), clock


def test_waitlist_round_trip():
    service, _ = make_service(make_student("W", "목4"))
    request = service.request_waitlist("W", THU4, TUE2)
    assert request.status == "waiting"

    service.roster.drop_assignment("s0", TUE2)
    view = service.week_view(date(2026, 2, 9))
    assert view[TUE2].seats_used == 6
    assert service.store.get("waitlist", request.id).status == "notified"

    accepted = service.accept_waitlist(request.id)
    assert accepted.status == "accepted"
    assert [a.slot for a in service.roster.assignments_for("W")] == [TUE2]
    assert "W" in service.occupancy(TUE2, date(2026, 2, 10)).attending
    assert "W" not in service.occupancy(THU4, date(2026, 2, 12)).attending


def test_desired_slot_must_be_full():
    service, _ = make_service(make_student("W", "목4"))
    with pytest.raises(ValidationFailed) as info:
        service.request_waitlist("W", THU4, FRI5)
    assert info.value.predicate == "DesiredSlotFull"


def test_duplicate_waitlist():
    service, _ = make_service(make_student("W", "목4"))
    service.request_waitlist("W", THU4, TUE2)
    with pytest.raises(ValidationFailed) as info:
        service.request_waitlist("W", THU4, TUE2)
    assert info.value.predicate == "NoDuplicateWaitlist"


def test_accept_requires_notification():
    service, _ = make_service(make_student("W", "목4"))
    request = service.request_waitlist("W", THU4, TUE2)
    with pytest.raises(ValidationFailed) as info:
        service.accept_waitlist(request.id)
    assert info.value.predicate == "WaitlistNotified"


def test_terminal_requests():
    service, _ = make_service(make_student("W", "목4"))
    request = service.request_waitlist("W", THU4, TUE2)
    service.cancel_waitlist(request.id)
    with pytest.raises(AlreadyTerminal):
        service.cancel_waitlist(request.id)
    with pytest.raises(AlreadyTerminal):
        service.accept_waitlist(request.id)


def test_notification_is_first_come_first_served():
    service, clock = make_service(make_student("A", "목4"), make_student("B", "금5"))
    first = service.request_waitlist("A", THU4, TUE2)
    clock.now += timedelta(minutes=1)
    second = service.request_waitlist("B", FRI5, TUE2)

    service.roster.drop_assignment("s0", TUE2)
    service.run_sweeps()
    assert service.store.get("waitlist", first.id).status == "notified"
    assert service.store.get("waitlist", second.id).status == "waiting"

    service.run_sweeps()
    assert service.store.get("waitlist", second.id).status == "waiting"

    service.roster.drop_assignment("s1", TUE2)
    service.run_sweeps()
    assert service.store.get("waitlist", second.id).status == "notified"


def test_seat_taken_before_accept():
    service, _ = make_service(make_student("W", "목4"))
    request = service.request_waitlist("W", THU4, TUE2)
    service.roster.drop_assignment("s0", TUE2)
    service.run_sweeps()
    service.roster.add_student(make_student("late", "화2"))
    with pytest.raises(CapacityConflict) as info:
        service.accept_waitlist(request.id)
    assert info.value.request_id == request.id
    assert [a.slot for a in service.roster.assignments_for("W")] == [THU4]


def test_accept_cancels_other_requests_for_same_class():
    crowd = [make_student(f"f{i}", "금5") for i in range(7)]
    service, _ = make_service(make_student("W", "목4"), *crowd)
    to_tuesday = service.request_waitlist("W", THU4, TUE2)
    to_friday = service.request_waitlist("W", THU4, FRI5)
    service.roster.drop_assignment("s0", TUE2)
    service.accept_waitlist(to_tuesday.id)
    assert service.store.get("waitlist", to_friday.id).status == "cancelled"


def test_cannot_wait_for_own_class():
    service, _ = make_service(make_student("W", "화2", "목4"))
    with pytest.raises(ValidationFailed) as info:
        service.request_waitlist("W", THU4, TUE2)
    assert info.value.predicate == "NoSelfConflict"


def test_current_slot_must_be_held():
    service, _ = make_service(make_student("W", "목4"))
    with pytest.raises(NotFound):
        service.request_waitlist("W", MON1, TUE2)
    with pytest.raises(NotFound):
        service.request_waitlist("nobody", THU4, TUE2)


def test_concurrent_duplicate_request_waits_for_the_first():
    service, _ = make_service(make_student("W", "목4"))
    compute = service._roster_compute
    rejected = []
    rival = []

    def second_request():
        try:
            service.request_waitlist("W", THU4, TUE2)
        except ValidationFailed as exc:
            rejected.append(exc.predicate)

    def racing_compute(slot):
        if not rival:
            rival.append(threading.Thread(target=second_request))
            rival[0].start()
            rival[0].join(timeout=0.2)
            assert rival[0].is_alive()
        return compute(slot)

    service._roster_compute = racing_compute
    first = service.request_waitlist("W", THU4, TUE2)
    rival[0].join(timeout=5)
    assert rejected == ["NoDuplicateWaitlist"]
    assert [r.id for r in service.store.list_active("waitlist")] == [first.id]


def test_seat_freed_during_request_is_seen_before_write():
    service, _ = make_service(make_student("W", "목4"))
    flags = service.store.slot_flags

    def freeing_flags(slot):
        if service.roster.find_assignment("s0", TUE2) is not None:
            service.roster.drop_assignment("s0", TUE2)
        return flags(slot)

    service.store.slot_flags = freeing_flags
    with pytest.raises(ValidationFailed) as info:
        service.request_waitlist("W", THU4, TUE2)
    assert info.value.predicate == "DesiredSlotFull"
    assert service.store.list("waitlist") == []


def test_accept_rechecks_own_classes():
    service, _ = make_service(make_student("W", "목4"))
    request = service.request_waitlist("W", THU4, TUE2)
    service.roster.drop_assignment("s0", TUE2)
    service.run_sweeps()
    service.roster.student("W").assignments.append(
        RosterAssignment("W", TUE2, date(2026, 1, 5), date(2026, 3, 27))
    )
    with pytest.raises(ValidationFailed) as info:
        service.accept_waitlist(request.id)
    assert info.value.predicate == "NoSelfConflict"
    assert service.store.get("waitlist", request.id).status == "notified"
