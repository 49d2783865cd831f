from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest

from studio_timetable import overlay
from studio_timetable.errors import AlreadyStarted, AlreadyTerminal, NotFound, ValidationFailed
from studio_timetable.lifecycle import ScheduleService
from studio_timetable.models import ClassRef, RosterAssignment, RosterStudent, Slot
from studio_timetable.overlay import OverlayStore
from studio_timetable.roster import Roster

TZ = ZoneInfo("Asia/Seoul")
TUE2 = Slot.from_code("화2")
THU4 = Slot.from_code("목4")


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def make_service(now=datetime(2026, 2, 1, 9, 0, tzinfo=TZ)):
    student = RosterStudent(
        "S",
        2,
        [
            RosterAssignment("S", TUE2, date(2026, 2, 2), date(2026, 2, 26)),
            RosterAssignment("S", THU4, date(2026, 2, 2), date(2026, 2, 26)),
        ],
    )
    clock = FakeClock(now)
    return ScheduleService(Roster([student]), OverlayStore(), tz=TZ, clock=clock), clock


def test_holding_suppresses_classes_and_extends_enrollment():
    service, _ = make_service()
    result = service.request_holding("S", date(2026, 2, 10), date(2026, 2, 12))
    assert result.suppressed == [
        ClassRef(date(2026, 2, 10), TUE2),
        ClassRef(date(2026, 2, 12), THU4),
    ]
    assert result.suppressed_count == 2
    assert result.new_end_date == date(2026, 3, 5)
    occupancy = service.occupancy(TUE2, date(2026, 2, 10))
    assert occupancy.displaced == {"S": "holding"}
    assert "S" in service.occupancy(TUE2, date(2026, 2, 17)).attending


def test_only_one_active_holding():
    service, _ = make_service()
    service.request_holding("S", date(2026, 2, 10), date(2026, 2, 12))
    with pytest.raises(ValidationFailed) as info:
        service.request_holding("S", date(2026, 2, 17), date(2026, 2, 19))
    assert info.value.predicate == "OneActiveHoldingPerCycle"


def test_cancelled_holding_can_be_requested_again():
    service, _ = make_service()
    first = service.request_holding("S", date(2026, 2, 10), date(2026, 2, 12))
    service.cancel_holding(first.record.id)
    second = service.request_holding("S", date(2026, 2, 17), date(2026, 2, 19))
    assert second.record.status == "active"
    assert len(service.store.list_active(overlay.HOLDING, student_id="S")) == 1


def test_holding_cutoff():
    service, _ = make_service(now=datetime(2026, 2, 10, 11, 30, tzinfo=TZ))
    with pytest.raises(ValidationFailed) as info:
        service.request_holding("S", date(2026, 2, 10), date(2026, 2, 12))
    assert info.value.predicate == "TimeCutoffOK"

    service, _ = make_service(now=datetime(2026, 2, 10, 10, 59, tzinfo=TZ))
    assert service.request_holding("S", date(2026, 2, 10), date(2026, 2, 12)).suppressed_count == 2


def test_holding_without_classes_is_rejected():
    service, _ = make_service()
    with pytest.raises(ValidationFailed) as info:
        service.request_holding("S", date(2026, 2, 14), date(2026, 2, 15))
    assert info.value.predicate == "CoversOccurrence"


def test_holding_range_must_be_ordered():
    service, _ = make_service()
    with pytest.raises(ValidationFailed) as info:
        service.request_holding("S", date(2026, 2, 12), date(2026, 2, 10))
    assert info.value.predicate == "ValidDateRange"


def test_holiday_is_not_counted_as_suppressed():
    service, _ = make_service()
    service.add_holiday(date(2026, 2, 12), "설날")
    result = service.request_holding("S", date(2026, 2, 10), date(2026, 2, 12))
    assert result.suppressed_count == 1
    assert result.new_end_date == date(2026, 3, 5)


def test_cancel_holding_after_it_began():
    service, clock = make_service()
    holding = service.request_holding("S", date(2026, 2, 10), date(2026, 2, 12)).record
    clock.now = datetime(2026, 2, 10, 12, 0, tzinfo=TZ)
    with pytest.raises(AlreadyStarted):
        service.cancel_holding(holding.id)


def test_cancel_holding_twice():
    service, _ = make_service()
    holding = service.request_holding("S", date(2026, 2, 10), date(2026, 2, 12)).record
    service.cancel_holding(holding.id)
    with pytest.raises(AlreadyTerminal):
        service.cancel_holding(holding.id)
    assert "S" in service.occupancy(TUE2, date(2026, 2, 10)).attending


def test_absence_frees_the_seat_for_one_date():
    service, _ = make_service()
    absence = service.request_absence("S", date(2026, 2, 10))
    assert service.occupancy(TUE2, date(2026, 2, 10)).displaced == {"S": "absence"}
    assert "S" in service.occupancy(THU4, date(2026, 2, 12)).attending
    again = service.request_absence("S", date(2026, 2, 10))
    assert again.id == absence.id


def test_absence_needs_a_class_that_day():
    service, _ = make_service()
    with pytest.raises(ValidationFailed) as info:
        service.request_absence("S", date(2026, 2, 11))
    assert info.value.predicate == "CoversOccurrence"


def test_absence_after_class_started():
    service, _ = make_service(now=datetime(2026, 2, 10, 12, 5, tzinfo=TZ))
    with pytest.raises(AlreadyStarted) as info:
        service.request_absence("S", date(2026, 2, 10))
    assert info.value.predicate == "TimeCutoffOK"


def test_cancel_absence():
    service, _ = make_service()
    absence = service.request_absence("S", date(2026, 2, 10))
    assert service.cancel_absence(absence.id).status == "cancelled"
    assert "S" in service.occupancy(TUE2, date(2026, 2, 10)).attending
    with pytest.raises(AlreadyTerminal):
        service.cancel_absence(absence.id)


def test_unknown_student():
    service, _ = make_service()
    with pytest.raises(NotFound):
        service.request_absence("nobody", date(2026, 2, 10))
    with pytest.raises(NotFound):
        service.cancel_holding("holding-missing")


def test_holding_from_earlier_enrollment_does_not_count():
    student = RosterStudent(
        "S", 1, [RosterAssignment("S", TUE2, date(2026, 1, 5), date(2026, 1, 30))]
    )
    clock = FakeClock(datetime(2026, 1, 1, 9, 0, tzinfo=TZ))
    service = ScheduleService(Roster([student]), OverlayStore(), tz=TZ, clock=clock)
    service.request_holding("S", date(2026, 1, 13), date(2026, 1, 15))
    assert service.membership("S").remaining_holding == 0

    student.assignments = [RosterAssignment("S", TUE2, date(2026, 3, 2), date(2026, 3, 27))]
    clock.now = datetime(2026, 3, 1, 9, 0, tzinfo=TZ)
    assert service.membership("S").remaining_holding == 1
    result = service.request_holding("S", date(2026, 3, 10), date(2026, 3, 12))
    assert result.suppressed == [ClassRef(date(2026, 3, 10), TUE2)]
    assert service.membership("S").remaining_holding == 0
