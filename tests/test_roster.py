from datetime import date, datetime
from zoneinfo import ZoneInfo

import pytest

from studio_timetable.errors import NotFound, UpstreamUnavailable, ValidationFailed
from studio_timetable.lifecycle import ScheduleService
from studio_timetable.models import Slot
from studio_timetable.overlay import OverlayStore
from studio_timetable.roster import (
    Roster,
    SheetRoster,
    _column_letter,
    parse_agreed_absences,
    parse_rows,
)
from studio_timetable.util import parse_schedule, parse_sheet_date

HEADER = ["이름", "주횟수", "요일\n및 시간", "시작날짜", "종료날짜", "합의 결석", "특이사항"]
ROWS = [
    ["등록생 목록(26년2월)"],
    HEADER,
    ["민지", "2", "화2목4", "260202", "260226", "2/12", ""],
    ["준호", "", "월5", "2026-02-02", "2026-02-27", "", "발목 부상"],
    [""],
    ["하늘", "", "수1", "", "", "", ""],
]


class FakeClient:
    def __init__(self, rows, fail=False):
        self.rows = rows
        self.fail = fail
        self.writes = []
        self.batches = []

    def read_range(self, sheet_range):
        self.read = sheet_range
        return self.rows

    def write_range(self, sheet_range, values):
        if self.fail:
            raise UpstreamUnavailable("sheet proxy down")
        self.writes.append((sheet_range, values))

    def batch_update(self, updates):
        if self.fail:
            raise UpstreamUnavailable("sheet proxy down")
        self.batches.append(updates)


def test_parse_rows():
    students = {s.student_id: s for s in parse_rows(ROWS)}
    assert list(students) == ["민지", "준호", "하늘"]

    minji = students["민지"]
    assert minji.weekly_frequency == 2
    assert [a.slot.code for a in minji.assignments] == ["화2", "목4"]
    assert minji.assignments[0].enrollment_start == date(2026, 2, 2)
    assert minji.assignments[0].enrollment_end == date(2026, 2, 26)
    assert minji.agreed_absences == [date(2026, 2, 12)]
    assert minji.row == 3

    junho = students["준호"]
    assert junho.weekly_frequency == 1
    assert junho.notes == "발목 부상"
    assert junho.row == 4

    assert students["하늘"].assignments == []
    assert students["하늘"].row == 6


def test_parse_rows_requires_name_column():
    with pytest.raises(ValueError):
        parse_rows([["title"], ["학생", "요일 및 시간"], ["a", "월1"]])
    assert parse_rows([["title"]]) == []


def test_agreed_absence_notes():
    reference = date(2026, 2, 2)
    assert parse_agreed_absences("3/2, 2026-03-10 그리고 260317", reference) == [
        date(2026, 3, 2),
        date(2026, 3, 10),
        date(2026, 3, 17),
    ]
    assert parse_agreed_absences("1/5", reference) == [date(2027, 1, 5)]
    assert parse_agreed_absences("2/30", reference) == []
    assert parse_agreed_absences("", reference) == []


def test_schedule_and_dates():
    assert parse_schedule("월5 수5") == [Slot(0, 5), Slot(2, 5)]
    assert parse_schedule("월3화2화2") == [Slot(1, 2)]
    assert parse_schedule(None) == []
    assert parse_sheet_date("26.02.10") == date(2026, 2, 10)
    assert parse_sheet_date("20260210") == date(2026, 2, 10)
    assert parse_sheet_date("261340") is None
    assert parse_sheet_date("soon") is None


def test_slot_codes():
    assert Slot.from_code("화2") == Slot.from_code("Tue2") == Slot.from_code("Tue P2")
    assert Slot.from_code("금5").label == "Fri P5"
    with pytest.raises(ValueError):
        Slot.from_code("Sat1")
    with pytest.raises(ValueError):
        Slot.from_code("화3")


def test_roster_lookups():
    roster = Roster(parse_rows(ROWS))
    assert [a.student_id for a in roster.list_assignments(Slot(1, 2))] == ["민지"]
    assert roster.find_assignment("민지", Slot(0, 1)) is None
    with pytest.raises(NotFound):
        roster.student("nobody")
    with pytest.raises(NotFound):
        roster.drop_assignment("민지", Slot(0, 1))


def test_sheet_roster_writes_schedule_cell():
    client = FakeClient(ROWS)
    roster = SheetRoster(client, "S").load()
    assert client.read == "S!A:Z"
    roster.rewrite_assignment_slot("민지", Slot.from_code("화2"), Slot.from_code("목2"))
    assert client.writes == [("S!C3", [["목2목4"]])]

    roster.drop_assignment("준호", Slot.from_code("월5"))
    assert client.writes[-1] == ("S!C4", [[""]])


def test_sheet_roster_reverts_on_failed_write():
    client = FakeClient(ROWS, fail=True)
    roster = SheetRoster(client, "S").load()
    with pytest.raises(UpstreamUnavailable):
        roster.rewrite_assignment_slot("민지", Slot.from_code("화2"), Slot.from_code("목2"))
    assert [a.slot.code for a in roster.assignments_for("민지")] == ["화2", "목4"]

    with pytest.raises(UpstreamUnavailable):
        roster.drop_assignment("준호", Slot.from_code("월5"))
    assert len(roster.assignments_for("준호")) == 1


def test_rewrite_into_held_slot():
    roster = Roster(parse_rows(ROWS))
    with pytest.raises(ValidationFailed) as info:
        roster.rewrite_assignment_slot("민지", Slot.from_code("화2"), Slot.from_code("목4"))
    assert info.value.predicate == "NoSelfConflict"


def test_column_letters():
    assert _column_letter(0) == "A"
    assert _column_letter(25) == "Z"
    assert _column_letter(26) == "AA"


HOLDING_ROWS = [ROWS[0], HEADER + ["홀딩 사용여부", "홀딩 시작일", "홀딩 종료일"]] + ROWS[2:]


def _sheet_service(client):
    roster = SheetRoster(client, "S").load()
    tz = ZoneInfo("Asia/Seoul")
    return ScheduleService(
        roster, OverlayStore(), tz=tz, clock=lambda: datetime(2026, 2, 1, 9, 0, tzinfo=tz)
    )


def test_holding_is_written_to_sheet():
    client = FakeClient(HOLDING_ROWS)
    service = _sheet_service(client)
    result = service.request_holding("민지", date(2026, 2, 10), date(2026, 2, 12))
    assert result.new_end_date == date(2026, 3, 5)
    assert client.batches == [
        [
            {"range": "S!H3", "values": [["O"]]},
            {"range": "S!I3", "values": [["260210"]]},
            {"range": "S!J3", "values": [["260212"]]},
            {"range": "S!E3", "values": [["260305"]]},
        ]
    ]


def test_failed_holding_write_keeps_no_record():
    client = FakeClient(HOLDING_ROWS, fail=True)
    service = _sheet_service(client)
    with pytest.raises(UpstreamUnavailable):
        service.request_holding("민지", date(2026, 2, 10), date(2026, 2, 12))
    assert service.store.list("holding") == []
