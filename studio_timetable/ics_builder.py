"""ICS calendar builder for a student's effective attendance."""

from __future__ import annotations

import hashlib
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from .membership import occurrences
from .models import ClassRef, RosterAssignment

PRODID = "-//Studio Timetable//EN"


def _format(dt: datetime) -> str:
    """Format a datetime in UTC with trailing Z."""
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _format_local(dt: datetime) -> str:
    """Format a datetime in local time without timezone suffix."""
    return dt.strftime("%Y%m%dT%H%M%S")


def _format_offset(offset: timedelta) -> str:
    minutes = int(offset.total_seconds() // 60)
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{sign}{hours:02d}{mins:02d}"


def _escape_text(value: str) -> str:
    """Escape text for RFC5545 TEXT value."""

    normalized = value.replace("\r\n", "\n").replace("\r", "\n")
    escaped = normalized.replace("\\", "\\\\")
    escaped = escaped.replace("\n", "\\n")
    escaped = escaped.replace(",", "\\,")
    escaped = escaped.replace(";", "\\;")
    return escaped


def _fold_line(line: str, limit: int = 75) -> List[str]:
    """Fold a line according to RFC5545 (75 octets)."""

    if len(line.encode("utf-8")) <= limit:
        return [line]

    folded: List[str] = []
    current_chars: List[str] = []
    current_bytes = 0

    for ch in line:
        ch_bytes = len(ch.encode("utf-8"))
        if current_bytes + ch_bytes > limit:
            folded.append("".join(current_chars))
            current_chars = [" "]
            current_bytes = 1
        current_chars.append(ch)
        current_bytes += ch_bytes

    folded.append("".join(current_chars))
    return folded


def _uid(*parts: object) -> str:
    return hashlib.sha1("|".join(str(p) for p in parts).encode()).hexdigest()


def _vtimezone(tz: ZoneInfo, on: date) -> List[str]:
    """A single STANDARD block using the zone's offset on ``on``.

    Studio zones without daylight saving are described exactly; others get
    the offset in force at the start of the export.
    """
    local = datetime.combine(on, datetime.min.time(), tz)
    offset = _format_offset(local.utcoffset() or timedelta(0))
    return [
        "BEGIN:VTIMEZONE",
        f"TZID:{tz.key}",
        f"X-LIC-LOCATION:{tz.key}",
        "BEGIN:STANDARD",
        f"TZOFFSETFROM:{offset}",
        f"TZOFFSETTO:{offset}",
        f"TZNAME:{local.tzname()}",
        "DTSTART:19700101T000000",
        "END:STANDARD",
        "END:VTIMEZONE",
    ]


def build_events(
    student_id: str,
    assignments: Iterable[RosterAssignment],
    displaced: Dict[ClassRef, str],
    makeups: Iterable[ClassRef],
    *,
    tz: ZoneInfo,
    start: date,
    end: date,
) -> List[dict]:
    """Weekly events per assignment, with displaced dates excluded, plus one
    event per makeup class."""

    events: List[dict] = []
    for assignment in assignments:
        refs = occurrences([assignment], start, end)
        if not refs:
            continue
        slot = assignment.slot
        first, last = refs[0].date, refs[-1].date
        exdates = [
            slot.start_on(ref.date, tz) for ref in refs if ref in displaced
        ]
        until = _format(slot.start_on(last, tz))
        events.append(
            {
                "uid": _uid(student_id, slot.code, first),
                "summary": f"{slot.label} class",
                "description": f"Regular class for {student_id}",
                "categories": "Regular",
                "start": slot.start_on(first, tz),
                "end": slot.end_on(first, tz),
                "rrule": f"FREQ=WEEKLY;WKST=MO;UNTIL={until}",
                "exdates": exdates,
            }
        )

    for ref in sorted(makeups, key=lambda r: (r.date, r.slot.period)):
        events.append(
            {
                "uid": _uid(student_id, ref.slot.code, ref.date, "makeup"),
                "summary": f"{ref.slot.label} makeup",
                "description": f"Makeup class for {student_id}",
                "categories": "Makeup",
                "start": ref.slot.start_on(ref.date, tz),
                "end": ref.slot.end_on(ref.date, tz),
                "rrule": None,
                "exdates": [],
            }
        )
    return events


def build_student_ics(
    student_id: str,
    assignments: Iterable[RosterAssignment],
    displaced: Dict[ClassRef, str],
    makeups: Iterable[ClassRef],
    *,
    tz: ZoneInfo,
    start: date,
    end: date,
    stamp: Optional[datetime] = None,
) -> str:
    events = build_events(
        student_id, assignments, displaced, makeups, tz=tz, start=start, end=end
    )
    now = stamp or datetime.now(timezone.utc)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
    ]
    lines.extend(_vtimezone(tz, start))

    for e in events:
        lines.append("BEGIN:VEVENT")
        lines.append(f"UID:{e['uid']}")
        lines.append(f"DTSTAMP:{_format(now)}")
        lines.append(f"SUMMARY:{_escape_text(e['summary'])}")
        lines.append(f"DTSTART;TZID={tz.key}:{_format_local(e['start'])}")
        lines.append(f"DTEND;TZID={tz.key}:{_format_local(e['end'])}")
        if e.get("rrule"):
            lines.append(f"RRULE:{e['rrule']}")
        if e.get("exdates"):
            exdate_str = ",".join(_format_local(d) for d in e["exdates"])
            lines.append(f"EXDATE;TZID={tz.key}:{exdate_str}")
        lines.append(f"DESCRIPTION:{_escape_text(e['description'])}")
        lines.append(f"CATEGORIES:{_escape_text(e['categories'])}")
        lines.append("STATUS:CONFIRMED")
        lines.append("TRANSP:OPAQUE")
        lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    folded_lines: List[str] = []
    for line in lines:
        folded_lines.extend(_fold_line(line))
    return "\r\n".join(folded_lines) + "\r\n"


def output_filename(student_id: str, start: date) -> str:
    safe = "".join(ch if ch.isalnum() else "_" for ch in student_id)
    return f"studio_timetable_{safe}_{start:%Y%m}.ics"
