"""Command line interface for the class timetable."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import date, datetime
from pathlib import Path
from typing import List

from . import api, auth, ics_builder, util
from .errors import ScheduleError
from .lifecycle import ScheduleService
from .models import ClassRef, OccupancyResult, Slot
from .overlay import OverlayStore
from .roster import SheetRoster

logger = logging.getLogger(__name__)


def default_sheet_name(today: date) -> str:
    return os.getenv("STUDIO_TIMETABLE_SHEET") or f"등록생 목록({today:%y}년{today.month}월)"


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Class timetable and request manager")
    parser.add_argument("--tz", default=util.DEFAULT_TZ)
    parser.add_argument("--sheet", help="Roster sheet name")
    parser.add_argument("--state", default="out/state.json", help="Overlay state file")
    parser.add_argument("--now", help="Override the current time (ISO datetime)")
    parser.add_argument("--dump-json", action="store_true")
    parser.add_argument(
        "--offline", action="store_true", help="Use saved JSON fixtures"
    )
    parser.add_argument("--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("week", help="Show occupancy for a week")
    p.add_argument("--week", type=date.fromisoformat, help="Any date in the week")
    p = sub.add_parser("occupancy", help="Show one class")
    p.add_argument("slot", type=Slot.from_code)
    p.add_argument("date", type=date.fromisoformat)

    p = sub.add_parser("holding", help="Suspend attendance for a date range")
    p.add_argument("student")
    p.add_argument("start", type=date.fromisoformat)
    p.add_argument("end", type=date.fromisoformat)
    sub.add_parser("cancel-holding").add_argument("id")

    p = sub.add_parser("absence", help="Skip a single date")
    p.add_argument("student")
    p.add_argument("date", type=date.fromisoformat)
    sub.add_parser("cancel-absence").add_argument("id")

    p = sub.add_parser("makeup", help="Move one class to another slot and date")
    p.add_argument("student")
    p.add_argument("original_slot", type=Slot.from_code)
    p.add_argument("original_date", type=date.fromisoformat)
    p.add_argument("makeup_slot", type=Slot.from_code)
    p.add_argument("makeup_date", type=date.fromisoformat)
    sub.add_parser("cancel-makeup").add_argument("id")

    p = sub.add_parser("waitlist", help="Wait for a seat in a full class")
    p.add_argument("student")
    p.add_argument("current_slot", type=Slot.from_code)
    p.add_argument("desired_slot", type=Slot.from_code)
    sub.add_parser("accept-waitlist").add_argument("id")
    sub.add_parser("cancel-waitlist").add_argument("id")

    sub.add_parser("toggle-disabled").add_argument("slot", type=Slot.from_code)
    p = sub.add_parser("toggle-locked")
    p.add_argument("slot", type=Slot.from_code)
    p.add_argument("date", type=date.fromisoformat)
    p = sub.add_parser("holiday")
    p.add_argument("date", type=date.fromisoformat)
    p.add_argument("--reason", default="")
    sub.add_parser("remove-holiday").add_argument("date", type=date.fromisoformat)
    sub.add_parser("conflicts")

    sub.add_parser("stats").add_argument("student")
    sub.add_parser("history").add_argument("student")
    p = sub.add_parser("export", help="Write a student's calendar as ICS")
    p.add_argument("student")
    p.add_argument("start", type=date.fromisoformat)
    p.add_argument("end", type=date.fromisoformat)
    return parser.parse_args(argv)


def format_occupancy(result: OccupancyResult) -> str:
    head = f"{result.slot.label} {result.date}"
    if result.disabled:
        return f"{head}  no class"
    line = f"{head}  {result.seats_used}/{result.capacity}"
    if result.is_full:
        line += " FULL"
    if result.holiday is not None:
        line += f" (holiday: {result.holiday})"
    names = sorted(result.attending)
    if names:
        line += "  " + ", ".join(
            f"{n}({result.arrivals[n]})" if n in result.arrivals else n for n in names
        )
    if result.displaced:
        line += "  out: " + ", ".join(f"{n}({r})" for n, r in sorted(result.displaced.items()))
    if result.pending_start:
        line += "  starting later: " + ", ".join(sorted(result.pending_start))
    return line


def build_service(args: argparse.Namespace) -> ScheduleService:
    tz = util.parse_timezone(args.tz)
    fixed_now = datetime.fromisoformat(args.now) if args.now else None
    if fixed_now is not None and fixed_now.tzinfo is None:
        fixed_now = fixed_now.replace(tzinfo=tz)
    clock = (lambda: fixed_now) if fixed_now else None

    token = None if args.offline else auth.acquire_token()
    client = api.APIClient(token, dump_json=args.dump_json, offline=args.offline)
    today = fixed_now.date() if fixed_now else util.today()
    roster = SheetRoster(client, args.sheet or default_sheet_name(today)).load()
    store = OverlayStore(args.state)
    return ScheduleService(roster, store, tz=tz, clock=clock)


def run(service: ScheduleService, args: argparse.Namespace) -> None:
    cmd = args.command
    if cmd == "week":
        view = service.week_view(args.week or service.today())
        for slot in sorted(view, key=lambda s: (s.period, s.day)):
            print(format_occupancy(view[slot]))
    elif cmd == "occupancy":
        print(format_occupancy(service.occupancy(args.slot, args.date)))
    elif cmd == "holding":
        result = service.request_holding(args.student, args.start, args.end)
        print(f"{result.record.id} active, {result.suppressed_count} classes held")
        if result.new_end_date:
            print(f"new end date {result.new_end_date}")
    elif cmd == "cancel-holding":
        print(f"{service.cancel_holding(args.id).id} cancelled")
    elif cmd == "absence":
        print(f"{service.request_absence(args.student, args.date).id} active")
    elif cmd == "cancel-absence":
        print(f"{service.cancel_absence(args.id).id} cancelled")
    elif cmd == "makeup":
        request = service.request_makeup(
            args.student,
            ClassRef(args.original_date, args.original_slot),
            ClassRef(args.makeup_date, args.makeup_slot),
        )
        print(f"{request.id} {request.original.label} -> {request.makeup.label}")
    elif cmd == "cancel-makeup":
        print(f"{service.cancel_makeup(args.id).id} cancelled")
    elif cmd == "waitlist":
        request = service.request_waitlist(args.student, args.current_slot, args.desired_slot)
        print(f"{request.id} waiting for {request.desired_slot.label}")
    elif cmd == "accept-waitlist":
        request = service.accept_waitlist(args.id)
        print(f"{request.id} accepted, now in {request.desired_slot.label}")
    elif cmd == "cancel-waitlist":
        print(f"{service.cancel_waitlist(args.id).id} cancelled")
    elif cmd == "toggle-disabled":
        state = service.toggle_slot_disabled(args.slot)
        print(f"{args.slot.label} {'disabled' if state else 'enabled'}")
    elif cmd == "toggle-locked":
        state = service.toggle_slot_locked(args.slot, args.date)
        print(f"{args.slot.label} {args.date} {'locked' if state else 'unlocked'}")
    elif cmd == "holiday":
        service.add_holiday(args.date, args.reason)
        print(f"{args.date} holiday")
    elif cmd == "remove-holiday":
        service.remove_holiday(args.date)
        print(f"{args.date} is a class day again")
    elif cmd == "conflicts":
        for c in service.conflicts():
            print(f"{c.slot.label} {c.date} {c.seats_used}/{c.capacity} {c.request_id}")
    elif cmd == "stats":
        stats = service.membership(args.student)
        print(
            f"{stats.student_id}: {stats.start} - {stats.end}, "
            f"{stats.completed_sessions}/{stats.total_sessions} sessions, "
            f"{stats.remaining_holding} holding left"
        )
    elif cmd == "history":
        for entry in service.history(args.student):
            print(f"{entry.ref.label} {entry.kind} {entry.status}")
    elif cmd == "export":
        ics = service.export_calendar(args.student, args.start, args.end)
        out_dir = Path("out/ics")
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / ics_builder.output_filename(args.student, args.start)
        path.write_text(ics, encoding="utf-8")
        print(path)


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    util.configure_logging(args.verbose)
    try:
        run(build_service(args), args)
    except ScheduleError as exc:
        print(f"{exc.kind}: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
