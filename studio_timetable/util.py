"""Utility helpers."""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

from .models import CLASS_PERIODS, DAY_CODES, Slot

logger = logging.getLogger(__name__)

DEFAULT_TZ = "Asia/Seoul"


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s:%(name)s:%(message)s")


def parse_timezone(tz: str) -> ZoneInfo:
    return ZoneInfo(tz)


def now(tz: ZoneInfo) -> datetime:
    return datetime.now(tz)


def today() -> date:
    return date.today()


def parse_sheet_date(value: str | None) -> Optional[date]:
    """Parse the date spellings found in roster cells.

    Accepts ``YYMMDD``, ``YYYYMMDD`` and anything that reduces to those digits
    once separators are dropped (``2026-02-10``, ``26.02.10``).
    """
    if not value:
        return None
    digits = re.sub(r"\D", "", str(value))
    try:
        if len(digits) == 6:
            return date(2000 + int(digits[:2]), int(digits[2:4]), int(digits[4:6]))
        if len(digits) == 8:
            return date(int(digits[:4]), int(digits[4:6]), int(digits[6:8]))
    except ValueError:
        pass
    logger.warning("Unparseable date cell: %r", value)
    return None


def format_sheet_date(day: date) -> str:
    return day.strftime("%y%m%d")


def parse_schedule(code: str | None) -> List[Slot]:
    """Parse a packed schedule string such as ``"월5수5"`` into slots.

    Whitespace and unknown characters are skipped. A repeated day/period pair
    keeps its first occurrence.
    """
    if not code:
        return []
    chars = re.sub(r"\s", "", code)
    slots: List[Slot] = []
    for match in re.finditer(rf"([{DAY_CODES}])(\d+)", chars):
        day = DAY_CODES.index(match.group(1))
        period = int(match.group(2))
        if period not in CLASS_PERIODS:
            logger.warning("Ignoring non-class period %s in schedule %r", period, code)
            continue
        slot = Slot(day, period)
        if slot in slots:
            logger.warning("Duplicate slot %s in schedule %r", slot.code, code)
            continue
        slots.append(slot)
    return slots


def format_schedule(slots: List[Slot]) -> str:
    return "".join(s.code for s in sorted(slots))
