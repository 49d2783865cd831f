"""Typed failures returned by scheduling operations."""

from __future__ import annotations


class ScheduleError(Exception):
    """Base class for every failure a scheduling operation can report."""

    kind = "ScheduleError"


class ValidationFailed(ScheduleError):
    """An admission predicate rejected the request.

    ``predicate`` names the check that failed so callers can phrase their own
    message for it.
    """

    kind = "ValidationFailed"

    def __init__(self, predicate: str, message: str = "") -> None:
        self.predicate = predicate
        self.message = message or predicate
        super().__init__(f"{predicate}: {self.message}")


class AlreadyStarted(ValidationFailed):
    kind = "AlreadyStarted"

    def __init__(self, message: str = "class has already started") -> None:
        super().__init__("TimeCutoffOK", message)


class NotFound(ScheduleError):
    kind = "NotFound"


class AlreadyTerminal(ScheduleError):
    kind = "AlreadyTerminal"

    def __init__(self, record_id: str, status: str) -> None:
        self.record_id = record_id
        self.status = status
        super().__init__(f"{record_id} is already {status}")


class CapacityConflict(ScheduleError):
    """The seat was taken between the admission check and the write."""

    kind = "CapacityConflict"

    def __init__(self, message: str, request_id: str | None = None) -> None:
        self.request_id = request_id
        super().__init__(message)


class UpstreamUnavailable(ScheduleError):
    kind = "UpstreamUnavailable"


class StaleGeneration(Exception):
    """Raised by the overlay store when a conditional write sees a newer generation."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"expected generation {expected}, found {actual}")
