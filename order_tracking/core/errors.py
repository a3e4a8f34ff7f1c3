"""
Structured pipeline errors.

Every failure the pipeline surfaces is one of four kinds, so the console can
react consistently instead of inspecting raw transport exceptions:

    - CONNECTIVITY: subscription drop, timeout, unreachable data service
    - PERMISSION:   the data service rejected a read/write by access rules
    - AUDIO:        no way left to make a sound (visual badge only)
    - WORKER:       the background agent could not be registered
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    CONNECTIVITY = "connectivity"
    PERMISSION = "permission"
    AUDIO = "audio"
    WORKER = "worker"


@dataclass
class PipelineError:
    """A reported error, as shown to the console."""
    kind: ErrorKind
    message: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dismissed: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "occurred_at": self.occurred_at.isoformat(),
            "dismissed": self.dismissed,
        }


# =============================================================================
# EXCEPTIONS
# =============================================================================

class PipelineException(Exception):
    """Base class for exceptions raised inside the pipeline."""

    kind: ErrorKind = ErrorKind.CONNECTIVITY

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def as_error(self) -> PipelineError:
        return PipelineError(kind=self.kind, message=self.message)


class ConnectivityError(PipelineException):
    kind = ErrorKind.CONNECTIVITY


class PermissionDeniedError(PipelineException):
    kind = ErrorKind.PERMISSION


class PlaybackRejected(PipelineException):
    """The audio clip could not be started (autoplay rules, device busy, ...)."""
    kind = ErrorKind.AUDIO


class AudioUnsupported(PipelineException):
    """Tone synthesis is not available on this host."""
    kind = ErrorKind.AUDIO


class WorkerRegistrationError(PipelineException):
    kind = ErrorKind.WORKER


# =============================================================================
# DATA SERVICE ERROR RULES
# =============================================================================

def _is_permission_error(status_code: int, code: str, message: str) -> bool:
    return (
        status_code in (401, 403)
        or code == "42501"
        or "row-level security" in message.lower()
        or "permission denied" in message.lower()
    )


def _is_server_error(status_code: int, code: str, message: str) -> bool:
    return status_code >= 500 or status_code == 0


# List of (predicate, exception class). First match wins.
DATA_SERVICE_ERROR_RULES: list[tuple[Callable[[int, str, str], bool], type[PipelineException]]] = [
    (_is_permission_error, PermissionDeniedError),
    (_is_server_error, ConnectivityError),
]


def data_service_error(status_code: int, message: str, code: str = "") -> PipelineException:
    """
    Map a data service failure into a structured pipeline exception.
    Uses DATA_SERVICE_ERROR_RULES; anything unmatched is treated as a
    connectivity problem, since it is not a configuration issue we can name.
    """
    for predicate, exc_class in DATA_SERVICE_ERROR_RULES:
        if predicate(status_code, code, message):
            return exc_class(message)
    return ConnectivityError(message)


# =============================================================================
# ERROR BOARD
# =============================================================================

class PipelineErrors:
    """
    Active errors of one session, at most one per kind.

    Reporting an error of a kind that is already active replaces it (the
    newest message wins) and un-dismisses it.
    """

    def __init__(self) -> None:
        self._errors: dict[ErrorKind, PipelineError] = {}

    def report(self, error: PipelineError) -> None:
        previous = self._errors.get(error.kind)
        if previous is None or previous.message != error.message or previous.dismissed:
            log = logger.error if error.kind == ErrorKind.PERMISSION else logger.warning
            log(f"Pipeline {error.kind.value} error: {error.message}")
        self._errors[error.kind] = error

    def report_exception(self, exc: PipelineException) -> None:
        self.report(exc.as_error())

    def clear(self, kind: ErrorKind) -> None:
        if self._errors.pop(kind, None) is not None:
            logger.info(f"Pipeline {kind.value} error cleared")

    def dismiss(self, kind: ErrorKind) -> bool:
        error = self._errors.get(kind)
        if error is None:
            return False
        error.dismissed = True
        return True

    def get(self, kind: ErrorKind) -> Optional[PipelineError]:
        return self._errors.get(kind)

    def active(self) -> list[PipelineError]:
        """Errors not dismissed by the user."""
        return [e for e in self._errors.values() if not e.dismissed]

    def __contains__(self, kind: ErrorKind) -> bool:
        return kind in self._errors
