"""Error taxonomy shared by the classroom client and the session directory."""
from __future__ import annotations

from typing import Optional


class ClassroomError(Exception):
    """Base class for recoverable classroom failures."""


class MediaAccessError(ClassroomError):
    """Camera or microphone is missing or permission was denied."""


class ValidationError(ClassroomError):
    """User supplied data was rejected before any side effect happened."""


class NetworkError(ClassroomError):
    """A request to the session directory failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConferenceConnectionError(ClassroomError, ConnectionError):
    """The conferencing engine could not be loaded or the room never opened."""


class TimingViolation(ClassroomError):
    """A join or start was requested outside the eligibility window."""
