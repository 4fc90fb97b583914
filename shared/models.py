"""Session records exchanged with the session directory.

Everything here is plain data. The directory owns sessions and mutates them;
the classroom client only parses, reads and evaluates them. Parsing is strict
about ``status``: an unknown value raises ``ValueError`` at the boundary so it
can never leak into eligibility decisions.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


class SessionStatus(str, Enum):
    """Lifecycle of a scheduled class."""

    SCHEDULED = "scheduled"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, raw: object) -> "SessionStatus":
        if isinstance(raw, SessionStatus):
            return raw
        if not isinstance(raw, str):
            raise ValueError(f"Session status must be a string, got {raw!r}")
        try:
            return cls(raw.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown session status {raw!r}") from None

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)

    def can_transition_to(self, target: "SessionStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.SCHEDULED: frozenset({SessionStatus.ONGOING, SessionStatus.CANCELLED}),
    SessionStatus.ONGOING: frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


class Role(str, Enum):
    FACULTY = "faculty"
    STUDENT = "student"
    ADMIN = "admin"


@dataclass(slots=True)
class RoleContext:
    """Identity of the principal on whose behalf requests are made."""

    principal_id: str
    role: Role
    token: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-Principal-Id": self.principal_id,
            "X-Principal-Role": self.role.value,
        }
        if self.display_name:
            headers["X-Principal-Name"] = self.display_name
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers


def parse_timestamp(raw: object) -> datetime:
    """Parse an ISO-8601 timestamp into an aware datetime.

    Naive values are read in the local timezone of this machine, which is how
    the portal has always interpreted ``datetime-local`` form input.
    """

    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid timestamp {raw!r}") from None
    else:
        raise ValueError(f"Invalid timestamp {raw!r}")
    if value.tzinfo is None:
        value = value.astimezone()
    return value


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class CourseRef:
    id: str
    code: str = ""
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "code": self.code, "name": self.name}

    @classmethod
    def from_raw(cls, raw: object) -> "CourseRef":
        if isinstance(raw, dict):
            course_id = raw.get("id") or raw.get("_id")
            if not course_id:
                raise ValueError("Course reference without id")
            return cls(id=str(course_id), code=str(raw.get("code") or ""), name=str(raw.get("name") or ""))
        if isinstance(raw, (str, int)) and str(raw):
            return cls(id=str(raw))
        raise ValueError(f"Invalid course reference {raw!r}")


@dataclass(slots=True)
class PersonRef:
    id: str
    name: str = ""
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "name": self.name}
        if self.email:
            data["email"] = self.email
        return data

    @classmethod
    def from_raw(cls, raw: object) -> "PersonRef":
        if isinstance(raw, dict):
            person_id = raw.get("id") or raw.get("_id")
            if not person_id:
                raise ValueError("Person reference without id")
            return cls(id=str(person_id), name=str(raw.get("name") or ""), email=raw.get("email") or None)
        if isinstance(raw, (str, int)) and str(raw):
            return cls(id=str(raw))
        raise ValueError(f"Invalid person reference {raw!r}")


@dataclass(slots=True)
class Session:
    """A scheduled real-time class bound to a course and an instructor."""

    id: str
    course: CourseRef
    instructor: PersonRef
    title: str
    scheduled_at: datetime
    duration_minutes: int
    status: SessionStatus
    room_id: str
    description: str = ""
    participant_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "course": self.course.to_dict(),
            "instructor": self.instructor.to_dict(),
            "title": self.title,
            "description": self.description,
            "scheduled_at": format_timestamp(self.scheduled_at),
            "duration_minutes": self.duration_minutes,
            "status": self.status.value,
            "room_id": self.room_id,
            "participant_count": self.participant_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        session_id = data.get("id") or data.get("_id")
        if not session_id:
            raise ValueError("Session record without id")
        room_id = data.get("room_id")
        if not isinstance(room_id, str) or not room_id:
            raise ValueError(f"Session {session_id} has no room_id")
        try:
            duration = int(data.get("duration_minutes", data.get("duration")))
        except (TypeError, ValueError):
            raise ValueError(f"Session {session_id} has an invalid duration") from None
        if duration <= 0:
            raise ValueError(f"Session {session_id} has a non-positive duration")
        participants = data.get("participant_count")
        if participants is None and isinstance(data.get("participants"), list):
            participants = len(data["participants"])
        try:
            participant_count = max(0, int(participants or 0))
        except (TypeError, ValueError):
            raise ValueError(f"Session {session_id} has an invalid participant count") from None
        return cls(
            id=str(session_id),
            course=CourseRef.from_raw(data.get("course", data.get("course_id"))),
            instructor=PersonRef.from_raw(data.get("instructor", data.get("instructor_id"))),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            scheduled_at=parse_timestamp(
                data.get("scheduled_at") or data.get("scheduledDateTime") or data.get("scheduled_date")
            ),
            duration_minutes=duration,
            status=SessionStatus.parse(data.get("status")),
            room_id=room_id,
            participant_count=participant_count,
        )

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)


@dataclass(slots=True)
class Presence:
    """A participant's join/leave record within a session."""

    session_id: str
    participant: str
    joined_at: datetime
    audio_enabled: bool = False
    video_enabled: bool = False
    display_name: Optional[str] = None
    left_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.left_at is None

    def finalize(self, when: Optional[datetime] = None) -> None:
        if self.left_at is None:
            self.left_at = when or datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "participant": self.participant,
            "display_name": self.display_name,
            "audio_enabled": self.audio_enabled,
            "video_enabled": self.video_enabled,
            "joined_at": format_timestamp(self.joined_at),
            "left_at": format_timestamp(self.left_at) if self.left_at else None,
        }


@dataclass(slots=True)
class JoinIntent:
    """Validated pre-join choices handed from the preview to the bridge."""

    display_name: str
    video_enabled: bool
    audio_enabled: bool


@dataclass(slots=True)
class EligibilityResult:
    bucket: str
    can_join: bool
    can_start: bool
    time_label: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bucket": self.bucket,
            "can_join": self.can_join,
            "can_start": self.can_start,
            "time_label": self.time_label,
        }


@dataclass(slots=True)
class SessionView:
    """A session paired with the eligibility computed for it."""

    session: Session
    eligibility: EligibilityResult

    def to_dict(self) -> Dict[str, Any]:
        data = self.session.to_dict()
        data["eligibility"] = self.eligibility.to_dict()
        return data
