from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from shared.errors import NetworkError
from shared.models import Role, RoleContext, Session, format_timestamp

from .config import DEFAULT_DIRECTORY_URL, DEFAULT_REQUEST_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class SessionDirectoryClient:
    """HTTP client for the virtual class endpoints of the session directory."""

    def __init__(
        self,
        context: RoleContext,
        base_url: str = DEFAULT_DIRECTORY_URL,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._context = context
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=context.headers(),
            timeout=timeout,
            transport=transport,
        )

    @property
    def context(self) -> RoleContext:
        return self._context

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list_sessions(self, context: Optional[RoleContext] = None) -> List[Session]:
        """Return the sessions visible to ``context`` (default: the client's principal).

        Records that fail to parse (unknown status, missing room) are dropped
        with a warning instead of reaching the evaluator.
        """

        context = context or self._context
        if context.role is Role.STUDENT:
            path = "/virtualclass/student/sessions"
        else:
            path = "/virtualclass/my-sessions"
        data = await self._request("GET", path, headers=context.headers())
        raw_sessions = data.get("sessions")
        if not isinstance(raw_sessions, list):
            raise NetworkError("Session directory returned no session list")
        sessions: List[Session] = []
        for raw in raw_sessions:
            if not isinstance(raw, dict):
                logger.warning("Ignoring non-object session record: %r", raw)
                continue
            try:
                sessions.append(Session.from_dict(raw))
            except ValueError as exc:
                logger.warning("Rejected session record %s: %s", raw.get("id") or raw.get("_id"), exc)
        return sessions

    async def create_session(
        self,
        *,
        course_id: str,
        title: str,
        scheduled_at: datetime,
        duration_minutes: int,
        description: str = "",
    ) -> Session:
        data = await self._request(
            "POST",
            "/virtualclass/create",
            json={
                "course_id": course_id,
                "title": title,
                "description": description,
                "scheduled_at": format_timestamp(scheduled_at),
                "duration_minutes": duration_minutes,
            },
        )
        return self._session_from(data)

    async def start_session(self, session_id: str) -> Session:
        data = await self._request("PUT", f"/virtualclass/{session_id}/start")
        return self._session_from(data)

    async def join_session(self, session_id: str) -> str:
        data = await self._request("POST", f"/virtualclass/{session_id}/join")
        room_id = data.get("room_id")
        if not isinstance(room_id, str) or not room_id:
            raise NetworkError(f"Join of session {session_id} returned no room id")
        return room_id

    async def leave_session(self, session_id: str) -> None:
        await self._request("POST", f"/virtualclass/{session_id}/leave")

    async def complete_session(self, session_id: str) -> Session:
        data = await self._request("PUT", f"/virtualclass/{session_id}/complete")
        return self._session_from(data)

    async def cancel_session(self, session_id: str) -> Session:
        data = await self._request("PUT", f"/virtualclass/{session_id}/cancel")
        return self._session_from(data)

    def _session_from(self, data: Dict[str, Any]) -> Session:
        raw = data.get("session")
        if not isinstance(raw, dict):
            raise NetworkError("Session directory response carried no session")
        try:
            return Session.from_dict(raw)
        except ValueError as exc:
            raise NetworkError(f"Session directory returned an invalid session: {exc}") from exc

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            logger.warning("Session directory request %s %s failed: %s", method, path, exc)
            raise NetworkError(f"Unable to reach session directory: {exc}") from exc
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise NetworkError(
                f"Session directory returned an unreadable response ({response.status_code})",
                status_code=response.status_code,
            )
        if response.is_error or not body.get("success", False):
            message = str(body.get("message") or body.get("detail") or "API request failed")
            raise NetworkError(message, status_code=response.status_code)
        data = body.get("data")
        return data if isinstance(data, dict) else {}
