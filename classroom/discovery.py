from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional, Tuple

from shared.errors import NetworkError
from shared.models import RoleContext, Session, SessionStatus, SessionView

from .config import DEFAULT_POLL_INTERVAL_SECONDS
from .eligibility import BUCKET_LIVE, DEFAULT_POLICY, PAST_BUCKETS, EligibilityPolicy, evaluate

if TYPE_CHECKING:
    from .directory_client import SessionDirectoryClient

logger = logging.getLogger(__name__)

FETCH_FAILED_MESSAGE = "Failed to load virtual classes"

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class DiscoveryView:
    """Latest partition of the principal's sessions."""

    live: List[SessionView] = field(default_factory=list)
    upcoming: List[SessionView] = field(default_factory=list)
    past: List[SessionView] = field(default_factory=list)
    error: Optional[str] = None
    fetched_at: Optional[datetime] = None

    def find(self, session_id: str) -> Optional[SessionView]:
        for view in (*self.live, *self.upcoming, *self.past):
            if view.session.id == session_id:
                return view
        return None

    def to_dict(self) -> dict:
        return {
            "live": [view.to_dict() for view in self.live],
            "upcoming": [view.to_dict() for view in self.upcoming],
            "past": [view.to_dict() for view in self.past],
            "error": self.error,
            "retryable": self.error is not None,
            "fetched_at": self.fetched_at.isoformat() if self.fetched_at else None,
        }


ViewListener = Callable[[DiscoveryView], Awaitable[None] | None]


def partition_sessions(
    sessions: List[Session],
    now: datetime,
    policy: EligibilityPolicy = DEFAULT_POLICY,
) -> Tuple[List[SessionView], List[SessionView], List[SessionView]]:
    live: List[SessionView] = []
    upcoming: List[SessionView] = []
    past: List[SessionView] = []
    for session in sessions:
        view = SessionView(session=session, eligibility=evaluate(session, now, policy))
        if view.eligibility.bucket == BUCKET_LIVE:
            live.append(view)
        elif view.eligibility.bucket in PAST_BUCKETS:
            past.append(view)
        elif session.status is SessionStatus.SCHEDULED:
            upcoming.append(view)
    upcoming.sort(key=lambda item: item.session.scheduled_at)
    past.sort(key=lambda item: item.session.scheduled_at, reverse=True)
    return live, upcoming, past


class SessionDiscoveryPoller:
    """Keeps a role-scoped, near-real-time view of sessions.

    The timer fires every ``interval`` seconds regardless of how long a fetch
    takes; a tick that lands while a fetch is still outstanding is skipped.
    A failed fetch keeps the previous buckets and only sets ``error``.
    """

    def __init__(
        self,
        source: "SessionDirectoryClient",
        *,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        policy: EligibilityPolicy = DEFAULT_POLICY,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self._source = source
        self._interval = max(0.0, interval)
        self._policy = policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep or asyncio.sleep
        self._context: Optional[RoleContext] = None
        self._timer_task: Optional[asyncio.Task[None]] = None
        self._fetch_task: Optional[asyncio.Task[None]] = None
        self._generation = 0
        self._running = False
        self._view = DiscoveryView()
        self._listeners: List[ViewListener] = []
        self.skipped_ticks = 0
        self.fetch_count = 0

    @property
    def view(self) -> DiscoveryView:
        return self._view

    @property
    def running(self) -> bool:
        return self._running

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    def start(self, context: Optional[RoleContext] = None) -> None:
        if self._running:
            return
        self._context = context
        self._running = True
        self._generation += 1
        self._timer_task = asyncio.create_task(self._run())
        logger.debug("Session discovery started (interval=%.1fs)", self._interval)

    def stop(self) -> None:
        """Cancel the timer and any in-flight fetch; nothing fires afterwards."""

        self._running = False
        self._generation += 1
        timer, self._timer_task = self._timer_task, None
        if timer is not None and not timer.done():
            timer.cancel()
        fetch, self._fetch_task = self._fetch_task, None
        if fetch is not None and not fetch.done():
            fetch.cancel()
        logger.debug("Session discovery stopped")

    async def refresh(self) -> DiscoveryView:
        """Fetch now unless a fetch is already outstanding, then wait for it."""

        if not self._running:
            return self._view
        self._trigger()
        task = self._fetch_task
        if task is not None:
            await asyncio.wait({task})
        return self._view

    async def _run(self) -> None:
        try:
            while self._running:
                self._trigger()
                await self._sleep(self._interval)
        except asyncio.CancelledError:
            return

    def _trigger(self) -> bool:
        if self._fetch_task is not None and not self._fetch_task.done():
            self.skipped_ticks += 1
            logger.debug("Skipping discovery tick; previous fetch still in flight")
            return False
        self._fetch_task = asyncio.create_task(self._fetch_once(self._generation))
        return True

    async def _fetch_once(self, generation: int) -> None:
        self.fetch_count += 1
        error: Optional[str] = None
        sessions: Optional[List[Session]] = None
        try:
            sessions = await self._source.list_sessions(self._context)
        except NetworkError as exc:
            logger.warning("Session discovery fetch failed: %s", exc)
            error = str(exc) or FETCH_FAILED_MESSAGE
        except Exception:
            logger.exception("Unexpected error while fetching sessions")
            error = FETCH_FAILED_MESSAGE
        if generation != self._generation:
            logger.debug("Discarding discovery result from a stopped run")
            return
        if sessions is None:
            previous = self._view
            self._view = DiscoveryView(
                live=previous.live,
                upcoming=previous.upcoming,
                past=previous.past,
                error=error,
                fetched_at=previous.fetched_at,
            )
        else:
            now = self._clock()
            live, upcoming, past = partition_sessions(sessions, now, self._policy)
            self._view = DiscoveryView(live=live, upcoming=upcoming, past=past, error=None, fetched_at=now)
        await self._publish(self._view)

    async def _publish(self, view: DiscoveryView) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(view)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Discovery listener failed")
