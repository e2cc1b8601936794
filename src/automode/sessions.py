"""Per-feature agent sessions and the running-set counter."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .config import MAX_CONCURRENCY, MIN_CONCURRENCY
from .errors import AlreadyRunningError, NotInterruptedError, NotRunningError, RequestValidationError
from .providers.types import ProviderMessage


class SessionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    INTERRUPTING = "interrupting"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunOutcome(str, Enum):
    """How a session's provider stream actually ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED})


@dataclass(slots=True)
class Continuation:
    message: str
    image_paths: tuple[str, ...] = ()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, eq=False)
class Session:
    """Live or paused execution state of one agent run against one feature."""

    feature_id: str
    project_path: str
    output_limit: int = 4000
    status: SessionStatus = SessionStatus.QUEUED
    sdk_session_id: str | None = None
    continuation: Continuation | None = None
    preserve: bool = True
    recent_output: str = ""
    error: str | None = None
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    admitted: bool = False
    model: str | None = None
    started_at: datetime | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def append_output(self, text: str) -> None:
        if not text:
            return
        combined = f"{self.recent_output}\n{text}" if self.recent_output else text
        self.recent_output = combined[-self.output_limit :]

    def observe(self, message: ProviderMessage) -> None:
        """Record the session id and visible text carried by a normalized message."""

        if message.session_id:
            self.sdk_session_id = message.session_id
        self.append_output(message.render_text())
        self.updated_at = _utcnow()

    def snapshot(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "project_path": self.project_path,
            "status": self.status.value,
            "sdk_session_id": self.sdk_session_id,
            "resuming": self.continuation is not None,
            "model": self.model,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "recent_output": self.recent_output[-500:],
        }


class SessionRegistry:
    """Owns sessions, the FIFO admission queue and the running-set counter.

    Every mutation goes through ``self._lock`` so status compare-and-set
    transitions are atomic with the counter update. Sessions in ``running``
    or ``interrupting`` hold a process and count against the bound.
    """

    def __init__(self, *, max_concurrency: int = 3, output_limit: int = 4000) -> None:
        self._sessions: dict[str, Session] = {}
        self._queue: deque[str] = deque()
        self._running = 0
        self._max_concurrency = self._validate_bound(max_concurrency)
        self._output_limit = output_limit
        self._lock = asyncio.Lock()

    @staticmethod
    def _validate_bound(value: int) -> int:
        if not isinstance(value, int) or not MIN_CONCURRENCY <= value <= MAX_CONCURRENCY:
            raise RequestValidationError(
                f"max_concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}"
            )
        return value

    @property
    def running_count(self) -> int:
        return self._running

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def set_max_concurrency(self, value: int) -> None:
        """Change the bound; running sessions above a lowered bound keep running."""

        async with self._lock:
            self._max_concurrency = self._validate_bound(value)

    def get(self, feature_id: str) -> Session | None:
        return self._sessions.get(feature_id)

    def snapshot(self) -> list[dict[str, Any]]:
        return [session.snapshot() for session in self._sessions.values()]

    async def reserve(self, feature_id: str, project_path: str) -> Session:
        """Create a queued session, enforcing one session per feature."""

        async with self._lock:
            existing = self._sessions.get(feature_id)
            if existing is not None:
                if existing.status is SessionStatus.PAUSED:
                    raise AlreadyRunningError(
                        f"Feature '{feature_id}' has an interrupted session; continue or stop it first"
                    )
                raise AlreadyRunningError(f"Feature '{feature_id}' is already {existing.status.value}")
            session = Session(feature_id=feature_id, project_path=project_path, output_limit=self._output_limit)
            self._sessions[feature_id] = session
            self._queue.append(feature_id)
            return session

    async def resume(
        self,
        feature_id: str,
        project_path: str,
        continuation: Continuation,
        *,
        stored_session_id: str | None = None,
    ) -> Session:
        """Queue a paused session again with new user input.

        ``stored_session_id`` lets a feature interrupted by an earlier process
        resume even though this registry never saw it.
        """

        async with self._lock:
            session = self._sessions.get(feature_id)
            if session is None:
                if not stored_session_id:
                    raise NotInterruptedError(f"Feature '{feature_id}' has no interrupted session")
                session = Session(
                    feature_id=feature_id,
                    project_path=project_path,
                    output_limit=self._output_limit,
                    status=SessionStatus.PAUSED,
                    sdk_session_id=stored_session_id,
                )
                self._sessions[feature_id] = session
            elif session.status is not SessionStatus.PAUSED:
                raise AlreadyRunningError(f"Feature '{feature_id}' is already {session.status.value}")

            if not session.sdk_session_id:
                raise NotInterruptedError(f"Feature '{feature_id}' has no preserved agent session")

            session.project_path = project_path
            session.continuation = continuation
            session.preserve = True
            session.error = None
            session.abort_event = asyncio.Event()
            session.done = asyncio.Event()
            session.task = None
            session.status = SessionStatus.QUEUED
            session.updated_at = _utcnow()
            self._queue.append(feature_id)
            return session

    async def admit(self) -> list[Session]:
        """Move queued sessions to running while the live bound allows it."""

        admitted: list[Session] = []
        async with self._lock:
            while self._queue and self._running < self._max_concurrency:
                feature_id = self._queue.popleft()
                session = self._sessions.get(feature_id)
                if session is None or session.status is not SessionStatus.QUEUED:
                    continue
                session.status = SessionStatus.RUNNING
                session.admitted = True
                session.started_at = session.updated_at = _utcnow()
                self._running += 1
                admitted.append(session)
        return admitted

    async def begin_interrupt(self, feature_id: str, *, preserve: bool) -> tuple[Session, SessionStatus]:
        """Start cancelling a session and return it with its previous status.

        Running sessions move to ``interrupting`` and get their abort signal.
        Queued sessions leave the queue at once. With ``preserve=False`` (stop)
        paused sessions are discarded as well.
        """

        async with self._lock:
            session = self._sessions.get(feature_id)
            if session is None:
                raise NotRunningError(f"Feature '{feature_id}' is not running")

            previous = session.status
            if previous is SessionStatus.RUNNING:
                session.status = SessionStatus.INTERRUPTING
                session.preserve = preserve
                session.abort_event.set()
            elif previous is SessionStatus.INTERRUPTING:
                session.preserve = session.preserve and preserve
            elif previous is SessionStatus.QUEUED:
                session.preserve = preserve
                try:
                    self._queue.remove(feature_id)
                except ValueError:
                    pass
                if preserve and session.continuation is not None and session.sdk_session_id:
                    session.status = SessionStatus.PAUSED
                    session.continuation = None
                else:
                    session.status = SessionStatus.CANCELLED
                    del self._sessions[feature_id]
                session.done.set()
            elif previous is SessionStatus.PAUSED and not preserve:
                session.preserve = False
                session.status = SessionStatus.CANCELLED
                del self._sessions[feature_id]
                session.done.set()
            else:
                raise NotRunningError(f"Feature '{feature_id}' is not running (status: {previous.value})")

            session.updated_at = _utcnow()
            return session, previous

    async def finish(self, session: Session, outcome: RunOutcome) -> SessionStatus:
        """Apply the terminal transition of an admitted run.

        The counter is decremented exactly once per admission. If the stream
        reported its result before an interrupt took effect, completion wins.
        """

        async with self._lock:
            if session.admitted:
                session.admitted = False
                self._running -= 1

            interrupted = session.status is SessionStatus.INTERRUPTING
            if outcome is RunOutcome.COMPLETED:
                final = SessionStatus.COMPLETED
            elif outcome is RunOutcome.FAILED:
                final = SessionStatus.FAILED
            elif interrupted and session.preserve and session.sdk_session_id:
                final = SessionStatus.PAUSED
            else:
                final = SessionStatus.CANCELLED

            session.status = final
            session.continuation = None
            session.task = None
            session.updated_at = _utcnow()
            if final in TERMINAL_STATUSES and self._sessions.get(session.feature_id) is session:
                del self._sessions[session.feature_id]
            return final


__all__ = [
    "Continuation",
    "RunOutcome",
    "Session",
    "SessionRegistry",
    "SessionStatus",
    "TERMINAL_STATUSES",
]
