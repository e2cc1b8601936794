"""Auto-mode service: runs feature sessions concurrently under a live bound."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence

from .config import AutoModeSettings
from .errors import NotInterruptedError, RequestValidationError
from .features import Feature, FeatureStatus, FeatureStore
from .profiles import ProfileLoader
from .prompts import build_continuation_prompt, build_feature_prompt, commit_message
from .providers import ExecutionOptions, Provider, ProviderError, ProviderMessage, get_provider
from .sessions import Continuation, RunOutcome, Session, SessionRegistry, SessionStatus
from .storage import ChromaStore
from .vcs import CommitOutcome, GitRunner

logger = logging.getLogger(__name__)

WORKTREES_DIR = ".worktrees"

# Extra time on top of the driver's grace period before the run task is cancelled outright.
INTERRUPT_SLACK_SECONDS = 5.0

EventListener = Callable[[dict[str, Any]], Any]
ProviderFactory = Callable[[str | None], Provider]


@dataclass(slots=True)
class InterruptResult:
    success: bool
    sdk_session_id: str | None
    status: str
    recent_output: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "sdkSessionId": self.sdk_session_id,
            "status": self.status,
            "recentOutput": self.recent_output,
        }


def _require(value: str | None, name: str) -> str:
    if value is None or not str(value).strip():
        raise RequestValidationError(f"{name} is required")
    return str(value).strip()


class AutoModeService:
    """Start, interrupt, continue and commit agent runs for board features."""

    def __init__(
        self,
        *,
        settings: AutoModeSettings,
        feature_store: FeatureStore,
        profiles: ProfileLoader | None = None,
        provider_factory: ProviderFactory | None = None,
        context_store: ChromaStore | None = None,
        git_runner: GitRunner | None = None,
    ) -> None:
        self._settings = settings
        self._store = feature_store
        self._profiles = profiles or ProfileLoader(settings.profile_paths)
        self._provider_factory = provider_factory or self._default_provider
        self._context_store = context_store
        self._git_runner = git_runner
        self._registry = SessionRegistry(
            max_concurrency=settings.max_concurrency,
            output_limit=settings.recent_output_chars,
        )
        self._listeners: list[EventListener] = []
        self._background: set[asyncio.Task] = set()

    def _default_provider(self, model: str | None) -> Provider:
        return get_provider(
            model,
            cli_path=self._settings.claude_cli_path,
            grace_period=self._settings.grace_period,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def running_count(self) -> int:
        return self._registry.running_count

    @property
    def max_concurrency(self) -> int:
        return self._registry.max_concurrency

    async def set_max_concurrency(self, value: int) -> int:
        """Update the live bound. Raising it admits queued sessions right away."""

        await self._registry.set_max_concurrency(value)
        logger.info("Concurrency bound updated", extra={"max_concurrency": value})
        await self._admit()
        return self._registry.max_concurrency

    def list_sessions(self) -> list[dict[str, Any]]:
        return self._registry.snapshot()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register an event listener; returns a callable that removes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start_feature(self, project_path: str, feature_id: str) -> dict[str, Any]:
        project_path = _require(project_path, "projectPath")
        feature_id = _require(feature_id, "featureId")

        feature = await self._store.get(project_path, feature_id)
        if feature is None:
            raise RequestValidationError(f"Feature '{feature_id}' not found in {project_path}")

        session = await self._registry.reserve(feature_id, project_path)
        await self._admit()
        status = session.status.value
        logger.info("Feature start accepted", extra={"feature_id": feature_id, "status": status})
        if session.status is SessionStatus.QUEUED:
            self._emit("feature_queued", feature_id, project_path=project_path)
        return {"success": True, "featureId": feature_id, "status": status}

    async def continue_feature(
        self,
        project_path: str,
        feature_id: str,
        message: str,
        image_paths: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        project_path = _require(project_path, "projectPath")
        feature_id = _require(feature_id, "featureId")
        message = _require(message, "message")

        stored_session_id: str | None = None
        if self._registry.get(feature_id) is None:
            feature = await self._store.get(project_path, feature_id)
            if feature is not None and feature.status == FeatureStatus.INTERRUPTED.value:
                stored_session_id = feature.sdk_session_id or await self._recorded_session_id(feature_id)
            if not stored_session_id:
                raise NotInterruptedError(f"Feature '{feature_id}' has no interrupted session")

        session = await self._registry.resume(
            feature_id,
            project_path,
            Continuation(message=message, image_paths=tuple(image_paths or ())),
            stored_session_id=stored_session_id,
        )
        await self._admit()
        logger.info(
            "Feature continuation accepted",
            extra={"feature_id": feature_id, "sdk_session_id": session.sdk_session_id},
        )
        if session.status is SessionStatus.QUEUED:
            self._emit("feature_queued", feature_id, project_path=project_path)
        return {"success": True, "featureId": feature_id, "status": session.status.value}

    async def interrupt_feature(self, feature_id: str) -> InterruptResult:
        """Cancel a running session and keep what is needed to continue it later."""

        feature_id = _require(feature_id, "featureId")
        session, previous = await self._registry.begin_interrupt(feature_id, preserve=True)
        logger.info("Interrupt requested", extra={"feature_id": feature_id, "previous": previous.value})

        if previous is SessionStatus.QUEUED:
            final = session.status
            await self._record_outcome(session, final, None)
        else:
            await self._wait_for_session(session)
            final = session.status

        success = final in {SessionStatus.PAUSED, SessionStatus.CANCELLED}
        return InterruptResult(
            success=success,
            sdk_session_id=session.sdk_session_id,
            status=final.value,
            recent_output=session.recent_output,
        )

    async def stop_feature(self, feature_id: str) -> dict[str, Any]:
        """Cancel or discard a session without keeping it resumable."""

        feature_id = _require(feature_id, "featureId")
        session, previous = await self._registry.begin_interrupt(feature_id, preserve=False)
        if previous in {SessionStatus.RUNNING, SessionStatus.INTERRUPTING}:
            await self._wait_for_session(session)
        else:
            await self._record_outcome(session, session.status, None)
        logger.info("Feature stopped", extra={"feature_id": feature_id, "status": session.status.value})
        return {"success": True, "featureId": feature_id, "status": session.status.value}

    async def update_feature(
        self,
        project_path: str,
        feature_id: str,
        updates: Mapping[str, Any],
    ) -> Feature:
        """Persist a partial update; a fresh ``verified`` status triggers an auto-commit."""

        project_path = _require(project_path, "projectPath")
        feature_id = _require(feature_id, "featureId")
        if not updates:
            raise RequestValidationError("updates are required")

        current = await self._store.get(project_path, feature_id)
        previous_status = current.status if current is not None else None
        updated = await self._store.update(project_path, feature_id, updates)

        if updates.get("status") == FeatureStatus.VERIFIED.value and previous_status != FeatureStatus.VERIFIED.value:
            worktree_path = Path(project_path) / WORKTREES_DIR / feature_id
            logger.info("Auto-committing verified feature", extra={"feature_id": feature_id})
            self._spawn_background(
                self.commit_feature(project_path, feature_id, worktree_path),
                description=f"auto-commit {feature_id}",
            )
        return updated

    async def commit_feature(
        self,
        project_path: str,
        feature_id: str,
        worktree_path: str | Path | None = None,
    ) -> CommitOutcome:
        """Commit everything in the feature's worktree. Nothing to commit is not an error."""

        project_path = _require(project_path, "projectPath")
        feature_id = _require(feature_id, "featureId")
        cwd = Path(worktree_path) if worktree_path is not None else Path(project_path) / WORKTREES_DIR / feature_id
        if not cwd.is_dir():
            cwd = Path(project_path)

        if self._git_runner is None:
            self._git_runner = GitRunner()
        feature = await self._store.get(project_path, feature_id)
        outcome = await self._git_runner.commit_all(cwd, commit_message(feature, feature_id))
        if outcome.committed:
            logger.info(
                "Committed feature changes",
                extra={"feature_id": feature_id, "commit": outcome.commit_sha, "cwd": str(cwd)},
            )
            self._emit("feature_committed", feature_id, project_path=project_path, commit=outcome.commit_sha)
        else:
            logger.info("Nothing to commit for feature", extra={"feature_id": feature_id, "cwd": str(cwd)})
        return outcome

    async def shutdown(self) -> None:
        """Interrupt every active session and wait for background work."""

        for snapshot in self._registry.snapshot():
            if snapshot["status"] in {SessionStatus.RUNNING.value, SessionStatus.QUEUED.value}:
                try:
                    await self.interrupt_feature(snapshot["feature_id"])
                except Exception:
                    logger.exception("Failed to interrupt session during shutdown", extra=snapshot)
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Session execution
    # ------------------------------------------------------------------

    async def _admit(self) -> None:
        for session in await self._registry.admit():
            session.task = asyncio.create_task(
                self._run_session(session),
                name=f"automode:{session.feature_id}",
            )

    async def _run_session(self, session: Session) -> None:
        outcome = RunOutcome.FAILED
        error: str | None = None
        try:
            outcome, error = await self._drive(session)
        except asyncio.CancelledError:
            outcome = RunOutcome.CANCELLED
            raise
        except ProviderError as exc:
            error = exc.message if not exc.suggestion else f"{exc.message}. {exc.suggestion}"
            logger.warning(
                "Provider failed",
                extra={
                    "feature_id": session.feature_id,
                    "code": exc.code.value,
                    "recoverable": exc.recoverable,
                },
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception("Feature session crashed", extra={"feature_id": session.feature_id})
        finally:
            final = await self._registry.finish(session, outcome)
            session.error = error
            try:
                await self._record_outcome(session, final, error)
            finally:
                session.done.set()
                await self._admit()

    async def _drive(self, session: Session) -> tuple[RunOutcome, str | None]:
        feature = await self._store.get(session.project_path, session.feature_id)
        if feature is None:
            return RunOutcome.FAILED, f"Feature '{session.feature_id}' no longer exists"

        profile = self._profiles.get(feature.profile or self._settings.default_profile)
        model = feature.model or profile.model or self._settings.default_model
        session.model = model
        provider = self._provider_factory(model)

        continuation = session.continuation
        if continuation is not None:
            prompt: Any = build_continuation_prompt(continuation.message, continuation.image_paths)
        else:
            prompt = build_feature_prompt(profile, feature)

        options = ExecutionOptions(
            prompt=prompt,
            model=model,
            system_prompt=profile.system_prompt,
            allowed_tools=profile.allowed_tools,
            cwd=self._working_directory(session),
            resume_session_id=session.sdk_session_id if continuation is not None else None,
            abort_event=session.abort_event,
        )

        await self._store.update(
            session.project_path,
            session.feature_id,
            {"status": FeatureStatus.IN_PROGRESS.value, "error": None},
        )
        self._emit(
            "feature_started",
            session.feature_id,
            project_path=session.project_path,
            provider=getattr(provider, "name", None),
            resumed=continuation is not None,
        )

        terminal: ProviderMessage | None = None
        async for message in provider.execute_query(options):
            session.observe(message)
            await self._record_context(session, message)
            self._emit(
                "agent_message",
                session.feature_id,
                message=message.model_dump(mode="json", exclude_none=True),
            )
            if message.is_terminal:
                terminal = message

        if terminal is None:
            if session.abort_event.is_set():
                return RunOutcome.CANCELLED, None
            return RunOutcome.FAILED, "Agent exited without reporting a result"
        if terminal.succeeded:
            return RunOutcome.COMPLETED, None
        return RunOutcome.FAILED, terminal.error or terminal.result or "Agent reported an error"

    def _working_directory(self, session: Session) -> Path:
        worktree = Path(session.project_path) / WORKTREES_DIR / session.feature_id
        return worktree if worktree.is_dir() else Path(session.project_path)

    async def _wait_for_session(self, session: Session) -> None:
        timeout = self._settings.grace_period + INTERRUPT_SLACK_SECONDS
        try:
            await asyncio.wait_for(session.done.wait(), timeout=timeout)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "Session did not stop within the grace period; cancelling its task",
                extra={"feature_id": session.feature_id, "timeout": timeout},
            )
        task = session.task
        if task is not None and not task.done():
            task.cancel()
        await session.done.wait()

    async def _record_outcome(self, session: Session, final: SessionStatus, error: str | None) -> None:
        """Write the terminal state of a session to the feature store and notify listeners."""

        if final is SessionStatus.COMPLETED:
            updates: dict[str, Any] = {
                "status": FeatureStatus.WAITING_APPROVAL.value,
                "error": None,
                "sdkSessionId": session.sdk_session_id,
            }
            event = "feature_completed"
        elif final is SessionStatus.FAILED:
            updates = {"status": FeatureStatus.FAILED.value, "error": error}
            event = "feature_failed"
        elif final is SessionStatus.PAUSED:
            updates = {"status": FeatureStatus.INTERRUPTED.value, "sdkSessionId": session.sdk_session_id}
            event = "feature_interrupted"
        else:
            updates = {"status": FeatureStatus.BACKLOG.value, "sdkSessionId": None}
            event = "feature_stopped"

        try:
            await self._store.update(session.project_path, session.feature_id, updates)
        except Exception:
            logger.exception(
                "Failed to persist session outcome",
                extra={"feature_id": session.feature_id, "status": final.value},
            )

        logger.info(
            "Session finished",
            extra={
                "feature_id": session.feature_id,
                "status": final.value,
                "sdk_session_id": session.sdk_session_id,
                "error": error,
            },
        )
        self._emit(
            event,
            session.feature_id,
            project_path=session.project_path,
            status=final.value,
            sdk_session_id=session.sdk_session_id,
            error=error,
        )

    async def _record_context(self, session: Session, message: ProviderMessage) -> None:
        if self._context_store is None:
            return
        # chromadb writes hit SQLite and the embedding model synchronously.
        try:
            await asyncio.to_thread(
                self._context_store.record_message,
                project_path=session.project_path,
                feature_id=session.feature_id,
                message=message,
            )
        except Exception:
            logger.exception("Failed to record feature context", extra={"feature_id": session.feature_id})

    async def _recorded_session_id(self, feature_id: str) -> str | None:
        """Last agent session id in the context log, for features whose document lost it."""

        if self._context_store is None:
            return None
        try:
            return await asyncio.to_thread(self._context_store.latest_session_id, feature_id)
        except Exception:
            logger.exception("Failed to read feature context", extra={"feature_id": feature_id})
            return None

    # ------------------------------------------------------------------
    # Events and background work
    # ------------------------------------------------------------------

    def _emit(self, event_type: str, feature_id: str, **payload: Any) -> None:
        event = {
            "type": event_type,
            "featureId": feature_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed", extra={"event_type": event_type})

    def _spawn_background(self, coro: Awaitable[Any], *, description: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _on_done(done: asyncio.Task) -> None:
            self._background.discard(done)
            if done.cancelled():
                logger.warning("Background task cancelled", extra={"task": description})
                return
            exc = done.exception()
            if exc is not None:
                logger.error(
                    "Background task failed",
                    extra={"task": description, "error": str(exc)},
                    exc_info=exc,
                )

        task.add_done_callback(_on_done)
        return task


__all__ = ["AutoModeService", "InterruptResult", "WORKTREES_DIR"]
