"""Base class for providers that drive an agent CLI over line-delimited JSON."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

from ..process import AbortError, ProcessError, SpawnSpec, stream_jsonl
from ..process.stream import DEFAULT_GRACE_PERIOD
from .errors import ErrorRule, ProviderError, ProviderErrorCode, classify_error
from .paths import PathEnvironment, candidate_paths, find_executable
from .types import (
    ExecutionOptions,
    InstallationStatus,
    ModelDefinition,
    ProviderMessage,
    QueryLifecycle,
    QueryState,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CliSpawnConfig:
    cli_name: str
    candidate_paths: list[Path] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class Provider(Protocol):
    """Capabilities the orchestrator relies on."""

    name: str

    def detect_installation(self) -> InstallationStatus:
        ...

    def spawn_config(self) -> CliSpawnConfig:
        ...

    def build_args(self, options: ExecutionOptions) -> list[str]:
        ...

    def normalize(self, record: Any) -> ProviderMessage | None:
        ...

    def map_error(self, stderr: str, exit_code: int | None) -> ProviderError:
        ...

    def execute_query(
        self,
        options: ExecutionOptions,
        *,
        lifecycle: QueryLifecycle | None = None,
    ) -> AsyncIterator[ProviderMessage]:
        ...


class CliProvider(ABC):
    """Template for CLI-backed providers.

    Subclasses describe the wire format (``build_args``, ``normalize``) and
    the stderr classification rules; this class owns detection, spawning and
    session id bookkeeping.
    """

    name: str = "cli"
    cli_name: str = "agent"
    install_instructions: str = "Install the agent CLI and make sure it is on PATH"
    error_rules: Sequence[ErrorRule] = ()

    def __init__(
        self,
        *,
        cli_path: str | None = None,
        path_env: PathEnvironment | None = None,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        self._override = cli_path
        self._path_env = path_env or PathEnvironment()
        self._grace_period = grace_period
        self._extra_env = dict(extra_env or {})
        self._cli_path: Path | None = None
        self._detected = False

    @property
    def cli_path(self) -> Path | None:
        return self._cli_path

    def spawn_config(self) -> CliSpawnConfig:
        return CliSpawnConfig(
            cli_name=self.cli_name,
            candidate_paths=candidate_paths(self.cli_name, self._path_env, override=self._override),
            env=dict(self._extra_env),
        )

    def _ensure_detected(self, *, refresh: bool = False) -> Path | None:
        if refresh or not self._detected:
            self._cli_path = find_executable(self.cli_name, self._path_env, override=self._override)
            self._detected = True
        return self._cli_path

    def detect_installation(self, *, refresh: bool = False) -> InstallationStatus:
        path = self._ensure_detected(refresh=refresh)
        installed = path is not None
        # Authentication problems only surface at run time and are mapped by map_error.
        return InstallationStatus(
            installed=installed,
            path=str(path) if path is not None else None,
            authenticated=installed,
        )

    def map_error(self, stderr: str, exit_code: int | None) -> ProviderError:
        return classify_error(
            stderr,
            exit_code,
            self.error_rules,
            crash_message=f"{self.cli_name} process was terminated",
            cli_name=self.cli_name,
        )

    def available_models(self) -> list[ModelDefinition]:
        return []

    def supports_feature(self, feature: str) -> bool:
        return False

    @abstractmethod
    def build_args(self, options: ExecutionOptions) -> list[str]:
        """Translate execution options into CLI arguments."""

    @abstractmethod
    def normalize(self, record: Any) -> ProviderMessage | None:
        """Convert one raw record into the canonical protocol, or ``None``."""

    def extract_session_id(self, record: Any) -> str | None:
        if isinstance(record, dict):
            value = record.get("session_id")
            if isinstance(value, str) and value:
                return value
        return None

    def not_installed_error(self) -> ProviderError:
        return ProviderError(
            ProviderErrorCode.NOT_INSTALLED,
            f"{self.cli_name} CLI is not installed",
            recoverable=True,
            suggestion=self.install_instructions,
        )

    async def execute_query(
        self,
        options: ExecutionOptions,
        *,
        lifecycle: QueryLifecycle | None = None,
    ) -> AsyncIterator[ProviderMessage]:
        """Run the CLI and yield normalized messages in stdout order.

        Cancellation through ``options.abort_event`` ends the sequence
        silently. Process failures are raised as :class:`ProviderError`.
        """

        lifecycle = lifecycle or QueryLifecycle()
        lifecycle.advance(QueryState.DETECTING)
        cli_path = self._ensure_detected()
        if cli_path is None:
            lifecycle.advance(QueryState.FAILED)
            raise self.not_installed_error()

        if options.abort_event is not None and options.abort_event.is_set():
            lifecycle.advance(QueryState.CANCELLED)
            return

        lifecycle.advance(QueryState.SPAWNING)
        args = self.build_args(options)
        spec = SpawnSpec(
            executable=str(cli_path),
            args=args,
            cwd=options.cwd,
            env=self._extra_env,
            stdin_data=options.prompt_text(),
            abort_event=options.abort_event,
            grace_period=self._grace_period,
        )
        logger.debug(
            "Executing provider query",
            extra={"provider": self.name, "model": options.model, "cli_args": " ".join(args)},
        )

        session_id: str | None = options.resume_session_id
        observed = False
        try:
            lifecycle.advance(QueryState.STREAMING)
            async with aclosing(stream_jsonl(spec)) as records:
                async for record in records:
                    if not observed:
                        seen = self.extract_session_id(record)
                        if seen:
                            session_id = seen
                            observed = True
                            logger.debug(
                                "Agent session started",
                                extra={"provider": self.name, "session_id": session_id},
                            )

                    message = self.normalize(record)
                    if message is None:
                        continue
                    if not message.session_id and session_id:
                        message.session_id = session_id
                    yield message
        except AbortError:
            logger.debug("Provider query aborted", extra={"provider": self.name})
            lifecycle.advance(QueryState.CANCELLED)
            return
        except ProcessError as exc:
            lifecycle.advance(QueryState.FAILED)
            raise self.map_error(exc.stderr or str(exc), exc.exit_code) from exc
        except (GeneratorExit, asyncio.CancelledError):
            if not lifecycle.finished:
                lifecycle.advance(QueryState.CANCELLED)
            raise
        except Exception:
            if not lifecycle.finished:
                lifecycle.advance(QueryState.FAILED)
            raise

        lifecycle.advance(QueryState.COMPLETED)


__all__ = ["CliProvider", "CliSpawnConfig", "Provider"]
