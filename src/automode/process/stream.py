"""Async driver that streams line-delimited JSON from an agent subprocess."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Mapping, Sequence

from .utils import describe_exit, normalize_exit_code, sanitize_environment

logger = logging.getLogger(__name__)

# Agent records (tool results, file dumps) regularly exceed asyncio's 64 KiB default.
STREAM_LIMIT = 16 * 1024 * 1024
DEFAULT_GRACE_PERIOD = 5.0

_POSIX = os.name == "posix"


class StreamError(RuntimeError):
    """Base class for stream driver errors."""


class ProcessError(StreamError):
    """Raised when the subprocess exits unsuccessfully."""

    def __init__(self, message: str, *, stderr: str = "", exit_code: int | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.exit_code = exit_code


class MalformedOutputError(ProcessError):
    """Raised when the subprocess printed output but no parseable JSON record."""


class AbortError(StreamError):
    """Raised when the stream ended because its abort signal was set."""


@dataclass(slots=True)
class SpawnSpec:
    """Everything needed to launch one streaming subprocess."""

    executable: str
    args: Sequence[str] = ()
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    stdin_data: str | None = None
    abort_event: asyncio.Event | None = None
    grace_period: float = DEFAULT_GRACE_PERIOD

    @property
    def command(self) -> list[str]:
        return [str(self.executable), *self.args]


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    # The child runs in its own session, so its pid is also the process group id.
    if _POSIX:
        try:
            os.killpg(process.pid, sig)
            return
        except (ProcessLookupError, PermissionError):
            pass
    with suppress(ProcessLookupError):
        process.send_signal(sig)


async def terminate_process(process: asyncio.subprocess.Process, grace_period: float) -> int:
    """Stop a process with SIGTERM, escalate to SIGKILL after ``grace_period`` and reap it."""

    if process.returncode is None:
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning(
                "Process ignored SIGTERM, sending SIGKILL",
                extra={"pid": process.pid, "grace_period": grace_period},
            )
            _signal_group(process, signal.SIGKILL)
    return await process.wait()


async def _drain(stream: asyncio.StreamReader | None, sink: list[str]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        sink.append(chunk.decode("utf-8", errors="replace"))


async def _feed_stdin(process: asyncio.subprocess.Process, payload: str) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(payload.encode("utf-8"))
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Subprocess closed stdin before the payload was written", extra={"pid": process.pid})
    finally:
        with suppress(BrokenPipeError, ConnectionResetError):
            process.stdin.close()


async def _watch_abort(
    process: asyncio.subprocess.Process,
    abort_event: asyncio.Event,
    grace_period: float,
) -> None:
    await abort_event.wait()
    logger.debug("Abort requested, terminating subprocess", extra={"pid": process.pid})
    await terminate_process(process, grace_period)


async def stream_jsonl(spec: SpawnSpec) -> AsyncIterator[Any]:
    """Spawn ``spec`` and yield one parsed JSON value per stdout line.

    The sequence is lazy and cannot be restarted. A final line without a
    trailing newline is yielded once the process closes stdout. Lines that are
    not valid JSON are skipped unless nothing else was printed, in which case
    :class:`MalformedOutputError` is raised.

    Raises:
        ProcessError: the process exited with a non-zero status; carries the
            complete stderr text and the exit code (signals as ``128 + n``).
        AbortError: ``spec.abort_event`` was set. No record is yielded once the
            abort is observed, and the process is terminated within
            ``spec.grace_period`` seconds before this is raised.
    """

    abort_event = spec.abort_event
    if abort_event is not None and abort_event.is_set():
        raise AbortError("Aborted before the subprocess was spawned")

    process = await asyncio.create_subprocess_exec(
        *spec.command,
        stdin=asyncio.subprocess.PIPE if spec.stdin_data is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(spec.cwd) if spec.cwd is not None else None,
        env=sanitize_environment(spec.env),
        limit=STREAM_LIMIT,
        start_new_session=_POSIX,
    )
    logger.debug("Spawned subprocess", extra={"pid": process.pid, "executable": spec.executable})

    stderr_chunks: list[str] = []
    stderr_task = asyncio.create_task(_drain(process.stderr, stderr_chunks))
    abort_task = (
        asyncio.create_task(_watch_abort(process, abort_event, spec.grace_period))
        if abort_event is not None
        else None
    )

    parsed = 0
    malformed: list[str] = []
    try:
        if spec.stdin_data is not None:
            await _feed_stdin(process, spec.stdin_data)

        stdout = process.stdout
        if stdout is None:
            raise ProcessError(f"{spec.executable} has no stdout pipe")
        while True:
            if abort_event is not None and abort_event.is_set():
                break
            line = await stdout.readline()
            if not line:
                break
            if abort_event is not None and abort_event.is_set():
                break
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                record = json.loads(text)
            except json.JSONDecodeError:
                malformed.append(text)
                logger.debug("Skipping malformed JSON line", extra={"pid": process.pid, "line": text[:200]})
                continue
            parsed += 1
            yield record

        if abort_event is not None and abort_event.is_set():
            if abort_task is not None:
                await abort_task
            raise AbortError(f"{spec.executable} was aborted")

        returncode = await process.wait()
        await stderr_task
        stderr = "".join(stderr_chunks)
        if returncode != 0:
            raise ProcessError(
                f"{spec.executable} failed ({describe_exit(returncode)})",
                stderr=stderr,
                exit_code=normalize_exit_code(returncode),
            )
        if malformed and parsed == 0:
            raise MalformedOutputError(
                f"{spec.executable} produced no valid JSON output",
                stderr=stderr or "\n".join(malformed),
                exit_code=returncode,
            )
    finally:
        if process.returncode is None:
            await terminate_process(process, spec.grace_period)
        pending = [task for task in (abort_task, stderr_task) if task is not None and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
