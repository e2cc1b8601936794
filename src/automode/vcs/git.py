"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..process.utils import sanitize_environment


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


class GitCommandError(GitRunnerError):
    """Raised when a git command exits with a non-zero status."""

    def __init__(self, result: "GitExecutionResult") -> None:
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        super().__init__(f"git {' '.join(result.args[1:])} failed: {detail}")
        self.result = result


@dataclass(slots=True)
class GitExecutionResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(slots=True)
class CommitOutcome:
    committed: bool
    commit_sha: str | None = None
    message: str | None = None


class GitRunner:
    """Execute git commands asynchronously inside a working tree."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def has_changes(self, cwd: Path) -> bool:
        result = await self._checked(cwd, "status", "--porcelain")
        return bool(result.stdout.strip())

    async def commit_all(self, cwd: Path, message: str) -> CommitOutcome:
        """Stage everything under ``cwd`` and commit it.

        An empty change set is not an error: ``committed`` is ``False``.
        """

        await self._checked(cwd, "add", "-A")
        if not await self.has_changes(cwd):
            return CommitOutcome(committed=False)
        await self._checked(cwd, "commit", "-m", message)
        head = await self._checked(cwd, "rev-parse", "HEAD")
        return CommitOutcome(committed=True, commit_sha=head.stdout.strip(), message=message)

    async def _checked(self, cwd: Path, *args: str) -> GitExecutionResult:
        result = await self._invoke(cwd, *args)
        if not result.ok:
            raise GitCommandError(result)
        return result

    async def _invoke(self, cwd: Path, *args: str) -> GitExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeGitRunner(GitRunner):
    """Test double that records commits instead of touching a repository."""

    def __init__(self, outcomes: Iterable[CommitOutcome] | None = None) -> None:  # type: ignore[override]
        self._outcomes = list(outcomes or [])
        self._commits: list[tuple[Path, str]] = []
        self._executable_path = Path("/tmp/fake-git")

    async def commit_all(self, cwd: Path, message: str) -> CommitOutcome:  # type: ignore[override]
        self._commits.append((Path(cwd), message))
        if self._outcomes:
            return self._outcomes.pop(0)
        return CommitOutcome(committed=True, commit_sha="0" * 40, message=message)

    @property
    def commits(self) -> list[tuple[Path, str]]:
        return self._commits


__all__ = [
    "CommitOutcome",
    "FakeGitRunner",
    "GitCommandError",
    "GitExecutionResult",
    "GitNotFoundError",
    "GitRunner",
    "GitRunnerError",
]
