"""Version-control helpers for feature worktrees."""

from .git import (
    CommitOutcome,
    FakeGitRunner,
    GitCommandError,
    GitExecutionResult,
    GitNotFoundError,
    GitRunner,
    GitRunnerError,
)

__all__ = [
    "CommitOutcome",
    "FakeGitRunner",
    "GitCommandError",
    "GitExecutionResult",
    "GitNotFoundError",
    "GitRunner",
    "GitRunnerError",
]
