"""Orchestrator-level error types."""

from __future__ import annotations


class AutoModeError(RuntimeError):
    """Base class for auto-mode orchestration errors."""


class AlreadyRunningError(AutoModeError):
    """Raised when a feature already owns a session."""


class NotRunningError(AutoModeError):
    """Raised when interrupting or stopping a feature without an active session."""


class NotInterruptedError(AutoModeError):
    """Raised when continuing a feature that has no preserved agent session."""


class RequestValidationError(AutoModeError, ValueError):
    """Raised when required inputs are missing or invalid. Nothing is spawned."""


__all__ = [
    "AlreadyRunningError",
    "AutoModeError",
    "NotInterruptedError",
    "NotRunningError",
    "RequestValidationError",
]
