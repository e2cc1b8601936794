"""Provider error taxonomy and stderr classification rules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence


class ProviderErrorCode(str, Enum):
    NOT_INSTALLED = "NotInstalled"
    NOT_AUTHENTICATED = "NotAuthenticated"
    INTEGRATION_NOT_CONNECTED = "IntegrationNotConnected"
    RATE_LIMITED = "RateLimited"
    NETWORK_ERROR = "NetworkError"
    PROCESS_CRASHED = "ProcessCrashed"
    UNKNOWN = "Unknown"


class ProviderError(RuntimeError):
    """Classified failure raised at the provider boundary."""

    def __init__(
        self,
        code: ProviderErrorCode,
        message: str,
        *,
        recoverable: bool = False,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = recoverable
        self.suggestion = suggestion

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "suggestion": self.suggestion,
        }


@dataclass(frozen=True, slots=True)
class ErrorRule:
    """Case-insensitive substring rule; the first matching rule wins."""

    code: ProviderErrorCode
    needles: tuple[str, ...]
    message: str
    suggestion: str | None = None
    recoverable: bool = True

    def matches(self, lowered: str) -> bool:
        return any(needle in lowered for needle in self.needles)

    def build(self) -> ProviderError:
        return ProviderError(
            self.code,
            self.message,
            recoverable=self.recoverable,
            suggestion=self.suggestion,
        )


CRASH_EXIT_CODES = frozenset({137})
CRASH_NEEDLES = ("killed", "sigterm")


def classify_error(
    stderr: str,
    exit_code: int | None,
    rules: Sequence[ErrorRule],
    *,
    crash_message: str = "Agent process was terminated",
    cli_name: str = "agent",
) -> ProviderError:
    """Map raw stderr text and exit code onto a :class:`ProviderError`."""

    lowered = (stderr or "").lower()

    if exit_code in CRASH_EXIT_CODES or any(needle in lowered for needle in CRASH_NEEDLES):
        return ProviderError(
            ProviderErrorCode.PROCESS_CRASHED,
            crash_message,
            recoverable=True,
            suggestion="The process may have run out of memory. Try a simpler task.",
        )

    for rule in rules:
        if rule.matches(lowered):
            return rule.build()

    return ProviderError(
        ProviderErrorCode.UNKNOWN,
        stderr.strip() or f"{cli_name} exited with code {exit_code}",
        recoverable=False,
    )


__all__ = [
    "CRASH_EXIT_CODES",
    "ErrorRule",
    "ProviderError",
    "ProviderErrorCode",
    "classify_error",
]
