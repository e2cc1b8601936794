"""Agent CLI providers and the canonical message protocol."""

from __future__ import annotations

from .base import CliProvider, CliSpawnConfig, Provider
from .chrome import CHROME_SUFFIX, ClaudeChromeProvider
from .claude import ClaudeCliProvider
from .errors import ErrorRule, ProviderError, ProviderErrorCode
from .paths import PathEnvironment
from .types import (
    ExecutionOptions,
    InstallationStatus,
    ProviderMessage,
    QueryLifecycle,
    QueryState,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)


def get_provider(
    model: str | None,
    *,
    cli_path: str | None = None,
    grace_period: float | None = None,
) -> CliProvider:
    """Return the provider variant that serves ``model``."""

    kwargs: dict = {"cli_path": cli_path}
    if grace_period is not None:
        kwargs["grace_period"] = grace_period
    if model and model.endswith(CHROME_SUFFIX):
        return ClaudeChromeProvider(**kwargs)
    return ClaudeCliProvider(**kwargs)


__all__ = [
    "ClaudeChromeProvider",
    "ClaudeCliProvider",
    "CliProvider",
    "CliSpawnConfig",
    "ErrorRule",
    "ExecutionOptions",
    "InstallationStatus",
    "PathEnvironment",
    "Provider",
    "ProviderError",
    "ProviderErrorCode",
    "ProviderMessage",
    "QueryLifecycle",
    "QueryState",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "get_provider",
]
