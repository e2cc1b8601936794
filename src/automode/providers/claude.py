"""Provider for the Claude CLI in streaming JSON print mode."""

from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from .base import CliProvider
from .errors import ErrorRule, ProviderErrorCode
from .types import (
    AssistantContent,
    ExecutionOptions,
    ModelDefinition,
    ProviderMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

MODEL_ALIASES = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-5-20251101",
}

AUTH_RULE = ErrorRule(
    code=ProviderErrorCode.NOT_AUTHENTICATED,
    needles=("not authenticated", "please log in", "unauthorized"),
    message="Claude CLI is not authenticated",
    suggestion='Run "claude login" to authenticate',
)
RATE_LIMIT_RULE = ErrorRule(
    code=ProviderErrorCode.RATE_LIMITED,
    needles=("rate limit", "too many requests", "429"),
    message="API rate limit exceeded",
    suggestion="Wait a few minutes and try again",
)
NETWORK_RULE = ErrorRule(
    code=ProviderErrorCode.NETWORK_ERROR,
    needles=("network", "connection", "econnrefused", "timeout"),
    message="Network connection error",
    suggestion="Check your internet connection and try again",
)


def resolve_model(model: str | None, *, routing_suffix: str | None = None) -> str:
    resolved = model or DEFAULT_MODEL
    if routing_suffix and resolved.endswith(routing_suffix):
        resolved = resolved[: -len(routing_suffix)]
    return MODEL_ALIASES.get(resolved, resolved)


class ClaudeCliProvider(CliProvider):
    """Runs ``claude -p --output-format stream-json`` with the prompt on stdin."""

    name = "claude"
    cli_name = "claude"
    install_instructions = "Install Claude CLI from https://claude.ai/code"
    error_rules = (AUTH_RULE, RATE_LIMIT_RULE, NETWORK_RULE)
    routing_suffix: str | None = None

    def mode_flags(self) -> list[str]:
        return []

    def build_args(self, options: ExecutionOptions) -> list[str]:
        model = resolve_model(options.model, routing_suffix=self.routing_suffix)
        args = [
            *self.mode_flags(),
            "-p",
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
            "--model",
            model,
        ]
        if options.system_prompt:
            args.extend(["--system-prompt", options.system_prompt])
        if options.resume_session_id:
            args.extend(["--resume", options.resume_session_id])
        if options.allowed_tools is not None:
            if len(options.allowed_tools) == 0:
                args.extend(["--tools", ""])
            else:
                args.extend(["--allowedTools", ",".join(options.allowed_tools)])
        args.append("-")
        return args

    def normalize(self, record: Any) -> ProviderMessage | None:
        if not isinstance(record, dict):
            return None

        kind = record.get("type")
        if kind == "assistant":
            return self._normalize_assistant(record)
        if kind == "result":
            return self._normalize_result(record)
        # system/init handshakes and anything unknown carry no user-visible content
        return None

    def _normalize_assistant(self, record: dict[str, Any]) -> ProviderMessage | None:
        payload = record.get("message") or {}
        blocks: list = []
        for block in payload.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                blocks.append(TextBlock(text=block["text"]))
            elif block_type == "tool_use" and block.get("name"):
                blocks.append(
                    ToolUseBlock(
                        name=block["name"],
                        tool_use_id=block.get("id") or block.get("tool_use_id") or f"tool_{uuid4().hex[:12]}",
                        input=block.get("input") or {},
                    )
                )
            elif block_type == "tool_result" and block.get("tool_use_id"):
                blocks.append(
                    ToolResultBlock(
                        tool_use_id=block["tool_use_id"],
                        content=block.get("content") or "",
                    )
                )

        if not blocks:
            return None

        return ProviderMessage(
            type="assistant",
            session_id=record.get("session_id"),
            message=AssistantContent(content=blocks),
        )

    def _normalize_result(self, record: dict[str, Any]) -> ProviderMessage:
        if record.get("is_error"):
            return ProviderMessage(
                type="error",
                session_id=record.get("session_id"),
                error=record.get("error") or record.get("result") or "Unknown error",
            )
        subtype = "success" if record.get("subtype", "success") == "success" else "error"
        return ProviderMessage(
            type="result",
            subtype=subtype,
            session_id=record.get("session_id"),
            result=record.get("result"),
        )

    def available_models(self) -> list[ModelDefinition]:
        return [
            ModelDefinition(
                id=full,
                name=f"Claude {alias.title()}",
                model_string=full,
                provider=self.name,
                description=f"Claude {alias.title()} via the Claude CLI",
            )
            for alias, full in MODEL_ALIASES.items()
        ]

    def supports_feature(self, feature: str) -> bool:
        return feature in {"tools", "text", "streaming", "vision", "resume"}


__all__ = [
    "AUTH_RULE",
    "ClaudeCliProvider",
    "DEFAULT_MODEL",
    "MODEL_ALIASES",
    "NETWORK_RULE",
    "RATE_LIMIT_RULE",
    "resolve_model",
]
