"""Canonical message protocol shared by every provider."""

from __future__ import annotations

import asyncio
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    name: str
    tool_use_id: str
    input: Any = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: Any = ""


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class AssistantContent(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: list[ContentBlock] = Field(default_factory=list)

    def text(self) -> str:
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))


class ProviderMessage(BaseModel):
    """Backend-agnostic event emitted by :meth:`Provider.execute_query`."""

    type: Literal["assistant", "result", "error"]
    session_id: str | None = None
    message: AssistantContent | None = None
    subtype: Literal["success", "error"] | None = None
    result: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in {"result", "error"}

    @property
    def succeeded(self) -> bool:
        return self.type == "result" and self.subtype == "success"

    def render_text(self) -> str:
        """Human-readable text for logs and the recent-output buffer."""

        if self.type == "assistant" and self.message is not None:
            parts: list[str] = []
            for block in self.message.content:
                if isinstance(block, TextBlock):
                    parts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    parts.append(f"[tool: {block.name}]")
            return "\n".join(parts)
        if self.type == "error":
            return f"[error] {self.error or ''}".rstrip()
        return self.result or ""


class ExecutionOptions(BaseModel):
    """Inputs for one provider invocation. Immutable once built."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    prompt: Union[str, list[TextBlock]]
    model: str | None = None
    system_prompt: str | None = None
    allowed_tools: tuple[str, ...] | None = Field(
        default=None,
        description="None leaves tools unrestricted; an empty tuple disables every tool.",
    )
    cwd: Path | None = None
    resume_session_id: str | None = None
    abort_event: asyncio.Event | None = None

    @field_validator("allowed_tools", mode="before")
    @classmethod
    def _coerce_tools(cls, value):
        if value is None:
            return None
        return tuple(value)

    def prompt_text(self) -> str:
        if isinstance(self.prompt, str):
            return self.prompt
        return "\n".join(block.text for block in self.prompt if block.text)


class InstallationStatus(BaseModel):
    installed: bool
    path: str | None = None
    method: Literal["cli"] = "cli"
    authenticated: bool = False


class ModelDefinition(BaseModel):
    id: str
    name: str
    model_string: str
    provider: str
    description: str = ""
    supports_tools: bool = True
    supports_vision: bool = True


class QueryState(str, Enum):
    NOT_STARTED = "not_started"
    DETECTING = "detecting"
    SPAWNING = "spawning"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_QUERY_STATES = frozenset({QueryState.COMPLETED, QueryState.FAILED, QueryState.CANCELLED})

_QUERY_TRANSITIONS: dict[QueryState, frozenset[QueryState]] = {
    QueryState.NOT_STARTED: frozenset({QueryState.DETECTING}),
    QueryState.DETECTING: frozenset({QueryState.SPAWNING, QueryState.FAILED, QueryState.CANCELLED}),
    QueryState.SPAWNING: frozenset({QueryState.STREAMING, QueryState.FAILED, QueryState.CANCELLED}),
    QueryState.STREAMING: TERMINAL_QUERY_STATES,
}


class QueryLifecycle:
    """Tracks the state of a single ``execute_query`` invocation."""

    def __init__(self) -> None:
        self.state = QueryState.NOT_STARTED
        self.history: list[QueryState] = [QueryState.NOT_STARTED]

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_QUERY_STATES

    def advance(self, target: QueryState) -> None:
        allowed = _QUERY_TRANSITIONS.get(self.state, frozenset())
        if target not in allowed:
            raise RuntimeError(f"Invalid query transition {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)


__all__ = [
    "AssistantContent",
    "ContentBlock",
    "ExecutionOptions",
    "InstallationStatus",
    "ModelDefinition",
    "ProviderMessage",
    "QueryLifecycle",
    "QueryState",
    "TERMINAL_QUERY_STATES",
    "TextBlock",
    "ToolResultBlock",
    "ToolUseBlock",
]
