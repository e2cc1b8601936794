"""Profile models describing how an agent run is configured."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class AgentProfile(BaseModel):
    """Configuration applied to every feature run that selects this profile."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(default="", description="Display title for the profile.")
    system_prompt: str | None = Field(
        default=None,
        description="System prompt passed to the agent CLI.",
    )
    model: str | None = Field(
        default=None,
        description="Model id or alias; a '-chrome' suffix routes to the browser-enabled CLI.",
    )
    allowed_tools: list[str] | None = Field(
        default=None,
        description="Tool allow-list. Omit for unrestricted tools, use [] to disable all tools.",
    )
    guidelines: list[str] = Field(
        default_factory=list,
        description="Ordered implementation guidelines appended to the feature prompt.",
    )
    constraints: list[str] = Field(
        default_factory=list,
        description="Guardrails the agent must respect.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata for filtering or reporting.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Profile id must not be empty")
        return normalized


DEFAULT_PROFILE = AgentProfile(
    id="default",
    title="Feature implementer",
    guidelines=[
        "Read the existing code before changing it",
        "Keep the change scoped to this feature",
        "Run the project's tests when they exist",
    ],
)


__all__ = ["AgentProfile", "DEFAULT_PROFILE"]
