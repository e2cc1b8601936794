"""Feature records as persisted by the board."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FeatureStatus(str, Enum):
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    INTERRUPTED = "interrupted"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"
    FAILED = "failed"


class Feature(BaseModel):
    """A backlog item the agent implements. Unknown keys from the board are preserved."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., description="Stable feature identifier, also the worktree directory name.")
    title: str = Field(default="", description="Short card title.")
    description: str = Field(default="", description="What the agent should build.")
    status: str = Field(default=FeatureStatus.BACKLOG.value)
    model: str | None = Field(default=None, description="Model override for this feature.")
    profile: str | None = Field(default=None, description="Agent profile id override.")
    image_paths: list[str] = Field(default_factory=list, alias="imagePaths")
    error: str | None = None
    sdk_session_id: str | None = Field(default=None, alias="sdkSessionId")

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Feature id must not be empty")
        return normalized

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


__all__ = ["Feature", "FeatureStatus"]
