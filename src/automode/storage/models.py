"""Data models for the feature context log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class ContextEvent:
    """Represents a stored context event for a feature."""

    id: str
    feature_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


__all__ = ["ContextEvent"]
