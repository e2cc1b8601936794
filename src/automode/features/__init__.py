"""Feature records and the store the orchestrator reads and updates."""

from .models import Feature, FeatureStatus
from .store import (
    FeatureNotFoundError,
    FeatureStore,
    FeatureStoreError,
    FileFeatureStore,
    merge_updates,
)

__all__ = [
    "Feature",
    "FeatureNotFoundError",
    "FeatureStatus",
    "FeatureStore",
    "FeatureStoreError",
    "FileFeatureStore",
    "merge_updates",
]
