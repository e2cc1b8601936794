"""Feature store interface and the on-disk JSON implementation."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping, Protocol, runtime_checkable

from pydantic import ValidationError

from .models import Feature

FEATURES_DIR = Path(".automaker") / "features"
FEATURE_FILE = "feature.json"


class FeatureStoreError(RuntimeError):
    """Raised when a feature document cannot be read or written."""


class FeatureNotFoundError(FeatureStoreError):
    """Raised when updating a feature that does not exist."""


@runtime_checkable
class FeatureStore(Protocol):
    """System of record for feature status; the orchestrator never caches it."""

    async def get(self, project_path: str, feature_id: str) -> Feature | None:
        ...

    async def update(self, project_path: str, feature_id: str, updates: Mapping[str, Any]) -> Feature:
        ...


def _field_name(key: str) -> str:
    for name, info in Feature.model_fields.items():
        if key == name or key == info.alias:
            return name
    return key


def merge_updates(current: Feature, updates: Mapping[str, Any]) -> Feature:
    """Apply a partial update, accepting field names or their camelCase aliases."""

    data = current.model_dump()
    for key, value in updates.items():
        data[_field_name(key)] = value
    data["id"] = current.id
    return Feature.model_validate(data)


class FileFeatureStore:
    """Stores each feature at ``<project>/.automaker/features/<id>/feature.json``."""

    def feature_path(self, project_path: str, feature_id: str) -> Path:
        return Path(project_path) / FEATURES_DIR / feature_id / FEATURE_FILE

    def _read(self, path: Path) -> Feature | None:
        if not path.is_file():
            return None
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
            return Feature.model_validate(document)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise FeatureStoreError(f"Invalid feature document at {path}: {exc}") from exc

    def _write(self, path: Path, feature: Feature) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".feature-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(feature.to_document(), handle, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _update(self, project_path: str, feature_id: str, updates: Mapping[str, Any]) -> Feature:
        path = self.feature_path(project_path, feature_id)
        current = self._read(path)
        if current is None:
            raise FeatureNotFoundError(f"Feature '{feature_id}' not found in {project_path}")
        updated = merge_updates(current, updates)
        self._write(path, updated)
        return updated

    async def get(self, project_path: str, feature_id: str) -> Feature | None:
        return await asyncio.to_thread(self._read, self.feature_path(project_path, feature_id))

    async def update(self, project_path: str, feature_id: str, updates: Mapping[str, Any]) -> Feature:
        return await asyncio.to_thread(self._update, project_path, feature_id, dict(updates))

    async def create(self, project_path: str, feature: Feature) -> Feature:
        await asyncio.to_thread(self._write, self.feature_path(project_path, feature.id), feature)
        return feature


__all__ = [
    "FEATURES_DIR",
    "Feature",
    "FeatureNotFoundError",
    "FeatureStore",
    "FeatureStoreError",
    "FileFeatureStore",
    "merge_updates",
]
