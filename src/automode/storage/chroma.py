"""Chroma-based feature context log."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from ..providers.types import ProviderMessage
from .models import ContextEvent


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used here."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used here."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


class ChromaStore:
    """Append-only log of everything an agent emitted for a feature."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "automode_context",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = {}

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install automode-core with its dependencies"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ContextEvent]:
        events: list[ContextEvent] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for event_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ContextEvent(
                    id=event_id,
                    feature_id=metadata.get("feature_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: event.metadata.get("sequence", 0))
        return events

    def _last_sequence(self, collection: CollectionProtocol, feature_id: str) -> int:
        if feature_id not in self._counters:
            # Continue numbering after events persisted by an earlier process.
            existing = collection.get(where={"feature_id": feature_id})
            self._counters[feature_id] = max(
                (int(metadata.get("sequence", 0)) for metadata in existing.get("metadatas") or []),
                default=0,
            )
        return self._counters[feature_id]

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        feature_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ContextEvent:
        collection = self._ensure_collection()
        counter = self._counters[feature_id] = self._last_sequence(collection, feature_id) + 1
        event_id = f"{feature_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata = {
            "feature_id": feature_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            # Chroma metadata values must be scalars
            record_metadata.update({key: value for key, value in metadata.items() if value is not None})

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ContextEvent(
            id=event_id,
            feature_id=feature_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def record_message(
        self,
        *,
        project_path: str,
        feature_id: str,
        message: ProviderMessage,
    ) -> ContextEvent:
        """Append one normalized agent message to the feature's context."""

        return self.record_event(
            feature_id=feature_id,
            event_type=f"agent_{message.type}",
            body=message.model_dump(mode="json", exclude_none=True),
            metadata={
                "project_path": project_path,
                "session_id": message.session_id,
                "text": message.render_text()[:2000],
            },
        )

    def fetch_feature_events(self, feature_id: str, *, limit: int | None = None) -> list[ContextEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"feature_id": feature_id}, limit=limit)
        return self._convert_result(result)

    def latest_session_id(self, feature_id: str) -> str | None:
        """Return the most recent agent session id recorded for a feature."""

        for event in reversed(self.fetch_feature_events(feature_id)):
            session_id = event.metadata.get("session_id")
            if session_id:
                return session_id
        return None

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ContextEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=filters, limit=limit)
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            filtered: list[ContextEvent] = []
            for event in events:
                haystacks = [event.document.lower()]
                haystacks.extend(str(value).lower() for value in event.metadata.values())
                if any(needle in hay for hay in haystacks):
                    filtered.append(event)
            events = filtered
        return events[:limit] if limit else events


__all__ = ["ChromaStore", "ChromaUnavailableError", "ContextEvent"]
