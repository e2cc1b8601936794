"""Feature context persistence."""

from .chroma import ChromaStore, ChromaUnavailableError
from .models import ContextEvent

__all__ = [
    "ChromaStore",
    "ChromaUnavailableError",
    "ContextEvent",
]
