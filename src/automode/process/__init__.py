"""Subprocess streaming utilities."""

from .stream import (
    AbortError,
    MalformedOutputError,
    ProcessError,
    SpawnSpec,
    StreamError,
    stream_jsonl,
    terminate_process,
)
from .utils import sanitize_environment

__all__ = [
    "AbortError",
    "MalformedOutputError",
    "ProcessError",
    "SpawnSpec",
    "StreamError",
    "sanitize_environment",
    "stream_jsonl",
    "terminate_process",
]
