"""Agent profile models and loader exports."""

from .loader import AgentProfile, ProfileLoadError, ProfileLoader
from .models import DEFAULT_PROFILE

__all__ = [
    "AgentProfile",
    "DEFAULT_PROFILE",
    "ProfileLoadError",
    "ProfileLoader",
]
