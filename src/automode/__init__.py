"""Auto-mode execution core: agent CLI providers and the feature orchestrator."""

__version__ = "0.3.0"

__all__ = ["__version__"]
