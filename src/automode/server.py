"""FastMCP server bootstrap for auto-mode."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import AutoModeSettings, get_settings
from .features import FileFeatureStore
from .orchestrator import AutoModeService
from .profiles import ProfileLoadError, ProfileLoader
from .providers import get_provider
from .storage import ChromaStore, ChromaUnavailableError
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the auto-mode server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[AutoModeSettings] = None,
    service: AutoModeService | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the auto-mode tools and status resource."""

    settings = settings or get_settings()

    profile_loader = ProfileLoader(settings.profile_paths)

    chroma_store: ChromaStore | None = None
    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "automode_context",
        "error": None,
    }

    try:
        chroma_store = ChromaStore(settings.chroma_persist_path)
        chroma_store.ping()
        chroma_metadata["available"] = True
    except ChromaUnavailableError as exc:
        chroma_metadata["error"] = str(exc)
        chroma_store = None

    if service is None:
        service = AutoModeService(
            settings=settings,
            feature_store=FileFeatureStore(),
            profiles=profile_loader,
            context_store=chroma_store,
        )

    provider = get_provider(settings.default_model, cli_path=settings.claude_cli_path)
    installation = provider.detect_installation()
    provider_metadata = {
        "name": provider.name,
        "installed": installation.installed,
        "path": str(installation.path) if installation.path else None,
        "default_model": settings.default_model,
    }
    if not installation.installed:
        logger.warning(
            "Agent CLI not found; feature runs will fail until it is installed",
            extra={"provider": provider.name, "cli_path": settings.claude_cli_path},
        )

    server = FastMCP(
        name="Auto-Mode",
        version=__version__,
        instructions=(
            "Auto-mode runs autonomous coding agents against board features. Use the "
            "tools to start, interrupt, continue, or stop feature runs and to tune how "
            "many run at once."
        ),
    )

    handles = register_tools(
        server,
        service=service,
        settings=settings,
        context_store=chroma_store,
    )

    @server.resource(
        "resource://automode/status",
        name="automode_status",
        title="Auto-Mode Status",
        description="Provides the current runtime status for the auto-mode server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            profile_ids = sorted(profile_loader.load_all().keys())
            profile_error: str | None = None
        except ProfileLoadError as exc:
            profile_ids = []
            profile_error = str(exc)

        sessions = service.list_sessions()
        status_counts: dict[str, int] = {}
        for session in sessions:
            status = session.get("status", "unknown")
            status_counts[status] = status_counts.get(status, 0) + 1

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "profiles": {
                "count": len(profile_ids),
                "ids": profile_ids,
                "error": profile_error,
            },
            "provider": provider_metadata,
            "storage": {"chroma": chroma_metadata},
            "sessions": {
                "running": service.running_count,
                "max_concurrency": service.max_concurrency,
                "status_counts": status_counts,
                "recent": sessions[-5:],
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "profile_loader", profile_loader)
    setattr(server, "automode_service", service)
    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "provider_metadata", provider_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the auto-mode MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching auto-mode MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "max_concurrency": settings.max_concurrency,
            "provider_installed": getattr(server, "provider_metadata", {}).get("installed"),
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
