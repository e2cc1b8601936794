"""Tool registration for the auto-mode MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from fastmcp import Context, FastMCP

from ..config import AutoModeSettings
from ..orchestrator import AutoModeService
from ..providers import CliProvider, get_provider
from ..storage import ChromaStore


@dataclass(slots=True)
class ToolHandles:
    start_feature: Any
    interrupt_feature: Any
    continue_feature: Any
    stop_feature: Any
    update_feature: Any
    list_sessions: Any
    set_concurrency: Any
    provider_status: Any
    feature_context: Any


def register_tools(
    server: FastMCP,
    *,
    service: AutoModeService,
    settings: AutoModeSettings,
    context_store: ChromaStore | None = None,
    provider_factory: Callable[[str | None], CliProvider] | None = None,
) -> ToolHandles:
    """Register the auto-mode tools on the server."""

    def _provider(model: str | None) -> CliProvider:
        if provider_factory is not None:
            return provider_factory(model)
        return get_provider(model, cli_path=settings.claude_cli_path, grace_period=settings.grace_period)

    async def _start_feature(
        project_path: str,
        feature_id: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start an agent run for a backlog feature."""

        result = await service.start_feature(project_path, feature_id)
        _emit_log(
            context,
            "info",
            "Feature started",
            extra={"feature_id": feature_id, "status": result["status"]},
        )
        return result

    async def _interrupt_feature(feature_id: str, context: Context | None = None) -> dict[str, Any]:
        """Interrupt a running feature and keep its agent session resumable."""

        result = await service.interrupt_feature(feature_id)
        _emit_log(
            context,
            "info",
            "Feature interrupted",
            extra={
                "feature_id": feature_id,
                "success": result.success,
                "sdk_session_id": result.sdk_session_id,
            },
        )
        return result.to_dict()

    async def _continue_feature(
        project_path: str,
        feature_id: str,
        message: str,
        image_paths: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Resume an interrupted feature with a follow-up message."""

        result = await service.continue_feature(project_path, feature_id, message, image_paths)
        _emit_log(
            context,
            "info",
            "Feature continued",
            extra={"feature_id": feature_id, "images": len(image_paths or [])},
        )
        return result

    async def _stop_feature(feature_id: str, context: Context | None = None) -> dict[str, Any]:
        """Stop a feature run without keeping it resumable."""

        result = await service.stop_feature(feature_id)
        _emit_log(context, "info", "Feature stopped", extra={"feature_id": feature_id})
        return result

    async def _update_feature(
        project_path: str,
        feature_id: str,
        updates: dict[str, Any],
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Apply a partial update to a feature; verifying it commits the worktree."""

        feature = await service.update_feature(project_path, feature_id, updates)
        _emit_log(
            context,
            "info",
            "Feature updated",
            extra={"feature_id": feature_id, "fields": sorted(updates)},
        )
        return feature.to_document()

    def _list_sessions(context: Context | None = None) -> dict[str, Any]:
        """List live and paused sessions with the current concurrency figures."""

        sessions = service.list_sessions()
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(sessions)})
        return {
            "running": service.running_count,
            "max_concurrency": service.max_concurrency,
            "sessions": sessions,
        }

    async def _set_concurrency(max_concurrency: int, context: Context | None = None) -> dict[str, Any]:
        """Change how many features may run at the same time (1-10)."""

        value = await service.set_max_concurrency(max_concurrency)
        _emit_log(context, "info", "Concurrency updated", extra={"max_concurrency": value})
        return {"max_concurrency": value, "running": service.running_count}

    def _provider_status(model: str | None = None, context: Context | None = None) -> dict[str, Any]:
        """Report whether the agent CLI serving ``model`` is installed."""

        provider = _provider(model)
        status = provider.detect_installation(refresh=True)
        payload = {
            "provider": provider.name,
            **status.model_dump(mode="json"),
            "models": [definition.model_dump(mode="json") for definition in provider.available_models()],
        }
        _emit_log(
            context,
            "debug",
            "Provider status checked",
            extra={"provider": provider.name, "installed": status.installed},
        )
        return payload

    def _feature_context(
        feature_id: str,
        query: str | None = None,
        limit: int = 50,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """Return recorded agent messages for a feature, optionally filtered by text."""

        if context_store is None:
            raise RuntimeError("Chroma store is unavailable; feature context is not recorded")

        if query:
            events = context_store.search_events(query, filters={"feature_id": feature_id}, limit=limit)
        else:
            events = context_store.fetch_feature_events(feature_id)[-limit:]
        _emit_log(
            context,
            "debug",
            "Queried feature context",
            extra={"feature_id": feature_id, "results": len(events)},
        )
        return [
            {
                "id": event.id,
                "event_type": event.event_type,
                "document": event.document,
                "metadata": event.metadata,
                "timestamp": event.timestamp.isoformat(),
            }
            for event in events
        ]

    tool_start = server.tool(
        name="start_feature",
        description="Start an autonomous agent run for a feature; queued when at the concurrency bound.",
    )(_start_feature)

    tool_interrupt = server.tool(
        name="interrupt_feature",
        description="Interrupt a running feature, preserving the agent session id for continuation.",
    )(_interrupt_feature)

    tool_continue = server.tool(
        name="continue_feature",
        description="Continue an interrupted feature with a follow-up message and optional image paths.",
    )(_continue_feature)

    tool_stop = server.tool(
        name="stop_feature",
        description="Stop a running, queued, or interrupted feature and return it to the backlog.",
    )(_stop_feature)

    tool_update = server.tool(
        name="update_feature",
        description="Update feature fields; moving a feature to verified commits its worktree.",
    )(_update_feature)

    tool_sessions = server.tool(
        name="list_sessions",
        description="List auto-mode sessions and the current running count.",
    )(_list_sessions)

    tool_concurrency = server.tool(
        name="set_concurrency",
        description="Set the maximum number of concurrently running features.",
    )(_set_concurrency)

    tool_provider = server.tool(
        name="provider_status",
        description="Check agent CLI installation and list the models it serves.",
    )(_provider_status)

    tool_context = server.tool(
        name="feature_context",
        description="Fetch the recorded agent messages for a feature from Chroma.",
    )(_feature_context)

    return ToolHandles(
        start_feature=tool_start,
        interrupt_feature=tool_interrupt,
        continue_feature=tool_continue,
        stop_feature=tool_stop,
        update_feature=tool_update,
        list_sessions=tool_sessions,
        set_concurrency=tool_concurrency,
        provider_status=tool_provider,
        feature_context=tool_context,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return
        ctx_log = getattr(context, "log", None)
        if callable(ctx_log):  # pragma: no cover - depends on FastMCP internals
            try:
                ctx_log(level.upper(), message, extra=payload)
                return
            except TypeError:
                pass

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
