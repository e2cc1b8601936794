from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from automode import server as server_module
from automode.config import AutoModeSettings
from automode.storage import ChromaUnavailableError


class StubFastMCP:
    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs
        self.tools: dict[str, object] = {}
        self.resources: dict[str, object] = {}

    def tool(self, *args, **kwargs):
        def decorator(fn):
            self.tools[kwargs.get("name", fn.__name__)] = fn
            return fn

        return decorator

    def resource(self, uri, **kwargs):
        def decorator(fn):
            self.resources[uri] = fn
            return fn

        return decorator

    def run(self):  # pragma: no cover - not used in tests
        return None


class StubChromaStore:
    def __init__(self, *_, **__):
        self.pinged = False

    def ping(self) -> bool:
        self.pinged = True
        return True


class UnavailableChromaStore:
    def __init__(self, *_, **__):
        pass

    def ping(self) -> bool:
        raise ChromaUnavailableError("chromadb package is not installed")


def make_settings(tmp_path: Path) -> AutoModeSettings:
    return AutoModeSettings(
        _env_file=None,
        claude_cli_path=str(tmp_path / "missing-claude"),
        chroma_persist_path=tmp_path / "chroma",
        profile_paths=[],
        max_concurrency=4,
    )


def test_create_server_registers_tools_and_status(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(server_module, "FastMCP", StubFastMCP)
    monkeypatch.setattr(server_module, "ChromaStore", StubChromaStore)

    server = server_module.create_server(make_settings(tmp_path))

    assert "start_feature" in server.tools
    assert server.chroma_metadata["available"] is True
    assert server.provider_metadata["installed"] is False

    status = json.loads(server.resources["resource://automode/status"](SimpleNamespace(request_id="req-1")))
    assert status["sessions"] == {"running": 0, "max_concurrency": 4, "status_counts": {}, "recent": []}
    assert status["profiles"]["ids"] == ["default"]
    assert status["provider"]["name"] == "claude"
    assert status["request_id"] == "req-1"


def test_create_server_without_chroma(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(server_module, "FastMCP", StubFastMCP)
    monkeypatch.setattr(server_module, "ChromaStore", UnavailableChromaStore)

    server = server_module.create_server(make_settings(tmp_path))

    assert server.chroma_store is None
    assert "not installed" in server.chroma_metadata["error"]
    status = json.loads(server.resources["resource://automode/status"](SimpleNamespace()))
    assert status["storage"]["chroma"]["available"] is False
    assert status["request_id"] is None


def test_chrome_default_model_selects_chrome_provider(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(server_module, "FastMCP", StubFastMCP)
    monkeypatch.setattr(server_module, "ChromaStore", StubChromaStore)
    settings = make_settings(tmp_path)
    settings.default_model = "sonnet-chrome"

    server = server_module.create_server(settings)

    assert server.provider_metadata["name"] == "claude-chrome"
