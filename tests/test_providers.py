from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

import pytest

from automode.providers import (
    ClaudeChromeProvider,
    ClaudeCliProvider,
    ExecutionOptions,
    PathEnvironment,
    ProviderError,
    ProviderErrorCode,
    QueryLifecycle,
    QueryState,
    TextBlock,
    ToolUseBlock,
    get_provider,
)
from automode.providers.claude import DEFAULT_MODEL, MODEL_ALIASES, resolve_model
from automode.providers.errors import classify_error
from automode.providers.paths import candidate_paths, find_executable, nvm_candidates


def write_cli(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "claude"
    script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    script.chmod(0o755)
    return script


def jsonl(*records: dict) -> str:
    lines = "\n".join(json.dumps(record) for record in records)
    return f"cat <<'EOF'\n{lines}\nEOF"


async def run_query(provider, options: ExecutionOptions, lifecycle: QueryLifecycle | None = None) -> list:
    return [message async for message in provider.execute_query(options, lifecycle=lifecycle)]


def test_build_args_for_plain_prompt() -> None:
    provider = ClaudeCliProvider()
    args = provider.build_args(ExecutionOptions(prompt="hi", model="sonnet"))

    assert args == [
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
        "--model",
        MODEL_ALIASES["sonnet"],
        "-",
    ]


def test_build_args_with_system_prompt_resume_and_tools() -> None:
    provider = ClaudeCliProvider()
    options = ExecutionOptions(
        prompt="hi",
        model="claude-custom",
        system_prompt="Be careful",
        resume_session_id="sess-9",
        allowed_tools=["Read", "Edit"],
    )

    args = provider.build_args(options)

    assert args[args.index("--system-prompt") + 1] == "Be careful"
    assert args[args.index("--resume") + 1] == "sess-9"
    assert args[args.index("--allowedTools") + 1] == "Read,Edit"
    assert args[-1] == "-"


def test_empty_tool_list_disables_tools() -> None:
    args = ClaudeCliProvider().build_args(ExecutionOptions(prompt="hi", allowed_tools=[]))

    assert args[args.index("--tools") + 1] == ""
    assert "--allowedTools" not in args


def test_chrome_provider_adds_flag_and_strips_suffix() -> None:
    provider = ClaudeChromeProvider()
    args = provider.build_args(ExecutionOptions(prompt="hi", model="opus-chrome"))

    assert args[0] == "--chrome"
    assert args[args.index("--model") + 1] == MODEL_ALIASES["opus"]
    assert provider.supports_feature("chrome")
    assert not ClaudeCliProvider().supports_feature("chrome")
    assert all(model.id.endswith("-chrome") for model in provider.available_models())


def test_get_provider_routes_chrome_suffix() -> None:
    assert isinstance(get_provider("sonnet-chrome"), ClaudeChromeProvider)
    plain = get_provider("sonnet")
    assert isinstance(plain, ClaudeCliProvider)
    assert not isinstance(plain, ClaudeChromeProvider)
    assert resolve_model(None) == DEFAULT_MODEL


def test_normalize_assistant_and_result_records() -> None:
    provider = ClaudeCliProvider()

    assert provider.normalize({"type": "system", "subtype": "init", "session_id": "s"}) is None
    assert provider.normalize("not a dict") is None

    assistant = provider.normalize(
        {
            "type": "assistant",
            "session_id": "s-1",
            "message": {
                "content": [
                    {"type": "text", "text": "Reading files"},
                    {"type": "tool_use", "id": "tu-1", "name": "Read", "input": {"path": "a.py"}},
                ]
            },
        }
    )
    assert assistant is not None
    assert assistant.session_id == "s-1"
    assert isinstance(assistant.message.content[0], TextBlock)
    assert isinstance(assistant.message.content[1], ToolUseBlock)
    assert assistant.message.content[1].tool_use_id == "tu-1"
    assert "[tool: Read]" in assistant.render_text()

    result = provider.normalize({"type": "result", "subtype": "success", "result": "done", "session_id": "s-1"})
    assert result.succeeded and result.is_terminal

    failure = provider.normalize({"type": "result", "is_error": True, "result": "boom"})
    assert failure.type == "error"
    assert failure.error == "boom"
    assert failure.is_terminal and not failure.succeeded


def test_prompt_blocks_are_joined_for_stdin() -> None:
    options = ExecutionOptions(prompt=[TextBlock(text="first"), TextBlock(text="second")])
    assert options.prompt_text() == "first\nsecond"


@pytest.mark.parametrize(
    ("stderr", "exit_code", "expected"),
    [
        ("Error: not authenticated", 1, ProviderErrorCode.NOT_AUTHENTICATED),
        ("429 Too Many Requests", 1, ProviderErrorCode.RATE_LIMITED),
        ("ECONNREFUSED 127.0.0.1", 1, ProviderErrorCode.NETWORK_ERROR),
        ("rate limit exceeded", 1, ProviderErrorCode.RATE_LIMITED),
        ("network unstable, rate limit hit", 1, ProviderErrorCode.RATE_LIMITED),
        ("connection reset: too many requests", 1, ProviderErrorCode.RATE_LIMITED),
        ("anything at all", 137, ProviderErrorCode.PROCESS_CRASHED),
        ("process killed: rate limit", 1, ProviderErrorCode.PROCESS_CRASHED),
        ("unauthorized after connection timeout", 1, ProviderErrorCode.NOT_AUTHENTICATED),
        ("segfault", 2, ProviderErrorCode.UNKNOWN),
    ],
)
def test_claude_error_classification(stderr: str, exit_code: int, expected: ProviderErrorCode) -> None:
    error = ClaudeCliProvider().map_error(stderr, exit_code)
    assert error.code is expected
    assert error.recoverable is (expected is not ProviderErrorCode.UNKNOWN)


def test_chrome_not_connected_rule_ranks_after_auth() -> None:
    chrome = ClaudeChromeProvider()

    assert chrome.map_error("Chrome extension not connected", 1).code is ProviderErrorCode.INTEGRATION_NOT_CONNECTED
    assert (
        chrome.map_error("please log in; chrome extension missing", 1).code
        is ProviderErrorCode.NOT_AUTHENTICATED
    )
    assert ClaudeCliProvider().map_error("Chrome extension not connected", 1).code is ProviderErrorCode.UNKNOWN


def test_unknown_error_is_not_recoverable() -> None:
    error = classify_error("", 5, ())
    assert error.code is ProviderErrorCode.UNKNOWN
    assert error.recoverable is False
    assert "5" in error.message
    assert error.to_dict()["code"] == "Unknown"


def test_candidate_paths_prefer_override_and_newest_nvm(tmp_path: Path) -> None:
    for version in ("v18.2.0", "v20.11.1", "v9.0.0"):
        (tmp_path / ".nvm" / "versions" / "node" / version / "bin").mkdir(parents=True)
    env = PathEnvironment(platform="linux", home=tmp_path, environ={}, which=lambda _name: None)

    nvm = nvm_candidates("claude", env)
    assert [path.parts[-3] for path in nvm] == ["v20.11.1", "v18.2.0", "v9.0.0"]

    paths = candidate_paths("claude", env, override="/opt/claude")
    assert paths[0] == Path("/opt/claude")
    assert paths[1] == nvm[0]
    assert tmp_path / ".local" / "bin" / "claude" in paths


def test_candidate_paths_on_windows(tmp_path: Path) -> None:
    env = PathEnvironment(platform="win32", home=tmp_path, environ={"LOCALAPPDATA": "C:/AppData"}, which=lambda _n: None)
    paths = candidate_paths("claude", env)
    assert paths[0] == tmp_path / ".claude" / "local" / "claude.exe"
    assert all(path.name == "claude.exe" for path in paths)


def test_find_executable_falls_back_to_path_lookup(tmp_path: Path) -> None:
    env = PathEnvironment(platform="linux", home=tmp_path, environ={}, which=lambda name: f"/usr/bin/{name}")
    assert find_executable("claude", env) == Path("/usr/bin/claude")

    local = tmp_path / ".local" / "bin"
    local.mkdir(parents=True)
    (local / "claude").write_text("", encoding="utf-8")
    assert find_executable("claude", env) == local / "claude"


def test_missing_override_is_not_installed(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    env = PathEnvironment(platform="linux", home=tmp_path, environ={}, which=lambda name: f"/usr/bin/{name}")
    provider = ClaudeCliProvider(cli_path=str(tmp_path / "missing"), path_env=env)

    with caplog.at_level("WARNING"):
        status = provider.detect_installation()

    assert status.installed is False
    assert "override does not exist" in caplog.text

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(run_query(provider, ExecutionOptions(prompt="hi")))
    assert excinfo.value.code is ProviderErrorCode.NOT_INSTALLED


def test_execute_query_streams_normalized_messages(tmp_path: Path) -> None:
    script = write_cli(
        tmp_path,
        "cat > /dev/null\n"
        + jsonl(
            {"type": "system", "subtype": "init", "session_id": "sess-1"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Working"}]}},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Still working"}]}},
            {"type": "result", "subtype": "success", "result": "All done"},
        ),
    )
    provider = ClaudeCliProvider(cli_path=str(script))
    lifecycle = QueryLifecycle()

    messages = asyncio.run(run_query(provider, ExecutionOptions(prompt="build", cwd=tmp_path), lifecycle))

    assert [message.type for message in messages] == ["assistant", "assistant", "result"]
    assert [message.render_text() for message in messages[:2]] == ["Working", "Still working"]
    assert all(message.session_id == "sess-1" for message in messages)
    assert messages[-1].result == "All done"
    assert lifecycle.state is QueryState.COMPLETED
    assert lifecycle.history == [
        QueryState.NOT_STARTED,
        QueryState.DETECTING,
        QueryState.SPAWNING,
        QueryState.STREAMING,
        QueryState.COMPLETED,
    ]


def test_execute_query_maps_process_failure(tmp_path: Path) -> None:
    script = write_cli(tmp_path, "cat > /dev/null\necho 'Error: rate limit reached' >&2\nexit 1")
    provider = ClaudeCliProvider(cli_path=str(script))
    lifecycle = QueryLifecycle()

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(run_query(provider, ExecutionOptions(prompt="build"), lifecycle))

    assert excinfo.value.code is ProviderErrorCode.RATE_LIMITED
    assert excinfo.value.recoverable is True
    assert lifecycle.state is QueryState.FAILED


def test_execute_query_with_debug_logging(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    script = write_cli(
        tmp_path,
        "cat > /dev/null\n" + jsonl({"type": "result", "subtype": "success", "result": "ok", "session_id": "s-9"}),
    )
    provider = ClaudeCliProvider(cli_path=str(script))
    caplog.set_level(logging.DEBUG)

    messages = asyncio.run(run_query(provider, ExecutionOptions(prompt="build", model="haiku")))

    assert [message.result for message in messages] == ["ok"]
    executing = [record for record in caplog.records if record.getMessage() == "Executing provider query"]
    assert executing and "--model" in executing[0].cli_args


def test_closing_execute_query_early_reaps_the_cli(tmp_path: Path) -> None:
    pid_file = tmp_path / "pid"
    script = write_cli(
        tmp_path,
        f"cat > /dev/null\necho $$ > {pid_file}\n"
        + jsonl({"type": "assistant", "session_id": "s-3", "message": {"content": [{"type": "text", "text": "a"}]}})
        + "\nexec sleep 30",
    )
    provider = ClaudeCliProvider(cli_path=str(script), grace_period=1.0)

    async def _run() -> str:
        stream = provider.execute_query(ExecutionOptions(prompt="build"))
        first = await stream.__anext__()
        await stream.aclose()
        pid = int(pid_file.read_text(encoding="utf-8").strip())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
        return first.render_text()

    assert asyncio.run(_run()) == "a"


def test_execute_query_ends_silently_on_abort(tmp_path: Path) -> None:
    script = write_cli(
        tmp_path,
        "cat > /dev/null\n"
        + jsonl({"type": "assistant", "session_id": "sess-2", "message": {"content": [{"type": "text", "text": "hi"}]}})
        + "\nexec sleep 30",
    )
    provider = ClaudeCliProvider(cli_path=str(script), grace_period=1.0)

    async def _run() -> tuple[list, QueryLifecycle]:
        event = asyncio.Event()
        lifecycle = QueryLifecycle()
        messages = []
        async for message in provider.execute_query(
            ExecutionOptions(prompt="build", abort_event=event), lifecycle=lifecycle
        ):
            messages.append(message)
            event.set()
        return messages, lifecycle

    messages, lifecycle = asyncio.run(_run())

    assert len(messages) == 1
    assert lifecycle.state is QueryState.CANCELLED


def test_execute_query_with_abort_already_set_spawns_nothing(tmp_path: Path) -> None:
    marker = tmp_path / "spawned"
    script = write_cli(tmp_path, f"touch {marker}")
    provider = ClaudeCliProvider(cli_path=str(script))

    async def _run() -> tuple[list, QueryLifecycle]:
        event = asyncio.Event()
        event.set()
        lifecycle = QueryLifecycle()
        return await run_query(provider, ExecutionOptions(prompt="x", abort_event=event), lifecycle), lifecycle

    messages, lifecycle = asyncio.run(_run())

    assert messages == []
    assert lifecycle.state is QueryState.CANCELLED
    assert not marker.exists()


def test_lifecycle_rejects_invalid_transitions() -> None:
    lifecycle = QueryLifecycle()
    with pytest.raises(RuntimeError):
        lifecycle.advance(QueryState.STREAMING)
