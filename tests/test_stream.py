from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from automode.process import (
    AbortError,
    MalformedOutputError,
    ProcessError,
    SpawnSpec,
    sanitize_environment,
    stream_jsonl,
)
from automode.process.utils import describe_exit, normalize_exit_code


def write_script(tmp_path: Path, body: str, name: str = "agent") -> Path:
    script = tmp_path / name
    script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    script.chmod(0o755)
    return script


async def collect(spec: SpawnSpec) -> list:
    return [record async for record in stream_jsonl(spec)]


def test_stream_yields_records_in_order_and_skips_malformed(tmp_path: Path) -> None:
    script = write_script(
        tmp_path,
        "printf '{\"n\": 1}\\nnot json\\n\\n{\"n\": 2}\\n{\"n\": 3}'",
    )

    records = asyncio.run(collect(SpawnSpec(executable=str(script))))

    assert records == [{"n": 1}, {"n": 2}, {"n": 3}]


def test_stream_writes_prompt_to_stdin(tmp_path: Path) -> None:
    script = write_script(
        tmp_path,
        'input=$(cat)\nprintf \'{"prompt": "%s", "argc": %d}\\n\' "$input" "$#"',
    )

    spec = SpawnSpec(executable=str(script), args=["-p", "-"], stdin_data="build the thing")
    records = asyncio.run(collect(spec))

    assert records == [{"prompt": "build the thing", "argc": 2}]


def test_stream_runs_in_requested_directory(tmp_path: Path) -> None:
    workdir = tmp_path / "work"
    workdir.mkdir()
    script = write_script(tmp_path, 'printf \'{"cwd": "%s"}\\n\' "$(pwd)"')

    records = asyncio.run(collect(SpawnSpec(executable=str(script), cwd=workdir)))

    assert Path(records[0]["cwd"]).resolve() == workdir.resolve()


def test_stream_handles_lines_larger_than_default_buffer(tmp_path: Path) -> None:
    script = write_script(
        tmp_path,
        "printf '{\"data\": \"'\nhead -c 200000 /dev/zero | tr '\\000' a\nprintf '\"}\\n'",
    )

    records = asyncio.run(collect(SpawnSpec(executable=str(script))))

    assert len(records) == 1
    assert len(records[0]["data"]) == 200000


def test_stream_raises_process_error_with_full_stderr(tmp_path: Path) -> None:
    script = write_script(
        tmp_path,
        "echo '{\"n\": 1}'\necho 'first line' >&2\necho 'Error: not authenticated' >&2\nexit 3",
    )

    async def _run() -> tuple[list, ProcessError]:
        records: list = []
        with pytest.raises(ProcessError) as excinfo:
            async for record in stream_jsonl(SpawnSpec(executable=str(script))):
                records.append(record)
        return records, excinfo.value

    records, error = asyncio.run(_run())

    assert records == [{"n": 1}]
    assert error.exit_code == 3
    assert "first line" in error.stderr
    assert "not authenticated" in error.stderr
    assert not isinstance(error, MalformedOutputError)


def test_stream_reports_signal_deaths_as_128_plus_signal(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo '{\"n\": 1}'\nkill -KILL $$")

    with pytest.raises(ProcessError) as excinfo:
        asyncio.run(collect(SpawnSpec(executable=str(script))))

    assert excinfo.value.exit_code == 137


def test_stream_raises_when_output_is_only_malformed(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo 'this is not json'")

    with pytest.raises(MalformedOutputError):
        asyncio.run(collect(SpawnSpec(executable=str(script))))


def test_empty_output_is_not_an_error(tmp_path: Path) -> None:
    script = write_script(tmp_path, "exit 0")

    assert asyncio.run(collect(SpawnSpec(executable=str(script)))) == []


def test_abort_before_spawn_raises_immediately(tmp_path: Path) -> None:
    marker = tmp_path / "spawned"
    script = write_script(tmp_path, f"touch {marker}\necho '{{}}'")

    async def _run() -> None:
        event = asyncio.Event()
        event.set()
        await collect(SpawnSpec(executable=str(script), abort_event=event))

    with pytest.raises(AbortError):
        asyncio.run(_run())
    assert not marker.exists()


def test_abort_terminates_running_process(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo '{\"n\": 1}'\nexec sleep 30")

    async def _run() -> list:
        event = asyncio.Event()
        records: list = []
        with pytest.raises(AbortError):
            async for record in stream_jsonl(
                SpawnSpec(executable=str(script), abort_event=event, grace_period=2.0)
            ):
                records.append(record)
                event.set()
        return records

    started = time.monotonic()
    records = asyncio.run(_run())

    assert records == [{"n": 1}]
    assert time.monotonic() - started < 10


def test_abort_escalates_to_sigkill_after_grace_period(tmp_path: Path) -> None:
    script = write_script(
        tmp_path,
        "trap '' TERM\necho '{\"n\": 1}'\nwhile true; do sleep 0.1; done",
    )

    async def _run() -> None:
        event = asyncio.Event()
        with pytest.raises(AbortError):
            async for _ in stream_jsonl(
                SpawnSpec(executable=str(script), abort_event=event, grace_period=0.3)
            ):
                event.set()

    started = time.monotonic()
    asyncio.run(_run())

    assert time.monotonic() - started < 10


def test_closing_the_stream_early_reaps_the_process(tmp_path: Path) -> None:
    script = write_script(tmp_path, "echo '{\"n\": 1}'\nexec sleep 30")

    async def _run() -> dict:
        stream = stream_jsonl(SpawnSpec(executable=str(script), grace_period=1.0))
        first = await stream.__anext__()
        await stream.aclose()
        return first

    started = time.monotonic()
    assert asyncio.run(_run()) == {"n": 1}
    assert time.monotonic() - started < 10


def test_exit_code_helpers() -> None:
    assert normalize_exit_code(-9) == 137
    assert normalize_exit_code(-15) == 143
    assert normalize_exit_code(2) == 2
    assert normalize_exit_code(None) is None
    assert describe_exit(-9) == "killed by SIGKILL"
    assert describe_exit(1) == "exit code 1"


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert env["EXTRA"] == "1"
