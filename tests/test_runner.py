import asyncio
import dataclasses
import struct

import pytest

from code_sandbox.errors import UnsupportedLanguageError
from code_sandbox.languages import get_runtime
from code_sandbox.runner import (
    SandboxRunner,
    build_command,
    build_container_spec,
    peak_memory_mb,
)
from code_sandbox.security import compute_resource_limits, security_opts

from fakes import FakeEngine


def frame(stream: int, payload: bytes) -> bytes:
    return struct.pack(">BxxxL", stream, len(payload)) + payload


def test_interpreted_command_appends_code():
    runtime = get_runtime("python")
    assert build_command(runtime, "print(1)", "") == ("python3", "-c", "print(1)")


def test_interpreted_command_pipes_stdin():
    argv = build_command(get_runtime("python"), "print(input())", "42")
    assert argv[:2] == ("/bin/sh", "-c")
    assert argv[2] == 'printf \'%s\' "$SANDBOX_STDIN" | "$0" "$@"'
    assert argv[3:] == ("python3", "-c", "print(input())")


def test_compiled_command_pipes_stdin_to_run_step_only():
    runtime = get_runtime("cpp")
    (shell, flag, script) = build_command(runtime, "int main(){}", "5 6")
    assert (shell, flag) == ("/bin/sh", "-c")
    compile_part, run_part = script.rsplit(" && ", 1)
    assert "SANDBOX_STDIN" not in compile_part
    assert run_part == 'printf \'%s\' "$SANDBOX_STDIN" | /build/program'
    assert script.startswith('printf \'%s\' "$SANDBOX_CODE" > /build/code.cpp')


def test_container_spec_is_locked_down():
    limits = compute_resource_limits("128m", 0.5)
    spec = build_container_spec(
        get_runtime("java"), "class Main {}", "in", limits, security_opts("default")
    )
    options = spec.create_options()
    assert options["network_disabled"] is True
    assert options["read_only"] is True
    assert options["cap_drop"] == ["ALL"]
    assert options["user"] == "sandbox"
    assert options["tmpfs"]["/tmp"] == "rw,noexec,nosuid,size=10m"
    assert options["tmpfs"]["/sandbox"] == "rw,noexec,nosuid,size=5m"
    assert options["tmpfs"]["/build"].startswith("rw,exec,nosuid")
    assert options["environment"] == {"SANDBOX_CODE": "class Main {}", "SANDBOX_STDIN": "in"}
    assert options["mem_limit"] == 128 * 1024 * 1024
    assert "no-new-privileges:true" in options["security_opt"]


def test_interpreted_spec_has_no_build_mount():
    limits = compute_resource_limits("128m", 0.5)
    spec = build_container_spec(get_runtime("python"), "pass", "", limits, [])
    assert "/build" not in spec.tmpfs
    assert spec.environment == {}


def test_peak_memory_prefers_max_usage():
    mb = 1024 * 1024
    assert peak_memory_mb({"memory_stats": {"usage": 5 * mb, "max_usage": 12 * mb}}) == 12
    assert peak_memory_mb({"memory_stats": {"usage": int(7.6 * mb)}}) == 8
    assert peak_memory_mb({"memory_stats": {}}) == 0
    assert peak_memory_mb({}) == 0


@pytest.mark.asyncio
async def test_execute_success(settings):
    engine = FakeEngine(
        logs=frame(1, b"hello\n") + frame(2, b"note\n"),
        stats={"memory_stats": {"usage": 3 * 1024 * 1024}},
    )
    runner = SandboxRunner(engine, settings)

    result = await runner.execute_code("python", 'print("hello")', "", 2000)

    assert result.status == "success"
    assert result.stdout == "hello"
    assert result.stderr == "note"
    assert result.memory == 3
    assert result.runtime >= 0
    assert engine.removed == ["container-1"]
    assert engine.stopped == [("container-1", 0)]


@pytest.mark.asyncio
async def test_execute_timeout_kills_container(settings):
    engine = FakeEngine(hang=True)
    runner = SandboxRunner(engine, settings)

    result = await runner.execute_code("javascript", "while(true){}", "", 150)

    assert result.status == "timeout"
    assert result.stdout == ""
    assert result.stderr == "Execution exceeded timeout of 150ms"
    assert result.memory == 0
    assert result.runtime >= 140
    assert result.model_dump(mode="json")["memory"] == "0mb"
    assert engine.removed == ["container-1"]


@pytest.mark.asyncio
async def test_unsupported_language_creates_nothing(settings):
    engine = FakeEngine()
    runner = SandboxRunner(engine, settings)

    with pytest.raises(UnsupportedLanguageError):
        await runner.execute_code("brainfuck", "+", "", 1000)
    assert engine.created == []


@pytest.mark.asyncio
async def test_create_failure_is_an_error_result(settings):
    engine = FakeEngine(fail_on={"create"})
    runner = SandboxRunner(engine, settings)

    result = await runner.execute_code("python", "print(1)", "", 1000)

    assert result.status == "error"
    assert result.stdout == ""
    assert result.stderr == "create failed"
    assert result.memory == 0
    assert engine.removed == []


@pytest.mark.asyncio
async def test_log_failure_still_cleans_up(settings):
    engine = FakeEngine(fail_on={"logs"})
    runner = SandboxRunner(engine, settings)

    result = await runner.execute_code("go", "package main", "", 1000)

    assert result.status == "error"
    assert result.stderr == "logs failed"
    assert engine.removed == ["container-1"]


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_change_result(settings):
    engine = FakeEngine(logs=frame(1, b"42"), fail_on={"stop", "remove"})
    runner = SandboxRunner(engine, settings)

    result = await runner.execute_code("python", "print(42)", "", 1000)

    assert result.status == "success"
    assert result.stdout == "42"


@pytest.mark.asyncio
async def test_cleanup_twice_does_not_raise(settings):
    engine = FakeEngine(logs=frame(1, b"ok"))
    runner = SandboxRunner(engine, settings)

    result = await runner.execute_code("python", "print('ok')", "", 1000)
    await runner.cleanup("container-1")

    assert result.stdout == "ok"
    assert engine.removed == ["container-1"]


@pytest.mark.asyncio
async def test_default_timeout_comes_from_settings(settings):
    engine = FakeEngine(hang=True)
    runner = SandboxRunner(engine, dataclasses.replace(settings, execution_timeout_ms=100))

    result = await runner.execute_code("python", "import time; time.sleep(9)")

    assert result.status == "timeout"
    assert "100ms" in result.stderr


@pytest.mark.asyncio
async def test_slow_create_removes_container_once_it_exists(settings):
    engine = FakeEngine(create_delay=0.3)
    runner = SandboxRunner(engine, dataclasses.replace(settings, docker_call_timeout_sec=0.1))

    result = await runner.execute_code("python", "print(1)", "", 1000)
    assert result.status == "error"
    assert engine.removed == []

    await asyncio.sleep(0.5)

    assert len(engine.created) == 1
    assert engine.removed == ["container-1"]
    assert engine.started == []
