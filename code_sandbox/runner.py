from __future__ import annotations

import asyncio
import contextlib
import functools
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping, TypeVar

import structlog

from code_sandbox.demux import demux_logs
from code_sandbox.docker_engine import DockerEngine
from code_sandbox.languages import (
    BUILD_DIR,
    LANGUAGES,
    Language,
    LanguageRuntime,
    get_runtime,
)
from code_sandbox.models import ExecutionResult
from code_sandbox.security import ResourceLimits, compute_resource_limits, security_opts
from code_sandbox.settings import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SANDBOX_USER = "sandbox"
SANDBOX_WORKDIR = "/sandbox"
CODE_ENV = "SANDBOX_CODE"
STDIN_ENV = "SANDBOX_STDIN"

TMPFS_MOUNTS = {
    "/tmp": "rw,noexec,nosuid,size=10m",
    SANDBOX_WORKDIR: "rw,noexec,nosuid,size=5m",
}


@dataclass(frozen=True)
class ContainerSpec:
    image: str
    command: tuple[str, ...]
    limits: ResourceLimits
    security_opt: tuple[str, ...]
    environment: Mapping[str, str] = field(default_factory=dict)
    tmpfs: Mapping[str, str] = field(default_factory=lambda: dict(TMPFS_MOUNTS))
    user: str = SANDBOX_USER
    working_dir: str = SANDBOX_WORKDIR

    def create_options(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "command": list(self.command),
            "environment": dict(self.environment),
            "user": self.user,
            "working_dir": self.working_dir,
            "tty": False,
            "stdin_open": False,
            "network_disabled": True,
            "read_only": True,
            "cap_drop": ["ALL"],
            "security_opt": list(self.security_opt),
            "tmpfs": dict(self.tmpfs),
            "auto_remove": False,
            **self.limits.host_config(),
        }


def _pipe_stdin(command: str) -> str:
    return f'printf \'%s\' "${STDIN_ENV}" | {command}'


def build_command(runtime: LanguageRuntime, code: str, stdin: str) -> tuple[str, ...]:
    """Container argv for one execution.

    Interpreted languages get the code as the last argument. Compiled
    languages write ``$SANDBOX_CODE`` to their source file, compile, then run.
    Non-empty stdin is piped into the run step only.
    """
    if runtime.compiled:
        run = _pipe_stdin(runtime.run) if stdin else runtime.run
        script = (
            f'printf \'%s\' "${CODE_ENV}" > {runtime.source_path}'
            f" && {runtime.compile} && {run}"
        )
        return (*runtime.command, script)

    argv = (*runtime.command, code)
    if not stdin:
        return argv
    # sh -c '<script>' argv0 args...: "$0" "$@" re-assembles the interpreter argv
    return ("/bin/sh", "-c", _pipe_stdin('"$0" "$@"'), *argv)


def build_container_spec(
    runtime: LanguageRuntime,
    code: str,
    stdin: str,
    limits: ResourceLimits,
    security_opt: list[str] | tuple[str, ...],
    build_tmpfs_size: str = "64m",
) -> ContainerSpec:
    environment: dict[str, str] = {}
    tmpfs = dict(TMPFS_MOUNTS)
    if runtime.compiled:
        environment[CODE_ENV] = code
        tmpfs[BUILD_DIR] = f"rw,exec,nosuid,size={build_tmpfs_size}"
    if stdin:
        environment[STDIN_ENV] = stdin
    return ContainerSpec(
        image=runtime.image,
        command=build_command(runtime, code, stdin),
        limits=limits,
        security_opt=tuple(security_opt),
        environment=environment,
        tmpfs=tmpfs,
    )


def peak_memory_mb(stats: Mapping[str, Any]) -> int:
    memory = stats.get("memory_stats") or {}
    used = memory.get("max_usage") or memory.get("usage") or 0
    return round(used / (1024 * 1024))


class SandboxRunner:
    def __init__(
        self,
        engine: DockerEngine,
        settings: Settings,
        registry: Mapping[Language, LanguageRuntime] = LANGUAGES,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self.registry = registry
        self.limits = compute_resource_limits(settings.memory_limit, settings.cpu_limit)
        self.security_opt = security_opts(settings.seccomp_mode)
        # one blocked wait plus one engine call per concurrent job
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent_jobs * 2 + 2,
            thread_name_prefix="sandbox-engine",
        )
        self._late_cleanups: set[asyncio.Future] = set()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def execute_code(
        self,
        language: str | Language,
        code: str,
        stdin: str = "",
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Run ``code`` in a fresh container and report its outcome.

        Only an unsupported language raises; every container fault becomes an
        ``error`` result and an overrun becomes a ``timeout`` result.
        """
        runtime = get_runtime(language, self.registry)
        timeout_ms = timeout_ms or self.settings.execution_timeout_ms
        spec = build_container_spec(
            runtime,
            code,
            stdin,
            self.limits,
            self.security_opt,
            self.settings.build_tmpfs_size,
        )
        log = logger.bind(language=Language(language).value, timeout_ms=timeout_ms)

        started = time.monotonic()
        try:
            async with self._container(spec, log) as container_id:
                await self._call(self.engine.start, container_id)
                log.info("container_started", container_id=container_id)

                exit_code = await self._wait_or_timeout(container_id, timeout_ms)
                if exit_code is None:
                    runtime_ms = _elapsed_ms(started)
                    log.warning("execution_timeout", runtime_ms=runtime_ms)
                    return ExecutionResult(
                        status="timeout",
                        stdout="",
                        stderr=f"Execution exceeded timeout of {timeout_ms}ms",
                        runtime=runtime_ms,
                        memory=0,
                    )

                raw = await self._call(self.engine.logs, container_id)
                output = demux_logs(raw)
                runtime_ms = _elapsed_ms(started)
                stats = await self._call(self.engine.stats, container_id)
                memory_mb = peak_memory_mb(stats)
                log.info(
                    "execution_completed",
                    exit_code=exit_code,
                    runtime_ms=runtime_ms,
                    memory_mb=memory_mb,
                )
                return ExecutionResult(
                    status="success",
                    stdout=output.stdout,
                    stderr=output.stderr,
                    runtime=runtime_ms,
                    memory=memory_mb,
                )
        except Exception as exc:
            runtime_ms = _elapsed_ms(started)
            log.error("execution_error", error=str(exc), runtime_ms=runtime_ms)
            return ExecutionResult(
                status="error",
                stdout="",
                stderr=str(exc) or exc.__class__.__name__,
                runtime=runtime_ms,
                memory=0,
            )

    @contextlib.asynccontextmanager
    async def _container(self, spec: ContainerSpec, log) -> AsyncIterator[str]:
        log.info("container_creating", image=spec.image)
        creating = self._in_thread(self.engine.create, spec.create_options())
        try:
            container_id = await asyncio.wait_for(
                asyncio.shield(creating), timeout=self.settings.docker_call_timeout_sec
            )
        except BaseException:
            # the thread may still hand back an id; remove it once it does
            creating.add_done_callback(self._cleanup_late_create)
            raise
        try:
            yield container_id
        finally:
            await self.cleanup(container_id)

    async def cleanup(self, container_id: str) -> None:
        """Force-stop and remove a container; failures are logged, never raised."""
        try:
            await asyncio.wait_for(
                self._in_thread(self._stop_and_remove, container_id),
                timeout=self.settings.cleanup_timeout_sec,
            )
            logger.info("container_cleaned_up", container_id=container_id)
        except Exception as exc:
            logger.error(
                "container_cleanup_failed",
                container_id=container_id,
                error=str(exc) or exc.__class__.__name__,
            )

    def _cleanup_late_create(self, creating: asyncio.Future) -> None:
        if creating.cancelled() or creating.exception() is not None:
            return
        container_id = creating.result()
        logger.warning("container_created_after_timeout", container_id=container_id)
        task = asyncio.ensure_future(self.cleanup(container_id))
        self._late_cleanups.add(task)
        task.add_done_callback(self._late_cleanups.discard)

    def _stop_and_remove(self, container_id: str) -> None:
        try:
            self.engine.stop(container_id, timeout=0)
        finally:
            self.engine.remove(container_id, force=True)

    async def _wait_or_timeout(self, container_id: str, timeout_ms: int) -> int | None:
        """Race container exit against the timer; ``None`` means the timer won."""
        waiter = self._in_thread(self.engine.wait, container_id)
        timer = asyncio.ensure_future(asyncio.sleep(timeout_ms / 1000))
        try:
            done, _ = await asyncio.wait(
                {waiter, timer}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (waiter, timer):
                if not task.done():
                    task.cancel()
        if waiter in done:
            return waiter.result()
        return None

    def _in_thread(self, fn: Callable[..., T], *args: Any) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._executor, functools.partial(fn, *args))

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.wait_for(
            self._in_thread(fn, *args),
            timeout=self.settings.docker_call_timeout_sec,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
