from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable, Protocol

import structlog

from code_sandbox.job_queue import ExecutionQueue
from code_sandbox.models import ExecutionResult, JobRecord

logger = structlog.get_logger(__name__)


class Runner(Protocol):
    async def execute_code(
        self, language, code: str, stdin: str = "", timeout_ms: int | None = None
    ) -> ExecutionResult: ...


class RateLimiter:
    """Caps job starts to ``max_starts`` per rolling ``window`` seconds."""

    def __init__(
        self,
        max_starts: int,
        window: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_starts = max_starts
        self.window = window
        self.clock = clock
        self._starts: deque[float] = deque()

    def delay(self) -> float:
        """Seconds until another start is allowed (0 when one is allowed now)."""
        now = self.clock()
        while self._starts and now - self._starts[0] >= self.window:
            self._starts.popleft()
        if len(self._starts) < self.max_starts:
            return 0.0
        return self.window - (now - self._starts[0])

    def record(self) -> None:
        self._starts.append(self.clock())


class WorkerPool:
    """Runs queued jobs through the sandbox, at most ``concurrency`` at a time.

    Each worker loop claims one job, runs it to completion and only then
    claims the next, so a loop never has two containers in flight. A running
    job's lease is renewed in the background, and one extra task fails jobs
    whose lease expired because their worker went away.
    """

    def __init__(
        self,
        queue: ExecutionQueue,
        runner: Runner,
        concurrency: int,
        limiter: RateLimiter | None = None,
        poll_interval: float = 0.05,
        stall_check_interval: float | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.queue = queue
        self.runner = runner
        self.concurrency = concurrency
        self.limiter = limiter or RateLimiter(concurrency, 1.0)
        self.poll_interval = poll_interval
        self.stall_check_interval = stall_check_interval or queue.lease_sec / 2
        self.active = 0
        self._claim_lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._loop(index), name=f"sandbox-worker-{index}")
            for index in range(self.concurrency)
        ]
        self._tasks.append(
            asyncio.create_task(self._sweep_stalled(), name="sandbox-stall-sweeper")
        )
        logger.info("worker_pool_started", concurrency=self.concurrency)

    async def run_forever(self) -> None:
        self.start()
        await asyncio.gather(*self._tasks)

    def stop(self) -> None:
        self._stopping.set()

    async def close(self) -> None:
        """Stop claiming jobs and wait for in-flight ones to finish."""
        self.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        logger.info("worker_pool_stopped")

    async def _loop(self, index: int) -> None:
        log = logger.bind(worker=index)
        while not self._stopping.is_set():
            try:
                job = await self._next_job()
            except Exception as exc:
                log.error("worker_claim_failed", error=str(exc))
                await self._idle()
                continue
            if job is None:
                await self._idle()
                continue
            try:
                await self.process(job)
            except Exception as exc:
                log.error("job_result_not_recorded", job_id=job.id, error=str(exc))

    async def _next_job(self) -> JobRecord | None:
        async with self._claim_lock:
            delay = self.limiter.delay()
            if delay > 0:
                await asyncio.sleep(delay)
            job = await self.queue.claim()
            if job is not None:
                self.limiter.record()
            return job

    async def process(self, job: JobRecord) -> None:
        request = job.request
        log = logger.bind(job_id=job.id, language=request.language.value)
        log.info("job_processing", attempt=job.attempts_made)
        self.active += 1
        heartbeat = asyncio.create_task(self._keep_leased(job.id))
        try:
            result = await self.runner.execute_code(
                request.language, request.code, request.stdin, request.timeout_ms
            )
        except Exception as exc:
            log.error("job_failed", error=str(exc))
            await self.queue.fail(job.id, str(exc) or exc.__class__.__name__)
            return
        finally:
            heartbeat.cancel()
            self.active -= 1
        await self.queue.complete(job.id, result)
        log.info("job_completed", status=result.status)

    async def _keep_leased(self, job_id: str) -> None:
        interval = self.queue.lease_sec / 3
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.heartbeat(job_id):
                    logger.warning("job_lease_lost", job_id=job_id)
                    return
            except Exception as exc:
                logger.error("job_heartbeat_failed", job_id=job_id, error=str(exc))

    async def _sweep_stalled(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.queue.recover_stalled()
            except Exception as exc:
                logger.error("stall_sweep_failed", error=str(exc))
            await self._idle(self.stall_check_interval)

    async def _idle(self, timeout: float | None = None) -> None:
        try:
            await asyncio.wait_for(
                self._stopping.wait(), timeout=timeout or self.poll_interval
            )
        except asyncio.TimeoutError:
            pass
