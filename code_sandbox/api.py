from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis
import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from code_sandbox.docker_engine import DockerEngine
from code_sandbox.errors import JobFailedError, JobWaitTimeout, QueueUnavailableError
from code_sandbox.job_queue import ExecutionQueue
from code_sandbox.languages import Language
from code_sandbox.models import ExecutionRequest, ExecutionResult, QueueStats
from code_sandbox.redis_client import create_redis
from code_sandbox.runner import SandboxRunner
from code_sandbox.settings import Settings, get_settings
from code_sandbox.worker import Runner, WorkerPool

logger = structlog.get_logger(__name__)

API_DESCRIPTION = """
Code Sandbox - run untrusted programs in isolated, resource-capped containers.

Submit source code with `POST /api/execute`. The request is queued, executed
by the next free worker and the call returns once the result is available:

```json
{"status": "success", "stdout": "hi", "stderr": "", "runtime": "412ms", "memory": "7mb"}
```

`status` is always one of `success`, `timeout` or `error`.
"""

router = APIRouter()


def get_queue(request: Request) -> ExecutionQueue:
    return request.app.state.queue


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _error_response(status_code: int, message: str) -> JSONResponse:
    body = ExecutionResult(status="error", stdout="", stderr=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.post("/execute", response_model=ExecutionResult)
async def execute(
    payload: ExecutionRequest,
    queue: ExecutionQueue = Depends(get_queue),
    settings: Settings = Depends(get_app_settings),
):
    log = logger.bind(language=payload.language.value, code_length=len(payload.code))
    log.info("execution_requested")
    try:
        job = await queue.submit(payload)
        wait = payload.timeout_ms / 1000 + settings.result_wait_slack_sec
        return await queue.wait_until_finished(job.id, timeout=wait)
    except QueueUnavailableError as exc:
        log.error("execution_request_failed", error=str(exc))
        return _error_response(503, str(exc))
    except JobWaitTimeout as exc:
        log.error("execution_request_timed_out", job_id=exc.job_id)
        return _error_response(504, str(exc))
    except JobFailedError as exc:
        log.error("execution_job_failed", job_id=exc.job_id, error=str(exc))
        return _error_response(500, str(exc))


@router.get("/languages")
async def languages():
    supported = [language.value for language in Language]
    return {"supported": supported, "count": len(supported)}


@router.get("/queue/stats", response_model=QueueStats)
async def queue_stats(queue: ExecutionQueue = Depends(get_queue)):
    try:
        return await queue.stats()
    except QueueUnavailableError as exc:
        return JSONResponse(status_code=503, content={"detail": str(exc)})


def create_app(
    settings: Settings | None = None,
    redis_client: redis.Redis | None = None,
    runner: Runner | None = None,
) -> FastAPI:
    """Build the application.

    ``redis_client`` and ``runner`` are injected by tests; otherwise the
    lifespan creates (and later closes) its own connections. A worker pool is
    started in-process when a runner is given or ``EMBEDDED_WORKER`` is set.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app_settings = settings or get_settings()
        client = redis_client or create_redis(app_settings)
        queue = ExecutionQueue(
            client,
            name=app_settings.queue_name,
            poll_interval=app_settings.poll_interval_sec,
            lease_sec=app_settings.job_lease_sec,
        )
        app.state.settings = app_settings
        app.state.queue = queue

        engine: DockerEngine | None = None
        sandbox: SandboxRunner | None = None
        pool: WorkerPool | None = None
        pool_runner = runner
        if pool_runner is None and app_settings.embedded_worker:
            engine = DockerEngine.from_settings(app_settings)
            sandbox = pool_runner = SandboxRunner(engine, app_settings)
        if pool_runner is not None:
            pool = WorkerPool(
                queue,
                pool_runner,
                concurrency=app_settings.max_concurrent_jobs,
                poll_interval=app_settings.poll_interval_sec,
            )
            pool.start()
        app.state.pool = pool

        try:
            yield
        finally:
            if pool is not None:
                await pool.close()
            if sandbox is not None:
                sandbox.close()
            if engine is not None:
                engine.close()
            if redis_client is None:
                await client.aclose()

    app = FastAPI(
        title="Code Sandbox",
        version="0.1.0",
        description=API_DESCRIPTION,
        lifespan=lifespan,
    )
    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
