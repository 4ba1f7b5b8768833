import asyncio
import signal

import structlog

from code_sandbox.docker_engine import DockerEngine, missing_images
from code_sandbox.job_queue import ExecutionQueue
from code_sandbox.languages import LANGUAGES
from code_sandbox.logs import setup_logging
from code_sandbox.redis_client import create_redis
from code_sandbox.runner import SandboxRunner
from code_sandbox.settings import get_settings
from code_sandbox.worker import RateLimiter, WorkerPool

logger = structlog.get_logger("worker")


async def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    engine = DockerEngine.from_settings(settings)
    runner = SandboxRunner(engine, settings)
    client = create_redis(settings)
    try:
        if await asyncio.to_thread(engine.ping):
            logger.info("docker_connected", socket=settings.docker_socket)
        await asyncio.to_thread(missing_images, engine, LANGUAGES)

        queue = ExecutionQueue(
            client,
            name=settings.queue_name,
            poll_interval=settings.poll_interval_sec,
            lease_sec=settings.job_lease_sec,
        )
        pool = WorkerPool(
            queue,
            runner,
            concurrency=settings.max_concurrent_jobs,
            limiter=RateLimiter(settings.max_concurrent_jobs, 1.0),
            poll_interval=settings.poll_interval_sec,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, pool.stop)

        await pool.run_forever()
        logger.info("worker_shutdown")
    finally:
        await client.aclose()
        runner.close()
        engine.close()


if __name__ == "__main__":
    asyncio.run(main())
