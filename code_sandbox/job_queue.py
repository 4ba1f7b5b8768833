from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as redis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from code_sandbox.errors import JobFailedError, JobWaitTimeout, QueueUnavailableError
from code_sandbox.models import (
    ExecutionRequest,
    ExecutionResult,
    JobRecord,
    JobStatus,
    QueueStats,
)

logger = structlog.get_logger(__name__)

STALLED_ERROR = "job stalled: its worker stopped renewing the lease"


@dataclass(frozen=True)
class Retention:
    count: int
    age_sec: int


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 1
    remove_on_complete: Retention = field(default_factory=lambda: Retention(100, 3600))
    remove_on_fail: Retention = field(default_factory=lambda: Retention(500, 7200))


def _broker_errors(fn):
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise QueueUnavailableError(f"broker unavailable: {exc}") from exc
        except RedisError as exc:
            raise QueueUnavailableError(f"broker error: {exc}") from exc

    return wrapper


class ExecutionQueue:
    """Redis-backed job queue.

    Waiting and active jobs live in two lists; a job moves between them with a
    single ``LMOVE`` so only one worker can ever claim it. Finished job ids are
    kept in sorted sets scored by finish time and pruned by age and count.
    Active jobs hold a lease that their worker renews; a job whose lease runs
    out is treated as stalled and failed by ``recover_stalled``.
    """

    def __init__(
        self,
        client: redis.Redis,
        name: str = "execution-queue",
        options: JobOptions | None = None,
        poll_interval: float = 0.05,
        lease_sec: float = 30.0,
    ) -> None:
        self.redis = client
        self.name = name
        self.options = options or JobOptions()
        self.poll_interval = poll_interval
        self.lease_sec = lease_sec

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    @property
    def waiting_key(self) -> str:
        return self._key("waiting")

    @property
    def active_key(self) -> str:
        return self._key("active")

    @property
    def completed_key(self) -> str:
        return self._key("completed")

    @property
    def failed_key(self) -> str:
        return self._key("failed")

    @property
    def leases_key(self) -> str:
        return self._key("leases")

    @_broker_errors
    async def submit(self, request: ExecutionRequest) -> JobRecord:
        record = JobRecord(
            id=uuid4().hex,
            request=request,
            status=JobStatus.waiting,
            created_at=self._now(),
            attempts=self.options.attempts,
        )
        await self.redis.set(self._job_key(record.id), record.model_dump_json())
        await self.redis.rpush(self.waiting_key, record.id)  # type: ignore[misc]
        logger.info("job_queued", job_id=record.id, language=request.language.value)
        return record

    @_broker_errors
    async def get(self, job_id: str) -> JobRecord:
        raw = await self.redis.get(self._job_key(job_id))
        if raw is None:
            raise KeyError(job_id)
        return JobRecord.model_validate_json(raw)

    @_broker_errors
    async def claim(self) -> JobRecord | None:
        """Move the oldest waiting job to the active list and return it."""
        job_id = await self.redis.lmove(  # type: ignore[misc]
            self.waiting_key, self.active_key, "LEFT", "RIGHT"
        )
        if job_id is None:
            return None
        job_id = self._decode(job_id)
        await self.redis.zadd(self.leases_key, {job_id: self._deadline()})
        record = await self.get(job_id)
        return await self._save(
            record.model_copy(
                update={
                    "status": JobStatus.active,
                    "started_at": self._now(),
                    "attempts_made": record.attempts_made + 1,
                }
            )
        )

    @_broker_errors
    async def heartbeat(self, job_id: str) -> bool:
        """Renew the job's lease; False once the job is no longer leased."""
        renewed = await self.redis.zadd(
            self.leases_key, {job_id: self._deadline()}, xx=True, ch=True
        )
        return bool(renewed)

    @_broker_errors
    async def recover_stalled(self) -> list[str]:
        """Fail every active job whose lease has expired and return their ids."""
        expired = await self.redis.zrangebyscore(
            self.leases_key, "-inf", self._now().timestamp()
        )
        recovered = []
        for job_id in map(self._decode, expired):
            # ZREM decides which sweeper owns the job
            if not await self.redis.zrem(self.leases_key, job_id):
                continue
            removed = await self.redis.lrem(self.active_key, 1, job_id)  # type: ignore[misc]
            if not removed:
                continue
            try:
                await self._finish(
                    job_id, JobStatus.failed, result=None, error=STALLED_ERROR
                )
            except KeyError:
                logger.warning("stalled_job_record_missing", job_id=job_id)
                continue
            logger.warning("job_stalled", job_id=job_id)
            recovered.append(job_id)
        return recovered

    @_broker_errors
    async def complete(self, job_id: str, result: ExecutionResult) -> JobRecord:
        return await self._finish(
            job_id, JobStatus.completed, result=result, error=None
        )

    @_broker_errors
    async def fail(self, job_id: str, error: str) -> JobRecord:
        return await self._finish(job_id, JobStatus.failed, result=None, error=error)

    @_broker_errors
    async def stats(self) -> QueueStats:
        waiting = await self.redis.llen(self.waiting_key)  # type: ignore[misc]
        active = await self.redis.llen(self.active_key)  # type: ignore[misc]
        completed = await self.redis.zcard(self.completed_key)
        failed = await self.redis.zcard(self.failed_key)
        return QueueStats(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            total=waiting + active,
        )

    async def wait_until_finished(self, job_id: str, timeout: float) -> ExecutionResult:
        """Block until the job completes; raise if it failed or ran out of time."""

        async def _poll() -> JobRecord:
            while True:
                try:
                    record = await self.get(job_id)
                except KeyError:
                    reason = "job record no longer exists"
                    raise JobFailedError(job_id, reason) from None
                if record.finished:
                    return record
                await asyncio.sleep(self.poll_interval)

        try:
            record = await asyncio.wait_for(_poll(), timeout=timeout)
        except asyncio.TimeoutError:
            raise JobWaitTimeout(job_id, timeout) from None

        if record.status is JobStatus.failed or record.result is None:
            raise JobFailedError(job_id, record.error)
        return record.result

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        result: ExecutionResult | None,
        error: str | None,
    ) -> JobRecord:
        record = await self.get(job_id)
        finished_at = self._now()
        record = await self._save(
            record.model_copy(
                update={
                    "status": status,
                    "finished_at": finished_at,
                    "result": result,
                    "error": error,
                }
            )
        )
        target, retention = (
            (self.completed_key, self.options.remove_on_complete)
            if status is JobStatus.completed
            else (self.failed_key, self.options.remove_on_fail)
        )
        await self.redis.lrem(self.active_key, 1, job_id)  # type: ignore[misc]
        await self.redis.zrem(self.leases_key, job_id)
        await self.redis.zadd(target, {job_id: finished_at.timestamp()})
        await self._prune(target, retention, finished_at.timestamp())
        return record

    async def _prune(self, key: str, retention: Retention, now: float) -> None:
        expired = await self.redis.zrangebyscore(key, "-inf", now - retention.age_sec)
        overflow = await self.redis.zrange(key, 0, -(retention.count + 1))
        stale = {self._decode(job_id) for job_id in (*expired, *overflow)}
        if not stale:
            return
        await self.redis.zrem(key, *stale)
        await self.redis.delete(*(self._job_key(job_id) for job_id in stale))
        logger.debug("jobs_pruned", key=key, count=len(stale))

    async def _save(self, record: JobRecord) -> JobRecord:
        await self.redis.set(self._job_key(record.id), record.model_dump_json())
        return record

    def _deadline(self) -> float:
        return self._now().timestamp() + self.lease_sec

    @staticmethod
    def _decode(value: str | bytes) -> str:
        if isinstance(value, bytes):
            return value.decode()
        return str(value)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)
