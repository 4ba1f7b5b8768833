import asyncio
import threading
import time
from itertools import count

from code_sandbox.models import ExecutionResult


class FakeEngine:
    """In-memory stand-in for DockerEngine.

    ``hang=True`` keeps every container running until it is stopped;
    ``fail_on`` names operations that raise; ``create_delay`` slows creation.
    """

    def __init__(
        self, logs=b"", exit_code=0, stats=None, hang=False, fail_on=(), create_delay=0
    ):
        self.logs_payload = logs
        self.exit_code = exit_code
        self.stats_payload = stats if stats is not None else {"memory_stats": {}}
        self.hang = hang
        self.fail_on = set(fail_on)
        self.create_delay = create_delay
        self.created = []
        self.started = []
        self.stopped = []
        self.removed = []
        self._ids = count(1)
        self._exited = {}
        self._lock = threading.Lock()

    def _maybe_fail(self, op):
        if op in self.fail_on:
            raise RuntimeError(f"{op} failed")

    def create(self, options):
        self._maybe_fail("create")
        if self.create_delay:
            time.sleep(self.create_delay)
        container_id = f"container-{next(self._ids)}"
        with self._lock:
            self.created.append(options)
            self._exited[container_id] = threading.Event()
        return container_id

    def start(self, container_id):
        self._maybe_fail("start")
        self.started.append(container_id)
        if not self.hang:
            self._exited[container_id].set()

    def wait(self, container_id):
        self._maybe_fail("wait")
        self._exited[container_id].wait(timeout=5)
        return self.exit_code

    def logs(self, container_id):
        self._maybe_fail("logs")
        return self.logs_payload

    def stats(self, container_id):
        self._maybe_fail("stats")
        return self.stats_payload

    def stop(self, container_id, timeout=0):
        self._exited[container_id].set()
        self._maybe_fail("stop")
        self.stopped.append((container_id, timeout))

    def remove(self, container_id, force=True):
        self._maybe_fail("remove")
        if container_id in self.removed:
            raise RuntimeError(f"no such container: {container_id}")
        self.removed.append(container_id)


class FakeRunner:
    """Counts overlapping executions; code "boom" raises like a dead engine."""

    def __init__(self, delay=0.05):
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.calls = []
        self.started_at = []

    async def execute_code(self, language, code, stdin="", timeout_ms=None):
        self.calls.append((language, code, stdin, timeout_ms))
        self.started_at.append(time.monotonic())
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if code == "boom":
                raise RuntimeError("container runtime unavailable")
            return ExecutionResult(status="success", stdout=code, runtime=50, memory=1)
        finally:
            self.active -= 1
