import sys
from pathlib import Path

import fakeredis
import fakeredis.aioredis
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from code_sandbox.settings import Settings  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        redis_url="redis://unused",
        use_fake_redis=False,
        execution_timeout_ms=2000,
        cpu_limit=0.5,
        memory_limit="128m",
        max_concurrent_jobs=3,
        seccomp_mode="allowlist",
        cleanup_timeout_sec=2,
        docker_call_timeout_sec=2,
        result_wait_slack_sec=5,
        poll_interval_sec=0.01,
        embedded_worker=False,
    )


@pytest.fixture
def fake_redis():
    server = fakeredis.FakeServer()
    return fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
