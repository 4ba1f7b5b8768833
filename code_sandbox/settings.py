from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "3000")))
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    use_fake_redis: bool = field(default_factory=lambda: _env_bool("FAKE_REDIS"))
    docker_socket: str = field(
        default_factory=lambda: os.getenv("DOCKER_SOCKET", "/var/run/docker.sock")
    )
    queue_name: str = field(
        default_factory=lambda: os.getenv("QUEUE_NAME", "execution-queue")
    )

    execution_timeout_ms: int = field(
        default_factory=lambda: int(os.getenv("EXECUTION_TIMEOUT", "2000"))
    )
    cpu_limit: float = field(
        default_factory=lambda: float(os.getenv("CPU_LIMIT", "0.5"))
    )
    memory_limit: str = field(
        default_factory=lambda: os.getenv("MEMORY_LIMIT", "128m")
    )
    max_concurrent_jobs: int = field(
        default_factory=lambda: int(os.getenv("MAX_CONCURRENT_JOBS", "10"))
    )
    # "allowlist" inlines the syscall allow-list, "default" keeps the engine's filter
    seccomp_mode: str = field(
        default_factory=lambda: os.getenv("SECCOMP_MODE", "allowlist")
    )
    build_tmpfs_size: str = field(
        default_factory=lambda: os.getenv("BUILD_TMPFS_SIZE", "64m")
    )

    cleanup_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("CLEANUP_TIMEOUT_SEC", "10"))
    )
    docker_call_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("DOCKER_CALL_TIMEOUT_SEC", "10"))
    )
    result_wait_slack_sec: float = field(
        default_factory=lambda: float(os.getenv("RESULT_WAIT_SLACK_SEC", "30"))
    )
    poll_interval_sec: float = field(
        default_factory=lambda: float(os.getenv("POLL_INTERVAL_SEC", "0.05"))
    )
    # an active job whose lease is not renewed for this long is failed as stalled
    job_lease_sec: float = field(
        default_factory=lambda: float(os.getenv("JOB_LEASE_SEC", "30"))
    )
    embedded_worker: bool = field(default_factory=lambda: _env_bool("EMBEDDED_WORKER"))

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "info"))
    log_format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))


def get_settings() -> Settings:
    return Settings()
