from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)

from code_sandbox.languages import Language

MAX_CODE_LENGTH = 10_000
MAX_INPUT_LENGTH = 1_000
MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 5_000
DEFAULT_TIMEOUT_MS = 2_000

_UNIT_SUFFIX = re.compile(r"^\s*(\d+)\s*(ms|mb)?\s*$", re.IGNORECASE)


class ExecutionRequest(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    language: Language
    code: str = Field(min_length=1, max_length=MAX_CODE_LENGTH)
    stdin: str = Field(
        default="",
        max_length=MAX_INPUT_LENGTH,
        validation_alias=AliasChoices("stdin", "input"),
    )
    timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        ge=MIN_TIMEOUT_MS,
        le=MAX_TIMEOUT_MS,
        validation_alias=AliasChoices("timeout_ms", "timeoutMs", "timeout"),
    )


class ExecutionResult(BaseModel):
    """Terminal outcome of one job.

    ``runtime`` and ``memory`` are whole milliseconds and megabytes; on the
    wire they are rendered as ``"123ms"`` and ``"12mb"``.
    """

    status: Literal["success", "timeout", "error"]
    stdout: str = ""
    stderr: str = ""
    runtime: int = Field(default=0, ge=0)
    memory: int = Field(default=0, ge=0)

    @field_validator("runtime", "memory", mode="before")
    @classmethod
    def _strip_unit(cls, value):
        if isinstance(value, str):
            match = _UNIT_SUFFIX.match(value)
            if match is None:
                raise ValueError(f"expected an integer with optional unit, got {value!r}")
            return int(match.group(1))
        return value

    @field_serializer("runtime")
    def _render_runtime(self, value: int) -> str:
        return f"{value}ms"

    @field_serializer("memory")
    def _render_memory(self, value: int) -> str:
        return f"{value}mb"


class JobStatus(str, Enum):
    waiting = "waiting"
    active = "active"
    completed = "completed"
    failed = "failed"


class JobRecord(BaseModel):
    id: str
    request: ExecutionRequest
    status: JobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    attempts: int = 1
    attempts_made: int = 0
    result: ExecutionResult | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.completed, JobStatus.failed)


class QueueStats(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    total: int
