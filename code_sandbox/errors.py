from __future__ import annotations


class SandboxError(Exception):
    """Base class for errors raised past the sandbox boundary."""


class UnsupportedLanguageError(SandboxError, ValueError):
    def __init__(self, language: str) -> None:
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class QueueUnavailableError(SandboxError):
    """The broker could not be reached or refused the job."""


class JobFailedError(SandboxError):
    def __init__(self, job_id: str, reason: str | None) -> None:
        super().__init__(reason or "job failed")
        self.job_id = job_id


class JobWaitTimeout(SandboxError):
    def __init__(self, job_id: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:g}s waiting for job {job_id}")
        self.job_id = job_id
        self.timeout = timeout
