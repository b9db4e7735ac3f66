from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Literal

JobStatus = Literal["queued", "running", "succeeded", "failed", "cancelled"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "cancelled"})


class ExecutorError(RuntimeError):
    """Raised when submitting or polling a job fails."""

    def __init__(
        self,
        message: str,
        *,
        executor: str | None = None,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.executor = executor
        self.status_code = status_code
        self.retriable = retriable


class ExecutorConfigError(ExecutorError):
    """Raised when an executor is missing credentials or a target repository."""

    def __init__(self, message: str, *, executor: str | None = None) -> None:
        super().__init__(message, executor=executor, retriable=False)


@dataclass(slots=True)
class JobPoll:
    status: JobStatus
    artifact_ref: str | None = None
    detail: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobExecutor(ABC):
    name: str = "executor"

    def check_ready(self) -> None:
        """Raise ``ExecutorConfigError`` when the executor cannot accept jobs."""

    @abstractmethod
    async def submit(self, instruction: str, source_ref: str, target_branch: str) -> str:
        """Submit a job and return its id."""

    @abstractmethod
    async def poll(self, job_id: str) -> JobPoll:
        """Return the current status of a submitted job."""

    async def aclose(self) -> None:
        return None
