from conductor.executors.base import (
    TERMINAL_STATUSES,
    ExecutorConfigError,
    ExecutorError,
    JobExecutor,
    JobPoll,
    JobStatus,
)
from conductor.executors.cloud import CloudAgentExecutor
from conductor.executors.local import LocalProcessExecutor

__all__ = [
    "TERMINAL_STATUSES",
    "CloudAgentExecutor",
    "ExecutorConfigError",
    "ExecutorError",
    "JobExecutor",
    "JobPoll",
    "JobStatus",
    "LocalProcessExecutor",
]
