from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from conductor.clock import Clock, SystemClock
from conductor.executors.base import ExecutorError, JobExecutor
from conductor.scm import BranchRegistry
from conductor.tasks import TaskStore

logger = logging.getLogger(__name__)

SpawnHook = Callable[[Coroutine[Any, Any, Any], str], None]


@dataclass(slots=True)
class CompletionResult:
    task_id: str
    ok: bool
    reason: str | None = None
    spawned: list[str] = field(default_factory=list)
    archived: bool = False
    committed: bool = False


class CompletionWorker:
    role: str = "completion"
    fallback_prompt: str = "Review the finished task and record anything worth keeping."

    def __init__(self, executor: JobExecutor, *, source_ref: str = "main") -> None:
        self.executor = executor
        self.source_ref = source_ref

    def build_instruction(self, task_id: str, branch: str, task_text: str) -> str:
        return (
            f"{self.fallback_prompt.strip()}\n\n"
            f"Task: {task_id}\nImplementation branch: {branch}\n\n"
            f"Task file content:\n{task_text.rstrip()}\n"
        )

    def target_branch(self, branch: str) -> str:
        return f"{branch}-{self.role}"

    async def run(self, task_id: str, branch: str, task_text: str) -> str | None:
        instruction = self.build_instruction(task_id, branch, task_text)
        try:
            job_id = await self.executor.submit(
                instruction, self.source_ref, self.target_branch(branch)
            )
        except ExecutorError as exc:
            logger.warning("%s worker for %s could not be started: %s", self.role, task_id, exc)
            return None
        logger.info("%s worker for %s started as job %s", self.role, task_id, job_id)
        return job_id


class ReviewWorker(CompletionWorker):
    role = "review"
    fallback_prompt = (
        "Review the changes on the implementation branch for correctness, security "
        "and consistency with existing patterns. Report findings by severity."
    )


class DocumentationWorker(CompletionWorker):
    role = "documentation"
    fallback_prompt = (
        "Update the service documentation affected by the changes on the "
        "implementation branch."
    )


class LoggingWorker(CompletionWorker):
    role = "logging"
    fallback_prompt = (
        "Consolidate the work log of the task file: summarize what was done, "
        "decisions taken and follow-ups."
    )


def default_workers(executor: JobExecutor, *, source_ref: str = "main") -> list[CompletionWorker]:
    return [
        ReviewWorker(executor, source_ref=source_ref),
        DocumentationWorker(executor, source_ref=source_ref),
        LoggingWorker(executor, source_ref=source_ref),
    ]


class CompletionProtocol:
    """Post-implementation steps: checklist, sub-workers, index, archive, commit."""

    def __init__(
        self,
        task_store: TaskStore,
        repository: BranchRegistry | None,
        workers: list[CompletionWorker] | None = None,
        *,
        spawn: SpawnHook | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.tasks = task_store
        self.repository = repository
        self.workers = list(workers or [])
        self._spawn = spawn or self._default_spawn
        self.clock = clock or SystemClock()
        self._background: set[asyncio.Task[Any]] = set()

    def bind_spawn(self, spawn: SpawnHook) -> None:
        self._spawn = spawn

    def _default_spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def run(self, task_id: str, branch: str | None) -> CompletionResult:
        unchecked = self.tasks.unchecked_items(task_id)
        if unchecked:
            logger.warning(
                "Task %s still has %s unchecked items; not archiving", task_id, len(unchecked)
            )
            return CompletionResult(
                task_id=task_id,
                ok=False,
                reason=f"{len(unchecked)} unchecked checklist items remain",
            )

        result = CompletionResult(task_id=task_id, ok=True)
        task_text = self.tasks.read_text(task_id) or ""
        work_branch = branch or task_id
        for worker in self.workers:
            self._spawn(
                worker.run(task_id, work_branch, task_text),
                f"completion-{worker.role}-{task_id}",
            )
            result.spawned.append(worker.role)

        self.tasks.record_completion(task_id, branch, completed_at=self.clock.now_iso())
        result.archived = self.tasks.archive(task_id)
        if self.repository is not None:
            result.committed = self.repository.commit_all(f"Complete task {task_id}")
        return result
