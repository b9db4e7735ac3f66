from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Literal

from conductor.audit import ErrorLog, ViolationLog
from conductor.branches import (
    BranchNameError,
    derive_branch_name,
    resolve_unique_branch,
    validate_branch_name,
)
from conductor.clock import Clock, SystemClock, parse_iso
from conductor.completion import CompletionProtocol
from conductor.config import ConductorConfig
from conductor.executors.base import ExecutorError, JobExecutor
from conductor.graph import normalize_task_id
from conductor.instructions import WorkerRole, build_instruction
from conductor.queues import (
    CONTEXT_QUEUE,
    IMPLEMENTATION_QUEUE,
    QUEUE_NAMES,
    PriorityQueueManager,
    QueueEntry,
    QueueName,
)
from conductor.scm import BranchRegistry, GitCommandError
from conductor.state import StateStore
from conductor.tasks import DiscoveryFeed, TaskFileError, TaskMeta, TaskStore

logger = logging.getLogger(__name__)

SlotStatus = Literal["idle", "working", "failed"]
POOL_SNAPSHOT = "worker-pool"


class QueueCorruptionError(RuntimeError):
    """Raised when too many queued entries are invalid to start safely."""


@dataclass(slots=True)
class WorkerSlot:
    id: str
    status: SlotStatus = "idle"
    current_task: str | None = None
    role: WorkerRole | None = None
    started_at: str | None = None
    completed_count: int = 0
    external_job_id: str | None = None
    branch_name: str | None = None

    def reset(self) -> None:
        self.status = "idle"
        self.current_task = None
        self.role = None
        self.started_at = None
        self.external_job_id = None
        self.branch_name = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkerSlot:
        status = payload.get("status")
        role = payload.get("role")
        return cls(
            id=str(payload["id"]),
            status=status if status in {"idle", "working", "failed"} else "idle",
            current_task=payload.get("current_task"),
            role=role if role in QUEUE_NAMES else None,
            started_at=payload.get("started_at"),
            completed_count=int(payload.get("completed_count") or 0),
            external_job_id=payload.get("external_job_id"),
            branch_name=payload.get("branch_name"),
        )


@dataclass(slots=True)
class PreflightResult:
    ok: bool
    reason: str | None = None
    branch_name: str | None = None
    meta: TaskMeta | None = None
    rerouted: bool = False


@dataclass(slots=True)
class SelfCheckReport:
    total: int = 0
    invalid: list[dict[str, str]] = field(default_factory=list)
    purged: int = 0
    max_invalid_ratio: float = 0.1

    @property
    def invalid_ratio(self) -> float:
        return len(self.invalid) / self.total if self.total else 0.0

    @property
    def ok(self) -> bool:
        return self.invalid_ratio <= self.max_invalid_ratio

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "invalid": list(self.invalid),
            "purged": self.purged,
            "invalid_ratio": round(self.invalid_ratio, 3),
            "ok": self.ok,
        }


class Orchestrator:
    """Drives a fixed pool of worker slots from the two task queues."""

    def __init__(
        self,
        queues: PriorityQueueManager,
        tasks: TaskStore,
        executor: JobExecutor,
        branches: BranchRegistry,
        store: StateStore,
        *,
        config: ConductorConfig | None = None,
        feed: DiscoveryFeed | None = None,
        clock: Clock | None = None,
        completion: CompletionProtocol | None = None,
        violations: ViolationLog | None = None,
        errors: ErrorLog | None = None,
        sync_from_branches: bool = True,
    ) -> None:
        self.queues = queues
        self.tasks = tasks
        self.executor = executor
        self.branches = branches
        self.store = store
        self.config = config or ConductorConfig.default()
        self.feed = feed
        self.clock = clock or SystemClock()
        self.completion = completion
        self.violations = violations
        self.errors = errors
        self.sync_from_branches = sync_from_branches

        pool_size = max(1, int(self.config.scheduler.pool_size))
        self.slots = [WorkerSlot(id=f"worker-{index + 1}") for index in range(pool_size)]
        self.completed_task_ids: list[str] = []
        self.failure_counts: dict[str, int] = {}
        self.dead_letter: list[str] = []
        self.last_updated: str | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._stopping = False
        if self.completion is not None:
            self.completion.bind_spawn(self._spawn)
        self._load()

    def _load(self) -> None:
        payload = self.store.load(POOL_SNAPSHOT)
        if not payload:
            return
        saved = {}
        for item in payload.get("slots") or []:
            try:
                slot = WorkerSlot.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping malformed slot record %r: %s", item, exc)
                continue
            saved[slot.id] = slot
        self.slots = [saved.get(slot.id, slot) for slot in self.slots]
        self.completed_task_ids = [str(item) for item in payload.get("completed_task_ids") or []]
        self.failure_counts = {
            str(key): int(value) for key, value in (payload.get("failure_counts") or {}).items()
        }
        self.dead_letter = [str(item) for item in payload.get("dead_letter") or []]
        self.last_updated = payload.get("last_updated")

    def snapshot(self) -> dict[str, Any]:
        return {
            "slots": [slot.to_dict() for slot in self.slots],
            "completed_task_ids": list(self.completed_task_ids),
            "failure_counts": dict(self.failure_counts),
            "dead_letter": list(self.dead_letter),
            "last_updated": self.last_updated,
        }

    def _persist(self) -> None:
        self.last_updated = self.clock.now_iso()
        self.store.save(POOL_SNAPSHOT, self.snapshot())

    @property
    def completed_set(self) -> set[str]:
        return set(self.completed_task_ids)

    def _in_flight(self) -> set[str]:
        return {
            slot.current_task
            for slot in self.slots
            if slot.status == "working" and slot.current_task
        }

    def _idle_slot(self) -> WorkerSlot | None:
        for slot in self.slots:
            if slot.status == "idle":
                return slot
        return None

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s crashed: %r", task.get_name(), exc, exc_info=exc)

    def check_configuration(self) -> None:
        self.executor.check_ready()

    def self_check(self, *, purge: bool = True) -> SelfCheckReport:
        report = SelfCheckReport(max_invalid_ratio=self.config.scheduler.max_invalid_ratio)
        now = self.clock.now()
        stale_after = timedelta(days=self.config.scheduler.stale_days)
        for queue in QUEUE_NAMES:
            for entry in self.queues.entries(queue):
                report.total += 1
                reason = self._entry_problem(entry, now, stale_after)
                if reason:
                    report.invalid.append(
                        {"task_id": entry.task_id, "queue": queue, "reason": reason}
                    )
        if purge and report.ok:
            for item in report.invalid:
                if self.queues.remove_from_queue(item["task_id"], item["queue"]):
                    report.purged += 1
                    logger.warning(
                        "Purged %s from %s queue: %s",
                        item["task_id"],
                        item["queue"],
                        item["reason"],
                    )
        return report

    def _entry_problem(
        self, entry: QueueEntry, now: datetime, stale_after: timedelta
    ) -> str | None:
        if not self.tasks.exists(entry.task_id):
            return "task file missing"
        touched = [
            moment
            for moment in (
                self.tasks.modified_at(entry.task_id),
                parse_iso(entry.queued_at),
                parse_iso(entry.moved_at),
            )
            if moment is not None
        ]
        if touched and now - max(touched) > stale_after:
            return f"untouched for more than {stale_after.days} days"
        return None

    def startup(self) -> SelfCheckReport:
        report = self.self_check(purge=True)
        if not report.ok:
            raise QueueCorruptionError(
                f"{len(report.invalid)} of {report.total} queued tasks are invalid "
                f"({report.invalid_ratio:.0%}). Rebuild the queues with `conductor rebuild`."
            )
        return report

    def ingest(self) -> int:
        if self.feed is None:
            return 0
        task_ids, offset = self.feed.read_new(self.queues.feed_offset)
        routed = 0
        if task_ids:
            routed = self.queues.ingest_new(
                task_ids, verify_manifest=self.config.scheduler.verify_manifest
            )
            logger.info("Discovered %s new tasks, routed %s", len(task_ids), routed)
        self.queues.advance_feed(offset)
        return routed

    def _finished(self) -> set[str]:
        graph = self.queues.graph
        return {node for node in graph.tasks if graph.metadata(node).get("status") == "completed"}

    def rescan(self) -> int:
        exclude = self._in_flight() | self._finished() | set(self.dead_letter)
        stats = self.queues.process_all(
            exclude=exclude, verify_manifest=self.config.scheduler.verify_manifest
        )
        return stats.routed

    async def tick(self) -> WorkerSlot | None:
        self.ingest()
        context_len, implementation_len = self.queues.queue_lengths()
        if context_len + implementation_len == 0:
            self.rescan()
        return await self.assign_next()

    def choose_queue(self) -> QueueName | None:
        context_len, implementation_len = self.queues.queue_lengths()
        total = context_len + implementation_len
        if total == 0:
            return None
        ratio = context_len / total
        if ratio > self.config.scheduler.context_ratio_threshold or implementation_len == 0:
            return CONTEXT_QUEUE
        return IMPLEMENTATION_QUEUE

    async def assign_next(self) -> WorkerSlot | None:
        if self._stopping:
            return None
        queue = self.choose_queue()
        if queue is None:
            return None
        entry = self.queues.next_eligible(queue, self.completed_set)
        if entry is None:
            logger.debug("No eligible task in %s queue", queue)
            return None

        result = self.preflight(entry, queue, resolve_branch=False)
        slot = self._idle_slot()
        if result.ok:
            if slot is None:
                logger.debug("All worker slots busy; %s stays queued", entry.task_id)
                return None
            if entry.task_id in self._in_flight():
                logger.warning("Task %s is already being worked on; skipping", entry.task_id)
                return None
            result = self._resolve_branch(entry, result.meta)
        if slot is None or not result.ok:
            if not result.rerouted:
                self.queues.remove_from_queue(entry.task_id, queue)
            logger.warning(
                "Preflight rejected task=%s queue=%s reason=%s",
                entry.task_id,
                queue,
                result.reason,
            )
            return None

        self.queues.remove_from_queue(entry.task_id, queue)
        slot.status = "working"
        slot.current_task = entry.task_id
        slot.role = queue
        slot.started_at = self.clock.now_iso()
        slot.external_job_id = None
        slot.branch_name = result.branch_name
        self._persist()
        logger.info(
            "Assigned slot=%s task=%s role=%s branch=%s",
            slot.id,
            entry.task_id,
            queue,
            result.branch_name,
        )
        self._spawn(self._execute(slot, entry, result), f"execute-{slot.id}-{entry.task_id}")
        return slot

    def preflight(
        self, entry: QueueEntry, queue: QueueName, *, resolve_branch: bool = True
    ) -> PreflightResult:
        """Check a queued task before it is handed to a worker.

        The branch name is only probed against the remote when ``resolve_branch``
        is set, since that costs one ``ls-remote`` per candidate suffix.
        """
        task_id = entry.task_id
        if not self.tasks.exists(task_id):
            return PreflightResult(ok=False, reason="task file missing")
        if self.tasks.is_empty(task_id):
            return PreflightResult(ok=False, reason="task file empty")
        meta = self.tasks.read_meta(task_id)
        if meta is None:
            return PreflightResult(ok=False, reason="metadata could not be parsed")

        if queue == IMPLEMENTATION_QUEUE:
            violation = None
            if not meta.context_gathered:
                violation = "context_gathered is false"
            elif not self.tasks.has_manifest(task_id):
                violation = "Context Manifest missing or incomplete"
            if violation:
                self._reroute_to_context(entry, meta, violation)
                return PreflightResult(ok=False, reason=violation, rerouted=True)

        if not resolve_branch:
            return PreflightResult(ok=True, meta=meta)
        return self._resolve_branch(entry, meta)

    def _resolve_branch(self, entry: QueueEntry, meta: TaskMeta | None) -> PreflightResult:
        task_id = entry.task_id
        if meta is None:
            meta = TaskMeta(name=entry.name)
        git = self.config.git
        branch = entry.branch or meta.branch or derive_branch_name(
            meta.name or task_id, git.branch_prefix
        )
        try:
            validate_branch_name(branch)
            branch = resolve_unique_branch(
                branch, self.branches.branch_exists, git.max_branch_suffix
            )
        except (BranchNameError, GitCommandError) as exc:
            return PreflightResult(ok=False, reason=str(exc))
        return PreflightResult(ok=True, branch_name=branch, meta=meta)

    def _reroute_to_context(self, entry: QueueEntry, meta: TaskMeta, violation: str) -> None:
        self.queues.remove_from_queue(entry.task_id, IMPLEMENTATION_QUEUE)
        if self.queues.queue_of(entry.task_id) != CONTEXT_QUEUE:
            self.queues.route_task(
                entry.task_id,
                meta,
                extra_dependencies=entry.depends_on,
                verify_manifest=False,
                force_context=violation,
            )
        if self.violations is not None:
            self.violations.record(
                "Context Gathering Violation",
                {
                    "Task": entry.task_id,
                    "Reason": violation,
                    "Action": "Task blocked from implementation queue, routed to context queue",
                },
            )

    async def _execute(self, slot: WorkerSlot, entry: QueueEntry, result: PreflightResult) -> None:
        role: WorkerRole = slot.role or CONTEXT_QUEUE
        branch = result.branch_name or entry.task_id
        meta = result.meta or TaskMeta(name=entry.name)
        instruction = build_instruction(
            role,
            task_path=str(self.tasks.path_for(entry.task_id)),
            task_text=self.tasks.read_text(entry.task_id) or "",
            meta=meta,
            branch=branch,
        )
        try:
            job_id = await self.executor.submit(instruction, self.config.executor.ref, branch)
        except ExecutorError as exc:
            await self.on_failure(slot, f"submission failed: {exc}")
            return
        slot.external_job_id = job_id
        self._persist()
        await self._poll_until_done(slot, job_id)

    async def _poll_until_done(self, slot: WorkerSlot, job_id: str) -> None:
        executor_config = self.config.executor
        await self.clock.sleep(executor_config.poll_warmup_seconds)
        while slot.status == "working" and slot.external_job_id == job_id:
            try:
                poll = await self.executor.poll(job_id)
            except ExecutorError as exc:
                logger.warning(
                    "Polling job %s for slot %s failed, retrying: %s", job_id, slot.id, exc
                )
                await self.clock.sleep(executor_config.poll_interval_seconds)
                continue
            if poll.status == "succeeded":
                await self.on_success(slot, poll.artifact_ref)
                return
            if poll.status in {"failed", "cancelled"}:
                detail = f": {poll.detail}" if poll.detail else ""
                await self.on_failure(slot, f"job {poll.status}{detail}")
                return
            await self.clock.sleep(executor_config.poll_interval_seconds)

    def _schedule_assignment(self, delay: float) -> None:
        async def _assign_later() -> None:
            await self.clock.sleep(delay)
            await self.assign_next()

        self._spawn(_assign_later(), "assign-next")

    async def on_success(self, slot: WorkerSlot, artifact_ref: str | None = None) -> None:
        task_id = slot.current_task
        role = slot.role
        branch = slot.branch_name
        slot.reset()
        slot.completed_count += 1
        if task_id is None:
            self._persist()
            return
        logger.info(
            "Worker finished slot=%s task=%s role=%s artifact=%s",
            slot.id,
            task_id,
            role,
            artifact_ref,
        )
        self.failure_counts.pop(task_id, None)
        node = normalize_task_id(task_id)
        if node not in self.completed_task_ids:
            self.completed_task_ids.append(node)
        if role == CONTEXT_QUEUE:
            await self._advance_context(task_id, branch)
        else:
            await self._complete_implementation(task_id, branch)
        self._persist()
        self._schedule_assignment(self.config.scheduler.reassign_after_success_seconds)

    async def _sync_task_file(self, task_id: str, branch: str | None) -> str | None:
        """Pull the worker's copy of the task file from its branch.

        Returns a failure reason, or ``None`` once the local file matches the branch.
        """
        if not self.sync_from_branches or not branch:
            return None
        git = self.config.git
        attempts = max(1, git.fetch_attempts)
        for attempt in range(1, attempts + 1):
            if self.branches.fetch_branch(branch):
                break
            if attempt < attempts:
                await self.clock.sleep(git.fetch_backoff_seconds)
        else:
            return f"branch {branch} could not be fetched"
        if not self.branches.restore_path(branch, self.tasks.path_for(task_id)):
            return f"task file could not be restored from {branch}"
        return None

    async def _advance_context(self, task_id: str, branch: str | None) -> bool:
        problem = await self._sync_task_file(task_id, branch)
        if problem:
            self._requeue_context(task_id, problem)
            return False

        try:
            self.tasks.set_flag(task_id, "context_gathered", True)
        except (OSError, TaskFileError) as exc:
            logger.warning("Could not flag %s as context gathered: %s", task_id, exc)
            self._requeue_context(task_id, "context flag could not be written")
            return False

        entry = self.queues.route_path(
            task_id, verify_manifest=self.config.scheduler.verify_manifest
        )
        if entry is None:
            return False
        if not entry.context_gathered:
            if self.violations is not None:
                self.violations.record(
                    "Context Gathering Violation",
                    {
                        "Task": task_id,
                        "Reason": entry.validation_issue or "context not confirmed",
                        "Action": "Task kept in context queue",
                    },
                )
            return False
        return True

    def _requeue_context(self, task_id: str, reason: str) -> None:
        logger.warning("Re-queueing %s for context gathering: %s", task_id, reason)
        meta = self.tasks.read_meta(task_id)
        if meta is None:
            logger.warning("Cannot re-queue %s: metadata unreadable", task_id)
            return
        self.queues.route_task(
            task_id, replace(meta, context_gathered=False), force_context=reason
        )

    async def _complete_implementation(self, task_id: str, branch: str | None) -> None:
        if self.completion is not None:
            problem = await self._sync_task_file(task_id, branch)
            if problem:
                logger.warning("Using local copy of %s for completion: %s", task_id, problem)
            outcome = await self.completion.run(task_id, branch)
            if not outcome.ok:
                logger.warning("Completion protocol failed for %s: %s", task_id, outcome.reason)
                if self.violations is not None:
                    self.violations.record(
                        "Completion Protocol Failure",
                        {"Task": task_id, "Reason": outcome.reason, "Action": "Task not archived"},
                    )
                return
        self.queues.mark_completed(task_id)

    async def on_failure(self, slot: WorkerSlot, reason: str) -> None:
        task_id = slot.current_task
        role = slot.role
        slot.status = "failed"
        logger.error(
            "Worker failure slot=%s task=%s role=%s reason=%s", slot.id, task_id, role, reason
        )
        record = {"slot": slot.id, "task": task_id, "role": role, "reason": reason}
        if self.errors is not None:
            self.errors.append(record)
        if self.violations is not None:
            self.violations.record(
                "Orchestrator Worker Failure",
                {"Agent": slot.id, "Task": task_id, "Role": role, "Reason": reason},
            )
        slot.reset()
        if task_id:
            count = self.failure_counts.get(task_id, 0) + 1
            self.failure_counts[task_id] = count
            limit = self.config.scheduler.max_task_failures
            if limit > 0 and count >= limit and task_id not in self.dead_letter:
                self.dead_letter.append(task_id)
                logger.error("Task %s failed %s times; dead-lettered", task_id, count)
        self._persist()
        self._schedule_assignment(self.config.scheduler.reassign_after_failure_seconds)

    async def resume(self) -> int:
        resumed = 0
        for slot in self.slots:
            if slot.status == "failed":
                slot.reset()
                continue
            if slot.status != "working":
                continue
            if slot.external_job_id and slot.current_task:
                logger.info("Resuming job %s on slot %s", slot.external_job_id, slot.id)
                self._spawn(
                    self._poll_until_done(slot, slot.external_job_id), f"resume-{slot.id}"
                )
                resumed += 1
            else:
                await self.on_failure(slot, "interrupted before job submission")
        self._persist()
        return resumed

    async def run(self, max_ticks: int | None = None) -> None:
        self.check_configuration()
        self.startup()
        await self.resume()
        ticks = 0
        while not self._stopping:
            await self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            await self.clock.sleep(self.config.scheduler.tick_seconds)

    def stop(self) -> None:
        self._stopping = True

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def status(self) -> dict[str, Any]:
        return {
            "slots": [slot.to_dict() for slot in self.slots],
            "idle_slots": sum(1 for slot in self.slots if slot.status == "idle"),
            "completed_task_ids": list(self.completed_task_ids),
            "failure_counts": dict(self.failure_counts),
            "dead_letter": list(self.dead_letter),
            "queues": self.queues.status(),
            "last_updated": self.last_updated,
        }
