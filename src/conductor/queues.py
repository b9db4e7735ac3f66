from __future__ import annotations

import logging
from collections.abc import Collection, Iterable, Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from conductor.clock import Clock, SystemClock, parse_iso
from conductor.graph import DependencyGraph, ExistenceChecker, normalize_task_id
from conductor.state import StateStore
from conductor.tasks import TaskFileError, TaskMeta, TaskStore

logger = logging.getLogger(__name__)

QueueName = Literal["context", "implementation"]

CONTEXT_QUEUE: QueueName = "context"
IMPLEMENTATION_QUEUE: QueueName = "implementation"
QUEUE_NAMES: tuple[QueueName, ...] = (CONTEXT_QUEUE, IMPLEMENTATION_QUEUE)
SNAPSHOT_NAME = "task-queues"

PRIORITY_VALUES = {"low": 1, "medium": 2, "high": 3, "ultra-high": 4}
LEVERAGE_VALUES = {"low": 1, "medium": 2, "high": 3, "ultra-high": 4}
SATISFIED_BONUS = 10.0
BLOCKED_PENALTY = 1000.0
DECAY_PER_MINUTE = 0.1
CONTEXT_BACKLOG_BONUS = 5.0
MISSING_MANIFEST = "missing-context-manifest"


@dataclass(slots=True)
class QueueEntry:
    task_id: str
    name: str
    priority: str = "medium"
    leverage: str = "medium"
    status: str = "pending"
    depends_on: list[str] = field(default_factory=list)
    context_gathered: bool = False
    queued_at: str = ""
    branch: str | None = None
    validation_issue: str | None = None
    moved_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> QueueEntry:
        return cls(
            task_id=normalize_task_id(str(payload["task_id"])),
            name=str(payload.get("name") or ""),
            priority=str(payload.get("priority") or "medium"),
            leverage=str(payload.get("leverage") or "medium"),
            status=str(payload.get("status") or "pending"),
            depends_on=[normalize_task_id(dep) for dep in payload.get("depends_on") or []],
            context_gathered=bool(payload.get("context_gathered", False)),
            queued_at=str(payload.get("queued_at") or ""),
            branch=payload.get("branch") or None,
            validation_issue=payload.get("validation_issue") or None,
            moved_at=payload.get("moved_at") or None,
        )


@dataclass(slots=True)
class ProcessStats:
    scanned: int = 0
    routed: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def minutes_since(timestamp: str | None, now: datetime) -> float:
    moment = parse_iso(timestamp)
    if moment is None:
        return 0.0
    return max(0.0, (now - moment).total_seconds() / 60.0)


def calculate_priority_score(
    entry: QueueEntry,
    *,
    context_ratio: float,
    dependencies_satisfied: bool,
    now: datetime,
    context_ratio_threshold: float = 0.6,
) -> float:
    base = PRIORITY_VALUES.get(entry.priority, 2) * LEVERAGE_VALUES.get(entry.leverage, 2)
    score = float(base)
    score += SATISFIED_BONUS if dependencies_satisfied else -BLOCKED_PENALTY
    score -= minutes_since(entry.queued_at, now) * DECAY_PER_MINUTE
    if not entry.context_gathered and context_ratio > context_ratio_threshold:
        score += CONTEXT_BACKLOG_BONUS
    return score


class PriorityQueueManager:
    """Context and implementation queues backed by one dependency graph.

    Every mutating call ends with a full snapshot write through ``store``.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        task_store: TaskStore | None = None,
        clock: Clock | None = None,
        context_ratio_threshold: float = 0.6,
        check_dependency_files: bool = True,
    ) -> None:
        self.store = store
        self.tasks = task_store
        self.clock = clock or SystemClock()
        self.context_ratio_threshold = context_ratio_threshold
        self.check_dependency_files = check_dependency_files
        self.graph = DependencyGraph()
        self.processed_ids: list[str] = []
        self.feed_offset = 0
        self.last_updated: str | None = None
        self._queues: dict[QueueName, list[QueueEntry]] = {name: [] for name in QUEUE_NAMES}
        self._load()

    def _load(self) -> None:
        payload = self.store.load(SNAPSHOT_NAME)
        if not payload:
            return
        seen: set[str] = set()
        sections = (
            (CONTEXT_QUEUE, "context_queue"),
            (IMPLEMENTATION_QUEUE, "implementation_queue"),
        )
        for queue, key in sections:
            for item in payload.get(key) or []:
                try:
                    entry = QueueEntry.from_dict(item)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Dropping malformed %s queue entry %r: %s", queue, item, exc)
                    continue
                if entry.task_id in seen:
                    logger.warning("Dropping duplicate queue entry for %s", entry.task_id)
                    continue
                seen.add(entry.task_id)
                self._queues[queue].append(entry)
        self.processed_ids = [str(item) for item in payload.get("processed_ids") or []]
        self.graph = DependencyGraph.deserialize(payload.get("dependency_graph"))
        self.feed_offset = int(payload.get("feed_offset") or 0)
        self.last_updated = payload.get("last_updated")

    def snapshot(self) -> dict[str, Any]:
        return {
            "context_queue": [entry.to_dict() for entry in self._queues[CONTEXT_QUEUE]],
            "implementation_queue": [
                entry.to_dict() for entry in self._queues[IMPLEMENTATION_QUEUE]
            ],
            "processed_ids": list(self.processed_ids),
            "dependency_graph": self.graph.serialize(),
            "feed_offset": self.feed_offset,
            "last_updated": self.last_updated,
        }

    def _persist(self) -> None:
        self.last_updated = self.clock.now_iso()
        self.store.save(SNAPSHOT_NAME, self.snapshot())

    def _existence_checker(self) -> ExistenceChecker | None:
        if self.check_dependency_files and self.tasks is not None:
            return self.tasks.dependency_exists
        return None

    def _find(self, task_id: str) -> tuple[QueueName, QueueEntry] | None:
        for queue in QUEUE_NAMES:
            for entry in self._queues[queue]:
                if entry.task_id == task_id:
                    return queue, entry
        return None

    def _discard(self, task_id: str) -> QueueName | None:
        found = self._find(task_id)
        if found is None:
            return None
        queue, entry = found
        self._queues[queue].remove(entry)
        return queue

    def _mark_processed(self, task_id: str) -> None:
        if task_id not in self.processed_ids:
            self.processed_ids.append(task_id)

    def contains(self, task_id: str) -> bool:
        return self._find(normalize_task_id(task_id)) is not None

    def queue_of(self, task_id: str) -> QueueName | None:
        found = self._find(normalize_task_id(task_id))
        return found[0] if found else None

    def entries(self, queue: QueueName) -> list[QueueEntry]:
        return [replace(entry) for entry in self._queues[queue]]

    def queue_lengths(self) -> tuple[int, int]:
        return len(self._queues[CONTEXT_QUEUE]), len(self._queues[IMPLEMENTATION_QUEUE])

    def context_ratio(self) -> float:
        context_len, implementation_len = self.queue_lengths()
        total = context_len + implementation_len
        return context_len / total if total else 0.0

    def _route(
        self,
        task_id: str,
        meta: TaskMeta,
        extra_dependencies: Iterable[str],
        verify_manifest: bool,
        force_context: str | None = None,
    ) -> QueueEntry:
        node = normalize_task_id(task_id)
        dependencies: list[str] = []
        for raw in [*meta.depends_on, *extra_dependencies]:
            dep = normalize_task_id(raw)
            if dep not in dependencies:
                dependencies.append(dep)

        context_gathered = meta.context_gathered
        issue: str | None = None
        if context_gathered and verify_manifest and self.tasks is not None:
            if not self.tasks.has_manifest(node):
                logger.warning(
                    "Task %s declares context_gathered but has no Context Manifest; "
                    "routing to context queue",
                    node,
                )
                context_gathered = False
                issue = MISSING_MANIFEST
        if force_context:
            context_gathered = False
            issue = force_context

        self._discard(node)
        entry = QueueEntry(
            task_id=node,
            name=meta.name or Path(node).stem,
            priority=meta.priority,
            leverage=meta.leverage,
            status=meta.status,
            depends_on=dependencies,
            context_gathered=context_gathered,
            queued_at=self.clock.now_iso(),
            branch=meta.branch,
            validation_issue=issue,
        )
        queue = IMPLEMENTATION_QUEUE if context_gathered else CONTEXT_QUEUE
        self._queues[queue].append(entry)

        graph_meta = meta.graph_metadata()
        graph_meta["context_gathered"] = context_gathered
        self.graph.add_task(node, dependencies, graph_meta)
        self._mark_processed(node)
        logger.info("Routed %s to %s queue", node, queue)
        return entry

    def route_task(
        self,
        task_id: str,
        meta: TaskMeta,
        *,
        extra_dependencies: Iterable[str] = (),
        verify_manifest: bool = True,
        force_context: str | None = None,
    ) -> QueueEntry:
        """Insert or re-insert a task into the queue matching its readiness.

        ``force_context`` routes the task to the context queue regardless of its
        declared flag and records the given reason as its validation issue.
        """
        entry = self._route(
            task_id, meta, extra_dependencies, verify_manifest, force_context=force_context
        )
        self._persist()
        return replace(entry)

    def _manual_dependencies(self) -> dict[str, list[str]]:
        return self.tasks.manual_dependencies() if self.tasks is not None else {}

    def route_path(
        self,
        task_id: str,
        *,
        extra_dependencies: Iterable[str] | None = None,
        verify_manifest: bool = True,
    ) -> QueueEntry | None:
        """Read a task's metadata from the task store and route it.

        Returns ``None`` (after logging a warning) when the metadata cannot be
        parsed; the task is left untouched in that case.
        """
        if self.tasks is None:
            raise RuntimeError("route_path requires a task store.")
        node = normalize_task_id(task_id)
        meta = self.tasks.read_meta(node)
        if meta is None:
            logger.warning("Skipping %s: metadata could not be read", node)
            return None
        if extra_dependencies is None:
            extra_dependencies = self._manual_dependencies().get(node, [])
        return self.route_task(
            node,
            meta,
            extra_dependencies=extra_dependencies,
            verify_manifest=verify_manifest,
        )

    def score(
        self,
        entry: QueueEntry,
        context_ratio: float | None = None,
        completed: Collection[str] = (),
    ) -> float:
        ratio = self.context_ratio() if context_ratio is None else context_ratio
        check = self.graph.check_dependencies_satisfied(
            entry.task_id, completed, self._existence_checker()
        )
        return calculate_priority_score(
            entry,
            context_ratio=ratio,
            dependencies_satisfied=check.satisfied,
            now=self.clock.now(),
            context_ratio_threshold=self.context_ratio_threshold,
        )

    def next_eligible(
        self, queue: QueueName, completed: Collection[str] = ()
    ) -> QueueEntry | None:
        exists = self._existence_checker()
        ratio = self.context_ratio()
        now = self.clock.now()
        candidates: list[tuple[float, QueueEntry]] = []
        for entry in self._queues[queue]:
            if queue == IMPLEMENTATION_QUEUE and not entry.context_gathered:
                continue
            check = self.graph.check_dependencies_satisfied(entry.task_id, completed, exists)
            if not check.satisfied:
                continue
            score = calculate_priority_score(
                entry,
                context_ratio=ratio,
                dependencies_satisfied=True,
                now=now,
                context_ratio_threshold=self.context_ratio_threshold,
            )
            candidates.append((score, entry))
        candidates.sort(key=lambda item: item[0], reverse=True)

        removed = False
        chosen: QueueEntry | None = None
        for _, entry in candidates:
            if self.tasks is not None and not self.tasks.exists(entry.task_id):
                logger.warning("Removing %s from %s queue: task file is gone", entry.task_id, queue)
                self._queues[queue].remove(entry)
                removed = True
                continue
            chosen = entry
            break
        if removed:
            self._persist()
        return replace(chosen) if chosen else None

    def remove_from_queue(self, task_id: str, queue: QueueName | None = None) -> bool:
        node = normalize_task_id(task_id)
        names = QUEUE_NAMES if queue is None else (queue,)
        for name in names:
            for entry in self._queues[name]:
                if entry.task_id == node:
                    self._queues[name].remove(entry)
                    self._persist()
                    return True
        return False

    def move_to_implementation(self, task_id: str) -> bool:
        node = normalize_task_id(task_id)
        for entry in self._queues[CONTEXT_QUEUE]:
            if entry.task_id == node:
                break
        else:
            return False
        self._queues[CONTEXT_QUEUE].remove(entry)
        entry.context_gathered = True
        entry.validation_issue = None
        entry.moved_at = self.clock.now_iso()
        self._queues[IMPLEMENTATION_QUEUE].append(entry)
        if node in self.graph:
            meta = self.graph.metadata(node)
            meta["context_gathered"] = True
            self.graph.add_task(node, self.graph.dependencies(node), meta)
        self._persist()
        return True

    def _record_finished(self, node: str, meta: TaskMeta, extra_dependencies: list[str]) -> None:
        # A file marked completed wins over whatever the graph remembers.
        self.graph.add_task(node, [*meta.depends_on, *extra_dependencies], meta.graph_metadata())

    def mark_completed(self, task_id: str) -> None:
        node = normalize_task_id(task_id)
        if not self.graph.set_status(node, "completed"):
            self.graph.add_task(node, (), {"status": "completed"})
        self._persist()

    def process_all(
        self,
        task_ids: Iterable[str] | None = None,
        *,
        exclude: Collection[str] = (),
        include_completed: bool = False,
        verify_manifest: bool = True,
    ) -> ProcessStats:
        if self.tasks is None:
            raise RuntimeError("process_all requires a task store.")
        if task_ids is None:
            task_ids = self.tasks.list_task_ids()
        manual = self._manual_dependencies()
        excluded = {normalize_task_id(item) for item in exclude}
        stats = ProcessStats()
        for raw in task_ids:
            stats.scanned += 1
            try:
                node = normalize_task_id(raw)
                if node in excluded or self._find(node) is not None:
                    stats.skipped += 1
                    continue
                meta = self.tasks.read_meta(node)
                if meta is None:
                    stats.errors.append({"task_id": node, "error": "unparsable metadata"})
                    continue
                if meta.status == "completed" and not include_completed:
                    self._record_finished(node, meta, manual.get(node, []))
                    stats.skipped += 1
                    continue
                self._route(node, meta, manual.get(node, []), verify_manifest)
                stats.routed += 1
            except (OSError, ValueError, TaskFileError) as exc:
                logger.warning("Failed to route %s: %s", raw, exc)
                stats.errors.append({"task_id": str(raw), "error": str(exc)})
        self._persist()
        logger.info(
            "Processed %s tasks: %s routed, %s skipped, %s errors",
            stats.scanned,
            stats.routed,
            stats.skipped,
            len(stats.errors),
        )
        return stats

    def ingest_new(self, task_ids: Iterable[str], *, verify_manifest: bool = True) -> int:
        if self.tasks is None:
            raise RuntimeError("ingest_new requires a task store.")
        manual = self._manual_dependencies()
        routed = 0
        for raw in task_ids:
            node = normalize_task_id(raw)
            seen = node in self.processed_ids
            meta = self.tasks.read_meta(node)
            if meta is None:
                if not seen:
                    logger.warning("Skipping discovered task %s: metadata could not be read", node)
                continue
            if meta.status == "completed":
                self._record_finished(node, meta, manual.get(node, []))
                self._mark_processed(node)
                continue
            if seen:
                continue
            self._route(node, meta, manual.get(node, []), verify_manifest)
            routed += 1
        self._persist()
        return routed

    def advance_feed(self, offset: int) -> None:
        if offset != self.feed_offset:
            self.feed_offset = offset
            self._persist()

    def reset(self) -> None:
        self._queues = {name: [] for name in QUEUE_NAMES}
        self.graph = DependencyGraph()
        self.processed_ids = []
        self.feed_offset = 0
        self._persist()

    def status(self) -> dict[str, Any]:
        context_len, implementation_len = self.queue_lengths()
        return {
            "context_queue": [entry.task_id for entry in self._queues[CONTEXT_QUEUE]],
            "implementation_queue": [
                entry.task_id for entry in self._queues[IMPLEMENTATION_QUEUE]
            ],
            "context_count": context_len,
            "implementation_count": implementation_len,
            "context_ratio": round(self.context_ratio(), 3),
            "processed_count": len(self.processed_ids),
            "graph": self.graph.stats(),
            "last_updated": self.last_updated,
        }
