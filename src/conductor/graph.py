from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

logger = logging.getLogger(__name__)

TASK_SUFFIX = ".md"
DEFAULT_METADATA: dict[str, Any] = {
    "priority": "medium",
    "leverage": "medium",
    "status": "pending",
}

ExistenceChecker = Callable[[str], bool]


def normalize_task_id(raw: str) -> str:
    """Return the canonical id for a task reference.

    ``"foo"``, ``"@foo"``, ``"foo.md"`` and ``"sessions/tasks/foo.md"`` all map
    to ``"foo.md"``.
    """
    value = str(raw).strip().lstrip("@").replace("\\", "/")
    value = PurePosixPath(value).name if "/" in value else value
    if not value:
        raise ValueError("Task id must not be empty.")
    if not value.endswith(TASK_SUFFIX):
        value = f"{value}{TASK_SUFFIX}"
    return value


@dataclass(slots=True)
class CycleReport:
    has_cycle: bool
    cycle: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TopologicalOrder:
    sorted: list[str]
    has_cycle: bool
    cycle_nodes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DependencyCheck:
    satisfied: bool
    blocking: list[str] = field(default_factory=list)


class DependencyGraph:
    """Task -> dependency adjacency with a derived reverse index."""

    def __init__(self) -> None:
        self._adjacency: dict[str, list[str]] = {}
        self._reverse: dict[str, list[str]] = {}
        self._metadata: dict[str, dict[str, Any]] = {}

    def __contains__(self, task_id: object) -> bool:
        if not isinstance(task_id, str) or not task_id.strip():
            return False
        return normalize_task_id(task_id) in self._adjacency

    def __len__(self) -> int:
        return len(self._adjacency)

    @property
    def tasks(self) -> list[str]:
        return list(self._adjacency)

    def dependencies(self, task_id: str) -> list[str]:
        return list(self._adjacency.get(normalize_task_id(task_id), []))

    def dependents(self, task_id: str) -> list[str]:
        return list(self._reverse.get(normalize_task_id(task_id), []))

    def metadata(self, task_id: str) -> dict[str, Any]:
        return dict(self._metadata.get(normalize_task_id(task_id), {}))

    def add_task(
        self,
        task_id: str,
        dependencies: Iterable[str] = (),
        metadata: dict[str, Any] | None = None,
    ) -> str:
        node = normalize_task_id(task_id)
        deps: list[str] = []
        for raw in dependencies:
            dep = normalize_task_id(raw)
            if dep not in deps:
                deps.append(dep)

        for stale in self._adjacency.get(node, []):
            if stale in deps:
                continue
            dependents = self._reverse.get(stale)
            if dependents and node in dependents:
                dependents.remove(node)
                if not dependents:
                    del self._reverse[stale]

        self._adjacency[node] = deps
        for dep in deps:
            dependents = self._reverse.setdefault(dep, [])
            if node not in dependents:
                dependents.append(node)

        merged = dict(DEFAULT_METADATA)
        for key, value in (metadata or {}).items():
            if value is not None:
                merged[key] = value
        self._metadata[node] = merged
        return node

    def remove_task(self, task_id: str) -> bool:
        node = normalize_task_id(task_id)
        if node not in self._adjacency:
            return False
        for dep in self._adjacency.pop(node):
            dependents = self._reverse.get(dep)
            if dependents and node in dependents:
                dependents.remove(node)
                if not dependents:
                    del self._reverse[dep]
        self._metadata.pop(node, None)
        return True

    def set_status(self, task_id: str, status: str) -> bool:
        node = normalize_task_id(task_id)
        if node not in self._metadata:
            return False
        self._metadata[node]["status"] = status
        return True

    def detect_circular_dependencies(self) -> CycleReport:
        visited: set[str] = set()
        for root in self._adjacency:
            if root in visited:
                continue
            on_stack: dict[str, int] = {root: 0}
            path = [root]
            frames = [iter(self._adjacency[root])]
            visited.add(root)
            while frames:
                dep = next(frames[-1], None)
                if dep is None:
                    frames.pop()
                    on_stack.pop(path.pop())
                    continue
                if dep not in self._adjacency:
                    continue
                if dep in on_stack:
                    cycle = path[on_stack[dep]:] + [dep]
                    return CycleReport(has_cycle=True, cycle=cycle)
                if dep in visited:
                    continue
                visited.add(dep)
                on_stack[dep] = len(path)
                path.append(dep)
                frames.append(iter(self._adjacency[dep]))
        return CycleReport(has_cycle=False)

    def topological_sort(self) -> TopologicalOrder:
        in_degree = {
            node: sum(1 for dep in deps if dep in self._adjacency)
            for node, deps in self._adjacency.items()
        }
        ready = deque(node for node, degree in in_degree.items() if degree == 0)
        ordered: list[str] = []
        while ready:
            node = ready.popleft()
            ordered.append(node)
            for dependent in self._reverse.get(node, []):
                if dependent not in in_degree:
                    continue
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)

        has_cycle = len(ordered) < len(self._adjacency)
        placed = set(ordered)
        remaining = [node for node in self._adjacency if node not in placed]
        return TopologicalOrder(sorted=ordered, has_cycle=has_cycle, cycle_nodes=remaining)

    def check_dependencies_satisfied(
        self,
        task_id: str,
        completed: Collection[str] = (),
        exists: ExistenceChecker | None = None,
    ) -> DependencyCheck:
        node = normalize_task_id(task_id)
        blocking: list[str] = []
        for dep in self._adjacency.get(node, []):
            if dep in self._metadata:
                if self._metadata[dep].get("status") != "completed" and dep not in completed:
                    blocking.append(dep)
            elif exists is not None and not exists(dep):
                blocking.append(dep)
        return DependencyCheck(satisfied=not blocking, blocking=blocking)

    def get_ready_tasks(
        self,
        completed: Collection[str] = (),
        exists: ExistenceChecker | None = None,
    ) -> list[str]:
        ready: list[str] = []
        for node, meta in self._metadata.items():
            if meta.get("status") == "completed" or node in completed:
                continue
            if self.check_dependencies_satisfied(node, completed, exists).satisfied:
                ready.append(node)
        return ready

    def execution_levels(self) -> list[list[str]]:
        """Group tasks into levels that can run in parallel.

        Nodes that sit on or behind a cycle are left out.
        """
        order = self.topological_sort()
        level_of: dict[str, int] = {}
        for node in order.sorted:
            tracked = [dep for dep in self._adjacency[node] if dep in level_of]
            level_of[node] = 1 + max((level_of[dep] for dep in tracked), default=-1)
        levels: list[list[str]] = []
        for node in order.sorted:
            level = level_of[node]
            while len(levels) <= level:
                levels.append([])
            levels[level].append(node)
        return levels

    def stats(self) -> dict[str, Any]:
        total = len(self._adjacency)
        edges = sum(len(deps) for deps in self._adjacency.values())
        without = sum(1 for deps in self._adjacency.values() if not deps)
        return {
            "total_tasks": total,
            "total_edges": edges,
            "tasks_without_dependencies": without,
            "tasks_with_dependencies": total - without,
            "average_dependencies": round(edges / total, 2) if total else 0.0,
        }

    def serialize(self) -> dict[str, Any]:
        return {
            "adjacency": [
                {"task": node, "dependencies": list(deps)}
                for node, deps in self._adjacency.items()
            ],
            "metadata": [
                {"task": node, **meta} for node, meta in self._metadata.items()
            ],
        }

    @classmethod
    def deserialize(cls, payload: dict[str, Any] | None) -> DependencyGraph:
        graph = cls()
        if not isinstance(payload, dict):
            return graph
        metadata: dict[str, dict[str, Any]] = {}
        for item in payload.get("metadata", []):
            if isinstance(item, dict) and item.get("task"):
                meta = {key: value for key, value in item.items() if key != "task"}
                metadata[str(item["task"])] = meta
        for item in payload.get("adjacency", []):
            if not isinstance(item, dict) or not item.get("task"):
                logger.warning("Skipping malformed adjacency entry: %r", item)
                continue
            task = str(item["task"])
            graph.add_task(task, item.get("dependencies") or [], metadata.get(task))
        return graph

    def to_dot(self) -> str:
        lines = ["digraph tasks {", "  rankdir=LR;"]
        for node in self._adjacency:
            status = self._metadata.get(node, {}).get("status", "pending")
            lines.append(f'  "{node}" [label="{node}\\n{status}"];')
        for node, deps in self._adjacency.items():
            for dep in deps:
                style = "" if dep in self._adjacency else " [style=dashed]"
                lines.append(f'  "{dep}" -> "{node}"{style};')
        lines.append("}")
        return "\n".join(lines) + "\n"
