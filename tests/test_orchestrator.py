import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import yaml

from conductor.audit import ErrorLog, ViolationLog
from conductor.clock import Clock
from conductor.completion import CompletionProtocol
from conductor.config import ConductorConfig
from conductor.executors.base import (
    ExecutorConfigError,
    ExecutorError,
    JobExecutor,
    JobPoll,
    JobStatus,
)
from conductor.orchestrator import POOL_SNAPSHOT, Orchestrator, QueueCorruptionError
from conductor.queues import CONTEXT_QUEUE, IMPLEMENTATION_QUEUE, PriorityQueueManager
from conductor.scm import BranchRegistry
from conductor.state import MemoryStore
from conductor.tasks import DiscoveryFeed, TaskMeta, TaskStore

MANIFEST = (
    "## Context Manifest\n"
    "The worker pool persists slot state after every transition and reads task\n"
    "front-matter to decide which queue a task belongs to.\n"
)


class FakeClock(Clock):
    def __init__(self, moment: datetime | None = None) -> None:
        self.moment = moment or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        self.slept: list[float] = []

    def now(self) -> datetime:
        return self.moment

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.moment += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class FakeExecutor(JobExecutor):
    name = "fake"

    def __init__(
        self,
        *,
        status: JobStatus = "succeeded",
        submit_error: ExecutorError | None = None,
        agent: Callable[[str, str], None] | None = None,
    ) -> None:
        self.status = status
        self.submit_error = submit_error
        self.agent = agent
        self.submissions: list[tuple[str, str]] = []
        self.job_status: dict[str, JobStatus] = {}

    async def submit(self, instruction: str, source_ref: str, target_branch: str) -> str:
        _ = source_ref
        if self.submit_error is not None:
            raise self.submit_error
        self.submissions.append((instruction, target_branch))
        if self.agent is not None:
            self.agent(instruction, target_branch)
        job_id = f"job-{len(self.submissions)}"
        self.job_status[job_id] = self.status
        return job_id

    async def poll(self, job_id: str) -> JobPoll:
        status = self.job_status.get(job_id, "succeeded")
        return JobPoll(status=status, artifact_ref=f"pr/{job_id}", detail="agent detail")


class FakeBranches(BranchRegistry):
    def __init__(self, existing: set[str] | None = None, *, fetch_ok: bool = True) -> None:
        self.existing = set(existing or ())
        self.probed: list[str] = []
        self.fetch_ok = fetch_ok
        self.fetched: list[str] = []
        self.restored: list[tuple[str, Path]] = []
        self.commits: list[str] = []

    def branch_exists(self, name: str) -> bool:
        self.probed.append(name)
        return name in self.existing

    def fetch_branch(self, name: str) -> bool:
        self.fetched.append(name)
        return self.fetch_ok

    def restore_path(self, branch: str, path: Path) -> bool:
        self.restored.append((branch, path))
        return True

    def commit_all(self, message: str) -> bool:
        self.commits.append(message)
        return True


@dataclass
class Harness:
    orchestrator: Orchestrator
    queues: PriorityQueueManager
    tasks: TaskStore
    executor: FakeExecutor
    branches: FakeBranches
    store: MemoryStore
    clock: FakeClock
    violations: ViolationLog
    errors: ErrorLog


def _write_task(tasks_dir: Path, name: str, *, body: str = "", **fields: Any) -> Path:
    tasks_dir.mkdir(parents=True, exist_ok=True)
    data = {"name": name, **fields}
    path = tasks_dir / f"{name}.md"
    path.write_text(
        f"---\n{yaml.safe_dump(data, sort_keys=False)}---\n# {name}\n\n{body}",
        encoding="utf-8",
    )
    return path


def _ready_task(tasks_dir: Path, name: str, **fields: Any) -> Path:
    return _write_task(tasks_dir, name, body=MANIFEST, context_gathered=True, **fields)


def _simulated_agent(instruction: str, branch: str) -> None:
    _ = branch
    match = re.search(r"^Task file: (.+)$", instruction, re.MULTILINE)
    assert match is not None
    path = Path(match.group(1))
    text = path.read_text(encoding="utf-8")
    if instruction.startswith("Gather context"):
        path.write_text(text + "\n" + MANIFEST, encoding="utf-8")
    elif instruction.startswith("Implement task"):
        path.write_text(text.replace("- [ ]", "- [x]"), encoding="utf-8")


def _harness(
    tmp_path: Path,
    *,
    executor: FakeExecutor | None = None,
    branches: FakeBranches | None = None,
    store: MemoryStore | None = None,
    clock: FakeClock | None = None,
    with_completion: bool = False,
    sync_from_branches: bool = False,
    **scheduler: Any,
) -> Harness:
    config = ConductorConfig.default()
    for key, value in scheduler.items():
        setattr(config.scheduler, key, value)
    clock = clock or FakeClock()
    store = store or MemoryStore()
    tasks = TaskStore(
        tmp_path / "tasks",
        tmp_path / "tasks" / "done",
        index_file=tmp_path / "tasks" / "indexes" / "completed.md",
    )
    tasks.tasks_dir.mkdir(parents=True, exist_ok=True)
    queues = PriorityQueueManager(store, task_store=tasks, clock=clock)
    executor = executor or FakeExecutor()
    branches = branches or FakeBranches()
    violations = ViolationLog(tmp_path / "Context" / "gotchas.md", clock=clock)
    errors = ErrorLog(tmp_path / "errors.log", clock=clock)
    completion = CompletionProtocol(tasks, branches, clock=clock) if with_completion else None
    orchestrator = Orchestrator(
        queues,
        tasks,
        executor,
        branches,
        store,
        config=config,
        feed=DiscoveryFeed(tasks.tasks_dir / ".new-tasks.log"),
        clock=clock,
        completion=completion,
        violations=violations,
        errors=errors,
        sync_from_branches=sync_from_branches,
    )
    return Harness(
        orchestrator, queues, tasks, executor, branches, store, clock, violations, errors
    )


def test_queue_choice_uses_strict_ratio_threshold(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    for index in range(6):
        h.queues.route_task(f"ctx-{index}", TaskMeta(name=f"ctx-{index}"))
    for index in range(4):
        h.queues.route_task(
            f"impl-{index}",
            TaskMeta(name=f"impl-{index}", context_gathered=True),
            verify_manifest=False,
        )

    assert h.queues.queue_lengths() == (6, 4)
    assert h.orchestrator.choose_queue() == IMPLEMENTATION_QUEUE

    h.queues.route_task("ctx-6", TaskMeta(name="ctx-6"))
    h.queues.remove_from_queue("impl-3")
    assert h.queues.queue_lengths() == (7, 3)
    assert h.orchestrator.choose_queue() == CONTEXT_QUEUE


def test_empty_implementation_queue_services_context(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    assert h.orchestrator.choose_queue() is None

    h.queues.route_task("only", TaskMeta(name="only"))
    assert h.orchestrator.choose_queue() == CONTEXT_QUEUE


def test_assign_next_follows_ratio_at_boundary(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    tasks_dir = tmp_path / "tasks"
    for index in range(6):
        _write_task(tasks_dir, f"ctx-{index}")
    for index in range(4):
        _ready_task(tasks_dir, f"impl-{index}")
    h.queues.process_all()

    async def _run() -> tuple[str | None, str | None]:
        first = await h.orchestrator.assign_next()
        first_role = first.role if first else None
        second = await h.orchestrator.assign_next()
        second_role = second.role if second else None
        h.orchestrator.stop()
        await h.orchestrator.drain()
        return first_role, second_role

    first_role, second_role = asyncio.run(_run())

    assert first_role == IMPLEMENTATION_QUEUE
    assert second_role == CONTEXT_QUEUE


def test_full_lifecycle_through_both_queues(tmp_path: Path) -> None:
    h = _harness(
        tmp_path,
        executor=FakeExecutor(agent=_simulated_agent),
        with_completion=True,
    )
    tasks_dir = tmp_path / "tasks"
    _write_task(tasks_dir, "alpha", body="- [ ] build it\n")
    _write_task(tasks_dir, "beta", body="- [ ] follow up\n", depends_on=["alpha"])
    h.queues.process_all()

    async def _run() -> None:
        await h.orchestrator.assign_next()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert h.orchestrator.completed_task_ids == ["alpha.md", "beta.md"]
    assert h.queues.queue_lengths() == (0, 0)
    assert (tasks_dir / "done" / "alpha.md").exists()
    assert (tasks_dir / "done" / "beta.md").exists()
    branches = [branch for _, branch in h.executor.submissions]
    assert branches == ["feature/alpha", "feature/alpha", "feature/beta", "feature/beta"]
    roles = [instruction.split(":")[0] for instruction, _ in h.executor.submissions]
    assert roles == [
        "Gather context for task",
        "Implement task",
        "Gather context for task",
        "Implement task",
    ]
    assert h.branches.commits == ["Complete task alpha.md", "Complete task beta.md"]
    assert all(slot.status == "idle" for slot in h.orchestrator.slots)
    assert sum(slot.completed_count for slot in h.orchestrator.slots) == 4
    assert h.store.documents[POOL_SNAPSHOT]["completed_task_ids"] == ["alpha.md", "beta.md"]
    assert h.violations.entries() == []


def test_context_success_releases_dependents(tmp_path: Path) -> None:
    h = _harness(tmp_path, executor=FakeExecutor(agent=_simulated_agent))
    tasks_dir = tmp_path / "tasks"
    _write_task(tasks_dir, "alpha")
    _write_task(tasks_dir, "beta", depends_on=["alpha"])
    h.queues.process_all()
    assert h.queues.next_eligible(CONTEXT_QUEUE).task_id == "alpha.md"

    async def _run() -> None:
        await h.orchestrator.assign_next()
        h.orchestrator.stop()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert h.queues.queue_of("alpha") == IMPLEMENTATION_QUEUE
    assert h.orchestrator.completed_task_ids == ["alpha.md"]
    assert h.queues.graph.metadata("alpha")["status"] != "completed"
    chosen = h.queues.next_eligible(CONTEXT_QUEUE, h.orchestrator.completed_set)
    assert chosen is not None
    assert chosen.task_id == "beta.md"


def test_preflight_reroutes_implementation_task_without_manifest(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    _write_task(tmp_path / "tasks", "sneaky", context_gathered=True)
    h.queues.route_path("sneaky", verify_manifest=False)
    assert h.queues.queue_of("sneaky") == IMPLEMENTATION_QUEUE

    slot = asyncio.run(h.orchestrator.assign_next())

    assert slot is None
    assert h.queues.queue_of("sneaky") == CONTEXT_QUEUE
    entry = h.queues.entries(CONTEXT_QUEUE)[0]
    assert entry.context_gathered is False
    assert entry.validation_issue == "Context Manifest missing or incomplete"
    assert h.violations.entries() == ["2026-01-01T12:00:00+00:00 - Context Gathering Violation"]
    assert h.executor.submissions == []


def test_preflight_drops_missing_or_empty_task_files(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    h.queues.route_task("ghost", TaskMeta(name="ghost"))
    (tmp_path / "tasks" / "blank.md").write_text("", encoding="utf-8")
    h.queues.route_task("blank", TaskMeta(name="blank"))

    result = h.orchestrator.preflight(h.queues.entries(CONTEXT_QUEUE)[1], CONTEXT_QUEUE)
    assert result.ok is False
    assert result.reason == "task file empty"

    async def _run() -> None:
        await h.orchestrator.assign_next()
        await h.orchestrator.assign_next()

    asyncio.run(_run())

    assert h.queues.queue_lengths() == (0, 0)
    assert h.executor.submissions == []


def test_preflight_picks_free_branch_name(tmp_path: Path) -> None:
    h = _harness(tmp_path, branches=FakeBranches({"feature/x", "feature/x-1"}))
    _write_task(tmp_path / "tasks", "x")
    entry = h.queues.route_path("x")

    result = h.orchestrator.preflight(entry, CONTEXT_QUEUE)

    assert result.ok is True
    assert result.branch_name == "feature/x-2"


def test_busy_pool_does_not_probe_remote_branches(tmp_path: Path) -> None:
    h = _harness(tmp_path, executor=FakeExecutor(status="running"), pool_size=1)
    _write_task(tmp_path / "tasks", "first", priority="high")
    _write_task(tmp_path / "tasks", "second")
    h.queues.route_path("first")
    h.queues.route_path("second")

    async def _run() -> None:
        assert await h.orchestrator.assign_next() is not None
        await asyncio.sleep(0)
        assert h.branches.probed == ["feature/first"]

        for _ in range(3):
            assert await h.orchestrator.assign_next() is None
        assert h.branches.probed == ["feature/first"]
        assert h.queues.queue_of("second") == CONTEXT_QUEUE

        for job_id in h.executor.job_status:
            h.executor.job_status[job_id] = "succeeded"
        h.orchestrator.stop()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert len(h.executor.submissions) == 1


def test_worker_failure_is_logged_and_not_requeued(tmp_path: Path) -> None:
    h = _harness(tmp_path, executor=FakeExecutor(status="failed"), max_task_failures=2)
    _write_task(tmp_path / "tasks", "flaky")
    h.queues.route_path("flaky")

    async def _run() -> None:
        await h.orchestrator.assign_next()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert h.queues.queue_lengths() == (0, 0)
    assert h.orchestrator.failure_counts == {"flaky.md": 1}
    assert h.orchestrator.dead_letter == []
    assert all(slot.status == "idle" for slot in h.orchestrator.slots)
    records = h.errors.read()
    assert records[0]["task"] == "flaky.md"
    assert records[0]["role"] == CONTEXT_QUEUE
    assert "job failed" in records[0]["reason"]
    assert h.violations.entries()[0].endswith("Orchestrator Worker Failure")
    assert 5.0 in h.clock.slept

    h.orchestrator.rescan()
    asyncio.run(_run())

    assert h.orchestrator.failure_counts == {"flaky.md": 2}
    assert h.orchestrator.dead_letter == ["flaky.md"]
    assert h.orchestrator.rescan() == 0
    assert h.queues.queue_lengths() == (0, 0)


def test_submission_error_goes_through_failure_handler(tmp_path: Path) -> None:
    executor = FakeExecutor(submit_error=ExecutorError("quota exceeded", executor="fake"))
    h = _harness(tmp_path, executor=executor)
    _write_task(tmp_path / "tasks", "blocked")
    h.queues.route_path("blocked")

    async def _run() -> None:
        await h.orchestrator.assign_next()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert "submission failed: quota exceeded" in h.errors.read()[0]["reason"]
    assert h.orchestrator.failure_counts == {"blocked.md": 1}


def test_task_is_never_assigned_to_two_slots(tmp_path: Path) -> None:
    h = _harness(tmp_path, executor=FakeExecutor(status="running"))
    _write_task(tmp_path / "tasks", "solo")
    h.queues.route_path("solo")

    async def _run() -> None:
        first = await h.orchestrator.assign_next()
        assert first is not None
        await asyncio.sleep(0)

        assert h.orchestrator.rescan() == 0
        h.queues.route_path("solo")
        assert await h.orchestrator.assign_next() is None
        working = [slot for slot in h.orchestrator.slots if slot.status == "working"]
        assert [slot.current_task for slot in working] == ["solo.md"]

        h.queues.remove_from_queue("solo")
        for job_id in h.executor.job_status:
            h.executor.job_status[job_id] = "succeeded"
        h.orchestrator.stop()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert len(h.executor.submissions) == 1


def test_context_success_requeues_when_branch_cannot_be_fetched(tmp_path: Path) -> None:
    h = _harness(
        tmp_path,
        branches=FakeBranches(fetch_ok=False),
        sync_from_branches=True,
    )
    _write_task(tmp_path / "tasks", "remote")
    h.queues.route_path("remote")

    async def _run() -> None:
        await h.orchestrator.assign_next()
        h.orchestrator.stop()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert h.branches.fetched == ["feature/remote", "feature/remote"]
    assert h.queues.queue_of("remote") == CONTEXT_QUEUE
    entry = h.queues.entries(CONTEXT_QUEUE)[0]
    assert entry.validation_issue == "branch feature/remote could not be fetched"
    assert h.tasks.read_meta("remote").context_gathered is False


def test_context_success_syncs_and_promotes_task(tmp_path: Path) -> None:
    h = _harness(
        tmp_path,
        executor=FakeExecutor(agent=_simulated_agent),
        sync_from_branches=True,
    )
    _write_task(tmp_path / "tasks", "synced")
    h.queues.route_path("synced")

    async def _run() -> None:
        await h.orchestrator.assign_next()
        h.orchestrator.stop()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert h.branches.restored == [("feature/synced", h.tasks.path_for("synced"))]
    assert h.queues.queue_of("synced") == IMPLEMENTATION_QUEUE
    assert h.tasks.read_meta("synced").context_gathered is True


def test_context_success_without_manifest_stays_in_context(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    _write_task(tmp_path / "tasks", "lazy")
    h.queues.route_path("lazy")

    async def _run() -> None:
        await h.orchestrator.assign_next()
        h.orchestrator.stop()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert h.queues.queue_of("lazy") == CONTEXT_QUEUE
    assert h.violations.entries()[0].endswith("Context Gathering Violation")
    assert h.orchestrator.completed_task_ids == ["lazy.md"]


def test_unchecked_items_block_completion(tmp_path: Path) -> None:
    h = _harness(tmp_path, with_completion=True)
    _write_task(
        tmp_path / "tasks",
        "unfinished",
        body=MANIFEST + "- [ ] remaining\n",
        context_gathered=True,
    )
    h.queues.route_path("unfinished")

    async def _run() -> None:
        await h.orchestrator.assign_next()
        h.orchestrator.stop()
        await h.orchestrator.drain()

    asyncio.run(_run())

    assert h.orchestrator.completed_task_ids == ["unfinished.md"]
    assert h.queues.graph.metadata("unfinished")["status"] != "completed"
    assert h.tasks.exists("unfinished")
    assert h.violations.entries()[0].endswith("Completion Protocol Failure")
    assert h.branches.commits == []
    assert h.orchestrator.rescan() == 1
    assert h.queues.queue_of("unfinished") == IMPLEMENTATION_QUEUE


def test_self_check_purges_within_tolerance(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    tasks_dir = tmp_path / "tasks"
    for index in range(10):
        _write_task(tasks_dir, f"task-{index}")
    h.queues.process_all()
    (tasks_dir / "task-3.md").unlink()

    dry_run = h.orchestrator.self_check(purge=False)
    assert dry_run.ok is True
    assert dry_run.purged == 0
    assert h.queues.contains("task-3")

    report = h.orchestrator.startup()
    assert report.total == 10
    assert report.purged == 1
    assert report.invalid == [
        {"task_id": "task-3.md", "queue": CONTEXT_QUEUE, "reason": "task file missing"}
    ]
    assert not h.queues.contains("task-3")


def test_startup_refuses_when_too_many_entries_are_invalid(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    tasks_dir = tmp_path / "tasks"
    for index in range(10):
        _write_task(tasks_dir, f"task-{index}")
    h.queues.process_all()
    for index in (1, 2):
        (tasks_dir / f"task-{index}.md").unlink()

    with pytest.raises(QueueCorruptionError, match="conductor rebuild"):
        h.orchestrator.startup()
    assert h.queues.queue_lengths() == (10, 0)


def test_stale_entries_count_as_invalid(tmp_path: Path) -> None:
    clock = FakeClock(datetime.now(UTC))
    h = _harness(tmp_path, clock=clock)
    _write_task(tmp_path / "tasks", "old")
    h.queues.route_path("old")

    clock.moment += timedelta(days=8)
    report = h.orchestrator.self_check(purge=False)

    assert report.ok is False
    assert report.invalid[0]["reason"] == "untouched for more than 7 days"


def test_tick_ingests_discovered_tasks(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    _write_task(tmp_path / "tasks", "found")
    log = tmp_path / "tasks" / ".new-tasks.log"
    log.write_text("[hook] New task detected: found.md\n", encoding="utf-8")

    async def _run() -> Any:
        slot = await h.orchestrator.tick()
        h.orchestrator.stop()
        await h.orchestrator.drain()
        return slot

    slot = asyncio.run(_run())

    assert slot is not None
    assert slot.id == "worker-1"
    assert h.queues.feed_offset == log.stat().st_size
    assert h.executor.submissions[0][1] == "feature/found"


def test_tick_rescans_task_directory_when_queues_are_empty(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    _write_task(tmp_path / "tasks", "idle-pickup")

    async def _run() -> Any:
        slot = await h.orchestrator.tick()
        h.orchestrator.stop()
        await h.orchestrator.drain()
        return slot

    assert asyncio.run(_run()) is not None
    assert h.executor.submissions[0][1] == "feature/idle-pickup"


def test_resume_restores_in_flight_work(tmp_path: Path) -> None:
    store = MemoryStore()
    store.save(
        POOL_SNAPSHOT,
        {
            "slots": [
                {
                    "id": "worker-1",
                    "status": "working",
                    "current_task": "resumed.md",
                    "role": IMPLEMENTATION_QUEUE,
                    "external_job_id": "job-77",
                    "branch_name": "feature/resumed",
                },
                {"id": "worker-2", "status": "failed", "current_task": "broken.md"},
                {"id": "worker-3", "status": "working", "current_task": "lost.md"},
            ],
            "completed_task_ids": ["earlier.md"],
        },
    )
    h = _harness(tmp_path, store=store)
    assert h.orchestrator.slots[0].external_job_id == "job-77"

    async def _run() -> int:
        resumed = await h.orchestrator.resume()
        await h.orchestrator.drain()
        return resumed

    resumed = asyncio.run(_run())

    assert resumed == 1
    assert h.orchestrator.completed_task_ids == ["earlier.md", "resumed.md"]
    assert h.orchestrator.failure_counts == {"lost.md": 1}
    assert h.orchestrator.slots[0].completed_count == 1
    assert all(slot.status == "idle" for slot in h.orchestrator.slots)
    assert h.queues.graph.metadata("resumed")["status"] == "completed"


def test_run_checks_configuration_and_stops_after_max_ticks(tmp_path: Path) -> None:
    class UnconfiguredExecutor(FakeExecutor):
        def check_ready(self) -> None:
            raise ExecutorConfigError("missing key", executor=self.name)

    h = _harness(tmp_path, executor=UnconfiguredExecutor())
    with pytest.raises(ExecutorConfigError, match="missing key"):
        asyncio.run(h.orchestrator.run(max_ticks=1))

    ok = _harness(tmp_path / "ok")
    asyncio.run(ok.orchestrator.run(max_ticks=3))
    assert ok.clock.slept.count(5.0) == 2


def test_status_reports_slots_and_queues(tmp_path: Path) -> None:
    h = _harness(tmp_path, pool_size=2)
    h.queues.route_task("a", TaskMeta(name="a"))

    status = h.orchestrator.status()

    assert [slot["id"] for slot in status["slots"]] == ["worker-1", "worker-2"]
    assert status["idle_slots"] == 2
    assert status["queues"]["context_queue"] == ["a.md"]
    assert status["dead_letter"] == []
