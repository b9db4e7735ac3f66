from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conductor import __version__
from conductor.audit import ErrorLog, ViolationLog
from conductor.completion import CompletionProtocol, default_workers
from conductor.config import ConductorConfig, load_config, save_config
from conductor.executors import (
    CloudAgentExecutor,
    ExecutorConfigError,
    JobExecutor,
    LocalProcessExecutor,
)
from conductor.graph import DependencyGraph
from conductor.orchestrator import Orchestrator, QueueCorruptionError
from conductor.queues import PriorityQueueManager
from conductor.scm import GitRepository
from conductor.state import ConductorStateError, JsonFileStore
from conductor.tasks import DiscoveryFeed, TaskStore

DEFAULT_CONFIG = "conductor.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    tasks: TaskStore
    queues: PriorityQueueManager
    orchestrator: Orchestrator


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _build_executor(config: ConductorConfig, repo_root: Path) -> JobExecutor:
    if config.executor.mode == "local":
        return LocalProcessExecutor(config.executor.local_binary, working_directory=repo_root)
    return CloudAgentExecutor(
        api_key=config.executor.api_key,
        repository=config.executor.repository,
        api_url=config.executor.api_url,
        timeout_seconds=config.executor.request_timeout_seconds,
    )


def _build_task_store(config: ConductorConfig, repo_root: Path) -> TaskStore:
    project = config.project
    return TaskStore(
        _resolve_path(repo_root, project.tasks_dir),
        _resolve_path(repo_root, project.done_dir),
        index_file=_resolve_path(repo_root, project.index_file),
        manual_dependencies=_resolve_path(repo_root, project.manual_dependencies),
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    project = config.project
    store = JsonFileStore(_resolve_path(repo_root, project.state_dir))
    tasks = _build_task_store(config, repo_root)
    queues = PriorityQueueManager(
        store,
        task_store=tasks,
        context_ratio_threshold=config.scheduler.context_ratio_threshold,
        check_dependency_files=config.scheduler.check_dependency_files,
    )
    executor = _build_executor(config, repo_root)
    repository = GitRepository(repo_root, remote=config.git.remote)
    completion = CompletionProtocol(
        tasks,
        repository,
        default_workers(executor, source_ref=config.executor.ref),
    )
    orchestrator = Orchestrator(
        queues,
        tasks,
        executor,
        repository,
        store,
        config=config,
        feed=DiscoveryFeed(_resolve_path(repo_root, project.discovery_log)),
        completion=completion,
        violations=ViolationLog(_resolve_path(repo_root, project.violation_log)),
        errors=ErrorLog(_resolve_path(repo_root, project.error_log)),
        sync_from_branches=config.executor.mode == "cloud",
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        tasks=tasks,
        queues=queues,
        orchestrator=orchestrator,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    except (ConductorStateError, ValueError, TypeError) as exc:
        raise click.ClickException(f"Could not load conductor state: {exc}") from exc


def _analyze_graph(tasks: TaskStore) -> tuple[DependencyGraph, list[str]]:
    graph = DependencyGraph()
    manual = tasks.manual_dependencies()
    unreadable: list[str] = []
    for task_id in tasks.list_task_ids():
        meta = tasks.read_meta(task_id)
        if meta is None:
            unreadable.append(task_id)
            continue
        graph.add_task(task_id, [*meta.depends_on, *manual.get(task_id, [])], meta.graph_metadata())
    return graph, unreadable


def _missing_dependencies(graph: DependencyGraph, tasks: TaskStore) -> dict[str, list[str]]:
    missing: dict[str, list[str]] = {}
    for task_id in graph.tasks:
        absent = [
            dep
            for dep in graph.dependencies(task_id)
            if dep not in graph and not tasks.dependency_exists(dep)
        ]
        if absent:
            missing[task_id] = absent
    return missing


def _graph_report(graph: DependencyGraph, tasks: TaskStore) -> dict[str, Any]:
    cycle = graph.detect_circular_dependencies()
    order = graph.topological_sort()
    return {
        "stats": graph.stats(),
        "has_cycle": cycle.has_cycle,
        "cycle": cycle.cycle,
        "order": order.sorted,
        "unordered": order.cycle_nodes,
        "levels": graph.execution_levels(),
        "missing_dependencies": _missing_dependencies(graph, tasks),
    }


@click.group()
@click.version_option(__version__, prog_name="conductor")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Dependency-aware task orchestration for coding agents."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing config.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(force: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    if config_path.exists() and not force:
        raise click.ClickException(f"{config_path} already exists; use --force to overwrite.")
    config = ConductorConfig.default()
    save_config(config_path, config)
    _resolve_path(repo_root, config.project.tasks_dir).mkdir(parents=True, exist_ok=True)
    click.echo(f"Config: {config_path}")
    click.echo(f"Tasks: {config.project.tasks_dir}")


@cli.command("run")
@click.option("--max-ticks", type=int, default=None, help="Stop after this many ticks.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(max_ticks: int | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    orchestrator = runtime.orchestrator

    async def _run() -> None:
        try:
            await orchestrator.run(max_ticks=max_ticks)
            orchestrator.stop()
            await orchestrator.drain()
        finally:
            await orchestrator.executor.aclose()

    try:
        asyncio.run(_run())
    except (ExecutorConfigError, QueueCorruptionError, ConductorStateError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(orchestrator.status(), ensure_ascii=False, indent=2))


@cli.command("status")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    click.echo(json.dumps(runtime.orchestrator.status(), ensure_ascii=False, indent=2))


@cli.command("validate")
@click.option(
    "--dependencies",
    "check_dependencies",
    is_flag=True,
    default=False,
    help="Also fail on dependency cycles and missing dependency files.",
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def validate_command(check_dependencies: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    report = runtime.orchestrator.self_check(purge=False)
    payload: dict[str, Any] = {"queues": report.to_dict()}
    healthy = report.ok
    if check_dependencies:
        graph, unreadable = _analyze_graph(runtime.tasks)
        analysis = _graph_report(graph, runtime.tasks)
        payload["dependencies"] = {
            "has_cycle": analysis["has_cycle"],
            "cycle": analysis["cycle"],
            "missing_dependencies": analysis["missing_dependencies"],
            "unreadable": unreadable,
        }
        healthy = healthy and not analysis["has_cycle"] and not analysis["missing_dependencies"]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
    if not healthy:
        raise SystemExit(1)


@cli.command("rebuild")
@click.option("--include-completed", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def rebuild_command(include_completed: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    runtime.queues.reset()
    stats = runtime.queues.process_all(
        include_completed=include_completed,
        verify_manifest=runtime.config.scheduler.verify_manifest,
    )
    click.echo(json.dumps(stats.to_dict(), ensure_ascii=False, indent=2))
    context_len, implementation_len = runtime.queues.queue_lengths()
    click.echo(f"Context queue: {context_len}")
    click.echo(f"Implementation queue: {implementation_len}")


@cli.command("graph")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json", "dot"]),
    default="text",
    show_default=True,
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def graph_command(output_format: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_path(repo_root, config_value))
    tasks = _build_task_store(config, repo_root)
    graph, unreadable = _analyze_graph(tasks)
    if output_format == "dot":
        click.echo(graph.to_dot(), nl=False)
        return
    report = _graph_report(graph, tasks)
    report["unreadable"] = unreadable
    if output_format == "json":
        click.echo(json.dumps(report, ensure_ascii=False, indent=2))
        return

    stats = report["stats"]
    click.echo(
        f"Tasks: {stats['total_tasks']}  Edges: {stats['total_edges']}  "
        f"Avg deps: {stats['average_dependencies']}"
    )
    if report["has_cycle"]:
        click.echo("Cycle: " + " -> ".join(report["cycle"]))
    for index, level in enumerate(report["levels"], start=1):
        click.echo(f"Level {index}: {', '.join(level)}")
    for task_id, deps in report["missing_dependencies"].items():
        click.echo(f"Missing dependencies for {task_id}: {', '.join(deps)}")
    for task_id in unreadable:
        click.echo(f"Unreadable: {task_id}")
