from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ExecutorMode = Literal["cloud", "local"]

API_KEY_ENV_VARS = ("CONDUCTOR_API_KEY", "CURSOR_API_KEY")
REPOSITORY_ENV_VAR = "CONDUCTOR_REPOSITORY"


@dataclass(slots=True)
class ProjectConfig:
    tasks_dir: str = "sessions/tasks"
    done_dir: str = "sessions/tasks/done"
    state_dir: str = ".conductor/state"
    discovery_log: str = "sessions/tasks/.new-tasks.log"
    violation_log: str = "Context/gotchas.md"
    error_log: str = ".conductor/errors.log"
    index_file: str = "sessions/tasks/indexes/completed.md"
    manual_dependencies: str = "sessions/tasks/dependencies.yaml"


@dataclass(slots=True)
class SchedulerConfig:
    pool_size: int = 3
    tick_seconds: float = 5.0
    context_ratio_threshold: float = 0.6
    stale_days: int = 7
    max_invalid_ratio: float = 0.1
    reassign_after_success_seconds: float = 1.0
    reassign_after_failure_seconds: float = 5.0
    max_task_failures: int = 3
    verify_manifest: bool = True
    check_dependency_files: bool = True


@dataclass(slots=True)
class ExecutorConfig:
    mode: ExecutorMode = "cloud"
    api_url: str = "https://api.cursor.com"
    repository: str = ""
    ref: str = "main"
    poll_warmup_seconds: float = 5.0
    poll_interval_seconds: float = 10.0
    local_binary: str = "claude"
    request_timeout_seconds: float = 30.0
    api_key: str = field(default="", repr=False)


@dataclass(slots=True)
class GitConfig:
    remote: str = "origin"
    branch_prefix: str = "feature/"
    max_branch_suffix: int = 100
    fetch_attempts: int = 2
    fetch_backoff_seconds: float = 3.0


@dataclass(slots=True)
class ConductorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    git: GitConfig = field(default_factory=GitConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        executor_data = dict(data.get("executor", {}))
        # Credentials only come from the environment.
        executor_data.pop("api_key", None)
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            executor=ExecutorConfig(**executor_data),
            git=GitConfig(**data.get("git", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "tasks_dir": self.project.tasks_dir,
                "done_dir": self.project.done_dir,
                "state_dir": self.project.state_dir,
                "discovery_log": self.project.discovery_log,
                "violation_log": self.project.violation_log,
                "error_log": self.project.error_log,
                "index_file": self.project.index_file,
                "manual_dependencies": self.project.manual_dependencies,
            },
            "scheduler": {
                "pool_size": self.scheduler.pool_size,
                "tick_seconds": self.scheduler.tick_seconds,
                "context_ratio_threshold": self.scheduler.context_ratio_threshold,
                "stale_days": self.scheduler.stale_days,
                "max_invalid_ratio": self.scheduler.max_invalid_ratio,
                "reassign_after_success_seconds": (
                    self.scheduler.reassign_after_success_seconds
                ),
                "reassign_after_failure_seconds": (
                    self.scheduler.reassign_after_failure_seconds
                ),
                "max_task_failures": self.scheduler.max_task_failures,
                "verify_manifest": self.scheduler.verify_manifest,
                "check_dependency_files": self.scheduler.check_dependency_files,
            },
            "executor": {
                "mode": self.executor.mode,
                "api_url": self.executor.api_url,
                "repository": self.executor.repository,
                "ref": self.executor.ref,
                "poll_warmup_seconds": self.executor.poll_warmup_seconds,
                "poll_interval_seconds": self.executor.poll_interval_seconds,
                "local_binary": self.executor.local_binary,
                "request_timeout_seconds": self.executor.request_timeout_seconds,
            },
            "git": {
                "remote": self.git.remote,
                "branch_prefix": self.git.branch_prefix,
                "max_branch_suffix": self.git.max_branch_suffix,
                "fetch_attempts": self.git.fetch_attempts,
                "fetch_backoff_seconds": self.git.fetch_backoff_seconds,
            },
        }

    def apply_env(self, environ: dict[str, str] | None = None) -> ConductorConfig:
        env = os.environ if environ is None else environ
        for name in API_KEY_ENV_VARS:
            value = env.get(name, "").strip()
            if value:
                self.executor.api_key = value
                break
        repository = env.get(REPOSITORY_ENV_VAR, "").strip()
        if repository:
            self.executor.repository = repository
        return self


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "scheduler", "executor", "git"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, environ: dict[str, str] | None = None) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default().apply_env(environ)
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    return ConductorConfig.from_dict(data).apply_env(environ)


def save_config(path: Path, config: ConductorConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
