from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import yaml

from conductor.clock import to_iso
from conductor.graph import normalize_task_id

logger = logging.getLogger(__name__)

Level = Literal["low", "medium", "high", "ultra-high"]
TaskStatus = Literal["pending", "in-progress", "completed"]

LEVELS: tuple[str, ...] = ("low", "medium", "high", "ultra-high")
EXCLUDED_FILES = {"TEMPLATE.md"}
MIN_MANIFEST_LENGTH = 50

FRONTMATTER_PATTERN = re.compile(
    r"\A---[ \t]*\r?\n(.*?)^---[ \t]*\r?$\n?", re.DOTALL | re.MULTILINE
)
MANIFEST_HEADING_PATTERN = re.compile(r"^#{1,6}\s+Context Manifest\s*$", re.MULTILINE)
NEXT_HEADING_PATTERN = re.compile(r"^#{1,6}\s+\w", re.MULTILINE)
UNCHECKED_ITEM_PATTERN = re.compile(r"^\s*[-*]\s+\[ \]\s+(.+?)\s*$", re.MULTILINE)
DISCOVERY_PATTERN = re.compile(r"New task detected: (.+\.md)\s*$")


class TaskFileError(RuntimeError):
    """Raised when a task file cannot be parsed or rewritten."""


def _normalize_level(value: Any) -> str:
    text = str(value or "").strip().lower().replace("_", "-").replace(" ", "-")
    if text == "ultrahigh":
        text = "ultra-high"
    return text if text in LEVELS else "medium"


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value)]


@dataclass(slots=True)
class TaskMeta:
    name: str = ""
    priority: str = "medium"
    leverage: str = "medium"
    depends_on: list[str] = field(default_factory=list)
    context_gathered: bool = False
    status: str = "pending"
    branch: str | None = None

    @classmethod
    def from_frontmatter(cls, data: dict[str, Any] | None, *, default_name: str = "") -> TaskMeta:
        data = data or {}
        depends_on: list[str] = []
        for raw in _as_list(data.get("depends_on")):
            dep = normalize_task_id(raw)
            if dep not in depends_on:
                depends_on.append(dep)
        branch = data.get("branch")
        return cls(
            name=str(data.get("name") or default_name),
            priority=_normalize_level(data.get("priority")),
            leverage=_normalize_level(data.get("leverage")),
            depends_on=depends_on,
            context_gathered=_as_bool(data.get("context_gathered", False)),
            status=str(data.get("status") or "pending"),
            branch=str(branch).strip() if branch else None,
        )

    def graph_metadata(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "priority": self.priority,
            "leverage": self.leverage,
            "status": self.status,
            "context_gathered": self.context_gathered,
        }


def split_frontmatter(text: str) -> tuple[dict[str, Any] | None, str]:
    """Split a task document into its front-matter mapping and body.

    Returns ``({}, text)`` when there is no front-matter block. Raises
    ``TaskFileError`` when the block exists but is not a YAML mapping.
    """
    match = FRONTMATTER_PATTERN.match(text)
    if not match:
        return {}, text
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        raise TaskFileError(f"Invalid front-matter: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise TaskFileError("Front-matter must be a mapping.")
    return data, text[match.end():]


def render_frontmatter(data: dict[str, Any], body: str) -> str:
    rendered = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"---\n{rendered}---\n{body}"


def has_valid_manifest(text: str, min_length: int = MIN_MANIFEST_LENGTH) -> bool:
    heading = MANIFEST_HEADING_PATTERN.search(text)
    if not heading:
        return False
    after = text[heading.end():]
    next_heading = NEXT_HEADING_PATTERN.search(after)
    section = after[: next_heading.start()] if next_heading else after
    meaningful = "\n".join(
        line.strip()
        for line in section.splitlines()
        if line.strip() and not line.strip().startswith("<!--")
    )
    return len(meaningful) >= min_length


class TaskStore:
    """Markdown task files with YAML front-matter under one directory."""

    def __init__(
        self,
        tasks_dir: Path,
        done_dir: Path | None = None,
        *,
        index_file: Path | None = None,
        manual_dependencies: Path | None = None,
    ) -> None:
        self.tasks_dir = tasks_dir
        self.done_dir = done_dir or tasks_dir / "done"
        self.index_file = index_file
        self.manual_dependencies_file = manual_dependencies

    def path_for(self, task_id: str) -> Path:
        return self.tasks_dir / normalize_task_id(task_id)

    def exists(self, task_id: str) -> bool:
        return self.path_for(task_id).is_file()

    def is_empty(self, task_id: str) -> bool:
        path = self.path_for(task_id)
        try:
            return not path.read_text(encoding="utf-8").strip()
        except OSError:
            return True

    def dependency_exists(self, task_id: str) -> bool:
        name = normalize_task_id(task_id)
        return (self.tasks_dir / name).is_file() or (self.done_dir / name).is_file()

    def read_text(self, task_id: str) -> str | None:
        try:
            return self.path_for(task_id).read_text(encoding="utf-8")
        except OSError:
            return None

    def read_meta(self, task_id: str) -> TaskMeta | None:
        text = self.read_text(task_id)
        if text is None:
            return None
        try:
            data, _ = split_frontmatter(text)
        except TaskFileError as exc:
            logger.warning("Could not parse metadata for %s: %s", task_id, exc)
            return None
        try:
            return TaskMeta.from_frontmatter(data, default_name=Path(task_id).stem)
        except ValueError as exc:
            logger.warning("Invalid metadata for %s: %s", task_id, exc)
            return None

    def set_flag(self, task_id: str, key: str, value: Any) -> None:
        path = self.path_for(task_id)
        text = path.read_text(encoding="utf-8")
        data, body = split_frontmatter(text)
        updated = dict(data or {})
        updated[key] = value
        path.write_text(render_frontmatter(updated, body), encoding="utf-8")

    def has_manifest(self, task_id: str) -> bool:
        text = self.read_text(task_id)
        return bool(text) and has_valid_manifest(text)

    def unchecked_items(self, task_id: str) -> list[str]:
        text = self.read_text(task_id) or ""
        return UNCHECKED_ITEM_PATTERN.findall(text)

    def modified_at(self, task_id: str) -> datetime | None:
        try:
            stamp = self.path_for(task_id).stat().st_mtime
        except OSError:
            return None
        return datetime.fromtimestamp(stamp, UTC)

    def list_task_ids(self) -> list[str]:
        if not self.tasks_dir.is_dir():
            return []
        return sorted(
            path.name
            for path in self.tasks_dir.glob("*.md")
            if path.is_file()
            and path.name not in EXCLUDED_FILES
            and not path.name.startswith(".")
        )

    def archive(self, task_id: str) -> bool:
        source = self.path_for(task_id)
        if not source.exists():
            logger.warning("Archive skipped, task file already gone: %s", source)
            return False
        try:
            self.set_flag(task_id, "status", "completed")
        except TaskFileError as exc:
            logger.warning("Could not mark %s completed before archiving: %s", task_id, exc)
        self.done_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(self.done_dir / source.name))
        return True

    def record_completion(
        self, task_id: str, branch: str | None = None, *, completed_at: str | None = None
    ) -> None:
        if self.index_file is None:
            return
        self.index_file.parent.mkdir(parents=True, exist_ok=True)
        if not self.index_file.exists():
            self.index_file.write_text("# Completed tasks\n\n", encoding="utf-8")
        stamp = completed_at or to_iso(datetime.now(UTC))
        line = f"- {stamp} `{normalize_task_id(task_id)}`"
        if branch:
            line += f" ({branch})"
        with self.index_file.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def manual_dependencies(self) -> dict[str, list[str]]:
        path = self.manual_dependencies_file
        if path is None or not path.is_file():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            logger.warning("Ignoring unreadable dependency file %s: %s", path, exc)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring dependency file %s: expected a mapping", path)
            return {}
        result: dict[str, list[str]] = {}
        for task, value in raw.items():
            if isinstance(value, dict):
                value = value.get("depends_on")
            deps = [normalize_task_id(item) for item in _as_list(value)]
            if deps:
                result[normalize_task_id(str(task))] = deps
        return result


class DiscoveryFeed:
    """Append-only log of newly discovered tasks, read by byte offset."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read_new(self, offset: int = 0) -> tuple[list[str], int]:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return [], offset
        if size < offset:
            logger.info("Discovery log %s was truncated, reading from start", self.path)
            offset = 0
        if size == offset:
            return [], offset
        with self.path.open("rb") as handle:
            handle.seek(offset)
            chunk = handle.read(size - offset)
        end = chunk.rfind(b"\n")
        if end < 0:
            return [], offset
        complete = chunk[: end + 1].decode("utf-8", errors="replace")
        found: list[str] = []
        for line in complete.splitlines():
            match = DISCOVERY_PATTERN.search(line)
            if not match:
                continue
            task_id = normalize_task_id(match.group(1).strip())
            if task_id not in found:
                found.append(task_id)
        return found, offset + end + 1
