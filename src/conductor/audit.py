from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from conductor.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class ViolationLog:
    """Markdown audit trail of gate violations and worker failures."""

    def __init__(self, path: Path, *, clock: Clock | None = None) -> None:
        self.path = path
        self.clock = clock or SystemClock()

    def record(self, title: str, fields: dict[str, Any]) -> None:
        lines = ["", f"## {self.clock.now_iso()} - {title}", ""]
        lines.extend(f"- {key}: {value}" for key, value in fields.items())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write("\n".join(lines) + "\n")
        except OSError as exc:
            logger.warning("Could not write violation log %s: %s", self.path, exc)

    def entries(self) -> list[str]:
        if not self.path.exists():
            return []
        text = self.path.read_text(encoding="utf-8")
        return [line[3:].strip() for line in text.splitlines() if line.startswith("## ")]


class ErrorLog:
    """Append-only JSON-lines log of task failures."""

    def __init__(self, path: Path, *, clock: Clock | None = None) -> None:
        self.path = path
        self.clock = clock or SystemClock()

    def append(self, record: dict[str, Any]) -> None:
        payload = {"at": self.clock.now_iso(), **record}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Could not write error log %s: %s", self.path, exc)

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        records: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed error log line in %s", self.path)
        return records
