from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class ConductorStateError(RuntimeError):
    """Raised when a state document cannot be read or written."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class StateStore(ABC):
    """Whole-document persistence for scheduler snapshots."""

    @abstractmethod
    def load(self, name: str) -> dict[str, Any] | None:
        """Return the stored document or ``None`` when nothing was saved yet."""

    @abstractmethod
    def save(self, name: str, payload: dict[str, Any]) -> None:
        """Replace the stored document."""


class MemoryStore(StateStore):
    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
        self.save_count = 0

    def load(self, name: str) -> dict[str, Any] | None:
        payload = self.documents.get(name)
        return copy.deepcopy(payload) if payload is not None else None

    def save(self, name: str, payload: dict[str, Any]) -> None:
        self.documents[name] = copy.deepcopy(payload)
        self.save_count += 1


class JsonFileStore(StateStore):
    """One JSON envelope per document name inside ``state_dir``."""

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _validate_name(name: str) -> None:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise ConductorStateError(f"Unsupported state document name: {name!r}")

    def _file(self, name: str) -> Path:
        return self.state_dir / f"{name}.json"

    @contextmanager
    def _state_lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise ConductorStateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self, name: str) -> dict[str, Any] | None:
        path = self._file(name)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("State document %s is unreadable: %s", path, exc)
            return None
        if isinstance(raw, dict) and {"schema_version", "revision", "data"} <= raw.keys():
            return raw
        # Documents written before the envelope existed are plain payloads.
        return {"schema_version": self.SCHEMA_VERSION, "revision": 0, "data": raw}

    def load(self, name: str) -> dict[str, Any] | None:
        self._validate_name(name)
        envelope = self._read_envelope(name)
        if envelope is None:
            return None
        data = envelope.get("data")
        return data if isinstance(data, dict) else None

    def revision(self, name: str) -> int:
        self._validate_name(name)
        envelope = self._read_envelope(name)
        return int(envelope.get("revision") or 0) if envelope else 0

    def save(self, name: str, payload: dict[str, Any]) -> None:
        self._validate_name(name)
        with self._state_lock():
            current = self._read_envelope(name)
            revision = int(current.get("revision") or 0) + 1 if current else 1
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": utcnow_iso(),
                "data": payload,
            }
            serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
            fd, temp_path = tempfile.mkstemp(
                prefix=f".{name}-", suffix=".json", dir=self.state_dir
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(serialized)
                os.replace(temp_path, self._file(name))
            except OSError as exc:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise ConductorStateError(f"Could not write state document {name}: {exc}") from exc
