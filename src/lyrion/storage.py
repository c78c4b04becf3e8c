"""Key/value persistence for client state and the processed-event log.

JsonFileStorage plays the role the browser's localStorage did: whole JSON
documents under fixed string keys, no versioning. Writes go through
write-to-temp + os.replace so a crash never leaves a partial file.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
import time
from typing import Any, Protocol

logger = logging.getLogger("lyrion.storage")


class Storage(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """Dict-backed storage for tests and throwaway sessions."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, str] = {k: json.dumps(v) for k, v in (initial or {}).items()}

    def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


def _atomic_write_json(path: str, data: Any) -> None:
    """Write JSON to path via a temp file in the same directory."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except OSError:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _read_json(path: str) -> Any:
    """Read a JSON file, returning None when missing or corrupt."""
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError):
        logger.warning("Ignoring unreadable storage file: %s", path)
        return None


class JsonFileStorage:
    """A single JSON file holding {key: value}."""

    def __init__(self, path: str):
        self.path = path

    def _load(self) -> dict[str, Any]:
        data = _read_json(self.path)
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Any:
        return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        _atomic_write_json(self.path, data)

    def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            _atomic_write_json(self.path, data)


# ---------------------------------------------------------------------------
# Processed webhook events
# ---------------------------------------------------------------------------


class ProcessedEventStore:
    """Remembers which webhook event ids have already been acted upon.

    Backed by a JSON file ({event_id: processed_at}); None keeps it in
    memory only. Entries older than ``retention`` seconds are pruned on
    write. On serverless hosts the file lives on instance-local disk, so
    the guarantee holds per warm instance.
    """

    def __init__(self, path: str | None = None, *, retention: float = 7 * 24 * 3600):
        self.path = path
        self.retention = retention
        self._memory: dict[str, float] = {}
        self._lock = threading.Lock()

    def _load(self) -> dict[str, float]:
        if self.path is None:
            return dict(self._memory)
        data = _read_json(self.path)
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, float]) -> None:
        if self.path is None:
            self._memory = data
            return
        try:
            _atomic_write_json(self.path, data)
        except OSError:
            logger.exception("Could not persist processed events to %s", self.path)
            self._memory = data

    def seen(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._load() or event_id in self._memory

    def record(self, event_id: str) -> None:
        now = time.time()
        with self._lock:
            data = {k: v for k, v in self._load().items() if now - v < self.retention}
            data[event_id] = now
            self._save(data)
