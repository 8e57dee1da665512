"""Persistent (title, artist) -> source id associations with debounced writes."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any

from config.settings import MAPPING_DEBOUNCE_SECONDS

logger = logging.getLogger(__name__)


def lookup_key(title: str | None, artist: str | None) -> str:
    normalized = f"{(title or '').strip().lower()}_{(artist or '').strip().lower()}"
    return hashlib.md5(normalized.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MappingEntry:
    source_id: str
    resolved_title: str
    created_at: int  # epoch milliseconds

    def to_dict(self) -> dict[str, Any]:
        # Same on-disk shape as earlier mapping files.
        return {"videoId": self.source_id, "title": self.resolved_title, "timestamp": self.created_at}

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "MappingEntry | None":
        source_id = row.get("videoId")
        if not isinstance(source_id, str) or not source_id:
            return None
        try:
            created_at = int(row.get("timestamp") or 0)
        except (TypeError, ValueError):
            created_at = 0
        return cls(source_id=source_id, resolved_title=str(row.get("title") or ""), created_at=created_at)


class JsonFileBackend:
    """Single JSON document on disk, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> dict[str, Any]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError):
            logger.exception("Failed to load song mapping from %s; starting empty", self.path)
            return {}
        return payload if isinstance(payload, dict) else {}

    def save(self, data: dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, ensure_ascii=False)
        os.replace(tmp_path, self.path)


class MemoryBackend:
    def __init__(self, initial: dict[str, Any] | None = None):
        self.data: dict[str, Any] = copy.deepcopy(initial or {})
        self.saves = 0

    def load(self) -> dict[str, Any]:
        return copy.deepcopy(self.data)

    def save(self, data: dict[str, Any]) -> None:
        self.data = copy.deepcopy(data)
        self.saves += 1


class MappingStore:
    """In-memory mapping loaded lazily from a backend.

    ``record`` marks the map dirty and (re)arms a debounce timer, so a burst
    of writes produces one backend save. The mapping is a hint: a lost write
    only costs a repeated search, the cache file itself stays authoritative.
    Call ``close`` on shutdown to flush anything still pending.
    """

    def __init__(self, backend, *, debounce_seconds: float = MAPPING_DEBOUNCE_SECONDS):
        self._backend = backend
        self._debounce_seconds = max(0.0, float(debounce_seconds))
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._data: dict[str, Any] | None = None
        self._dirty = False
        self._timer: threading.Timer | None = None
        self._closed = False

    def _load_locked(self) -> dict[str, Any]:
        if self._data is None:
            loaded = self._backend.load()
            self._data = {key: row for key, row in loaded.items() if isinstance(row, dict)}
        return self._data

    def lookup(self, title: str, artist: str) -> MappingEntry | None:
        key = lookup_key(title, artist)
        with self._lock:
            row = self._load_locked().get(key)
        if not row:
            return None
        return MappingEntry.from_dict(row)

    def record(self, title: str, artist: str, source_id: str, resolved_title: str | None) -> None:
        key = lookup_key(title, artist)
        with self._lock:
            data = self._load_locked()
            existing = data.get(key)
            if existing and existing.get("videoId") == source_id:
                return
            data[key] = MappingEntry(
                source_id=source_id,
                resolved_title=resolved_title or "",
                created_at=int(time.time() * 1000),
            ).to_dict()
            self._dirty = True
            write_now = self._closed or self._debounce_seconds <= 0
            if not write_now:
                self._schedule_flush_locked()
        logger.info("Recorded song mapping %s -> %s", key, source_id)
        if write_now:
            self.flush()

    def _schedule_flush_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        timer = threading.Timer(self._debounce_seconds, self._flush_from_timer)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _flush_from_timer(self) -> None:
        try:
            self.flush()
        except Exception:
            logger.exception("Debounced song mapping flush failed")

    def flush(self) -> bool:
        """Write pending changes now. Returns True when a save happened."""
        with self._flush_lock:
            with self._lock:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                if not self._dirty or self._data is None:
                    return False
                snapshot = copy.deepcopy(self._data)
                self._dirty = False
            try:
                self._backend.save(snapshot)
            except OSError:
                logger.exception("Failed to persist song mapping")
                with self._lock:
                    self._dirty = True
                return False
        return True

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.flush()
