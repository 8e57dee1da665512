"""On-disk audio cache: probing, temp naming, publication and cleanup."""

from __future__ import annotations

import logging
import os
import re
import time
from uuid import uuid4

from config.settings import TEMP_FILE_MAX_AGE_SECONDS
from engine.errors import InvalidSourceId
from engine.log_events import log_event
from engine.paths import ensure_dir

logger = logging.getLogger(__name__)

# Probe order; the transcoder's canonical output comes first.
AUDIO_EXTENSIONS = ("mp3", "m4a", "mp4", "webm", "opus", "ogg", "wav", "aac", "flac")

CONTENT_TYPES = {
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "mp3": "audio/mpeg",
    "webm": "audio/webm",
    "opus": "audio/opus",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
    "aac": "audio/aac",
    "flac": "audio/flac",
}
DEFAULT_CONTENT_TYPE = "audio/mpeg"

_SOURCE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_TEMP_MARKER = ".temp."
_IN_PROGRESS_SUFFIXES = (".part", ".ytdl")


def extension_of(path):
    return os.path.splitext(path)[1].lstrip(".").lower()


def content_type_for(path_or_ext):
    value = str(path_or_ext or "")
    ext = extension_of(value) if "." in value else value.lower()
    return CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE)


def _non_empty(path):
    try:
        return os.path.getsize(path) > 0
    except OSError:
        return False


def validate_source_id(source_id):
    value = (source_id or "").strip() if isinstance(source_id, str) else ""
    if not _SOURCE_ID_RE.match(value):
        raise InvalidSourceId(f"Invalid source id: {source_id!r}")
    return value


class CacheDirectory:
    def __init__(self, root):
        self.root = os.path.abspath(str(root))
        ensure_dir(self.root)

    def canonical_path(self, source_id, ext):
        source_id = validate_source_id(source_id)
        return os.path.join(self.root, f"{source_id}.{ext.lstrip('.').lower()}")

    def new_temp_stem(self, source_id):
        """``<root>/<id>.temp.<suffix>``; callers append the extension."""
        source_id = validate_source_id(source_id)
        return os.path.join(self.root, f"{source_id}{_TEMP_MARKER}{uuid4().hex}")

    def new_temp_path(self, source_id, ext):
        return f"{self.new_temp_stem(source_id)}.{ext.lstrip('.').lower()}"

    def probe(self, source_id):
        """Return the first complete cache file for ``source_id`` or None.

        Zero-length files never count as hits.
        """
        source_id = validate_source_id(source_id)
        for ext in AUDIO_EXTENSIONS:
            candidate = os.path.join(self.root, f"{source_id}.{ext}")
            try:
                if os.path.isfile(candidate) and os.path.getsize(candidate) > 0:
                    return candidate
            except OSError:
                continue
        return None

    def temp_artifacts(self, source_id):
        source_id = validate_source_id(source_id)
        prefix = f"{source_id}{_TEMP_MARKER}"
        try:
            names = os.listdir(self.root)
        except OSError:
            return []
        return [os.path.join(self.root, name) for name in names if name.startswith(prefix)]

    def has_fresh_temp(self, source_id, max_age_seconds=TEMP_FILE_MAX_AGE_SECONDS):
        now = time.time()
        for path in self.temp_artifacts(source_id):
            try:
                if now - os.path.getmtime(path) <= max_age_seconds:
                    return True
            except OSError:
                continue
        return False

    def discard(self, *paths):
        for path in paths:
            if not path:
                continue
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning("Failed to remove cache artifact %s", path, exc_info=True)

    def discard_temp_stem(self, temp_stem):
        """Remove every artifact yt-dlp may have produced for one temp stem."""
        directory, prefix = os.path.split(temp_stem)
        try:
            names = os.listdir(directory)
        except OSError:
            return
        self.discard(*(os.path.join(directory, name) for name in names if name.startswith(prefix)))

    def publish(self, temp_path, final_path):
        """Atomically expose ``temp_path`` under ``final_path`` without overwriting.

        Returns the path that now holds the cache entry. When another writer
        already published the same entry, ours is discarded and theirs wins.
        """
        try:
            os.link(temp_path, final_path)
        except FileExistsError:
            if _non_empty(final_path):
                self.discard(temp_path)
                log_event(logging.INFO, "CACHE_FILE_ALREADY_PUBLISHED", path=final_path)
                return final_path
            # A zero-length leftover is not a cache entry; replace it.
            os.replace(temp_path, final_path)
            log_event(logging.INFO, "CACHE_FILE_PUBLISHED", path=final_path, method="replace")
            return final_path
        except (OSError, NotImplementedError):
            # No hard links on this filesystem; rename is still atomic.
            if _non_empty(final_path):
                self.discard(temp_path)
                return final_path
            os.replace(temp_path, final_path)
            log_event(logging.INFO, "CACHE_FILE_PUBLISHED", path=final_path, method="replace")
            return final_path
        self.discard(temp_path)
        log_event(logging.INFO, "CACHE_FILE_PUBLISHED", path=final_path, method="link")
        return final_path

    def remove(self, source_id):
        """Evict every cache file for ``source_id``; returns removed paths."""
        removed = []
        for ext in AUDIO_EXTENSIONS:
            path = self.canonical_path(source_id, ext)
            if os.path.exists(path):
                self.discard(path)
                removed.append(path)
        return removed

    def cleanup_orphaned_temp_files(self, max_age_seconds=TEMP_FILE_MAX_AGE_SECONDS):
        deleted_files = 0
        deleted_bytes = 0
        now = time.time()
        try:
            names = os.listdir(self.root)
        except OSError:
            logger.warning("Cache root unavailable for cleanup: %s", self.root)
            return {"deleted_files": 0, "deleted_bytes": 0}
        for name in names:
            if _TEMP_MARKER not in name and not name.endswith(_IN_PROGRESS_SUFFIXES):
                continue
            path = os.path.join(self.root, name)
            try:
                stat = os.stat(path)
            except OSError:
                continue
            if now - stat.st_mtime < max_age_seconds:
                continue
            try:
                os.unlink(path)
            except OSError:
                logger.warning("Failed to remove orphaned temp file %s", path, exc_info=True)
                continue
            deleted_files += 1
            deleted_bytes += stat.st_size
        if deleted_files:
            log_event(
                logging.INFO,
                "ORPHANED_TEMP_FILES_REMOVED",
                deleted_files=deleted_files,
                deleted_bytes=deleted_bytes,
            )
        return {"deleted_files": deleted_files, "deleted_bytes": deleted_bytes}
