"""Lookup -> probe -> acquire -> record flow shared by the HTTP handlers."""

from __future__ import annotations

import logging
import os
from urllib.parse import quote

from config.settings import TEMP_FILE_MAX_AGE_SECONDS, TRANSCODE_FORMAT
from engine.cache_files import CacheDirectory, extension_of, validate_source_id
from engine.log_events import log_event
from engine.single_flight import SingleFlight
from engine.song_mapping import MappingStore, lookup_key
from engine.strategies import WATCH_URL
from media.audio_info import read_duration
from media.transcoder import TranscodeError, normalize

logger = logging.getLogger(__name__)

PREPARE_ACTIONS = ("start", "check")


def audio_url_for(source_id):
    return f"/audio/stream?sourceId={quote(source_id, safe='')}"


class AudioResolutionService:
    def __init__(self, store: MappingStore, cache: CacheDirectory, extractor, single_flight: SingleFlight | None = None):
        self.store = store
        self.cache = cache
        self.extractor = extractor
        self.single_flight = single_flight or extractor.single_flight

    def check(self, title, artist):
        entry = self.store.lookup(title, artist)
        if entry is None:
            return {"cached": False, "needSearch": True}
        try:
            cached_path = self.cache.probe(entry.source_id)
        except ValueError:
            # Hand-edited mapping files can hold ids we refuse to touch.
            logger.warning("Ignoring invalid mapped source id %r", entry.source_id)
            return {"cached": False, "needSearch": True}
        if cached_path:
            return {
                "cached": True,
                "needSearch": False,
                "sourceId": entry.source_id,
                "audioUrl": audio_url_for(entry.source_id),
                "title": entry.resolved_title,
            }
        return {"cached": False, "needSearch": False, "sourceId": entry.source_id, "title": entry.resolved_title}

    def resolve(self, title, artist, *, acquire=True):
        """Resolve a track to a playable source, searching only when unmapped.

        With ``acquire`` the audio is also downloaded into the cache before
        returning; failures surface as ``ExtractionError`` subclasses.
        """
        entry = self.store.lookup(title, artist)
        duration = None
        if entry is not None:
            try:
                source_id = validate_source_id(entry.source_id)
            except ValueError:
                # Searching again overwrites the bad mapping.
                logger.warning("Ignoring invalid mapped source id %r", entry.source_id)
                entry = None
        if entry is not None:
            resolved_title = entry.resolved_title or title
        else:
            key = lookup_key(title, artist)
            result = self.single_flight.do(f"search:{key}", lambda: self.extractor.search(title, artist))
            source_id = result.source_id
            resolved_title = result.title or title
            duration = result.duration
            self.store.record(title, artist, source_id, resolved_title)

        cached_path = self.cache.probe(source_id)
        if cached_path is None and acquire:
            cached_path = self.extractor.acquire(source_id)
        if duration is None and cached_path:
            duration = read_duration(cached_path)
        log_event(
            logging.INFO,
            "AUDIO_RESOLVED",
            source_id=source_id,
            cached=bool(cached_path),
            mapped=entry is not None,
        )
        return {
            "audioUrl": audio_url_for(source_id),
            "sourceId": source_id,
            "videoUrl": WATCH_URL.format(source_id=source_id),
            "title": resolved_title,
            "duration": int(duration) if duration else 0,
            "cached": bool(cached_path),
        }

    def ensure_cached(self, source_id):
        source_id = validate_source_id(source_id)
        return self.cache.probe(source_id) or self.extractor.acquire(source_id)

    def open_stream(self, source_id):
        """Return ``("file", path)`` on a cache hit, else ``("stream", TeeStream)``."""
        source_id = validate_source_id(source_id)
        cached_path = self.cache.probe(source_id)
        if cached_path:
            return "file", cached_path
        return "stream", self.extractor.acquire_stream(source_id)

    def prepare(self, source_id, action):
        source_id = validate_source_id(source_id)
        if action == "check":
            return self._prepare_status(source_id)
        return self.single_flight.do(f"prepare:{source_id}", lambda: self._prepare_start(source_id))

    def _prepare_status(self, source_id):
        if self.cache.probe(source_id):
            return {"status": "completed", "audioUrl": audio_url_for(source_id), "cached": True}
        if (
            self.single_flight.in_flight(f"prepare:{source_id}")
            or self.extractor.acquire_in_flight(source_id)
            or self.cache.has_fresh_temp(source_id, TEMP_FILE_MAX_AGE_SECONDS)
        ):
            return {"status": "downloading", "cached": False}
        return {"status": "not_started", "cached": False}

    def _prepare_start(self, source_id):
        path = self.ensure_cached(source_id)
        message = "cached"
        if extension_of(path) != TRANSCODE_FORMAT:
            if self._normalize_cached(source_id, path):
                message = "normalized"
        return {"status": "completed", "audioUrl": audio_url_for(source_id), "cached": True, "message": message}

    def _normalize_cached(self, source_id, original_path):
        temp_path = self.cache.new_temp_path(source_id, TRANSCODE_FORMAT)
        try:
            normalize(original_path, temp_path)
        except TranscodeError as exc:
            log_event(logging.WARNING, "TRANSCODE_FALLBACK", source_id=source_id, path=original_path, error=exc)
            return False
        self.cache.publish(temp_path, self.cache.canonical_path(source_id, TRANSCODE_FORMAT))
        self.cache.discard(original_path)
        log_event(
            logging.INFO,
            "CACHE_FILE_NORMALIZED",
            source_id=source_id,
            original=os.path.basename(original_path),
        )
        return True

    def evict(self, source_id):
        source_id = validate_source_id(source_id)
        removed = self.cache.remove(source_id)
        for path in self.cache.temp_artifacts(source_id):
            self.cache.discard(path)
        log_event(logging.INFO, "CACHE_EVICTED", source_id=source_id, removed=len(removed))
        return removed
