"""Hand a tagged copy of a cached track to an external cloud library."""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from engine.log_events import log_event
from media.transcoder import fetch_cover_image, normalize_or_original

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r'[\\/:*?"<>|]')


class CloudUploader(Protocol):
    def upload(self, filename: str, path: str, credentials: Any) -> dict: ...


def upload_filename(title, artist):
    safe_title = _UNSAFE_NAME_RE.sub("_", (title or "").strip() or "Unknown")
    safe_artist = _UNSAFE_NAME_RE.sub("_", (artist or "").strip() or "Unknown")
    return f"{safe_artist} - {safe_title}.mp3"


def upload_track(service, uploader: CloudUploader, source_id, *, title=None, artist=None, album=None, cover=None, credentials=None):
    """Acquire, tag and upload one track; the tagged copy never outlives the call."""
    cache = service.cache
    cached_path = service.ensure_cached(source_id)
    output_path = cache.new_temp_path(source_id, "mp3")
    try:
        cover_image = fetch_cover_image(cover)
        tags = {"title": title, "artist": artist, "album": album}
        upload_path = normalize_or_original(cached_path, output_path, tags=tags, cover_image=cover_image)
        filename = upload_filename(title, artist)
        log_event(
            logging.INFO,
            "CLOUD_UPLOAD_START",
            source_id=source_id,
            filename=filename,
            transcoded=upload_path == output_path,
            cover=bool(cover_image),
        )
        result = uploader.upload(filename, upload_path, credentials)
        log_event(logging.INFO, "CLOUD_UPLOAD_FINISHED", source_id=source_id, filename=filename)
        return result
    finally:
        cache.discard(output_path)
