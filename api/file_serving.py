"""Serve finalized cache files with HTTP Range support."""

from __future__ import annotations

import os
import re
from urllib.parse import quote

from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from config.settings import FILE_CHUNK_SIZE
from engine.cache_files import content_type_for

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


class MalformedRange(ValueError):
    pass


class RangeNotSatisfiable(ValueError):
    pass


def parse_range(header, size):
    """Return ``(start, end)`` inclusive, or None when no range was requested.

    Multi-range requests are refused as malformed.
    """
    if header is None:
        return None
    value = header.strip()
    if not value:
        return None
    match = _RANGE_RE.match(value.replace(" ", ""))
    if not match:
        raise MalformedRange(f"Unsupported range header: {header!r}")
    raw_start, raw_end = match.groups()
    if not raw_start and not raw_end:
        raise MalformedRange(f"Unsupported range header: {header!r}")
    if not raw_start:
        suffix = int(raw_end)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(header)
        return max(0, size - suffix), size - 1
    start = int(raw_start)
    end = int(raw_end) if raw_end else size - 1
    if end < start:
        raise MalformedRange(f"Range end precedes start: {header!r}")
    if start >= size:
        raise RangeNotSatisfiable(header)
    return start, min(end, size - 1)


def iter_file_range(handle, start=0, length=None, chunk_size=FILE_CHUNK_SIZE):
    """Yield bytes from an open binary ``handle``, closing it when done."""
    remaining = length
    try:
        handle.seek(start)
        while remaining is None or remaining > 0:
            to_read = chunk_size if remaining is None else min(chunk_size, remaining)
            chunk = handle.read(to_read)
            if not chunk:
                break
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk
    finally:
        handle.close()


def _safe_filename(name):
    cleaned = str(name or "").replace('"', "'").replace("\n", " ").replace("\r", " ")
    cleaned = cleaned.replace("/", "_").replace("\\", "_").strip()
    return cleaned or "audio"


def attachment_disposition(filename, ext):
    name = _safe_filename(filename)
    ext = (ext or "").lstrip(".")
    full = f"{name}.{ext}" if ext and not name.lower().endswith(f".{ext.lower()}") else name
    try:
        full.encode("ascii")
    except UnicodeEncodeError:
        fallback = full.encode("ascii", "replace").decode("ascii").replace("?", "_")
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(full, safe='')}"
    return f'attachment; filename="{full}"'


def serve_file(path, range_header=None, *, cache_control=None, extra_headers=None):
    """Build the response for one cache file, honoring a single byte range.

    The file is opened once and streamed from that handle, so a concurrent
    eviction cannot change the size mid-response. Raises FileNotFoundError
    when the file is already gone.
    """
    handle = open(path, "rb")
    try:
        size = os.fstat(handle.fileno()).st_size
    except OSError:
        handle.close()
        raise
    media_type = content_type_for(path)
    headers = {"Accept-Ranges": "bytes"}
    if cache_control:
        headers["Cache-Control"] = cache_control
    headers.update(extra_headers or {})

    try:
        byte_range = parse_range(range_header, size)
    except MalformedRange as exc:
        handle.close()
        return JSONResponse({"error": "Invalid Range header", "details": str(exc)}, status_code=400)
    except RangeNotSatisfiable:
        handle.close()
        return JSONResponse(
            {"error": "Requested range not satisfiable", "details": None},
            status_code=416,
            headers={"Content-Range": f"bytes */{size}"},
        )

    # The generator closes the handle when iterated; the background task
    # covers a response that is dropped before its body starts.
    if byte_range is None:
        headers["Content-Length"] = str(size)
        return StreamingResponse(
            iter_file_range(handle),
            status_code=200,
            media_type=media_type,
            headers=headers,
            background=BackgroundTask(handle.close),
        )

    start, end = byte_range
    length = end - start + 1
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(length)
    return StreamingResponse(
        iter_file_range(handle, start, length),
        status_code=206,
        media_type=media_type,
        headers=headers,
        background=BackgroundTask(handle.close),
    )
