"""ffmpeg-based normalization of cached audio to tagged MP3."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import tempfile

import requests

from config.settings import (
    COVER_FETCH_TIMEOUT_SECONDS,
    COVER_MAX_BYTES,
    TRANSCODE_BITRATE,
    TRANSCODE_CODEC,
    TRANSCODE_TIMEOUT_SECONDS,
)
from media.audio_info import is_readable_audio

logger = logging.getLogger(__name__)

_TAG_FIELDS = ("title", "artist", "album")
_TAG_MAX_CHARS = 256
_CONTROL_RE = re.compile(r"[\x00\r\n]+")
_COVER_CHUNK_SIZE = 64 * 1024


class TranscodeError(RuntimeError):
    pass


def resolve_ffmpeg_path() -> str:
    override = (os.environ.get("FFMPEG_PATH") or "").strip()
    if override:
        return override
    return shutil.which("ffmpeg") or "ffmpeg"


def sanitize_tag(value) -> str:
    text = _CONTROL_RE.sub(" ", str(value or ""))
    text = re.sub(r"\s+", " ", text).strip()
    return text[:_TAG_MAX_CHARS]


def build_ffmpeg_argv(input_path, output_path, tags=None, cover_path=None, *, ffmpeg=None):
    cmd = [ffmpeg or resolve_ffmpeg_path(), "-y", "-hide_banner", "-loglevel", "error", "-i", input_path]
    if cover_path:
        cmd.extend(["-i", cover_path, "-map", "0:a", "-map", "1:v"])
    cmd.extend(["-c:a", TRANSCODE_CODEC, "-b:a", TRANSCODE_BITRATE])
    if cover_path:
        cmd.extend(["-c:v", "mjpeg", "-disposition:v", "attached_pic"])
        cmd.extend(["-metadata:s:v", "title=Album cover", "-metadata:s:v", "comment=Cover (front)"])
    else:
        cmd.append("-vn")
    cmd.extend(["-id3v2_version", "3"])
    for field in _TAG_FIELDS:
        value = sanitize_tag((tags or {}).get(field))
        if value:
            cmd.extend(["-metadata", f"{field}={value}"])
    cmd.extend(["-f", "mp3", output_path])
    return cmd


def _remove_quietly(path):
    if not path:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("Failed to remove %s", path, exc_info=True)


def normalize(input_path, output_path, tags=None, cover_image=None):
    """Re-encode ``input_path`` to MP3 at ``output_path`` and return it.

    ``cover_image`` is raw image bytes; it is staged in the system temp
    directory and embedded as the front cover. Raises ``TranscodeError`` on
    any failure and leaves no partial output.
    """
    cover_path = None
    succeeded = False
    try:
        if cover_image:
            try:
                fd, cover_path = tempfile.mkstemp(prefix="tunetap-", suffix=".cover.jpg")
                with os.fdopen(fd, "wb") as handle:
                    handle.write(cover_image)
            except OSError as exc:
                raise TranscodeError(f"could not stage cover image: {exc}") from exc

        cmd = build_ffmpeg_argv(input_path, output_path, tags, cover_path)
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                timeout=TRANSCODE_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as exc:
            raise TranscodeError("ffmpeg is not installed or not available in PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise TranscodeError(f"ffmpeg timed out after {TRANSCODE_TIMEOUT_SECONDS}s") from exc
        except OSError as exc:
            raise TranscodeError(f"ffmpeg could not start: {exc}") from exc

        if proc.returncode != 0:
            err = sanitize_tag(proc.stderr)[:200]
            raise TranscodeError(f"ffmpeg exited with code {proc.returncode}" + (f": {err}" if err else ""))
        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise TranscodeError("ffmpeg produced no output")
        if not is_readable_audio(output_path):
            raise TranscodeError("ffmpeg output is not readable audio")
        succeeded = True
        logger.info("Transcoded %s -> %s", input_path, output_path)
        return output_path
    finally:
        _remove_quietly(cover_path)
        if not succeeded:
            _remove_quietly(output_path)


def normalize_or_original(input_path, output_path, tags=None, cover_image=None):
    """Like ``normalize`` but falls back to ``input_path`` on failure."""
    try:
        return normalize(input_path, output_path, tags=tags, cover_image=cover_image)
    except TranscodeError as exc:
        logger.warning("Transcode skipped for %s (%s); using original", input_path, exc)
        return input_path


def fetch_cover_image(url):
    """Download cover art; returns bytes or None, never raises.

    The body is streamed so an oversized image is dropped at the cap instead
    of being read into memory first.
    """
    if not url:
        return None
    body = bytearray()
    try:
        with requests.get(url, timeout=COVER_FETCH_TIMEOUT_SECONDS, stream=True) as resp:
            content_type = (resp.headers.get("Content-Type") or "").lower()
            if not resp.ok or not content_type.startswith("image/"):
                logger.warning("Cover download rejected for %s (status=%s type=%s)", url, resp.status_code, content_type)
                return None
            declared = resp.headers.get("Content-Length") or ""
            if declared.isdigit() and int(declared) > COVER_MAX_BYTES:
                logger.warning("Cover image from %s is too large (%s bytes)", url, declared)
                return None
            for chunk in resp.iter_content(chunk_size=_COVER_CHUNK_SIZE):
                body.extend(chunk)
                if len(body) > COVER_MAX_BYTES:
                    logger.warning("Cover image from %s is too large", url)
                    return None
    except requests.RequestException:
        logger.warning("Cover download failed for %s", url)
        return None
    if not body:
        logger.warning("Cover image from %s is empty", url)
        return None
    return bytes(body)
