"""Read stream properties from cached audio files."""

from __future__ import annotations

import logging

from mutagen import File as MutagenFile
from mutagen import MutagenError

logger = logging.getLogger(__name__)


def read_duration(file_path: str) -> float | None:
    """Return the duration in seconds, or None when the file cannot be parsed."""
    try:
        audio = MutagenFile(file_path)
    except (MutagenError, OSError):
        logger.debug("mutagen could not read %s", file_path, exc_info=True)
        return None
    info = getattr(audio, "info", None) if audio is not None else None
    length = getattr(info, "length", None)
    if not isinstance(length, (int, float)) or length <= 0:
        return None
    return float(length)


def is_readable_audio(file_path: str) -> bool:
    try:
        return MutagenFile(file_path) is not None
    except (MutagenError, OSError):
        return False
