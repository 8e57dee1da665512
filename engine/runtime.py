import os
import shutil
import sys

from yt_dlp.version import __version__ as ytdlp_library_version

from media.transcoder import resolve_ffmpeg_path


def get_runtime_info(extractor=None, cache_root=None):
    """Versions and tool availability reported by the health endpoint."""
    ffmpeg = resolve_ffmpeg_path()
    return {
        "app_version": os.environ.get("TUNETAP_VERSION", "0.0.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_library_version": ytdlp_library_version,
        "yt_dlp_executable_version": extractor.version() if extractor is not None else None,
        "ffmpeg_available": bool(shutil.which(ffmpeg) or os.path.isfile(ffmpeg)),
        "cache_root": cache_root,
    }
