import os
import sys
from dataclasses import dataclass
from pathlib import Path

from config.settings import APP_NAME


def _platform_cache_base():
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Caches"
    if sys.platform.startswith("win"):
        local_app_data = os.environ.get("LOCALAPPDATA")
        return Path(local_app_data) if local_app_data else home / "AppData" / "Local"
    xdg_cache = os.environ.get("XDG_CACHE_HOME")
    return Path(xdg_cache) if xdg_cache else home / ".cache"


def resolve_cache_root():
    override = os.environ.get("TUNETAP_CACHE_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return (_platform_cache_base() / APP_NAME / "audio").resolve()


@dataclass(frozen=True)
class CachePaths:
    cache_root: str
    mapping_file: str
    log_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def build_cache_paths():
    cache_root = resolve_cache_root()
    # The mapping file sits next to the audio directory, not inside it.
    mapping_file = cache_root.parent / "song-mapping.json"
    log_dir = Path(os.environ.get("TUNETAP_LOG_DIR", cache_root.parent / "logs")).resolve()

    for d in (cache_root, log_dir):
        ensure_dir(d)

    return CachePaths(
        cache_root=str(cache_root),
        mapping_file=str(mapping_file),
        log_dir=str(log_dir),
    )
