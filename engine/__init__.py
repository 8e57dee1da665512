from .audio_service import AudioResolutionService
from .cache_files import CacheDirectory
from .extractor import Extractor, SearchResult
from .paths import CachePaths, build_cache_paths
from .runtime import get_runtime_info
from .single_flight import SingleFlight
from .song_mapping import JsonFileBackend, MappingStore, lookup_key

__all__ = [
    "AudioResolutionService",
    "CacheDirectory",
    "CachePaths",
    "Extractor",
    "JsonFileBackend",
    "MappingStore",
    "SearchResult",
    "SingleFlight",
    "build_cache_paths",
    "get_runtime_info",
    "lookup_key",
]
