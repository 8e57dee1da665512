"""Application settings constants."""

from __future__ import annotations

APP_NAME = "TuneTap"

# Debounce window for coalescing song-mapping writes.
MAPPING_DEBOUNCE_SECONDS = 0.5

# Full-file and streaming acquisitions share one bound per strategy.
STRATEGY_TIMEOUT_MS = 120_000

# Metadata-only lookups (search) use a much shorter bound.
SEARCH_SOCKET_TIMEOUT_SECONDS = 10
YTDLP_VERSION_TIMEOUT_SECONDS = 5

# Temp artifacts older than this are orphans; must exceed STRATEGY_TIMEOUT_MS.
TEMP_FILE_MAX_AGE_SECONDS = 15 * 60
TEMP_CLEANUP_INTERVAL_MINUTES = 10

# After the first byte a streaming child is only killed when it stalls. While
# the consumer holds the next read, the child may sit on a full pipe for up to
# this long; must stay below TEMP_FILE_MAX_AGE_SECONDS.
STREAM_CONSUMER_STALL_SECONDS = 10 * 60

STREAM_CHUNK_SIZE = 64 * 1024
FILE_CHUNK_SIZE = 1024 * 1024

# Canonical container produced by the transcoder.
TRANSCODE_FORMAT = "mp3"
TRANSCODE_CODEC = "libmp3lame"
TRANSCODE_BITRATE = "128k"
TRANSCODE_TIMEOUT_SECONDS = 120

COVER_FETCH_TIMEOUT_SECONDS = 15
COVER_MAX_BYTES = 5 * 1024 * 1024

# Finalized cache files never change under the same name.
IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
