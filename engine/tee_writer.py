"""Forward a live yt-dlp stdout stream to a caller while caching it to disk."""

from __future__ import annotations

import logging
import subprocess
import threading

from config.settings import STRATEGY_TIMEOUT_MS, STREAM_CHUNK_SIZE, STREAM_CONSUMER_STALL_SECONDS
from engine.cache_files import CacheDirectory, content_type_for
from engine.errors import StrategyFailed
from engine.log_events import log_event
from engine.process_runner import ProcessRun
from engine.strategies import ExtractionStrategy, build_strategy_argv, classify_failure, stderr_tail

logger = logging.getLogger(__name__)


def sniff_container(chunk: bytes, default: str = "m4a") -> str:
    """Guess the container extension from the first bytes of a stream."""
    head = chunk[:16]
    if len(head) >= 8 and head[4:8] == b"ftyp":
        return "m4a"
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return "webm"
    if head.startswith(b"OggS"):
        return "opus" if b"OpusHead" in chunk[:64] else "ogg"
    if head.startswith(b"fLaC"):
        return "flac"
    if head.startswith(b"RIFF") and chunk[8:12] == b"WAVE":
        return "wav"
    if head.startswith(b"ID3"):
        return "mp3"
    if len(head) >= 2 and head[0] == 0xFF:
        # ADTS has layer bits 00; MPEG audio frames never do.
        if head[1] & 0xF6 == 0xF0:
            return "aac"
        if head[1] & 0xE0 == 0xE0:
            return "mp3"
    return default


class TeeStream:
    """Iterator over a strategy's stdout that mirrors every chunk into a TempFile.

    Chunks are written to the TempFile and handed downstream in arrival order.
    Each read may wait at most ``idle_timeout`` for the child; between reads
    the child is allowed ``stall_timeout`` blocked on a full pipe.
    When the child exits 0 after at least one byte the TempFile is published
    as the CacheFile; any other ending deletes it and simply ends the
    iteration, so the downstream response always terminates.
    """

    def __init__(
        self,
        run: ProcessRun,
        cache: CacheDirectory,
        source_id: str,
        strategy_name: str,
        first_chunk: bytes,
        *,
        chunk_size: int = STREAM_CHUNK_SIZE,
        idle_timeout: float = STRATEGY_TIMEOUT_MS / 1000,
        stall_timeout: float = STREAM_CONSUMER_STALL_SECONDS,
    ):
        self._run = run
        self._idle_timeout = idle_timeout
        self._stall_timeout = stall_timeout
        self._cache = cache
        self.source_id = source_id
        self.strategy = strategy_name
        self.container = sniff_container(first_chunk)
        self.content_type = content_type_for(self.container)
        self.temp_path = cache.new_temp_path(source_id, self.container)
        self.final_path = cache.canonical_path(source_id, self.container)
        self.published_path: str | None = None
        self.bytes_streamed = 0
        self._chunk_size = chunk_size
        self._pending: bytes | None = first_chunk
        self._lock = threading.Lock()
        self._done = False
        self._reading = False
        self._temp_handle = open(self.temp_path, "wb")

    def __iter__(self):
        return self

    def __next__(self) -> bytes:
        chunk = self._pending
        self._pending = None
        if chunk is None:
            with self._lock:
                if self._done:
                    self._close_stdout()
                    raise StopIteration
                self._reading = True
            self._run.rearm(self._idle_timeout)
            try:
                chunk = self._run.stdout.read(self._chunk_size)
            except (OSError, ValueError):
                chunk = b""
            finally:
                self._reading = False
                self._run.rearm(self._stall_timeout)
        with self._lock:
            if self._done:
                self._close_stdout()
                raise StopIteration
            if not chunk:
                self._finish_locked()
                raise StopIteration
            self._temp_handle.write(chunk)
            self.bytes_streamed += len(chunk)
        return chunk

    def _finish_locked(self) -> None:
        self._done = True
        returncode = self._run.wait()
        self._close_temp()
        self._close_stdout()
        if returncode == 0 and not self._run.timed_out and self.bytes_streamed > 0:
            try:
                self.published_path = self._cache.publish(self.temp_path, self.final_path)
            except OSError:
                logger.exception("Failed to publish streamed cache file %s", self.final_path)
                self._cache.discard(self.temp_path)
                return
            log_event(
                logging.INFO,
                "STREAM_CACHE_FINALIZED",
                source_id=self.source_id,
                strategy=self.strategy,
                bytes=self.bytes_streamed,
                path=self.published_path,
            )
            return
        self._cache.discard(self.temp_path)
        log_event(
            logging.WARNING,
            "STREAM_TRUNCATED",
            source_id=self.source_id,
            strategy=self.strategy,
            bytes=self.bytes_streamed,
            returncode=returncode,
            timed_out=self._run.timed_out,
            stderr=stderr_tail(self._run.stderr_text),
        )

    def close(self) -> None:
        """Abort the stream: kill the child and drop the TempFile. Idempotent."""
        with self._lock:
            if self._done:
                return
            self._done = True
            self._run.kill()
            self._run.wait()
            self._close_temp()
            self._cache.discard(self.temp_path)
            if not self._reading:
                self._close_stdout()
        log_event(
            logging.INFO,
            "STREAM_ABORTED",
            source_id=self.source_id,
            strategy=self.strategy,
            bytes=self.bytes_streamed,
        )

    @property
    def finished(self) -> bool:
        return self._done

    def _close_temp(self) -> None:
        try:
            self._temp_handle.close()
        except OSError:
            logger.warning("Failed to close temp file %s", self.temp_path, exc_info=True)

    def _close_stdout(self) -> None:
        stream = self._run.stdout
        if stream is None or stream.closed:
            return
        try:
            stream.close()
        except OSError:
            pass


def stream_and_cache(
    strategy: ExtractionStrategy,
    source_id: str,
    cache: CacheDirectory,
    ytdlp_command: list[str] | tuple[str, ...],
    *,
    chunk_size: int = STREAM_CHUNK_SIZE,
) -> TeeStream:
    """Start ``strategy`` writing to stdout and wait for its first byte.

    The strategy timeout bounds the wait for the first byte; afterwards it
    bounds each read from the child instead of the whole transfer. Raises an
    ``ExtractionError`` subclass when the child ends (or is killed) without
    producing any payload; no TempFile exists in that case.
    """
    if not strategy.outputs_to_stdout:
        strategy = strategy.streaming()
    argv = build_strategy_argv(ytdlp_command, strategy, source_id, "-")
    log_event(logging.INFO, "STREAM_STRATEGY_START", source_id=source_id, strategy=strategy.name)
    try:
        run = ProcessRun(
            argv,
            stdout=subprocess.PIPE,
            timeout_seconds=strategy.timeout_seconds,
            label=f"yt-dlp[{strategy.name}]",
        )
    except OSError as exc:
        raise StrategyFailed(f"{strategy.name}: could not start yt-dlp: {exc}", strategy=strategy.name) from exc

    try:
        first_chunk = run.stdout.read(chunk_size)
    except (OSError, ValueError):
        first_chunk = b""
    if not first_chunk:
        returncode = run.wait()
        run.stdout.close()
        raise classify_failure(
            strategy,
            returncode=returncode,
            stderr_text=run.stderr_text,
            timed_out=run.timed_out,
        )

    run.rearm(STREAM_CONSUMER_STALL_SECONDS)
    try:
        stream = TeeStream(
            run,
            cache,
            source_id,
            strategy.name,
            first_chunk,
            chunk_size=chunk_size,
            idle_timeout=strategy.timeout_seconds,
            stall_timeout=STREAM_CONSUMER_STALL_SECONDS,
        )
    except OSError as exc:
        run.kill()
        run.wait()
        run.stdout.close()
        raise StrategyFailed(f"{strategy.name}: could not open temp file: {exc}", strategy=strategy.name) from exc
    log_event(
        logging.INFO,
        "STREAM_FIRST_BYTE",
        source_id=source_id,
        strategy=strategy.name,
        container=stream.container,
    )
    return stream
