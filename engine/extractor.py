"""Run the ordered yt-dlp strategies until one yields audio."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError

from config.settings import SEARCH_SOCKET_TIMEOUT_SECONDS, STREAM_CHUNK_SIZE, YTDLP_VERSION_TIMEOUT_SECONDS
from engine.cache_files import AUDIO_EXTENSIONS, CacheDirectory, extension_of, validate_source_id
from engine.errors import (
    ExtractionError,
    ExtractionExhausted,
    NoSearchResults,
    SearchFailed,
    StrategyFailed,
    StrategyTimeout,
)
from engine.log_events import log_event
from engine.process_runner import ProcessRun
from engine.single_flight import SingleFlight
from engine.strategies import (
    DEFAULT_STRATEGIES,
    ExtractionStrategy,
    build_strategy_argv,
    classify_failure,
    resolve_ytdlp_command,
)
from engine.tee_writer import TeeStream, stream_and_cache

logger = logging.getLogger(__name__)

_IN_PROGRESS_SUFFIXES = (".part", ".ytdl")


@dataclass(frozen=True)
class SearchResult:
    source_id: str
    title: str
    duration: float | None


def build_search_query(title, artist):
    return f"{(title or '').strip()} {(artist or '').strip()} official audio".strip()


class Extractor:
    def __init__(
        self,
        cache: CacheDirectory,
        strategies: tuple[ExtractionStrategy, ...] = DEFAULT_STRATEGIES,
        ytdlp_command: list[str] | None = None,
        single_flight: SingleFlight | None = None,
    ):
        self.cache = cache
        self.strategies = tuple(strategies)
        self.ytdlp_command = list(ytdlp_command) if ytdlp_command else resolve_ytdlp_command()
        self.single_flight = single_flight or SingleFlight()

    # File mode

    def acquire(self, source_id: str) -> str:
        """Download ``source_id`` into the cache and return the CacheFile path.

        Concurrent calls for the same id share one acquisition.
        """
        source_id = validate_source_id(source_id)
        return self.single_flight.do(f"acquire:{source_id}", lambda: self._acquire(source_id))

    def acquire_in_flight(self, source_id: str) -> bool:
        return self.single_flight.in_flight(f"acquire:{source_id}")

    def _acquire(self, source_id: str) -> str:
        existing = self.cache.probe(source_id)
        if existing:
            return existing
        last_error: ExtractionError | None = None
        for strategy in self.strategies:
            started = time.monotonic()
            _log_attempt_start(source_id, strategy, mode="file")
            try:
                path = self._run_file_strategy(strategy, source_id)
            except ExtractionError as exc:
                last_error = exc
                _log_attempt_failed(source_id, strategy, exc, started)
                continue
            log_event(
                logging.INFO,
                "EXTRACTION_STRATEGY_SUCCEEDED",
                source_id=source_id,
                strategy=strategy.name,
                mode="file",
                path=path,
                elapsed_ms=_elapsed_ms(started),
            )
            return path
        log_event(logging.ERROR, "EXTRACTION_EXHAUSTED", source_id=source_id, mode="file", error=last_error)
        raise ExtractionExhausted(source_id, last_error)

    def _run_file_strategy(self, strategy: ExtractionStrategy, source_id: str) -> str:
        stem = self.cache.new_temp_stem(source_id)
        argv = build_strategy_argv(self.ytdlp_command, strategy, source_id, f"{stem}.%(ext)s")
        try:
            try:
                run = ProcessRun(
                    argv,
                    stdout=subprocess.DEVNULL,
                    timeout_seconds=strategy.timeout_seconds,
                    label=f"yt-dlp[{strategy.name}]",
                )
            except OSError as exc:
                raise StrategyFailed(
                    f"{strategy.name}: could not start yt-dlp: {exc}", strategy=strategy.name
                ) from exc
            returncode = run.wait()
            output = None
            if returncode == 0 and not run.timed_out:
                output = _find_output(stem)
            if output is None:
                raise classify_failure(
                    strategy,
                    returncode=returncode,
                    stderr_text=run.stderr_text,
                    timed_out=run.timed_out,
                )
            ext = extension_of(output)
            if ext not in AUDIO_EXTENSIONS:
                raise StrategyFailed(f"{strategy.name}: unsupported container {ext!r}", strategy=strategy.name)
            try:
                return self.cache.publish(output, self.cache.canonical_path(source_id, ext))
            except OSError as exc:
                raise StrategyFailed(f"{strategy.name}: could not publish {output}: {exc}", strategy=strategy.name) from exc
        finally:
            self.cache.discard_temp_stem(stem)

    # Streaming mode

    def acquire_stream(self, source_id: str, *, chunk_size: int = STREAM_CHUNK_SIZE) -> TeeStream:
        """Return a live TeeStream from the first strategy that produces bytes.

        Streams are not shared between callers; each owns its TempFile.
        """
        source_id = validate_source_id(source_id)
        last_error: ExtractionError | None = None
        for strategy in self.strategies:
            started = time.monotonic()
            _log_attempt_start(source_id, strategy, mode="stream")
            try:
                stream = stream_and_cache(
                    strategy.streaming(),
                    source_id,
                    self.cache,
                    self.ytdlp_command,
                    chunk_size=chunk_size,
                )
            except ExtractionError as exc:
                last_error = exc
                _log_attempt_failed(source_id, strategy, exc, started)
                continue
            log_event(
                logging.INFO,
                "EXTRACTION_STRATEGY_SUCCEEDED",
                source_id=source_id,
                strategy=strategy.name,
                mode="stream",
                container=stream.container,
                elapsed_ms=_elapsed_ms(started),
            )
            return stream
        log_event(logging.ERROR, "EXTRACTION_EXHAUSTED", source_id=source_id, mode="stream", error=last_error)
        raise ExtractionExhausted(source_id, last_error)

    # Metadata

    def search(self, title: str, artist: str) -> SearchResult:
        query = build_search_query(title, artist)
        opts = {
            "skip_download": True,
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "extract_flat": "in_playlist",
            "cachedir": False,
            "socket_timeout": SEARCH_SOCKET_TIMEOUT_SECONDS,
        }
        try:
            with YoutubeDL(opts) as ydl:
                info = ydl.extract_info(f"ytsearch1:{query}", download=False)
        except DownloadError as exc:
            message = str(exc)
            logger.warning("Search failed for query=%r: %s", query, message)
            if "timed out" in message.lower():
                raise StrategyTimeout(f"Search timed out: {message}", strategy="search") from exc
            raise SearchFailed(f"Search failed: {message}", strategy="search") from exc

        entries = info.get("entries") if isinstance(info, dict) else None
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue
            source_id = entry.get("id")
            try:
                source_id = validate_source_id(source_id)
            except ValueError:
                continue
            duration = entry.get("duration")
            log_event(logging.INFO, "SEARCH_RESOLVED", query=query, source_id=source_id)
            return SearchResult(
                source_id=source_id,
                title=entry.get("title") or title,
                duration=float(duration) if isinstance(duration, (int, float)) else None,
            )
        raise NoSearchResults(f"No results for {query!r}", strategy="search")

    def version(self) -> str | None:
        try:
            completed = subprocess.run(
                [*self.ytdlp_command, "--version"],
                capture_output=True,
                text=True,
                timeout=YTDLP_VERSION_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return None
        if completed.returncode != 0:
            return None
        return completed.stdout.strip() or None


def _find_output(stem):
    directory, prefix = os.path.split(stem)
    prefix = f"{prefix}."
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return None
    for name in names:
        if not name.startswith(prefix) or name.endswith(_IN_PROGRESS_SUFFIXES):
            continue
        path = os.path.join(directory, name)
        try:
            if os.path.getsize(path) > 0:
                return path
        except OSError:
            continue
    return None


def _elapsed_ms(started):
    return int((time.monotonic() - started) * 1000)


def _log_attempt_start(source_id, strategy, *, mode):
    log_event(
        logging.INFO,
        "EXTRACTION_STRATEGY_START",
        source_id=source_id,
        strategy=strategy.name,
        mode=mode,
        timeout_ms=strategy.timeout_ms,
    )


def _log_attempt_failed(source_id, strategy, exc, started):
    log_event(
        logging.WARNING,
        "EXTRACTION_STRATEGY_FAILED",
        source_id=source_id,
        strategy=strategy.name,
        failure=type(exc).__name__,
        error=str(exc),
        stderr=exc.stderr,
        elapsed_ms=_elapsed_ms(started),
    )
