#!/usr/bin/env python3
import sys


def _require_python_311():
    if sys.version_info[:2] < (3, 11):
        found = sys.version.split()[0]
        raise SystemExit(
            f"ERROR: TuneTap requires Python 3.11+; found Python {found} "
            f"(executable: {sys.executable})"
        )


_require_python_311()

import base64
import binascii
import hmac
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

import anyio
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask
from starlette.concurrency import iterate_in_threadpool

from api.cloud_upload import upload_track
from api.file_serving import attachment_disposition, serve_file
from config.settings import (
    APP_NAME,
    IMMUTABLE_CACHE_CONTROL,
    MAPPING_DEBOUNCE_SECONDS,
    TEMP_CLEANUP_INTERVAL_MINUTES,
    TEMP_FILE_MAX_AGE_SECONDS,
)
from engine.audio_service import PREPARE_ACTIONS, AudioResolutionService
from engine.cache_files import CacheDirectory, extension_of
from engine.errors import (
    AudioEngineError,
    ExtractionError,
    ExtractionExhausted,
    InvalidSourceId,
    NoSearchResults,
    StrategyTimeout,
)
from engine.extractor import Extractor
from engine.log_events import log_event
from engine.paths import build_cache_paths, ensure_dir
from engine.runtime import get_runtime_info
from engine.single_flight import SingleFlight
from engine.song_mapping import JsonFileBackend, MappingStore


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value else default


def _debounce_seconds_from_env():
    raw = _env_or_default("TUNETAP_MAPPING_DEBOUNCE_MS", None)
    if raw is None:
        return MAPPING_DEBOUNCE_SECONDS
    try:
        return max(0, int(raw)) / 1000.0
    except ValueError:
        logging.warning("Ignoring invalid TUNETAP_MAPPING_DEBOUNCE_MS=%r", raw)
        return MAPPING_DEBOUNCE_SECONDS


_BASIC_AUTH_USER = os.environ.get("TUNETAP_BASIC_AUTH_USER")
_BASIC_AUTH_PASS = os.environ.get("TUNETAP_BASIC_AUTH_PASS")
_BASIC_AUTH_ENABLED = bool(_BASIC_AUTH_USER and _BASIC_AUTH_PASS)


def _check_basic_auth(header_value):
    if not header_value or not header_value.startswith("Basic "):
        return False
    token = header_value[6:].strip()
    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    if ":" not in decoded:
        return False
    user, password = decoded.split(":", 1)
    return hmac.compare_digest(user, _BASIC_AUTH_USER) and hmac.compare_digest(password, _BASIC_AUTH_PASS)


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "tunetap.log")
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


def configure_engine(
    state,
    cache_root,
    mapping_file,
    *,
    ytdlp_command=None,
    strategies=None,
    debounce_seconds=MAPPING_DEBOUNCE_SECONDS,
    cloud_uploader=None,
):
    """Wire the engine objects onto ``state`` (``app.state`` at runtime)."""
    state.cache = CacheDirectory(cache_root)
    state.mapping_store = MappingStore(JsonFileBackend(mapping_file), debounce_seconds=debounce_seconds)
    state.single_flight = SingleFlight()
    extractor_kwargs = {"ytdlp_command": ytdlp_command, "single_flight": state.single_flight}
    if strategies is not None:
        extractor_kwargs["strategies"] = strategies
    state.extractor = Extractor(state.cache, **extractor_kwargs)
    state.audio_service = AudioResolutionService(
        state.mapping_store,
        state.cache,
        state.extractor,
        state.single_flight,
    )
    state.cloud_uploader = cloud_uploader
    return state


def _cleanup_temp_files():
    cache = getattr(app.state, "cache", None)
    if cache is None:
        return {"deleted_files": 0, "deleted_bytes": 0}
    return cache.cleanup_orphaned_temp_files(TEMP_FILE_MAX_AGE_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.paths = build_cache_paths()
    _setup_logging(app.state.paths.log_dir)
    configure_engine(
        app.state,
        app.state.paths.cache_root,
        app.state.paths.mapping_file,
        debounce_seconds=_debounce_seconds_from_env(),
    )
    logging.info("Cache root: %s", app.state.paths.cache_root)
    await anyio.to_thread.run_sync(_cleanup_temp_files)
    app.state.scheduler = BackgroundScheduler(timezone="UTC")
    app.state.scheduler.add_job(
        _cleanup_temp_files,
        IntervalTrigger(minutes=TEMP_CLEANUP_INTERVAL_MINUTES),
        id="temp_cleanup",
        replace_existing=True,
    )
    app.state.scheduler.start()
    try:
        yield
    finally:
        app.state.scheduler.shutdown(wait=False)
        app.state.mapping_store.close()
        logging.info("Shutdown complete")


app = FastAPI(
    title=APP_NAME,
    description="TuneTap API for resolving, streaming and caching audio tracks.",
    lifespan=lifespan,
)


@app.middleware("http")
async def basic_auth_middleware(request: Request, call_next):
    if not _BASIC_AUTH_ENABLED:
        return await call_next(request)
    if request.method == "OPTIONS":
        return await call_next(request)
    auth_header = request.headers.get("authorization")
    if not _check_basic_auth(auth_header):
        return PlainTextResponse(
            "Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": "Basic"},
        )
    return await call_next(request)


class PreparePayload(BaseModel):
    sourceId: Optional[str] = None
    action: str = "start"


class CloudUploadPayload(BaseModel):
    sourceId: Optional[str] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    cover: Optional[str] = None
    credentials: Optional[Any] = None


def _error_response(status_code, error, details=None, **extra):
    payload = {"error": error, "details": details}
    payload.update(extra)
    return JSONResponse(payload, status_code=status_code)


def _engine_error_response(exc, *, failure_message="Failed to fetch audio", **extra):
    if isinstance(exc, InvalidSourceId):
        return _error_response(400, "Invalid source id", str(exc), **extra)
    if isinstance(exc, ExtractionExhausted):
        if exc.timed_out:
            return _error_response(408, "Request timeout", str(exc), **extra)
        return _error_response(404, failure_message, str(exc), **extra)
    if isinstance(exc, StrategyTimeout):
        return _error_response(408, "Request timeout", str(exc), **extra)
    if isinstance(exc, NoSearchResults):
        return _error_response(404, "No audio source found", str(exc), **extra)
    return _error_response(500, failure_message, str(exc), **extra)


def _unexpected_error_response(exc, context, **extra):
    logging.exception("Unexpected error during %s", context)
    return _error_response(500, "Internal server error", None, **extra)


def _missing_track_fields(title, artist):
    return not (title or "").strip() or not (artist or "").strip()


@app.get("/cache/check")
async def cache_check(title: Optional[str] = Query(None), artist: Optional[str] = Query(None)):
    if _missing_track_fields(title, artist):
        return _error_response(400, "Title and artist are required")
    service = app.state.audio_service
    try:
        return await anyio.to_thread.run_sync(service.check, title, artist)
    except Exception as exc:
        return _unexpected_error_response(exc, "cache check")


@app.get("/audio/resolve")
async def audio_resolve(
    title: Optional[str] = Query(None),
    artist: Optional[str] = Query(None),
    acquire: bool = Query(True),
):
    if _missing_track_fields(title, artist):
        return _error_response(400, "Title and artist are required")
    service = app.state.audio_service
    try:
        return await anyio.to_thread.run_sync(
            lambda: service.resolve(title, artist, acquire=acquire)
        )
    except AudioEngineError as exc:
        return _engine_error_response(exc)
    except Exception as exc:
        return _unexpected_error_response(exc, "audio resolve")


async def _open_audio(service, source_id):
    """Run ``service.open_stream`` off the loop without leaking its TeeStream.

    The worker call cannot be abandoned, so a cancellation that lands while it
    waits for the first byte is delivered right after it returns; the stream
    is closed before the cancellation propagates.
    """
    kind, target = await anyio.to_thread.run_sync(service.open_stream, source_id)
    if kind == "stream":
        try:
            await anyio.sleep(0)
        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(target.close)
            raise
    return kind, target


def _log_vanished(source_id, path):
    log_event(logging.WARNING, "CACHE_FILE_VANISHED", source_id=source_id, path=path)


@app.get("/audio/stream")
async def audio_stream(request: Request, sourceId: Optional[str] = Query(None)):
    if not (sourceId or "").strip():
        return _error_response(400, "Source id is required")
    source_id = sourceId.strip()
    service = app.state.audio_service
    # A CacheFile can be evicted before it is opened; look it up once more.
    for _ in range(2):
        try:
            kind, target = await _open_audio(service, source_id)
        except AudioEngineError as exc:
            return _engine_error_response(exc, failure_message="Failed to stream audio")
        except Exception as exc:
            return _unexpected_error_response(exc, "audio stream")
        if kind != "file":
            break
        try:
            return serve_file(
                target,
                request.headers.get("range"),
                cache_control=IMMUTABLE_CACHE_CONTROL,
                extra_headers={"Content-Disposition": "inline"},
            )
        except FileNotFoundError:
            _log_vanished(source_id, target)
    else:
        return _error_response(404, "Audio file not found", f"Cache file for {source_id} was removed")

    stream = target

    async def _body():
        try:
            async for chunk in iterate_in_threadpool(stream):
                yield chunk
        finally:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(stream.close)

    return StreamingResponse(
        _body(),
        media_type=stream.content_type,
        headers={
            "Cache-Control": "no-cache",
            "Content-Disposition": "inline",
            "X-Extraction-Strategy": stream.strategy,
        },
        background=BackgroundTask(stream.close),
    )


@app.post("/audio/prepare")
async def audio_prepare(payload: PreparePayload = Body(...)):
    source_id = (payload.sourceId or "").strip()
    if not source_id:
        return _error_response(400, "Source id is required")
    if payload.action not in PREPARE_ACTIONS:
        return _error_response(400, "Invalid action", f"action must be one of {', '.join(PREPARE_ACTIONS)}")
    service = app.state.audio_service
    try:
        return await anyio.to_thread.run_sync(service.prepare, source_id, payload.action)
    except InvalidSourceId as exc:
        return _engine_error_response(exc)
    except ExtractionError as exc:
        return _engine_error_response(exc, failure_message="Download failed", status="failed")
    except Exception as exc:
        return _unexpected_error_response(exc, "audio prepare", status="failed")


@app.get("/audio/download")
async def audio_download(
    request: Request,
    sourceId: Optional[str] = Query(None),
    filename: Optional[str] = Query(None),
):
    source_id = (sourceId or "").strip()
    if not source_id:
        return _error_response(400, "Source id is required")
    service = app.state.audio_service
    for _ in range(2):
        try:
            path = await anyio.to_thread.run_sync(service.ensure_cached, source_id)
        except AudioEngineError as exc:
            return _engine_error_response(exc, failure_message="Download failed")
        except Exception as exc:
            return _unexpected_error_response(exc, "audio download")
        try:
            return serve_file(
                path,
                request.headers.get("range"),
                cache_control=IMMUTABLE_CACHE_CONTROL,
                extra_headers={"Content-Disposition": attachment_disposition(filename or source_id, extension_of(path))},
            )
        except FileNotFoundError:
            _log_vanished(source_id, path)
    return _error_response(404, "Audio file not found", f"Cache file for {source_id} was removed")


@app.post("/cloud/upload")
async def cloud_upload(payload: CloudUploadPayload = Body(...)):
    source_id = (payload.sourceId or "").strip()
    if not source_id:
        return _error_response(400, "Source id is required")
    uploader = getattr(app.state, "cloud_uploader", None)
    if uploader is None:
        return _error_response(503, "Cloud upload is not configured")
    service = app.state.audio_service
    try:
        return await anyio.to_thread.run_sync(
            lambda: upload_track(
                service,
                uploader,
                source_id,
                title=payload.title,
                artist=payload.artist,
                album=payload.album,
                cover=payload.cover,
                credentials=payload.credentials,
            )
        )
    except AudioEngineError as exc:
        return _engine_error_response(exc, failure_message="File not found in cache and download failed")
    except Exception as exc:
        return _unexpected_error_response(exc, "cloud upload")


@app.delete("/cache/{source_id}")
async def cache_evict(source_id: str):
    service = app.state.audio_service
    try:
        removed = await anyio.to_thread.run_sync(service.evict, source_id)
    except InvalidSourceId as exc:
        return _engine_error_response(exc)
    return {"sourceId": source_id, "removed": len(removed)}


@app.post("/cache/cleanup")
async def cache_cleanup():
    result = await anyio.to_thread.run_sync(_cleanup_temp_files)
    log_event(logging.INFO, "CACHE_CLEANUP_REQUESTED", **result)
    return result


@app.get("/health")
async def health():
    extractor = getattr(app.state, "extractor", None)
    cache = getattr(app.state, "cache", None)
    info = await anyio.to_thread.run_sync(
        lambda: get_runtime_info(extractor, cache.root if cache is not None else None)
    )
    return {"status": "ok", **info}
