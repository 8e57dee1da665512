from __future__ import annotations

import importlib
import os
import time
from dataclasses import replace

import pytest

anyio = pytest.importorskip("anyio")
fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from engine.song_mapping import lookup_key
from engine.strategies import DEFAULT_STRATEGIES


class _FakeYDL:
    entries = []
    seen = []

    def __init__(self, opts):
        self.opts = opts

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def extract_info(self, query, download=False):
        _FakeYDL.seen.append(query)
        return {"entries": list(_FakeYDL.entries)}


@pytest.fixture
def api(tmp_path, cache_root, fake_ytdlp, monkeypatch):
    module = importlib.import_module("api.main")
    _FakeYDL.entries = [{"id": "abc123", "title": "Song (Official Audio)", "duration": 200}]
    _FakeYDL.seen = []
    monkeypatch.setattr("engine.extractor.YoutubeDL", _FakeYDL)
    module.configure_engine(
        module.app.state,
        str(cache_root),
        str(tmp_path / "song-mapping.json"),
        ytdlp_command=fake_ytdlp.command,
        debounce_seconds=0,
    )
    return module, TestClient(module.app)


def _write_cached(cache_root, name="abc123.m4a", size=1000):
    data = bytes(index % 256 for index in range(size))
    (cache_root / name).write_bytes(data)
    return data


def test_check_requires_title_and_artist(api) -> None:
    _, client = api
    response = client.get("/cache/check", params={"title": "Song", "artist": "  "})

    assert response.status_code == 400
    assert response.json() == {"error": "Title and artist are required", "details": None}


def test_check_unknown_key_needs_search(api) -> None:
    _, client = api
    response = client.get("/cache/check", params={"title": "Unknown", "artist": "Nobody"})

    assert response.status_code == 200
    assert response.json() == {"cached": False, "needSearch": True}


def test_resolve_then_check_round_trip(api, cache_root, fake_ytdlp) -> None:
    module, client = api
    fake_ytdlp.configure({"android": "ok"})

    resolved = client.get("/audio/resolve", params={"title": "Song", "artist": "Artist"})
    assert resolved.status_code == 200
    body = resolved.json()
    assert body["sourceId"] == "abc123"
    assert body["audioUrl"] == "/audio/stream?sourceId=abc123"
    assert body["title"] == "Song (Official Audio)"
    assert body["duration"] == 200
    assert body["cached"] is True
    assert (cache_root / "abc123.m4a").exists()

    checked = client.get("/cache/check", params={"title": " song", "artist": "ARTIST "})
    assert checked.json() == {
        "cached": True,
        "needSearch": False,
        "sourceId": "abc123",
        "audioUrl": "/audio/stream?sourceId=abc123",
        "title": "Song (Official Audio)",
    }
    assert module.app.state.mapping_store.lookup("Song", "Artist").source_id == "abc123"

    # Mapped tracks skip the search entirely.
    client.get("/audio/resolve", params={"title": "Song", "artist": "Artist"})
    assert len(_FakeYDL.seen) == 1


def test_resolve_without_acquire_only_maps(api, cache_root, fake_ytdlp) -> None:
    _, client = api
    response = client.get("/audio/resolve", params={"title": "Song", "artist": "Artist", "acquire": "false"})

    assert response.status_code == 200
    assert response.json()["cached"] is False
    assert fake_ytdlp.calls() == []
    checked = client.get("/cache/check", params={"title": "Song", "artist": "Artist"})
    assert checked.json() == {"cached": False, "needSearch": False, "sourceId": "abc123", "title": "Song (Official Audio)"}


def test_resolve_no_results_is_404(api) -> None:
    _, client = api
    _FakeYDL.entries = []

    response = client.get("/audio/resolve", params={"title": "Song", "artist": "Artist"})

    assert response.status_code == 404
    assert set(response.json()) == {"error", "details"}


def test_resolve_exhausted_is_404(api, fake_ytdlp) -> None:
    _, client = api
    fake_ytdlp.configure(default="block")

    response = client.get("/audio/resolve", params={"title": "Song", "artist": "Artist"})

    assert response.status_code == 404
    assert "All extraction strategies failed" in response.json()["details"]


def test_stream_cached_file_full_and_ranged(api, cache_root) -> None:
    _, client = api
    data = _write_cached(cache_root)

    full = client.get("/audio/stream", params={"sourceId": "abc123"})
    assert full.status_code == 200
    assert full.content == data
    assert full.headers["content-type"] == "audio/mp4"
    assert full.headers["accept-ranges"] == "bytes"
    assert "immutable" in full.headers["cache-control"]

    ranged = client.get("/audio/stream", params={"sourceId": "abc123"}, headers={"Range": "bytes=0-99"})
    assert ranged.status_code == 206
    assert ranged.content == data[:100]
    assert ranged.headers["content-range"] == "bytes 0-99/1000"


def test_stream_cache_miss_tees_into_cache(api, cache_root, fake_ytdlp) -> None:
    _, client = api
    fake_ytdlp.configure({"android": "ok"})

    response = client.get("/audio/stream", params={"sourceId": "abc123"})

    assert response.status_code == 200
    assert response.content == fake_ytdlp.payload
    assert response.headers["content-type"] == "audio/mp4"
    assert response.headers["cache-control"] == "no-cache"
    assert (cache_root / "abc123.m4a").read_bytes() == fake_ytdlp.payload
    assert [name for name in os.listdir(cache_root) if ".temp." in name] == []

    again = client.get("/audio/stream", params={"sourceId": "abc123"}, headers={"Range": "bytes=0-9"})
    assert again.status_code == 206
    assert len(fake_ytdlp.calls()) == 1


def test_stream_rejects_bad_source_id(api) -> None:
    _, client = api
    assert client.get("/audio/stream").status_code == 400
    assert client.get("/audio/stream", params={"sourceId": "../secret"}).status_code == 400


def test_stream_exhausted_is_404(api, fake_ytdlp) -> None:
    _, client = api
    fake_ytdlp.configure(default="fail")

    response = client.get("/audio/stream", params={"sourceId": "abc123"})

    assert response.status_code == 404
    assert response.json()["error"] == "Failed to stream audio"


def test_prepare_check_and_start(api, cache_root, monkeypatch) -> None:
    _, client = api
    assert client.post("/audio/prepare", json={"sourceId": "abc123", "action": "check"}).json() == {
        "status": "not_started",
        "cached": False,
    }
    (cache_root / "abc123.temp.inflight.m4a").write_bytes(b"partial")
    assert client.post("/audio/prepare", json={"sourceId": "abc123", "action": "check"}).json()["status"] == "downloading"

    _write_cached(cache_root)

    def _normalize(input_path, output_path, tags=None, cover_image=None):
        with open(output_path, "wb") as handle:
            handle.write(b"ID3converted")
        return output_path

    monkeypatch.setattr("engine.audio_service.normalize", _normalize)
    started = client.post("/audio/prepare", json={"sourceId": "abc123", "action": "start"})

    assert started.status_code == 200
    assert started.json()["status"] == "completed"
    assert started.json()["audioUrl"] == "/audio/stream?sourceId=abc123"
    assert (cache_root / "abc123.mp3").read_bytes() == b"ID3converted"
    assert not (cache_root / "abc123.m4a").exists()
    checked = client.post("/audio/prepare", json={"sourceId": "abc123", "action": "check"})
    assert checked.json()["status"] == "completed"


def test_prepare_keeps_original_when_transcode_fails(api, cache_root, monkeypatch) -> None:
    from media.transcoder import TranscodeError

    _, client = api
    _write_cached(cache_root)

    def _fail(*args, **kwargs):
        raise TranscodeError("ffmpeg is not installed or not available in PATH")

    monkeypatch.setattr("engine.audio_service.normalize", _fail)
    response = client.post("/audio/prepare", json={"sourceId": "abc123", "action": "start"})

    assert response.json()["status"] == "completed"
    assert (cache_root / "abc123.m4a").exists()
    assert not (cache_root / "abc123.mp3").exists()


def test_prepare_start_failure_payload(api, fake_ytdlp) -> None:
    _, client = api
    fake_ytdlp.configure(default="fail")

    response = client.post("/audio/prepare", json={"sourceId": "abc123", "action": "start"})

    assert response.status_code == 404
    assert response.json()["status"] == "failed"
    assert response.json()["error"] == "Download failed"


def test_prepare_rejects_unknown_action(api) -> None:
    _, client = api
    response = client.post("/audio/prepare", json={"sourceId": "abc123", "action": "explode"})
    assert response.status_code == 400


def test_download_sets_attachment_name(api, cache_root) -> None:
    _, client = api
    data = _write_cached(cache_root, "abc123.mp3")

    response = client.get("/audio/download", params={"sourceId": "abc123", "filename": "Artist - Song"})

    assert response.status_code == 200
    assert response.content == data
    assert response.headers["content-disposition"] == 'attachment; filename="Artist - Song.mp3"'
    assert response.headers["content-type"] == "audio/mpeg"


def test_download_acquires_on_miss(api, cache_root, fake_ytdlp) -> None:
    _, client = api
    fake_ytdlp.configure({"android": "ok"})

    response = client.get("/audio/download", params={"sourceId": "abc123"})

    assert response.status_code == 200
    assert response.content == fake_ytdlp.payload
    assert response.headers["content-disposition"] == 'attachment; filename="abc123.m4a"'


def test_cloud_upload_requires_configured_uploader(api) -> None:
    _, client = api
    response = client.post("/cloud/upload", json={"sourceId": "abc123"})
    assert response.status_code == 503


def test_cloud_upload_hands_file_to_uploader(api, cache_root, monkeypatch) -> None:
    module, client = api
    _write_cached(cache_root)
    received = {}

    class _Uploader:
        def upload(self, filename, path, credentials):
            with open(path, "rb") as handle:
                received.update(filename=filename, size=len(handle.read()), credentials=credentials)
            return {"code": 200}

    monkeypatch.setattr("api.cloud_upload.normalize_or_original", lambda src, out, tags=None, cover_image=None: src)
    module.app.state.cloud_uploader = _Uploader()

    response = client.post(
        "/cloud/upload",
        json={"sourceId": "abc123", "title": "Song/Live", "artist": "Artist", "credentials": {"cookie": "c"}},
    )

    assert response.status_code == 200
    assert response.json() == {"code": 200}
    assert received == {"filename": "Artist - Song_Live.mp3", "size": 1000, "credentials": {"cookie": "c"}}
    assert sorted(os.listdir(cache_root)) == ["abc123.m4a"]


def test_delete_and_cleanup(api, cache_root) -> None:
    _, client = api
    _write_cached(cache_root)

    deleted = client.delete("/cache/abc123")
    assert deleted.json() == {"sourceId": "abc123", "removed": 1}
    assert not (cache_root / "abc123.m4a").exists()

    cleanup = client.post("/cache/cleanup")
    assert cleanup.status_code == 200
    assert set(cleanup.json()) == {"deleted_files", "deleted_bytes"}


def test_health_reports_versions(api, cache_root) -> None:
    _, client = api
    body = client.get("/health").json()

    assert body["status"] == "ok"
    assert body["yt_dlp_executable_version"] == "2099.01.01"
    assert body["cache_root"] == str(cache_root)
    assert body["yt_dlp_library_version"]


def test_mapping_file_keys_are_lookup_keys(api, tmp_path) -> None:
    module, client = api
    client.get("/audio/resolve", params={"title": "Song", "artist": "Artist", "acquire": "false"})
    module.app.state.mapping_store.flush()

    import json

    on_disk = json.loads((tmp_path / "song-mapping.json").read_text(encoding="utf-8"))
    assert list(on_disk) == [lookup_key("Song", "Artist")]


def test_check_zero_byte_cache_file_is_not_cached(api, cache_root) -> None:
    module, client = api
    module.app.state.mapping_store.record("Song", "Artist", "abc123", "Song")
    (cache_root / "abc123.mp3").write_bytes(b"")

    response = client.get("/cache/check", params={"title": "Song", "artist": "Artist"})

    assert response.status_code == 200
    body = response.json()
    assert body["cached"] is False
    assert body["needSearch"] is False
    assert body["sourceId"] == "abc123"
    assert "audioUrl" not in body


@pytest.mark.parametrize("path", ["/audio/stream", "/audio/download"])
def test_timed_out_final_strategy_is_408(api, tmp_path, cache_root, fake_ytdlp, path) -> None:
    module, client = api
    module.configure_engine(
        module.app.state,
        str(cache_root),
        str(tmp_path / "song-mapping.json"),
        ytdlp_command=fake_ytdlp.command,
        strategies=tuple(replace(strategy, timeout_ms=500) for strategy in DEFAULT_STRATEGIES),
        debounce_seconds=0,
    )
    fake_ytdlp.configure(default="sleep", sleep_seconds=30)

    response = client.get(path, params={"sourceId": "abc123"})

    assert response.status_code == 408
    assert response.json()["error"] == "Request timeout"
    assert [name for name in os.listdir(cache_root) if ".temp." in name] == []


def test_resolve_replaces_invalid_mapped_id_with_search(api) -> None:
    module, client = api
    module.app.state.mapping_store.record("Song", "Artist", "../bad", "Broken")

    response = client.get("/audio/resolve", params={"title": "Song", "artist": "Artist", "acquire": "false"})

    assert response.status_code == 200
    assert response.json()["sourceId"] == "abc123"
    assert _FakeYDL.seen
    assert module.app.state.mapping_store.lookup("Song", "Artist").source_id == "abc123"


def test_stream_reopens_when_cache_file_is_replaced(api, cache_root, monkeypatch) -> None:
    module, client = api
    _write_cached(cache_root)
    service = module.app.state.audio_service
    original_open = service.open_stream
    opened = []

    def _open_then_normalize(source_id):
        kind, target = original_open(source_id)
        if not opened:
            # Simulates prepare/start swapping the container under the reader.
            (cache_root / "abc123.mp3").write_bytes(b"ID3converted")
            os.unlink(target)
        opened.append(target)
        return kind, target

    monkeypatch.setattr(service, "open_stream", _open_then_normalize)
    response = client.get("/audio/stream", params={"sourceId": "abc123"})

    assert response.status_code == 200
    assert response.content == b"ID3converted"
    assert response.headers["content-type"] == "audio/mpeg"
    assert len(opened) == 2


def test_download_of_vanishing_file_is_structured_404(api, cache_root, monkeypatch) -> None:
    module, client = api
    service = module.app.state.audio_service

    def _evicted(source_id):
        path = cache_root / f"{source_id}.m4a"
        path.write_bytes(b"\x00" * 10)
        os.unlink(path)
        return str(path)

    monkeypatch.setattr(service, "ensure_cached", _evicted)
    response = client.get("/audio/download", params={"sourceId": "abc123"})

    assert response.status_code == 404
    assert response.headers["content-type"] == "application/json"
    assert response.json()["error"] == "Audio file not found"
    assert set(response.json()) == {"error", "details"}


def test_cancelled_open_closes_the_late_stream(api) -> None:
    module, _ = api
    closed = []

    class _Stream:
        def close(self):
            closed.append(True)

    class _SlowService:
        def open_stream(self, source_id):
            time.sleep(0.3)
            return "stream", _Stream()

    async def _request_gives_up():
        with anyio.move_on_after(0.05):
            await module._open_audio(_SlowService(), "abc123")

    anyio.run(_request_gives_up)

    assert closed == [True]
