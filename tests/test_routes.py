from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

pytest.importorskip("flask")
pytest.importorskip("yaml")

from webapp import create_app
from webapp.errors import ValidationError
from webapp.models import Track

from test_station_orchestrator import FakeEncoder


@pytest.fixture()
def app(tmp_path: Path):
    encoder = FakeEncoder()
    app = create_app(
        {
            "TESTING": True,
            "STATION": {
                "station": {"name": "Test FM"},
                "paths": {
                    "media_dir": str(tmp_path / "media"),
                    "hls_dir": str(tmp_path / "hls"),
                    "db_path": str(tmp_path / "db" / "station.db"),
                },
            },
        },
        encoder=encoder,
    )
    app.fake_encoder = encoder
    for track_id in ("a", "b"):
        app.store.add_track(
            Track(id=track_id, path=f"/media/{track_id}.mp3", title=track_id.upper(), duration_sec=30)
        )
    yield app
    app.station.shutdown()


@pytest.fixture()
def client(app):
    return app.test_client()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_invalid_station_config_rejected(tmp_path: Path):
    with pytest.raises(ValidationError):
        create_app({"STATION": {"server": {"port": 0}}}, encoder=FakeEncoder())


def test_playlist_roundtrip_and_start(client, app):
    response = client.put(
        "/api/admin/playlist",
        json={"trackIds": ["b", "a"], "shuffleEnabled": False, "startFromIndex": 0},
    )
    assert response.status_code == 200
    tracks = response.get_json()["playlist"]["tracks"]
    assert [track["id"] for track in tracks] == ["b", "a"]

    response = client.post("/api/admin/station/start")
    assert response.status_code == 200
    assert response.get_json()["success"] is True

    playing = client.get("/api/now-playing").get_json()
    assert playing["station"] == "Test FM"
    assert playing["isOnline"] is True
    assert playing["track"]["id"] == "b"

    recent = client.get("/api/recently-played?limit=5").get_json()["items"]
    assert [item["id"] for item in recent] == ["b"]

    upcoming = client.get("/api/upcoming?limit=3").get_json()["items"]
    assert [item["id"] for item in upcoming] == ["b", "a", "b"]

    status = client.get("/api/admin/station/status").get_json()
    assert status["phase"] == "playlist_active"
    assert status["mode"] == "playlist"

    response = client.post("/api/admin/station/skip")
    assert response.status_code == 200
    assert app.fake_encoder.last.source == "/media/a.mp3"

    response = client.post("/api/admin/station/stop")
    assert response.get_json()["success"] is True
    assert client.get("/api/now-playing").get_json()["isOnline"] is False


def test_playlist_rejects_unknown_track(client):
    response = client.put("/api/admin/playlist", json={"trackIds": ["nope"]})
    assert response.status_code == 400
    assert "nope" in response.get_json()["error"]


def test_playlist_rejects_bad_payload(client):
    assert client.put("/api/admin/playlist", json={"trackIds": "a"}).status_code == 400
    response = client.put(
        "/api/admin/playlist", json={"trackIds": ["a"], "startFromIndex": -2}
    )
    assert response.status_code == 400


def test_start_with_empty_playlist_is_400(client):
    response = client.post("/api/admin/station/start")
    assert response.status_code == 400
    assert response.get_json()["error"] == "Playlist is empty"


def test_skip_when_stopped_is_400(client):
    assert client.post("/api/admin/station/skip").status_code == 400


def test_mode_and_live_settings(client, app):
    response = client.post("/api/admin/station/mode", json={"mode": "radio"})
    assert response.status_code == 400

    response = client.put("/api/admin/station/live-input", json={"liveInputUrl": "nope"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid URL format"

    response = client.put(
        "/api/admin/station/live-input", json={"liveInputUrl": "https://example.com/live"}
    )
    assert response.status_code == 200
    response = client.put(
        "/api/admin/station/live-title", json={"liveBroadcastTitle": "Evening News"}
    )
    assert response.status_code == 200

    response = client.post("/api/admin/station/mode", json={"mode": "live"})
    assert response.get_json() == {"success": True, "mode": "live", "restarted": False}

    status = client.get("/api/admin/station/status").get_json()
    assert status["liveInputUrl"] == "https://example.com/live"
    assert status["liveBroadcastTitle"] == "Evening News"


def test_tracks_listing(client):
    items = client.get("/api/admin/tracks").get_json()["items"]
    assert sorted(item["id"] for item in items) == ["a", "b"]


def test_stream_serves_hls_files(client, app):
    output = app.hls_output
    output.playlist_path.write_text("#EXTM3U\n", encoding="utf-8")
    response = client.get(f"/stream/{output.playlist_name}")
    assert response.status_code == 200
    assert response.mimetype == "application/vnd.apple.mpegurl"
    response.close()

    (output.directory / "segment_001.ts").write_bytes(b"\x47" * 188)
    response = client.get("/stream/segment_001.ts")
    assert response.status_code == 200
    assert response.mimetype.lower() == "video/mp2t"
    response.close()

    assert client.get("/stream/station.db").status_code == 404
    assert client.get("/stream/missing.ts").status_code == 404


def test_delete_track_removes_media_and_playlist_entry(client, app, tmp_path: Path):
    media = tmp_path / "media" / "c.mp3"
    media.parent.mkdir(parents=True, exist_ok=True)
    media.write_bytes(b"ID3")
    app.store.add_track(Track(id="c", path=str(media), title="C", duration_sec=10))
    client.put("/api/admin/playlist", json={"trackIds": ["a", "c"]})

    response = client.delete("/api/admin/tracks/c")
    assert response.status_code == 200
    assert response.get_json() == {"success": True}
    assert not media.exists()
    playlist = client.get("/api/admin/playlist").get_json()
    assert [track["id"] for track in playlist["tracks"]] == ["a"]

    assert client.delete("/api/admin/tracks/c").status_code == 404
