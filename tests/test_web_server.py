from __future__ import annotations

import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from db_manager import SongsDatabase, StoreUnavailableError
from web_server import WELCOME_TEXT, create_app


@pytest.fixture
def store(tmp_path) -> SongsDatabase:
    return SongsDatabase(str(tmp_path / "api.db"))


@pytest.fixture
def client(store):
    with TestClient(create_app(store)) as test_client:
        yield test_client


def test_home_returns_welcome_text(client) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert response.text == WELCOME_TEXT


def test_added_song_is_listed(client) -> None:
    response = client.post("/api/song", json={"title": "X", "url": "u", "duration": "1:00"})

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Song added successfully"
    song_id = body["result"]["id"]

    songs = client.get("/api/songs").json()
    assert [(song["id"], song["title"], song["audio_url"], song["audio_duration"]) for song in songs] == [
        (song_id, "X", "u", "1:00")
    ]
    assert songs[0]["audio_owner_name"] == "Unknown Author"
    assert songs[0]["genres"] == []


def test_add_multiple_songs(client) -> None:
    response = client.post(
        "/api/songs",
        json={"songs": [
            {"title": "One", "url": "u1", "duration": "1:00"},
            {"title": "Two", "url": "u2", "duration": "2:00"},
        ]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "2 songs added successfully"
    assert len(body["result"]["ids"]) == 2
    assert [song["title"] for song in client.get("/api/songs").json()] == ["One", "Two"]


def test_store_errors_become_500_with_message(client) -> None:
    payload = {"title": "Twice", "url": "u", "duration": "1:00"}
    client.post("/api/song", json=payload)

    response = client.post("/api/song", json=payload)

    assert response.status_code == 500
    assert "Twice" in response.json()["error"]


def test_failed_batch_stores_nothing(client) -> None:
    response = client.post(
        "/api/songs",
        json={"songs": [{"title": "Same"}, {"title": "Same"}]},
    )

    assert response.status_code == 500
    assert "error" in response.json()
    assert client.get("/api/songs").json() == []


def test_list_failure_returns_500(client, store, monkeypatch) -> None:
    def unavailable():
        raise StoreUnavailableError("database is locked")

    monkeypatch.setattr(store, "list_songs", unavailable)

    response = client.get("/api/songs")

    assert response.status_code == 500
    assert response.json() == {"error": "database is locked"}


def test_song_without_title_is_rejected(client) -> None:
    response = client.post("/api/song", json={"url": "u"})

    assert response.status_code == 422


def test_health_reports_song_count(client) -> None:
    client.post("/api/song", json={"title": "X"})

    assert client.get("/api/health").json() == {"status": "healthy", "songs": 1}
