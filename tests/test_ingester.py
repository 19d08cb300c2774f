from __future__ import annotations

import asyncio
import json

from ingester import (
    append_failure_log,
    ingest_and_log,
    ingest_records,
    ingest_records_sync,
    load_records,
    read_failure_log,
    retry_failed,
    save_records,
)
from models import ExtractionRecord, TermNamespace


def _count(db, table: str) -> int:
    return db.connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def _names(db, table: str) -> list[str]:
    return [row[0] for row in db.connection.execute(f"SELECT name FROM {table} ORDER BY name")]


def test_unknown_genre_is_never_persisted(db) -> None:
    report = ingest_records_sync(
        db, [{"title": "Calm", "audioOwnerName": "A", "genres": ["Chill", "Unknown"]}]
    )

    assert len(report.inserted) == 1
    assert _names(db, "genres") == ["Chill"]
    assert _count(db, "song_genres") == 1
    assert db.list_songs()[0]["genres"] == ["Chill"]


def test_second_run_is_a_clean_skip(db) -> None:
    record = ExtractionRecord(title="Calm", author="A", genres=["Chill"], moods=["Relaxed"])

    first = ingest_records_sync(db, [record])
    second = ingest_records_sync(db, [record])

    assert len(first.inserted) == 1
    assert second.inserted == []
    assert second.failed == []
    assert len(second.skipped) == 1
    assert db.count_songs() == 1
    assert _count(db, "song_genres") == 1


def test_duplicates_in_one_batch_store_one_row(db) -> None:
    records = [ExtractionRecord(title="Calm", author="A", genres=["Chill"]) for _ in range(6)]

    report = ingest_records_sync(db, records, concurrency=6)

    assert len(report.inserted) == 1
    assert len(report.skipped) == 5
    assert report.failed == []
    assert db.count_songs() == 1


def test_missing_owner_falls_back_to_unknown_author(db) -> None:
    ingest_records_sync(db, [{"title": "Loose", "audioOwnerName": None}])

    assert db.song_exists("Loose", "Unknown Author")


def test_failing_record_does_not_stop_the_others(db, monkeypatch) -> None:
    original_insert = db.insert_song

    def flaky_insert(record):
        if record.title == "Bad":
            raise RuntimeError("boom")
        return original_insert(record)

    monkeypatch.setattr(db, "insert_song", flaky_insert)

    records = [
        ExtractionRecord(title="Good One", author="A"),
        ExtractionRecord(title="Bad", author="A"),
        ExtractionRecord(title="Good Two", author="A"),
    ]
    report = ingest_records_sync(db, records)

    assert [record.title for record in report.failed] == ["Bad"]
    assert len(report.inserted) == 2
    assert db.song_exists("Good One", "A")
    assert db.song_exists("Good Two", "A")


def test_term_failure_keeps_sibling_terms(db, monkeypatch) -> None:
    original_upsert = db.upsert_term

    def flaky_upsert(namespace, name):
        if name == "Broken":
            raise RuntimeError("term write failed")
        return original_upsert(namespace, name)

    monkeypatch.setattr(db, "upsert_term", flaky_upsert)

    record = ExtractionRecord(title="Calm", author="A", genres=["Broken", "Chill"], themes=["Nature"])
    report = ingest_records_sync(db, [record])

    assert report.term_errors == 1
    assert [failed.title for failed in report.failed] == ["Calm"]
    assert _names(db, "genres") == ["Chill"]
    assert _names(db, "themes") == ["Nature"]


def test_null_term_name_does_not_abort_the_run(db) -> None:
    report = ingest_records_sync(
        db,
        [
            {"title": "Good", "audioOwnerName": "A", "genres": ["Rock"]},
            {"title": "Calm", "audioOwnerName": "A", "genres": ["Chill", None]},
        ],
    )

    assert report.failed == []
    assert len(report.inserted) == 2
    assert db.song_exists("Good", "A")
    assert db.song_exists("Calm", "A")
    assert _names(db, "genres") == ["Chill", "Rock"]


def test_invalid_record_is_failed_and_logged_raw(db, tmp_path) -> None:
    failed_log = tmp_path / "songs_error.json"
    broken = {"title": ["not", "a", "title"], "audioOwnerName": "A"}

    report = asyncio.run(
        ingest_and_log(db, [{"title": "Good", "audioOwnerName": "A"}, broken], failed_log)
    )

    assert len(report.inserted) == 1
    assert report.failed == [broken]
    assert read_failure_log(failed_log) == [broken]


def test_load_records_tolerates_null_term_names(tmp_path) -> None:
    metadata = tmp_path / "songs_metadata.json"
    metadata.write_text(json.dumps([{"title": "Calm", "audioOwnerName": "A", "genres": [None, "Chill"]}]))

    assert load_records(metadata)[0].genres == ["Chill"]


def test_record_with_term_errors_is_counted_once(db, monkeypatch) -> None:
    original_upsert = db.upsert_term

    def flaky_upsert(namespace, name):
        if name == "Broken":
            raise RuntimeError("term write failed")
        return original_upsert(namespace, name)

    monkeypatch.setattr(db, "upsert_term", flaky_upsert)

    report = ingest_records_sync(db, [ExtractionRecord(title="Calm", author="A", genres=["Broken"])])

    assert report.total == 1
    assert report.inserted == []
    assert report.incomplete == [db.find_song_id("Calm", "A")]
    assert [failed.title for failed in report.failed] == ["Calm"]


def test_blank_owner_matches_stored_unknown_author(db) -> None:
    db.insert_song(ExtractionRecord(title="Calm", author="Unknown Author"))

    report = ingest_records_sync(db, [ExtractionRecord(title="Calm", author="")])

    assert report.failed == []
    assert len(report.skipped) == 1
    assert db.count_songs() == 1


def test_retry_failed_completes_links_and_empties_log(db, tmp_path, monkeypatch) -> None:
    failed_log = tmp_path / "songs_error.json"
    record = ExtractionRecord(title="Calm", author="A", genres=["Broken", "Chill"])

    original_upsert = db.upsert_term

    def flaky_upsert(namespace, name):
        if name == "Broken":
            raise RuntimeError("term write failed")
        return original_upsert(namespace, name)

    monkeypatch.setattr(db, "upsert_term", flaky_upsert)
    asyncio.run(ingest_and_log(db, [record], failed_log))
    assert len(read_failure_log(failed_log)) == 1

    monkeypatch.setattr(db, "upsert_term", original_upsert)
    report = asyncio.run(retry_failed(db, failed_log))

    assert report.failed == []
    assert len(report.relinked) == 1
    assert db.count_songs() == 1
    assert _names(db, "genres") == ["Broken", "Chill"]
    assert read_failure_log(failed_log) == []


def test_retry_failed_with_no_log_is_a_no_op(db, tmp_path) -> None:
    report = asyncio.run(retry_failed(db, tmp_path / "missing.json"))

    assert report.total == 0


def test_failure_log_is_appended_not_overwritten(tmp_path) -> None:
    failed_log = tmp_path / "songs_error.json"
    failed_log.write_text(json.dumps([{"title": "Earlier", "audioOwnerName": "Z"}]))

    total = append_failure_log(
        failed_log,
        [ExtractionRecord(title="Later", author="A"), {"title": "Latest", "audioOwnerName": "B"}],
    )

    entries = read_failure_log(failed_log)
    assert total == 3
    assert [entry["title"] for entry in entries] == ["Earlier", "Later", "Latest"]


def test_missing_or_empty_failure_log_reads_as_empty(tmp_path) -> None:
    empty = tmp_path / "empty.json"
    empty.write_text("")

    assert read_failure_log(tmp_path / "missing.json") == []
    assert read_failure_log(empty) == []


def test_clean_run_does_not_create_failure_log(db, tmp_path) -> None:
    failed_log = tmp_path / "songs_error.json"

    report = asyncio.run(ingest_and_log(db, [ExtractionRecord(title="Calm", author="A")], failed_log))

    assert report.failed == []
    assert not failed_log.exists()


def test_metadata_file_uses_original_key_names(tmp_path) -> None:
    metadata = tmp_path / "songs_metadata.json"
    record = ExtractionRecord(
        title="Calm Sea",
        author="A",
        duration="2:10",
        detail_url="https://pixabay.com/music/calm-sea-1/",
        cover_image_url="https://cdn.pixabay.com/c.jpg",
        audio_url=None,
        genres=["Chill"],
    )

    save_records(metadata, [record])

    raw = json.loads(metadata.read_text())[0]
    assert raw["audioOwnerName"] == "A"
    assert raw["audioUrl"] is None
    assert raw["filename"] == "Calm_Sea.mp3"
    assert raw["coverfilename"] == "Calm_Sea.jpg"

    loaded = load_records(metadata)[0]
    assert loaded.author == "A"
    assert loaded.terms(TermNamespace.GENRE) == ["Chill"]


def test_ingest_records_accepts_an_empty_batch(db) -> None:
    report = asyncio.run(ingest_records(db, []))

    assert report.total == 0
