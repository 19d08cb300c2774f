#!/usr/bin/env python3
"""
Song Ingester

Reconciles scraped song records against the catalog database: skips songs
that are already stored, inserts new ones, upserts and links their genres,
moods and themes, and queues records that fail to a persistent failure log.
"""

import asyncio
import json
import logging
import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Any, Iterable, Optional, Tuple, Union

import config
from db_manager import SongsDatabase, StoreUnavailableError
from models import ExtractionRecord, TermNamespace

logger = logging.getLogger(__name__)

RecordLike = Union[ExtractionRecord, Dict[str, Any]]


@dataclass
class IngestReport:
    """Outcome of one ingestion run.

    Every record lands in exactly one of ``inserted``, ``relinked``,
    ``skipped`` or ``failed``. ``incomplete`` holds the ids of stored songs
    whose term links partly failed; their records are also in ``failed`` so
    they get queued for a retry.
    """
    inserted: List[int] = field(default_factory=list)
    relinked: List[int] = field(default_factory=list)
    skipped: List[ExtractionRecord] = field(default_factory=list)
    failed: List[RecordLike] = field(default_factory=list)
    incomplete: List[int] = field(default_factory=list)
    term_errors: int = 0

    @property
    def total(self) -> int:
        return len(self.inserted) + len(self.relinked) + len(self.skipped) + len(self.failed)

    def merge(self, other: 'IngestReport') -> None:
        self.inserted.extend(other.inserted)
        self.relinked.extend(other.relinked)
        self.skipped.extend(other.skipped)
        self.failed.extend(other.failed)
        self.incomplete.extend(other.incomplete)
        self.term_errors += other.term_errors

    def summary(self) -> str:
        return (
            f"{len(self.inserted)} inserted, {len(self.skipped)} skipped, "
            f"{len(self.failed)} failed ({len(self.incomplete)} with missing links), "
            f"{self.term_errors} term errors"
        )


def _as_record(record: RecordLike) -> ExtractionRecord:
    if isinstance(record, ExtractionRecord):
        return record
    return ExtractionRecord.from_scraped_data(record)


def _record_json(record: RecordLike) -> Dict[str, Any]:
    # Raw dictionaries that never validated are logged as they came in
    if isinstance(record, ExtractionRecord):
        return record.to_json()
    return dict(record)


def _record_title(record: RecordLike) -> Any:
    if isinstance(record, ExtractionRecord):
        return record.title
    if isinstance(record, dict):
        return record.get('title')
    return None


async def _link_terms(db: SongsDatabase, song_id: int, record: ExtractionRecord) -> int:
    """Upsert and link every term of a record. Returns the number of names that failed."""
    errors = 0
    for namespace in TermNamespace:
        for name in record.terms(namespace):
            try:
                term_id = await asyncio.to_thread(db.upsert_term, namespace, name)
                await asyncio.to_thread(db.link_song_term, namespace, song_id, term_id)
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.error(f"Error linking {namespace.value} '{name}' to {record.title}: {e}")
                errors += 1
    return errors


async def ingest_records(
    db: SongsDatabase,
    records: Iterable[RecordLike],
    concurrency: int = config.DB_POOL_SIZE,
    relink_existing: bool = False,
) -> IngestReport:
    """
    Persist scraped records, one failure never stopping the others.

    Args:
        db: Connected catalog database
        records: Extraction records (or their dictionary form)
        concurrency: Maximum number of records written at the same time
        relink_existing: Re-run term linking for songs that are already
            stored instead of skipping them (used when retrying failures)

    Returns:
        IngestReport listing inserted ids, skipped and failed records
    """
    report = IngestReport()
    semaphore = asyncio.Semaphore(max(1, concurrency))
    key_locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    async def ingest_one(item: RecordLike) -> None:
        async with semaphore:
            try:
                record = _as_record(item)
            except Exception as e:
                logger.error(f"❌ Invalid song record {_record_title(item)!r}: {e}")
                report.failed.append(item)
                return

            key = (record.title, record.author)
            lock = key_locks.setdefault(key, asyncio.Lock())
            try:
                # Check-then-insert must not interleave for the same key
                async with lock:
                    song_id = await asyncio.to_thread(db.find_song_id, record.title, record.author)
                    if song_id is not None and not relink_existing:
                        logger.info(f"⚠️ Skipping {record.title} by {record.author}: already in the database")
                        report.skipped.append(record)
                        return

                    existed = song_id is not None
                    if not existed:
                        song_id = await asyncio.to_thread(db.insert_song, record)
                        logger.debug(f"Inserted song {record.title} (id {song_id})")

                    errors = await _link_terms(db, song_id, record)
            except Exception as e:
                logger.error(f"❌ Error inserting song: {record.title}: {e}")
                report.failed.append(record)
                return

            if errors:
                # The song row is stored but some links are missing
                report.term_errors += errors
                report.incomplete.append(song_id)
                report.failed.append(record)
            elif existed:
                report.relinked.append(song_id)
            else:
                report.inserted.append(song_id)

    await asyncio.gather(*(ingest_one(record) for record in records))

    logger.info(f"Ingestion complete: {report.summary()}")
    return report


def ingest_records_sync(db: SongsDatabase, records: Iterable[RecordLike], **kwargs) -> IngestReport:
    """Blocking wrapper around ingest_records for scripts and tests."""
    return asyncio.run(ingest_records(db, records, **kwargs))


# ============================================================================
# INTERMEDIATE FILES
# ============================================================================

def _write_json(path: Path, data: List[Dict[str, Any]]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def _read_json_list(path: Path) -> List[Dict[str, Any]]:
    path = Path(path)
    if not path.exists():
        return []

    with open(path, 'r', encoding='utf-8') as f:
        content = f.read()
    if not content.strip():
        return []

    data = json.loads(content)
    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON array in {path}, got {type(data).__name__}")
    return data


def save_records(path: Path, records: Iterable[RecordLike]) -> None:
    """Write pending records to the metadata file."""
    _write_json(path, [_as_record(record).to_json() for record in records])


def load_records(path: Path) -> List[ExtractionRecord]:
    """Read pending records from the metadata file."""
    return [ExtractionRecord.from_scraped_data(item) for item in _read_json_list(path)]


def read_failure_log(path: Path) -> List[Dict[str, Any]]:
    """Previously failed records; a missing or empty log reads as []."""
    return _read_json_list(path)


def append_failure_log(path: Path, records: Iterable[RecordLike]) -> int:
    """Append failed records to the log, keeping earlier entries. Returns the log size."""
    new_entries = [_record_json(record) for record in records]
    if not new_entries:
        return len(read_failure_log(path))

    entries = read_failure_log(path) + new_entries
    _write_json(path, entries)
    logger.warning(f"❌ {len(new_entries)} songs failed to insert. See {path} for details.")
    return len(entries)


async def ingest_and_log(
    db: SongsDatabase,
    records: Iterable[RecordLike],
    failed_log: Path = config.FAILED_SONGS_FILE,
    concurrency: int = config.DB_POOL_SIZE,
) -> IngestReport:
    """Ingest records and append whatever failed to the failure log."""
    report = await ingest_records(db, records, concurrency=concurrency)
    if report.failed:
        append_failure_log(failed_log, report.failed)
    return report


async def retry_failed(
    db: SongsDatabase,
    failed_log: Path = config.FAILED_SONGS_FILE,
    concurrency: int = config.DB_POOL_SIZE,
) -> IngestReport:
    """
    Re-ingest the failure log.

    Songs already stored get their term links completed. Records that go
    through are dropped from the log; the ones that fail again stay.
    """
    records = read_failure_log(failed_log)
    if not records:
        logger.info(f"No failed songs to retry in {failed_log}")
        return IngestReport()

    logger.info(f"🔁 Retrying {len(records)} failed songs from {failed_log}")
    report = await ingest_records(db, records, concurrency=concurrency, relink_existing=True)
    _write_json(failed_log, [_record_json(record) for record in report.failed])
    return report


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Load scraped song metadata into the database.')
    parser.add_argument('--input', '-i', type=Path, default=config.OUTPUT_JSON,
                        help=f'Metadata JSON file (default: {config.OUTPUT_JSON})')
    parser.add_argument('--failed-log', type=Path, default=config.FAILED_SONGS_FILE,
                        help=f'Failure log JSON file (default: {config.FAILED_SONGS_FILE})')
    parser.add_argument('--retry-failed', action='store_true',
                        help='Retry the records in the failure log instead of reading --input')
    parser.add_argument('--db', type=str, default=config.DB_PATH,
                        help=f'SQLite database path (default: {config.DB_PATH})')
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    """Main function to ingest a metadata file (or the failure log)."""
    args = parse_args(argv)

    db = SongsDatabase(args.db)
    try:
        db.connect()
        db.create_tables()
    except StoreUnavailableError as e:
        logger.error(f"Database unavailable: {e}")
        return 1

    try:
        if args.retry_failed:
            report = await retry_failed(db, args.failed_log)
        else:
            # Validated per record by the reconciler
            records = _read_json_list(args.input)
            logger.info(f"✅ Loaded {len(records)} songs from {args.input}")
            report = await ingest_and_log(db, records, args.failed_log)
    except StoreUnavailableError as e:
        logger.error(f"Database unavailable: {e}")
        return 1
    finally:
        db.close()

    print(f"🗄️  {report.summary()}")
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO if not config.DEBUG else logging.DEBUG,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    try:
        exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n❌ Operation cancelled by user.")
        exit(1)
