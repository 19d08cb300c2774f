#!/usr/bin/env python3
"""
Database Manager for Pixabay Songs
Owns the songs × genres × moods × themes schema and every read/write on it
"""

import sqlite3
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import List, Dict, Any, Optional, Iterable

import config
from models import ExtractionRecord, TermNamespace

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for catalog store errors."""


class StoreUnavailableError(StoreError):
    """The database cannot be opened or stopped answering."""


class DuplicateSongError(StoreError):
    """A song with the same title and owner is already stored."""


@dataclass(frozen=True)
class _TermTables:
    """Prebuilt SQL for one taxonomy namespace."""
    create_terms: str
    create_links: str
    upsert: str
    link: str
    names_by_song: str


def _term_tables(terms_table: str, links_table: str, term_column: str) -> _TermTables:
    # Only ever called with the literals below, never with caller input.
    return _TermTables(
        create_terms=f'''
            CREATE TABLE IF NOT EXISTS {terms_table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT UNIQUE NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''',
        create_links=f'''
            CREATE TABLE IF NOT EXISTS {links_table} (
                song_id INTEGER NOT NULL,
                {term_column} INTEGER NOT NULL,
                PRIMARY KEY (song_id, {term_column}),
                FOREIGN KEY (song_id) REFERENCES songs (id),
                FOREIGN KEY ({term_column}) REFERENCES {terms_table} (id)
            )
        ''',
        upsert=f'''
            INSERT INTO {terms_table} (name) VALUES (?)
            ON CONFLICT(name) DO UPDATE SET name = excluded.name
            RETURNING id
        ''',
        link=f'INSERT OR IGNORE INTO {links_table} (song_id, {term_column}) VALUES (?, ?)',
        names_by_song=f'''
            SELECT l.song_id AS song_id, t.name AS name
            FROM {links_table} l
            JOIN {terms_table} t ON t.id = l.{term_column}
            ORDER BY t.name
        ''',
    )


TERM_TABLES: Dict[TermNamespace, _TermTables] = {
    TermNamespace.GENRE: _term_tables('genres', 'song_genres', 'genre_id'),
    TermNamespace.MOOD: _term_tables('moods', 'song_moods', 'mood_id'),
    TermNamespace.THEME: _term_tables('themes', 'song_themes', 'theme_id'),
}

# Key under which each namespace's names are exposed on a song row
TERM_FIELDS = {
    TermNamespace.GENRE: 'genres',
    TermNamespace.MOOD: 'moods',
    TermNamespace.THEME: 'themes',
}


def _tables_for(namespace) -> _TermTables:
    """Resolve a namespace to its fixed SQL. Anything else is a programming error."""
    if not isinstance(namespace, TermNamespace):
        try:
            namespace = TermNamespace(namespace)
        except ValueError:
            raise ValueError(f"Unknown taxonomy namespace: {namespace!r}")
    return TERM_TABLES[namespace]


class SongsDatabase:
    def __init__(self, db_path: str = config.DB_PATH):
        self.db_path = str(db_path)
        self.connection = None
        self._lock = threading.RLock()

    def connect(self):
        """Connect to SQLite database"""
        try:
            if self.db_path != ':memory:':
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.connection = sqlite3.connect(self.db_path, check_same_thread=False)
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"Cannot open database {self.db_path}: {e}") from e
        self.connection.row_factory = sqlite3.Row  # Enable dict-like access
        return self.connection

    def close(self):
        """Close database connection"""
        with self._lock:
            if self.connection:
                self.connection.close()
                self.connection = None

    @contextmanager
    def _cursor(self):
        """Yield a cursor inside one transaction, holding the connection lock."""
        with self._lock:
            if self.connection is None:
                raise StoreUnavailableError("Database is not connected")
            cursor = self.connection.cursor()
            try:
                yield cursor
                self.connection.commit()
            except sqlite3.OperationalError as e:
                self.connection.rollback()
                raise StoreUnavailableError(str(e)) from e
            except Exception:
                self.connection.rollback()
                raise
            finally:
                cursor.close()

    def create_tables(self):
        """Create database tables"""
        with self._cursor() as cursor:
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS songs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    audio_filename TEXT,
                    audio_owner_name TEXT NOT NULL,
                    audio_duration TEXT,
                    audio_url TEXT,
                    cover_image_url TEXT,
                    cover_filename TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            # Backstop for the (title, owner) dedup key
            cursor.execute(
                'CREATE UNIQUE INDEX IF NOT EXISTS idx_songs_title_owner '
                'ON songs(title, audio_owner_name)'
            )

            for tables in TERM_TABLES.values():
                cursor.execute(tables.create_terms)
                cursor.execute(tables.create_links)

        logger.info("Database tables created successfully")

    def find_song_id(self, title: str, owner: str) -> Optional[int]:
        """Id of the song stored under (title, owner), if any"""
        with self._cursor() as cursor:
            cursor.execute(
                'SELECT id FROM songs WHERE title = ? AND audio_owner_name = ? LIMIT 1',
                (title, owner)
            )
            row = cursor.fetchone()
        return row['id'] if row else None

    def song_exists(self, title: str, owner: str) -> bool:
        """Exact-match lookup on (title, owner)"""
        return self.find_song_id(title, owner) is not None

    def _insert_song_row(self, cursor, record: ExtractionRecord) -> int:
        try:
            cursor.execute('''
                INSERT INTO songs (
                    title, audio_filename, audio_owner_name, audio_duration,
                    audio_url, cover_image_url, cover_filename
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (
                record.title,
                record.filename,
                record.author,
                record.duration,
                record.audio_url,
                record.cover_image_url,
                record.cover_filename,
            ))
        except sqlite3.IntegrityError as e:
            raise DuplicateSongError(
                f"Song already exists: {record.title} by {record.author}"
            ) from e
        return cursor.lastrowid

    def insert_song(self, record: ExtractionRecord) -> int:
        """Insert a song row and return its id.

        Callers are expected to have checked song_exists() first; a row that
        collides on (title, owner) raises DuplicateSongError.
        """
        with self._cursor() as cursor:
            return self._insert_song_row(cursor, record)

    def insert_songs(self, records: Iterable[ExtractionRecord]) -> List[int]:
        """Insert several songs in one transaction; nothing is kept if one fails."""
        with self._cursor() as cursor:
            return [self._insert_song_row(cursor, record) for record in records]

    def upsert_term(self, namespace: TermNamespace, name: str) -> int:
        """Get-or-create a term by exact name and return its id."""
        tables = _tables_for(namespace)
        if not name or name == config.UNKNOWN_TERM:
            raise ValueError(f"Refusing to store sentinel term name: {name!r}")

        with self._cursor() as cursor:
            cursor.execute(tables.upsert, (name,))
            # Drain the RETURNING rows so the statement is finished before commit
            rows = cursor.fetchall()
            return rows[0][0]

    def link_song_term(self, namespace: TermNamespace, song_id: int, term_id: int) -> None:
        """Link a song to a term; linking an existing pair does nothing."""
        tables = _tables_for(namespace)
        with self._cursor() as cursor:
            cursor.execute(tables.link, (song_id, term_id))

    def _term_names_by_song(self, cursor) -> Dict[TermNamespace, Dict[int, List[str]]]:
        names = {}
        for namespace, tables in TERM_TABLES.items():
            cursor.execute(tables.names_by_song)
            by_song: Dict[int, List[str]] = {}
            for row in cursor.fetchall():
                by_song.setdefault(row['song_id'], []).append(row['name'])
            names[namespace] = by_song
        return names

    def list_songs(self) -> List[Dict[str, Any]]:
        """All songs with their genre, mood and theme names"""
        with self._cursor() as cursor:
            cursor.execute('SELECT * FROM songs ORDER BY id')
            songs = [dict(row) for row in cursor.fetchall()]
            term_names = self._term_names_by_song(cursor)

        for song in songs:
            for namespace, field in TERM_FIELDS.items():
                song[field] = term_names[namespace].get(song['id'], [])
        return songs

    def get_song(self, song_id: int) -> Optional[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute('SELECT * FROM songs WHERE id = ?', (song_id,))
            row = cursor.fetchone()
        return dict(row) if row else None

    def count_songs(self) -> int:
        with self._cursor() as cursor:
            cursor.execute('SELECT COUNT(*) FROM songs')
            return cursor.fetchone()[0]
