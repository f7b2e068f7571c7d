"""
Content Hash Storage

SQLite persistence for the content-hash map used by change detection.

PRINCIPLES:
===========
1. One row per content id (upsert on commit)
2. Rows are only written for successfully analysed content
3. Deleting the database file is equivalent to clear()
"""

from __future__ import annotations
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, List
import sqlite3

from ..contracts import ContentHashRecord, SourceType, parse_timestamp, format_timestamp


class StorageError(Exception):
    """Unrecoverable persistence failure."""


class HashFileStore:
    """Persistent map content_id -> ContentHashRecord."""

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS content_hashes (
                    content_id TEXT PRIMARY KEY,
                    file_path TEXT NOT NULL,
                    last_modified TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    source_name TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_hashes_source
                    ON content_hashes(source_type);
            ''')

    @contextmanager
    def _get_conn(self):
        """Get database connection."""
        try:
            conn = sqlite3.connect(self._db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open hash store {self._db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def load(self) -> Dict[str, ContentHashRecord]:
        with self._get_conn() as conn:
            rows = conn.execute('SELECT * FROM content_hashes').fetchall()
        return {row['content_id']: self._row_to_record(row) for row in rows}

    def upsert(self, records: Iterable[ContentHashRecord]) -> int:
        rows = [
            (
                r.content_id,
                r.file_path,
                format_timestamp(r.last_modified),
                r.content_hash,
                r.source_type.value,
                r.source_name,
            )
            for r in records
        ]
        if not rows:
            return 0
        with self._get_conn() as conn:
            conn.executemany('''
                INSERT INTO content_hashes
                    (content_id, file_path, last_modified, content_hash, source_type, source_name)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(content_id) DO UPDATE SET
                    file_path = excluded.file_path,
                    last_modified = excluded.last_modified,
                    content_hash = excluded.content_hash,
                    source_type = excluded.source_type,
                    source_name = excluded.source_name
            ''', rows)
        return len(rows)

    def delete(self, content_ids: Iterable[str]) -> int:
        ids: List[str] = list(content_ids)
        if not ids:
            return 0
        with self._get_conn() as conn:
            cursor = conn.executemany(
                'DELETE FROM content_hashes WHERE content_id = ?',
                [(content_id,) for content_id in ids]
            )
            return cursor.rowcount

    def clear(self):
        with self._get_conn() as conn:
            conn.execute('DELETE FROM content_hashes')

    def count(self) -> int:
        with self._get_conn() as conn:
            return conn.execute('SELECT COUNT(*) FROM content_hashes').fetchone()[0]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ContentHashRecord:
        return ContentHashRecord(
            content_id=row['content_id'],
            file_path=row['file_path'],
            last_modified=parse_timestamp(row['last_modified']),
            content_hash=row['content_hash'],
            source_type=SourceType(row['source_type']),
            source_name=row['source_name'],
        )
