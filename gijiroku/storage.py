"""SQLite backed local cache of transcript and minutes records.

All records live as one JSON list under a fixed key, most recent first. The
store is a convenience cache: every public method logs storage problems and
degrades to a no-op instead of raising.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import List, Optional

from .config import APP_DIR
from .errors import StorageFailure
from .models import AudioRecord

logger = logging.getLogger(__name__)

DB_PATH = APP_DIR / "records.db"
STORAGE_KEY = "tmc-noter-records"
MAX_RECORDS = 100
SCHEMA_VERSION = 1


class RecordStore:
    """Keep the most recent :data:`MAX_RECORDS` records in a SQLite file."""

    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = Path(db_path)
        try:
            self._ensure_initialised()
        except (OSError, sqlite3.Error) as exc:
            logger.warning("Record store at %s is unavailable: %s", self.db_path, exc)

    def _ensure_initialised(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS blobs (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "INSERT OR IGNORE INTO blobs(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def _read(self) -> List[AudioRecord]:
        try:
            with sqlite3.connect(self.db_path) as conn:
                row = conn.execute("SELECT value FROM blobs WHERE key = ?", (STORAGE_KEY,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageFailure(f"Failed to read records: {exc}") from exc
        if row is None:
            return []
        try:
            return [AudioRecord.from_dict(item) for item in json.loads(row[0])]
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageFailure(f"Stored records are corrupt: {exc}") from exc

    def _write(self, records: List[AudioRecord]) -> None:
        payload = json.dumps([record.to_dict() for record in records], ensure_ascii=False)
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO blobs(key, value) VALUES(?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (STORAGE_KEY, payload),
                )
        except sqlite3.Error as exc:
            raise StorageFailure(f"Failed to write records: {exc}") from exc

    def save(self, record: AudioRecord) -> None:
        """Insert ``record`` at the front, or replace the entry with the same id."""

        try:
            records = self._read()
            for index, existing in enumerate(records):
                if existing.id == record.id:
                    records[index] = record
                    break
            else:
                records.insert(0, record)
            self._write(records[:MAX_RECORDS])
        except StorageFailure as exc:
            logger.warning("Failed to save record %s: %s", record.id, exc)

    def list(self) -> List[AudioRecord]:
        try:
            return self._read()
        except StorageFailure as exc:
            logger.warning("Failed to list records: %s", exc)
            return []

    def get(self, record_id: str) -> Optional[AudioRecord]:
        for record in self.list():
            if record.id == record_id:
                return record
        return None

    def delete(self, record_id: str) -> None:
        try:
            records = self._read()
            self._write([r for r in records if r.id != record_id])
        except StorageFailure as exc:
            logger.warning("Failed to delete record %s: %s", record_id, exc)

    def clear(self) -> None:
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("DELETE FROM blobs WHERE key = ?", (STORAGE_KEY,))
        except sqlite3.Error as exc:
            logger.warning("Failed to clear records: %s", exc)
