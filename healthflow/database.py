from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, tzinfo
from pathlib import Path

from .models import (
    EntryAnalysis,
    EntryType,
    PendingEntryPayload,
    ProcessingStatus,
    TrackedEntry,
    payload_from_dict,
    payload_to_dict,
)
from .timeutil import ensure_utc, utc_bounds_for_local_day

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tracked_entries (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT,
    entry_type TEXT NOT NULL,
    captured_at TEXT NOT NULL,
    captured_at_time_zone_id TEXT,
    captured_at_offset_minutes INTEGER,
    blob_path TEXT,
    data_payload TEXT NOT NULL DEFAULT '{}',
    data_schema_version INTEGER NOT NULL DEFAULT 0,
    processing_status TEXT NOT NULL DEFAULT 'Pending'
);

CREATE INDEX IF NOT EXISTS idx_tracked_entries_captured_at
ON tracked_entries(captured_at);

CREATE INDEX IF NOT EXISTS idx_tracked_entries_type_captured_at
ON tracked_entries(entry_type, captured_at);

CREATE TABLE IF NOT EXISTS entry_analyses (
    analysis_id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id INTEGER NOT NULL REFERENCES tracked_entries(entry_id) ON DELETE CASCADE,
    external_id TEXT,
    provider_id TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL DEFAULT '',
    captured_at TEXT NOT NULL,
    insights_json TEXT NOT NULL DEFAULT '',
    schema_version TEXT NOT NULL DEFAULT 'unknown'
);

CREATE INDEX IF NOT EXISTS idx_entry_analyses_entry_id
ON entry_analyses(entry_id);

CREATE TABLE IF NOT EXISTS app_settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class HealthFlowDatabase:
    def __init__(self, db_file: Path):
        self._db_file = Path(db_file)
        self._db_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_file

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_file, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _connection(self):
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self._connection() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()

    def session(self) -> "DatabaseSession":
        """Open a session with its own connection; each unit of work should use its own."""
        return DatabaseSession(self.connect())

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                "SELECT value FROM app_settings WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return default
        return str(row["value"])

    def set_setting(self, key: str, value: str) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO app_settings(key, value)
                VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()


class DatabaseSession:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        self._lock = threading.Lock()
        self.entries = EntryRepository(conn, self._lock)
        self.analyses = AnalysisRepository(conn, self._lock)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "DatabaseSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class EntryRepository:
    def __init__(self, conn: sqlite3.Connection, lock: threading.Lock | None = None):
        self._conn = conn
        self._lock = lock or threading.Lock()

    def add(self, entry: TrackedEntry) -> int:
        if entry.external_id is None:
            entry.external_id = str(uuid.uuid4())
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO tracked_entries(
                    external_id,
                    entry_type,
                    captured_at,
                    captured_at_time_zone_id,
                    captured_at_offset_minutes,
                    blob_path,
                    data_payload,
                    data_schema_version,
                    processing_status
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.external_id,
                    entry.entry_type.value,
                    _to_db_time(entry.captured_at),
                    entry.captured_at_time_zone_id,
                    entry.captured_at_offset_minutes,
                    entry.blob_path,
                    json.dumps(payload_to_dict(entry.payload)),
                    int(entry.data_schema_version),
                    entry.processing_status.value,
                ),
            )
            self._conn.commit()
        entry.entry_id = int(cursor.lastrowid)
        return entry.entry_id

    def update(self, entry: TrackedEntry) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE tracked_entries SET
                    external_id = ?,
                    entry_type = ?,
                    captured_at = ?,
                    captured_at_time_zone_id = ?,
                    captured_at_offset_minutes = ?,
                    blob_path = ?,
                    data_payload = ?,
                    data_schema_version = ?,
                    processing_status = ?
                WHERE entry_id = ?
                """,
                (
                    entry.external_id,
                    entry.entry_type.value,
                    _to_db_time(entry.captured_at),
                    entry.captured_at_time_zone_id,
                    entry.captured_at_offset_minutes,
                    entry.blob_path,
                    json.dumps(payload_to_dict(entry.payload)),
                    int(entry.data_schema_version),
                    entry.processing_status.value,
                    int(entry.entry_id),
                ),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def update_processing_status(self, entry_id: int, status: ProcessingStatus) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE tracked_entries SET processing_status = ? WHERE entry_id = ?",
                (status.value, int(entry_id)),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def get_by_id(self, entry_id: int) -> TrackedEntry | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM tracked_entries WHERE entry_id = ?",
                (int(entry_id),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_entry(row)

    def list_in_window(
        self,
        start_utc: datetime,
        end_utc: datetime,
        entry_type: EntryType | None = None,
    ) -> list[TrackedEntry]:
        query = "SELECT * FROM tracked_entries WHERE captured_at >= ? AND captured_at < ?"
        params: list[object] = [_to_db_time(start_utc), _to_db_time(end_utc)]
        if entry_type is not None:
            query += " AND entry_type = ?"
            params.append(entry_type.value)
        query += " ORDER BY captured_at ASC, entry_id ASC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def list_by_day(self, local_date: date, tz: tzinfo | None = None) -> list[TrackedEntry]:
        start, end = utc_bounds_for_local_day(local_date, tz)
        return self.list_in_window(start, end)

    def list_by_type_and_day(
        self,
        entry_type: EntryType,
        local_date: date,
        tz: tzinfo | None = None,
    ) -> list[TrackedEntry]:
        start, end = utc_bounds_for_local_day(local_date, tz)
        return self.list_in_window(start, end, entry_type)

    def list_by_status(self, status: ProcessingStatus) -> list[TrackedEntry]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM tracked_entries
                WHERE processing_status = ?
                ORDER BY captured_at ASC, entry_id ASC
                """,
                (status.value,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def delete(self, entry_id: int) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM tracked_entries WHERE entry_id = ?",
                (int(entry_id),),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> TrackedEntry:
        entry_type = EntryType.from_storage(row["entry_type"])
        try:
            raw_payload = json.loads(row["data_payload"] or "{}")
            payload = payload_from_dict(raw_payload, entry_type)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Entry %s has an unreadable payload (%s); using a pending payload.", row["entry_id"], exc)
            payload = PendingEntryPayload()

        try:
            status = ProcessingStatus(row["processing_status"])
        except ValueError:
            status = ProcessingStatus.PENDING

        offset = row["captured_at_offset_minutes"]
        return TrackedEntry(
            entry_id=int(row["entry_id"]),
            external_id=row["external_id"],
            entry_type=entry_type,
            captured_at=_from_db_time(row["captured_at"]),
            captured_at_time_zone_id=row["captured_at_time_zone_id"],
            captured_at_offset_minutes=int(offset) if offset is not None else None,
            blob_path=row["blob_path"],
            payload=payload,
            data_schema_version=int(row["data_schema_version"]),
            processing_status=status,
        )


class AnalysisRepository:
    def __init__(self, conn: sqlite3.Connection, lock: threading.Lock | None = None):
        self._conn = conn
        self._lock = lock or threading.Lock()

    def add(self, analysis: EntryAnalysis) -> int:
        if analysis.external_id is None:
            analysis.external_id = str(uuid.uuid4())
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO entry_analyses(
                    entry_id, external_id, provider_id, model, captured_at, insights_json, schema_version
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(analysis.entry_id),
                    analysis.external_id,
                    analysis.provider_id,
                    analysis.model,
                    _to_db_time(analysis.captured_at),
                    analysis.insights_json,
                    analysis.schema_version,
                ),
            )
            self._conn.commit()
        analysis.analysis_id = int(cursor.lastrowid)
        return analysis.analysis_id

    def update(self, analysis: EntryAnalysis) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE entry_analyses SET
                    entry_id = ?,
                    external_id = ?,
                    provider_id = ?,
                    model = ?,
                    captured_at = ?,
                    insights_json = ?,
                    schema_version = ?
                WHERE analysis_id = ?
                """,
                (
                    int(analysis.entry_id),
                    analysis.external_id,
                    analysis.provider_id,
                    analysis.model,
                    _to_db_time(analysis.captured_at),
                    analysis.insights_json,
                    analysis.schema_version,
                    int(analysis.analysis_id),
                ),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def get_by_entry_id(self, entry_id: int) -> EntryAnalysis | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT * FROM entry_analyses
                WHERE entry_id = ?
                ORDER BY captured_at DESC, analysis_id DESC
                LIMIT 1
                """,
                (int(entry_id),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_analysis(row)

    def list_for_entry(self, entry_id: int) -> list[EntryAnalysis]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM entry_analyses WHERE entry_id = ? ORDER BY analysis_id ASC",
                (int(entry_id),),
            ).fetchall()
        return [self._row_to_analysis(row) for row in rows]

    def list_in_window(self, start_utc: datetime, end_utc: datetime) -> list[EntryAnalysis]:
        """Analyses whose owning entry was captured inside ``[start_utc, end_utc)``."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT a.*
                FROM entry_analyses AS a
                JOIN tracked_entries AS e ON e.entry_id = a.entry_id
                WHERE e.captured_at >= ? AND e.captured_at < ?
                ORDER BY a.captured_at ASC, a.analysis_id ASC
                """,
                (_to_db_time(start_utc), _to_db_time(end_utc)),
            ).fetchall()
        return [self._row_to_analysis(row) for row in rows]

    def list_by_day(self, local_date: date, tz: tzinfo | None = None) -> list[EntryAnalysis]:
        start, end = utc_bounds_for_local_day(local_date, tz)
        return self.list_in_window(start, end)

    @staticmethod
    def _row_to_analysis(row: sqlite3.Row) -> EntryAnalysis:
        return EntryAnalysis(
            analysis_id=int(row["analysis_id"]),
            entry_id=int(row["entry_id"]),
            external_id=row["external_id"],
            provider_id=str(row["provider_id"]),
            model=str(row["model"]),
            captured_at=_from_db_time(row["captured_at"]),
            insights_json=str(row["insights_json"]),
            schema_version=str(row["schema_version"]),
        )


def _to_db_time(value: datetime) -> str:
    return ensure_utc(value).isoformat(timespec="microseconds")


def _from_db_time(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(str(value)))
