"""
Repository pattern for data access.

Handles the append-only usage ledger, the dead-letter sink and the
per-partition checkpoints.
"""

import sqlite3
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import DeadLetter, UsageRecord, as_utc
from usage_telemetry.core.errors import StorageTransientFailure

_RECORD_COLUMNS = """
    event_time, identity_key, operation, model, prompt_tokens,
    completion_tokens, total_tokens, raw_request, raw_response,
    request_id, status_code
"""


class UsageRepository:
    """Repository for the usage ledger and its bookkeeping tables.

    Write failures reported by SQLite as operational errors (locked
    database, busy timeout, I/O) are surfaced as StorageTransientFailure
    so that callers can retry them.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path
        self.timeout = timeout

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    def append_record(self, record: UsageRecord, dedup_key: str) -> bool:
        """Append a record once per dedup key.

        Returns:
            True if stored, False if the key was already applied

        Raises:
            StorageTransientFailure: If the write could not complete
        """
        try:
            return append_usage_record(record, dedup_key, self.db_path, self.timeout)
        except sqlite3.OperationalError as e:
            raise StorageTransientFailure(f"append failed: {e}") from e

    def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        try:
            insert_dead_letter(dead_letter, self.db_path, self.timeout)
        except sqlite3.OperationalError as e:
            raise StorageTransientFailure(f"dead-letter write failed: {e}") from e

    def save_checkpoint(self, partition: str, position: int) -> None:
        try:
            save_checkpoint(partition, position, self.db_path, self.timeout)
        except sqlite3.OperationalError as e:
            raise StorageTransientFailure(f"checkpoint write failed: {e}") from e

    def load_checkpoint(self, partition: str) -> Optional[int]:
        return load_checkpoint(partition, self.db_path)

    def get_checkpoints(self) -> Dict[str, int]:
        return fetch_checkpoints(self.db_path)

    def get_records(
        self,
        identity_key: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[UsageRecord]:
        """Range scan by identity and event time, oldest first."""
        return fetch_usage_records(identity_key, start, end, limit, self.db_path)

    def iter_records(self) -> Iterator[UsageRecord]:
        """Every stored record in arrival order."""
        return iter_all_usage_records(self.db_path)

    def get_dead_letters(
        self,
        partition: Optional[str] = None,
        limit: int = 100
    ) -> List[DeadLetter]:
        return fetch_dead_letters(partition, limit, self.db_path)

    def get_counts(self) -> Dict[str, int]:
        """Number of stored records and dead letters."""
        conn = get_connection(self.db_path, self.timeout)
        try:
            records = conn.execute("SELECT COUNT(*) FROM usage_record").fetchone()[0]
            dead = conn.execute("SELECT COUNT(*) FROM dead_letter").fetchone()[0]
            return {"records": records, "dead_letters": dead}
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, dead-letter and checkpoint tables if missing.

    usage_record is an append-only ledger: no UPDATE or DELETE is ever
    performed on it. The unique dedup_key guards against re-delivery.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                dedup_key TEXT NOT NULL UNIQUE,
                event_time TEXT NOT NULL,
                identity_key TEXT NOT NULL,
                operation TEXT,
                model TEXT,
                prompt_tokens INTEGER,
                completion_tokens INTEGER,
                total_tokens INTEGER,
                raw_request TEXT NOT NULL,
                raw_response TEXT,
                request_id TEXT,
                status_code INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_usage_record_identity_time
                ON usage_record (identity_key, event_time);
            CREATE TABLE IF NOT EXISTS dead_letter (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                dedup_key TEXT NOT NULL,
                partition TEXT NOT NULL,
                position INTEGER NOT NULL,
                payload TEXT NOT NULL,
                reason TEXT NOT NULL,
                recorded_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS checkpoint (
                partition TEXT PRIMARY KEY,
                position INTEGER NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


def append_usage_record(
    record: UsageRecord,
    dedup_key: str,
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = 5.0
) -> bool:
    """Insert a single usage record unless its dedup key was already applied.

    The record and its dedup key are written in one statement, so a
    partial write is never visible.

    Args:
        record: The usage record to store
        dedup_key: Key derived from the transport delivery position
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database

    Returns:
        True if the record was stored, False if it was a duplicate
    """
    conn = get_connection(db_path, timeout)
    try:
        cursor = conn.execute(f"""
            INSERT OR IGNORE INTO usage_record (dedup_key, {_RECORD_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            dedup_key,
            _format_time(record.event_time),
            record.identity_key,
            record.operation,
            record.model,
            record.prompt_tokens,
            record.completion_tokens,
            record.total_tokens,
            record.raw_request,
            record.raw_response,
            record.request_id,
            record.status_code
        ))
        conn.commit()
        return cursor.rowcount == 1
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_usage_records(
    identity_key: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageRecord]:
    """Fetch records for an identity within [start, end).

    Returns records in ascending event time order. This is a read-only
    operation that preserves the append-only nature.

    Args:
        identity_key: Optional filter for a specific caller
        start: Optional inclusive lower bound on event time
        end: Optional exclusive upper bound on event time
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by event time (oldest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_RECORD_COLUMNS} FROM usage_record"
        params = []
        conditions = []

        if identity_key is not None:
            conditions.append("identity_key = ?")
            params.append(identity_key)
        if start is not None:
            conditions.append("event_time >= ?")
            params.append(_format_time(start))
        if end is not None:
            conditions.append("event_time < ?")
            params.append(_format_time(end))

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY event_time ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = conn.execute(query, params)
        return [_row_to_record(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def iter_all_usage_records(db_path: str = DEFAULT_DB_PATH) -> Iterator[UsageRecord]:
    """Yield every stored record in arrival order."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(f"SELECT {_RECORD_COLUMNS} FROM usage_record ORDER BY id ASC")
        for row in cursor:
            yield _row_to_record(row)
    finally:
        conn.close()


def insert_dead_letter(
    dead_letter: DeadLetter,
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = 5.0
) -> None:
    """Append an unprocessable event and its failure reason."""
    conn = get_connection(db_path, timeout)
    try:
        conn.execute("""
            INSERT INTO dead_letter
            (dedup_key, partition, position, payload, reason, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            dead_letter.dedup_key,
            dead_letter.partition,
            dead_letter.position,
            dead_letter.payload,
            dead_letter.reason,
            _format_time(dead_letter.recorded_at)
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_dead_letters(
    partition: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[DeadLetter]:
    """Fetch dead letters, newest first."""
    conn = get_connection(db_path)
    try:
        query = """
            SELECT dedup_key, partition, position, payload, reason, recorded_at
            FROM dead_letter
        """
        params = []
        if partition:
            query += " WHERE partition = ?"
            params.append(partition)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [
            DeadLetter(
                dedup_key=row[0],
                partition=row[1],
                position=row[2],
                payload=row[3],
                reason=row[4],
                recorded_at=datetime.fromisoformat(row[5])
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


def save_checkpoint(
    partition: str,
    position: int,
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = 5.0
) -> None:
    """Persist the last fully committed position for a partition.

    Checkpoints never move backwards.
    """
    conn = get_connection(db_path, timeout)
    try:
        conn.execute("""
            INSERT INTO checkpoint (partition, position) VALUES (?, ?)
            ON CONFLICT(partition) DO UPDATE
            SET position = MAX(position, excluded.position)
        """, (partition, position))
        conn.commit()
    finally:
        conn.close()


def load_checkpoint(partition: str, db_path: str = DEFAULT_DB_PATH) -> Optional[int]:
    """Return the committed position for a partition, or None."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT position FROM checkpoint WHERE partition = ?", (partition,)
        ).fetchone()
        return row[0] if row else None
    finally:
        conn.close()


def fetch_checkpoints(db_path: str = DEFAULT_DB_PATH) -> Dict[str, int]:
    """All committed checkpoints keyed by partition."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("SELECT partition, position FROM checkpoint ORDER BY partition")
        return {row[0]: row[1] for row in cursor.fetchall()}
    finally:
        conn.close()


def _format_time(value: datetime) -> str:
    # Fixed-width UTC text so that string comparison matches time order
    return as_utc(value).isoformat(timespec="microseconds")


def _row_to_record(row) -> UsageRecord:
    return UsageRecord(
        event_time=datetime.fromisoformat(row[0]),
        identity_key=row[1],
        operation=row[2],
        model=row[3],
        prompt_tokens=row[4],
        completion_tokens=row[5],
        total_tokens=row[6],
        raw_request=row[7],
        raw_response=row[8],
        request_id=row[9],
        status_code=row[10]
    )
