"""SQLite-backed storage for samples and outages.

Writes retry on ``sqlite3.OperationalError`` (locked / busy database). The
wait between attempts is SQLite's own ``busy_timeout``, kept short because
writes run on the event loop thread. Any ``sqlite3.Error`` that survives the
retries surfaces as ``StorageWriteError``; callers log it and in-memory
state is never rolled back.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from healthwatch.config import settings
from healthwatch.monitor.errors import NotFoundError, StorageWriteError
from healthwatch.monitor.models import Outage, Sample, SampleOutcome
from healthwatch.storage.base import outage_durations

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SQLiteStorage:
    """SQLite-backed storage for samples + outages."""

    def __init__(
        self,
        db_path: Path | str | None = None,
        retry_attempts: int | None = None,
        busy_timeout_ms: int | None = None,
    ) -> None:
        self._db_path = Path(db_path or settings.db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._retry_attempts = retry_attempts if retry_attempts is not None else settings.storage_retry_attempts
        self._busy_timeout_ms = busy_timeout_ms if busy_timeout_ms is not None else settings.storage_busy_timeout_ms
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                timestamp REAL NOT NULL,
                outcome TEXT NOT NULL,
                latency_ms REAL,
                error TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_samples_channel
                ON samples (channel_id, timestamp DESC);

            CREATE TABLE IF NOT EXISTS outages (
                id TEXT PRIMARY KEY,
                channel_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                failure_count INTEGER NOT NULL,
                start_time REAL NOT NULL,
                first_failure_time REAL NOT NULL,
                confirmed_at REAL NOT NULL,
                end_time REAL,
                duration REAL,
                actual_duration REAL
            );

            CREATE INDEX IF NOT EXISTS idx_outages_channel
                ON outages (channel_id, start_time DESC);
        """)
        conn.commit()

    def _write(self, op: Callable[[sqlite3.Connection], T]) -> T:
        """Run a write inside a transaction with bounded retries.

        Only ``OperationalError`` is retried; integrity or corruption errors
        fail on the first attempt.
        """
        attempts = max(1, self._retry_attempts)
        for attempt in range(1, attempts + 1):
            conn = self._get_conn()
            try:
                result = op(conn)
                conn.commit()
                return result
            except sqlite3.OperationalError as e:
                _rollback(conn)
                if attempt == attempts:
                    raise StorageWriteError(f"SQLite write failed after {attempts} attempts: {e}") from e
                logger.warning("SQLite write failed (attempt %d/%d): %s", attempt, attempts, e)
            except sqlite3.Error as e:
                _rollback(conn)
                raise StorageWriteError(f"SQLite write failed: {type(e).__name__}: {e}") from e
        raise StorageWriteError("SQLite write failed")

    # ── Samples ──────────────────────────────────────────────────────────

    def append_sample(self, sample: Sample) -> None:
        self._write(lambda conn: conn.execute(
            "INSERT INTO samples (channel_id, timestamp, outcome, latency_ms, error) "
            "VALUES (?, ?, ?, ?, ?)",
            (sample.channel_id, sample.timestamp, sample.outcome.value,
             sample.latency_ms, sample.error),
        ))

    def recent_samples(self, channel_id: str, limit: int = 100) -> list[Sample]:
        """Most recent samples first."""
        rows = self._get_conn().execute(
            "SELECT * FROM samples WHERE channel_id = ? "
            "ORDER BY timestamp DESC, id DESC LIMIT ?",
            (channel_id, limit),
        ).fetchall()
        return [_row_to_sample(r) for r in rows]

    def samples_since(self, channel_id: str, since: float) -> list[Sample]:
        rows = self._get_conn().execute(
            "SELECT * FROM samples WHERE channel_id = ? AND timestamp >= ? "
            "ORDER BY timestamp, id",
            (channel_id, since),
        ).fetchall()
        return [_row_to_sample(r) for r in rows]

    def cleanup_old(self, days: int = 30) -> int:
        """Remove samples older than N days. Open outages are never touched."""
        cutoff = time.time() - days * 86400
        cursor = self._write(lambda conn: conn.execute(
            "DELETE FROM samples WHERE timestamp < ?", (cutoff,),
        ))
        return cursor.rowcount

    # ── Outages ──────────────────────────────────────────────────────────

    def open_outage(self, outage: Outage) -> None:
        self._write(lambda conn: conn.execute(
            "INSERT INTO outages (id, channel_id, reason, failure_count, start_time, "
            "first_failure_time, confirmed_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (outage.id, outage.channel_id, outage.reason, outage.failure_count,
             outage.start_time, outage.first_failure_time, outage.confirmed_at),
        ))

    def close_outage(self, channel_id: str, end_time: float) -> tuple[float, float]:
        outage = self.get_open_outage(channel_id)
        if outage is None:
            raise NotFoundError(f"No open outage for channel '{channel_id}'")
        duration, actual = outage_durations(outage, end_time)
        self._write(lambda conn: conn.execute(
            "UPDATE outages SET end_time = ?, duration = ?, actual_duration = ? "
            "WHERE id = ? AND end_time IS NULL",
            (end_time, duration, actual, outage.id),
        ))
        return duration, actual

    def get_open_outage(self, channel_id: str) -> Outage | None:
        row = self._get_conn().execute(
            "SELECT * FROM outages WHERE channel_id = ? AND end_time IS NULL "
            "ORDER BY start_time DESC LIMIT 1",
            (channel_id,),
        ).fetchone()
        return _row_to_outage(row) if row else None

    def list_outages(
        self, channel_id: str | None = None, since: float | None = None,
    ) -> list[Outage]:
        clauses: list[str] = []
        params: list[Any] = []
        if channel_id:
            clauses.append("channel_id = ?")
            params.append(channel_id)
        if since is not None:
            clauses.append("start_time >= ?")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = self._get_conn().execute(
            f"SELECT * FROM outages {where}ORDER BY start_time DESC", params,
        ).fetchall()
        return [_row_to_outage(r) for r in rows]

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        conn.rollback()
    except sqlite3.Error:
        logger.warning("SQLite rollback failed", exc_info=True)


def _row_to_sample(row: sqlite3.Row) -> Sample:
    return Sample(
        channel_id=row["channel_id"],
        timestamp=row["timestamp"],
        outcome=SampleOutcome(row["outcome"]),
        latency_ms=row["latency_ms"],
        error=row["error"],
    )


def _row_to_outage(row: sqlite3.Row) -> Outage:
    return Outage(
        id=row["id"],
        channel_id=row["channel_id"],
        reason=row["reason"],
        failure_count=row["failure_count"],
        start_time=row["start_time"],
        first_failure_time=row["first_failure_time"],
        confirmed_at=row["confirmed_at"],
        end_time=row["end_time"],
        duration=row["duration"],
        actual_duration=row["actual_duration"],
    )
