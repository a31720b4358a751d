"""Backing stores for the monthly spend counter."""

from __future__ import annotations

import calendar
import sqlite3
import threading
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

EXPIRY_GRACE_DAYS = 35


@dataclass(slots=True, frozen=True)
class CounterSnapshot:
    spend_usd: float = 0.0
    turn_count: int = 0
    updated_at: str | None = None


class CostCounterStore(Protocol):
    """Counter keyed by month; `increment` must be atomic."""

    def read(self, month_key: str) -> CounterSnapshot:
        """Return the current counter (zero when absent)."""

    def increment(
        self,
        month_key: str,
        spend_usd: float,
        turns: int,
        *,
        now: datetime,
    ) -> CounterSnapshot:
        """Add to spend and turn count and return the new totals."""


class InMemoryCostStore:
    """Process-local counter used for tests and single-worker deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, CounterSnapshot] = {}

    def read(self, month_key: str) -> CounterSnapshot:
        with self._lock:
            return self._counters.get(month_key, CounterSnapshot())

    def increment(
        self,
        month_key: str,
        spend_usd: float,
        turns: int,
        *,
        now: datetime,
    ) -> CounterSnapshot:
        with self._lock:
            current = self._counters.get(month_key, CounterSnapshot())
            updated = CounterSnapshot(
                spend_usd=current.spend_usd + spend_usd,
                turn_count=current.turn_count + turns,
                updated_at=now.isoformat(),
            )
            self._counters[month_key] = updated
            return updated

    def seed(self, month_key: str, spend_usd: float, turn_count: int) -> None:
        with self._lock:
            self._counters[month_key] = CounterSnapshot(spend_usd, turn_count)


class SqliteCostStore:
    """SQLite counter shared by every worker on one host.

    Increments are a single UPSERT statement, so concurrent turns never lose
    updates.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _ensure_cost_table(self.path)

    def read(self, month_key: str) -> CounterSnapshot:
        with closing(sqlite3.connect(self.path, timeout=10.0)) as conn, conn:
            row = conn.execute(
                "SELECT spend_usd, turn_count, updated_at FROM chat_cost WHERE month_key = ?",
                (month_key,),
            ).fetchone()
        if row is None:
            return CounterSnapshot()
        return CounterSnapshot(spend_usd=float(row[0]), turn_count=int(row[1]), updated_at=row[2])

    def increment(
        self,
        month_key: str,
        spend_usd: float,
        turns: int,
        *,
        now: datetime,
    ) -> CounterSnapshot:
        with closing(sqlite3.connect(self.path, timeout=10.0)) as conn, conn:
            rows = conn.execute(
                """
                INSERT INTO chat_cost(month_key, spend_usd, turn_count, updated_at, expires_at)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(month_key) DO UPDATE SET
                    spend_usd = spend_usd + excluded.spend_usd,
                    turn_count = turn_count + excluded.turn_count,
                    updated_at = excluded.updated_at,
                    expires_at = excluded.expires_at
                RETURNING spend_usd, turn_count, updated_at
                """,
                (month_key, spend_usd, turns, now.isoformat(), expiry_timestamp(now)),
            ).fetchall()
        [row] = rows
        return CounterSnapshot(spend_usd=float(row[0]), turn_count=int(row[1]), updated_at=row[2])

    def purge_expired(self, now: datetime) -> int:
        with closing(sqlite3.connect(self.path, timeout=10.0)) as conn, conn:
            cur = conn.execute(
                "DELETE FROM chat_cost WHERE expires_at IS NOT NULL AND expires_at < ?",
                (int(now.timestamp()),),
            )
        return cur.rowcount


def expiry_timestamp(now: datetime) -> int:
    """Epoch seconds of the last instant of `now`'s month plus the grace period."""
    now = now.astimezone(timezone.utc)
    last_day = calendar.monthrange(now.year, now.month)[1]
    month_end = datetime(now.year, now.month, last_day, 23, 59, 59, tzinfo=timezone.utc)
    return int((month_end + timedelta(days=EXPIRY_GRACE_DAYS)).timestamp())


def _ensure_cost_table(db_file: Path) -> None:
    with closing(sqlite3.connect(db_file)) as conn, conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_cost (
                month_key TEXT PRIMARY KEY,
                spend_usd REAL NOT NULL DEFAULT 0,
                turn_count INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT,
                expires_at INTEGER
            )
            """
        )
