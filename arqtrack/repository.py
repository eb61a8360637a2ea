"""
Keyed record stores for contributions and payouts.

Both collections go through the same four operations: get_all, get, put and
update. update(id, fn) is the only read-modify-write path; fn receives the
current record and returns the replacement, or None to leave it untouched.
Implementations apply it atomically, so callers can use it as a
compare-and-swap on status.
"""
from __future__ import annotations

import json
import sqlite3
import threading
from typing import Callable, Dict, Generic, List, Optional, Protocol, TypeVar

from arqtrack.db import DB, connect, transaction
from arqtrack.models import (
    Contribution,
    ContributionStatus,
    Payout,
    PayoutStatus,
    format_timestamp,
    parse_timestamp,
)

T = TypeVar("T", Contribution, Payout)

Mutation = Callable[[T], Optional[T]]


class Repository(Protocol[T]):
    def get_all(self) -> List[T]: ...

    def get(self, record_id: str) -> Optional[T]: ...

    def put(self, record: T) -> None: ...

    def update(self, record_id: str, fn: Mutation) -> Optional[T]: ...


class InMemoryRepository(Generic[T]):
    """Dict-backed store. Records are frozen dataclasses so no copying is needed."""

    def __init__(self) -> None:
        self._records: Dict[str, T] = {}
        self._lock = threading.Lock()

    def get_all(self) -> List[T]:
        with self._lock:
            return list(self._records.values())

    def get(self, record_id: str) -> Optional[T]:
        with self._lock:
            return self._records.get(record_id)

    def put(self, record: T) -> None:
        with self._lock:
            self._records[record.id] = record

    def update(self, record_id: str, fn: Mutation) -> Optional[T]:
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                return None
            new = fn(current)
            if new is None:
                return None
            self._records[record_id] = new
            return new


class _SQLiteRepository(Generic[T]):
    table: str = ""
    columns: tuple = ()

    def __init__(self, db: DB) -> None:
        self.db = db

    def _to_row(self, record: T) -> tuple:
        raise NotImplementedError

    def _from_row(self, row: sqlite3.Row) -> T:
        raise NotImplementedError

    def _select(self) -> str:
        return f"SELECT {', '.join(self.columns)} FROM {self.table}"

    def _write(self, conn: sqlite3.Connection, record: T) -> None:
        placeholders = ",".join("?" for _ in self.columns)
        conn.execute(
            f"INSERT OR REPLACE INTO {self.table} ({', '.join(self.columns)}) VALUES ({placeholders})",
            self._to_row(record),
        )

    def get_all(self) -> List[T]:
        with connect(self.db) as conn:
            rows = conn.execute(f"{self._select()} ORDER BY timestamp ASC, id ASC").fetchall()
        return [self._from_row(r) for r in rows]

    def get(self, record_id: str) -> Optional[T]:
        with connect(self.db) as conn:
            row = conn.execute(f"{self._select()} WHERE id=?", (record_id,)).fetchone()
        return self._from_row(row) if row else None

    def put(self, record: T) -> None:
        with connect(self.db) as conn:
            self._write(conn, record)

    def update(self, record_id: str, fn: Mutation) -> Optional[T]:
        with transaction(self.db) as conn:
            row = conn.execute(f"{self._select()} WHERE id=?", (record_id,)).fetchone()
            if row is None:
                return None
            new = fn(self._from_row(row))
            if new is None:
                return None
            self._write(conn, new)
            return new


class SQLiteContributionRepository(_SQLiteRepository[Contribution]):
    table = "contributions"
    columns = (
        "id",
        "researcher_address",
        "researcher_fid",
        "title",
        "description",
        "tags",
        "impact_score",
        "status",
        "timestamp",
        "post_url",
        "attestation_id",
    )

    def _to_row(self, c: Contribution) -> tuple:
        return (
            c.id,
            c.researcher_address,
            c.researcher_fid,
            c.title,
            c.description,
            json.dumps(list(c.tags)),
            c.impact_score,
            c.status.value,
            format_timestamp(c.timestamp),
            c.post_url,
            c.attestation_id,
        )

    def _from_row(self, row: sqlite3.Row) -> Contribution:
        return Contribution(
            id=row["id"],
            researcher_address=row["researcher_address"],
            researcher_fid=int(row["researcher_fid"]),
            title=row["title"],
            description=row["description"],
            tags=tuple(json.loads(row["tags"])),
            impact_score=int(row["impact_score"]),
            status=ContributionStatus(row["status"]),
            timestamp=parse_timestamp(row["timestamp"]),
            post_url=row["post_url"],
            attestation_id=row["attestation_id"],
        )


class SQLitePayoutRepository(_SQLiteRepository[Payout]):
    table = "payouts"
    columns = (
        "id",
        "researcher_address",
        "researcher_fid",
        "amount",
        "contribution_ids",
        "status",
        "timestamp",
        "chain",
        "tx_hash",
    )

    def _to_row(self, p: Payout) -> tuple:
        return (
            p.id,
            p.researcher_address,
            p.researcher_fid,
            p.amount,
            json.dumps(list(p.contribution_ids)),
            p.status.value,
            format_timestamp(p.timestamp),
            p.chain,
            p.tx_hash,
        )

    def _from_row(self, row: sqlite3.Row) -> Payout:
        return Payout(
            id=row["id"],
            researcher_address=row["researcher_address"],
            researcher_fid=int(row["researcher_fid"]),
            amount=row["amount"],
            contribution_ids=tuple(json.loads(row["contribution_ids"])),
            status=PayoutStatus(row["status"]),
            timestamp=parse_timestamp(row["timestamp"]),
            chain=row["chain"],
            tx_hash=row["tx_hash"],
        )
