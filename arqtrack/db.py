from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from arqtrack.models import ResearcherProfile, format_timestamp, parse_timestamp


SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS contributions (
  id TEXT PRIMARY KEY,
  researcher_address TEXT NOT NULL,
  researcher_fid INTEGER NOT NULL,
  title TEXT NOT NULL,
  description TEXT NOT NULL,
  tags TEXT NOT NULL,
  impact_score INTEGER NOT NULL,
  status TEXT NOT NULL,
  timestamp TEXT NOT NULL,
  post_url TEXT,
  attestation_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_contributions_fid ON contributions(researcher_fid);

CREATE TABLE IF NOT EXISTS payouts (
  id TEXT PRIMARY KEY,
  researcher_address TEXT NOT NULL,
  researcher_fid INTEGER NOT NULL,
  amount TEXT NOT NULL,
  contribution_ids TEXT NOT NULL,
  status TEXT NOT NULL,
  timestamp TEXT NOT NULL,
  chain TEXT NOT NULL,
  tx_hash TEXT
);

CREATE INDEX IF NOT EXISTS idx_payouts_fid ON payouts(researcher_fid);

CREATE TABLE IF NOT EXISTS researcher_profiles (
  fid INTEGER PRIMARY KEY,
  address TEXT NOT NULL,
  username TEXT NOT NULL,
  display_name TEXT NOT NULL,
  join_date TEXT,
  cached_at_utc TEXT NOT NULL
);
"""


@dataclass(frozen=True)
class DB:
    path: str


@contextmanager
def connect(db: DB) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db.path)
    try:
        conn.row_factory = sqlite3.Row
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction(db: DB) -> Iterator[sqlite3.Connection]:
    """
    Exclusive write transaction for read-modify-write sequences.
    BEGIN IMMEDIATE takes the write lock up front so two writers
    cannot both read the same row state and race on the update.
    """
    conn = sqlite3.connect(db.path, isolation_level=None)
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def init_db(db: DB) -> None:
    with connect(db) as conn:
        conn.executescript(SCHEMA)


def save_profile(conn: sqlite3.Connection, profile: ResearcherProfile, cached_at_utc: str) -> None:
    """Cache the identity a session started with. Later sessions overwrite it."""
    conn.execute(
        """INSERT OR REPLACE INTO researcher_profiles
           (fid, address, username, display_name, join_date, cached_at_utc)
           VALUES (?,?,?,?,?,?)""",
        (
            profile.fid,
            profile.address,
            profile.username,
            profile.display_name,
            format_timestamp(profile.join_date) if profile.join_date else None,
            cached_at_utc,
        ),
    )


def load_profile(conn: sqlite3.Connection, fid: int) -> Optional[ResearcherProfile]:
    row = conn.execute(
        "SELECT fid, address, username, display_name, join_date FROM researcher_profiles WHERE fid=?",
        (fid,),
    ).fetchone()
    if row is None:
        return None
    return ResearcherProfile(
        fid=int(row["fid"]),
        address=row["address"],
        username=row["username"],
        display_name=row["display_name"],
        join_date=parse_timestamp(row["join_date"]) if row["join_date"] else None,
    )
