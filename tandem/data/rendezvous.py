from __future__ import annotations

"""SQLite rendezvous table: maps session names to reachable TCP addresses.

Several processes on one machine share the same file. A record is live while
its owner keeps refreshing ``last_seen`` within the TTL; stale records are
treated as absent and may be claimed by anyone.
"""

import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator


SCHEMA_VERSION = 1


@dataclass(frozen=True)
class PeerRecord:
    peer_id: str
    host: str
    port: int
    owner: str
    last_seen: float


class RendezvousRegistry:
    def __init__(self, db_path: str | Path, ttl_seconds: float = 15.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.ttl_seconds = ttl_seconds

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=2.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.DatabaseError:
            pass
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        with self._transaction() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if not row:
                conn.execute("INSERT INTO schema_version(version) VALUES (?)", (SCHEMA_VERSION,))
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS peers(
                    peer_id TEXT PRIMARY KEY,
                    host TEXT NOT NULL,
                    port INTEGER NOT NULL,
                    owner TEXT NOT NULL,
                    last_seen REAL NOT NULL
                )
                """
            )

    def register(self, peer_id: str, host: str, port: int, owner: str, now: float | None = None) -> bool:
        """Claims ``peer_id`` for ``owner``; False when another owner holds a live record."""
        if now is None:
            now = time.time()
        with self._transaction() as conn:
            row = conn.execute("SELECT owner, last_seen FROM peers WHERE peer_id = ?", (peer_id,)).fetchone()
            if row and row["owner"] != owner and not self._expired(row["last_seen"], now):
                return False
            conn.execute(
                """
                INSERT INTO peers(peer_id, host, port, owner, last_seen) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(peer_id) DO UPDATE SET
                    host=excluded.host, port=excluded.port, owner=excluded.owner, last_seen=excluded.last_seen
                """,
                (peer_id, host, port, owner, now),
            )
        return True

    def touch(self, peer_id: str, owner: str, now: float | None = None) -> bool:
        """Refreshes a registration; False when the record is gone or owned by someone else."""
        if now is None:
            now = time.time()
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE peers SET last_seen = ? WHERE peer_id = ? AND owner = ?",
                (now, peer_id, owner),
            )
            return cursor.rowcount > 0

    def resolve(self, peer_id: str, now: float | None = None) -> PeerRecord | None:
        if now is None:
            now = time.time()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT peer_id, host, port, owner, last_seen FROM peers WHERE peer_id = ?",
                (peer_id,),
            ).fetchone()
        if not row or self._expired(row["last_seen"], now):
            return None
        return self._to_record(row)

    def unregister(self, peer_id: str, owner: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM peers WHERE peer_id = ? AND owner = ?", (peer_id, owner))

    def prune(self, now: float | None = None) -> int:
        if now is None:
            now = time.time()
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM peers WHERE last_seen < ?", (now - self.ttl_seconds,))
            return cursor.rowcount

    def _expired(self, last_seen: float, now: float) -> bool:
        return now - last_seen > self.ttl_seconds

    @staticmethod
    def _to_record(row: sqlite3.Row) -> PeerRecord:
        return PeerRecord(
            peer_id=row["peer_id"],
            host=row["host"],
            port=int(row["port"]),
            owner=row["owner"],
            last_seen=float(row["last_seen"]),
        )
