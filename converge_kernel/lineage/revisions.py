"""
Revision Log — append-only, hash-chained record of source ingestions.

Every ingestion (including a rollback) produces one Revision.

Behavioral Contract:
- Append-only. No revision is ever modified or deleted.
- Revision ids increase monotonically, starting at 1.
- Each revision is signed and chained to the previous one (tamper-evident).
- Every revision answers: which commit? which documents? which resources
  were declared and which were removed? was it a rollback?
"""

import hashlib
import sqlite3
import threading
from typing import List, Optional

from converge_kernel.hashing import canonical_json
from converge_kernel.models.source import Revision


def _signature(revision: Revision) -> str:
    record = revision.model_dump(mode="json")
    # The signature is what we're computing
    record["signature"] = ""
    return hashlib.sha256(canonical_json(record).encode()).hexdigest()


class RevisionLog:
    """
    Append-only revision log.
    SQLite, in memory unless a path is given.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS revisions (
                id INTEGER PRIMARY KEY,
                commit_id TEXT NOT NULL,
                digest TEXT NOT NULL,
                rollback_of INTEGER,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                record_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_revisions_digest ON revisions(digest)
        """)
        self._conn.commit()

    def next_id(self) -> int:
        return (self.latest_id() or 0) + 1

    def latest_id(self) -> Optional[int]:
        row = self._conn.execute("SELECT MAX(id) AS id FROM revisions").fetchone()
        return row["id"]

    def append(self, revision: Revision) -> Revision:
        """
        Append a revision. Signs it and chains it to the previous one.
        """
        with self._lock:
            latest = self.latest_id()
            if latest is not None and revision.id <= latest:
                raise ValueError(
                    f"Revision id {revision.id} is not greater than latest {latest}"
                )
            revision.prior_record_hash = self._get_latest_hash()
            revision.signature = _signature(revision)

            self._conn.execute(
                """
                INSERT INTO revisions (
                    id, commit_id, digest, rollback_of,
                    signature, prior_record_hash, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    revision.id,
                    revision.commit,
                    revision.digest,
                    revision.rollback_of,
                    revision.signature,
                    revision.prior_record_hash,
                    revision.model_dump_json(),
                ),
            )
            self._conn.commit()
        return revision

    def _get_latest_hash(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT signature FROM revisions ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _deserialize(self, row: sqlite3.Row) -> Revision:
        return Revision.model_validate_json(row["record_json"])

    def get(self, revision_id: int) -> Optional[Revision]:
        row = self._conn.execute(
            "SELECT record_json FROM revisions WHERE id = ?", (revision_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def latest(self) -> Optional[Revision]:
        row = self._conn.execute(
            "SELECT record_json FROM revisions ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_recent(self, limit: int = 50) -> List[Revision]:
        """Most recent revisions, oldest first."""
        rows = self._conn.execute(
            "SELECT record_json FROM revisions ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def verify_chain_integrity(self) -> bool:
        """Verify no revision has been tampered with."""
        rows = self._conn.execute(
            "SELECT record_json, signature FROM revisions ORDER BY id"
        ).fetchall()

        prior: Optional[str] = None
        for row in rows:
            revision = self._deserialize(row)
            if revision.signature != row["signature"]:
                return False
            if _signature(revision) != revision.signature:
                return False
            if revision.prior_record_hash != prior:
                return False
            prior = revision.signature
        return True

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS cnt FROM revisions").fetchone()
        return row["cnt"]

    def close(self) -> None:
        self._conn.close()
