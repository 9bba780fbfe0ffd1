"""SQLite storage adapter.

Implements the core checkpoint and mapping ports using a simple SQLite
database.
"""

from __future__ import annotations

import sqlite3
from typing import Iterable, List, Optional

from tgmirror.core.models import MappingEntry, SequenceCheckpoint

APPLIED_KEY = "applied"
EXPECTED_NEXT_KEY = "expectedNext"


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the core Storage contract."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - checkpoint: key/value source sequence state
        - mapping: dedup ledger of source item -> target post
        """

        with self._connect() as conn:
            # checkpoint keeps the last applied and next expected sequence
            # numbers so a restart resumes catch-up from the right place.
            # Fields:
            # - key: "applied" or "expectedNext" (PRIMARY KEY)
            # - value: integer sequence number
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS checkpoint (
                    key TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
                """
            )
            # mapping makes Post replays a no-op: a row exists for every
            # source item that was published.
            # Fields:
            # - source_id: source item id (PRIMARY KEY)
            # - target_id: target post id (UNIQUE)
            # - sequence_at_creation: source sequence of the publishing event
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS mapping (
                    source_id INTEGER PRIMARY KEY,
                    target_id TEXT NOT NULL UNIQUE,
                    sequence_at_creation INTEGER
                )
                """
            )

    def get_checkpoint(self) -> Optional[SequenceCheckpoint]:
        """Return the saved checkpoint, if any."""

        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM checkpoint").fetchall()
        values = {row["key"]: int(row["value"]) for row in rows}
        if APPLIED_KEY not in values:
            return None
        return SequenceCheckpoint(applied=values[APPLIED_KEY], expected_next=values.get(EXPECTED_NEXT_KEY))

    def _write_checkpoint(self, conn: sqlite3.Connection, checkpoint: SequenceCheckpoint) -> None:
        rows = [(APPLIED_KEY, checkpoint.applied)]
        if checkpoint.expected_next is not None:
            rows.append((EXPECTED_NEXT_KEY, checkpoint.expected_next))
        conn.executemany(
            """
            INSERT INTO checkpoint (key, value)
            VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            rows,
        )

    def save_checkpoint(self, checkpoint: SequenceCheckpoint) -> None:
        """Upsert both checkpoint keys in one transaction."""

        with self._connect() as conn:
            self._write_checkpoint(conn, checkpoint)

    def get_mapping(self, source_id: int) -> Optional[MappingEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT source_id, target_id, sequence_at_creation FROM mapping WHERE source_id = ?",
                (source_id,),
            ).fetchone()
        return _entry(row) if row else None

    def find_by_target_ids(self, target_ids: Iterable[str]) -> List[MappingEntry]:
        """Return mappings whose target id is in ``target_ids``."""

        ids = list(target_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT source_id, target_id, sequence_at_creation FROM mapping WHERE target_id IN ({placeholders})",
                ids,
            ).fetchall()
        return [_entry(row) for row in rows]

    def record_publish(self, entry: MappingEntry, checkpoint: SequenceCheckpoint) -> None:
        """Insert the mapping and move the checkpoint in a single transaction.

        The connection context manager commits both statements or neither, so
        a crash can never leave the checkpoint ahead of the ledger.
        """

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mapping (source_id, target_id, sequence_at_creation)
                VALUES (?, ?, ?)
                """,
                (entry.source_id, entry.target_id, entry.sequence_at_creation),
            )
            self._write_checkpoint(conn, checkpoint)

    def delete_mapping(self, source_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM mapping WHERE source_id = ?", (source_id,))

    def count_mappings(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM mapping").fetchone()
        return int(row["total"])


def _entry(row: sqlite3.Row) -> MappingEntry:
    return MappingEntry(
        source_id=int(row["source_id"]),
        target_id=str(row["target_id"]),
        sequence_at_creation=row["sequence_at_creation"],
    )
