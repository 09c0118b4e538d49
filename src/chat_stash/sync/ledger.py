"""Sync ledger: per-machine cursors and the append-only sync log, in SQLite."""

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Self

from chat_stash.models import Machine, SyncLogEntry, SyncOperation, SyncStatus


class SyncLedger:
    """Manages sync ledger persistence in SQLite database.

    Tracks the machines that upload batches, the last synchronized cursor
    per machine and partition, and an audit trail of every merge and sync
    operation. The sync_log table rejects updates and deletes.

    The connection is shared between threads; every access holds a lock.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the ledger with database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create tables and append-only triggers if they don't exist."""
        with self._lock:
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS machines (
                    machine_id TEXT PRIMARY KEY,
                    hostname TEXT NOT NULL,
                    last_cursor INTEGER,
                    config_snapshot TEXT,
                    updated_at INTEGER
                );

                CREATE TABLE IF NOT EXISTS partition_cursors (
                    machine_id TEXT NOT NULL,
                    partition_key TEXT NOT NULL,
                    cursor INTEGER NOT NULL,
                    updated_at INTEGER,
                    PRIMARY KEY (machine_id, partition_key)
                );

                CREATE TABLE IF NOT EXISTS sync_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    machine_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    ts INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    conversation_ids TEXT NOT NULL,
                    detail TEXT,
                    run_id TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_sync_log_machine ON sync_log (machine_id);
                CREATE INDEX IF NOT EXISTS idx_sync_log_status ON sync_log (status);

                CREATE TRIGGER IF NOT EXISTS sync_log_no_update
                BEFORE UPDATE ON sync_log
                BEGIN
                    SELECT RAISE(ABORT, 'sync_log is append-only');
                END;

                CREATE TRIGGER IF NOT EXISTS sync_log_no_delete
                BEFORE DELETE ON sync_log
                BEGIN
                    SELECT RAISE(ABORT, 'sync_log is append-only');
                END;
            """)
            self._conn.commit()

    # Machines

    def register_machine(
        self,
        machine_id: str,
        hostname: str,
        config_snapshot: dict[str, Any] | None = None,
    ) -> Machine:
        """Insert a machine or refresh its hostname and configuration snapshot.

        The cursor is left untouched; only advance_cursor() moves it.
        """
        snapshot_json = json.dumps(config_snapshot or {}, sort_keys=True)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO machines (machine_id, hostname, last_cursor, config_snapshot, updated_at)
                VALUES (?, ?, NULL, ?, ?)
                ON CONFLICT (machine_id) DO UPDATE SET
                    hostname = excluded.hostname,
                    config_snapshot = excluded.config_snapshot,
                    updated_at = excluded.updated_at
                """,
                (machine_id, hostname, snapshot_json, int(time.time())),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT machine_id, hostname, last_cursor, config_snapshot FROM machines WHERE machine_id = ?",
                (machine_id,),
            ).fetchone()
        return self._row_to_machine(row)

    def get_machine(self, machine_id: str) -> Machine | None:
        """Get a registered machine.

        Args:
            machine_id: Machine identifier

        Returns:
            Machine if found, None otherwise
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT machine_id, hostname, last_cursor, config_snapshot FROM machines WHERE machine_id = ?",
                (machine_id,),
            ).fetchone()
        return self._row_to_machine(row) if row else None

    def list_machines(self) -> list[Machine]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT machine_id, hostname, last_cursor, config_snapshot FROM machines ORDER BY machine_id"
            ).fetchall()
        return [self._row_to_machine(row) for row in rows]

    @staticmethod
    def _row_to_machine(row: sqlite3.Row) -> Machine:
        return Machine(
            machine_id=row["machine_id"],
            hostname=row["hostname"],
            last_cursor=row["last_cursor"],
            config_snapshot=json.loads(row["config_snapshot"] or "{}"),
        )

    # Cursors

    def get_cursor(self, machine_id: str, partition_key: str) -> int | None:
        """Get the last synchronized cursor for a machine's partition.

        Returns:
            Cursor, or None if the partition was never synchronized
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT cursor FROM partition_cursors WHERE machine_id = ? AND partition_key = ?",
                (machine_id, partition_key),
            ).fetchone()
        return row["cursor"] if row else None

    def advance_cursor(self, machine_id: str, partition_key: str, cursor: int) -> int:
        """Move a partition cursor forward. Cursors never move backwards.

        Also raises the machine's overall last_cursor.

        Returns:
            The cursor now recorded for the partition
        """
        now = int(time.time())
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO partition_cursors (machine_id, partition_key, cursor, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (machine_id, partition_key) DO UPDATE SET
                    cursor = MAX(cursor, excluded.cursor),
                    updated_at = excluded.updated_at
                """,
                (machine_id, partition_key, cursor, now),
            )
            self._conn.execute(
                """
                UPDATE machines
                SET last_cursor = MAX(COALESCE(last_cursor, 0), ?), updated_at = ?
                WHERE machine_id = ?
                """,
                (cursor, now, machine_id),
            )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT cursor FROM partition_cursors WHERE machine_id = ? AND partition_key = ?",
                (machine_id, partition_key),
            ).fetchone()
        return row["cursor"]

    # Sync log

    def append(self, entry: SyncLogEntry) -> SyncLogEntry:
        """Append an entry to the sync log.

        Returns:
            The entry with its assigned id
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO sync_log (machine_id, operation, ts, status, conversation_ids, detail, run_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.machine_id,
                    entry.operation.value,
                    entry.timestamp,
                    entry.status.value,
                    json.dumps(list(entry.conversation_ids)),
                    entry.detail,
                    entry.run_id,
                ),
            )
            self._conn.commit()
            entry_id = cursor.lastrowid
        return SyncLogEntry(
            machine_id=entry.machine_id,
            operation=entry.operation,
            timestamp=entry.timestamp,
            status=entry.status,
            conversation_ids=entry.conversation_ids,
            detail=entry.detail,
            run_id=entry.run_id,
            id=entry_id,
        )

    def list_entries(
        self,
        machine_id: str | None = None,
        status: SyncStatus | None = None,
        run_id: str | None = None,
        limit: int | None = None,
    ) -> list[SyncLogEntry]:
        """List sync log entries in append order, optionally filtered."""
        clauses = []
        values: list[Any] = []
        if machine_id is not None:
            clauses.append("machine_id = ?")
            values.append(machine_id)
        if status is not None:
            clauses.append("status = ?")
            values.append(status.value)
        if run_id is not None:
            clauses.append("run_id = ?")
            values.append(run_id)

        query = "SELECT id, machine_id, operation, ts, status, conversation_ids, detail, run_id FROM sync_log"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        if limit is not None:
            # Most recent entries, still returned in append order
            query = f"SELECT * FROM ({query} DESC LIMIT ?) ORDER BY id"
            values.append(limit)

        with self._lock:
            rows = self._conn.execute(query, values).fetchall()

        return [
            SyncLogEntry(
                machine_id=row["machine_id"],
                operation=SyncOperation(row["operation"]),
                timestamp=row["ts"],
                status=SyncStatus(row["status"]),
                conversation_ids=tuple(json.loads(row["conversation_ids"])),
                detail=row["detail"] or "",
                run_id=row["run_id"],
                id=row["id"],
            )
            for row in rows
        ]

    def pending_reviews(self) -> list[SyncLogEntry]:
        """Entries flagged for manual conflict resolution."""
        return self.list_entries(status=SyncStatus.NEEDS_REVIEW)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()
