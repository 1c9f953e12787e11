"""Managed path ledger persistence keyed by logical_path."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Optional

from afpack.core.state import (
    Failure,
    ManagedPath,
    ManagedState,
    OperationKind,
    OperationRecord,
    PendingOperation,
)
from afpack.errors import CorruptLedger, LedgerConflict

_SCHEMA_VERSION = 1

_ENTRY_COLUMNS = """
    logical_path, backing_image_path, state, compressed, content_fingerprint,
    size_bytes, file_count, pending_kind, pending_step, pending_started_at,
    failure_reason, failure_type, resume_step, retryable, version,
    created_at, updated_at
"""


class StateLedger:
    """SQLite-backed durable record of managed paths and their operations.

    Every write is committed (WAL, synchronous=FULL) before the method
    returns, so callers can treat a returned write as durable before starting
    the side effect it describes.
    """

    def __init__(self, path: Path, now_fn=None) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self._logger = logging.getLogger(__name__)
        try:
            self._conn = sqlite3.connect(self.path, timeout=30.0, check_same_thread=False)
        except sqlite3.Error as exc:
            raise CorruptLedger(f"Ledger unreadable at {self.path}: {exc}") from exc
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            self._init_schema()
        except sqlite3.DatabaseError as exc:
            self._conn.close()
            raise CorruptLedger(f"Ledger unreadable at {self.path}: {exc}") from exc
        except Exception:
            self._conn.close()
            raise

    def _now_iso(self) -> str:
        value = self._now_fn()
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS managed_paths (
                logical_path TEXT PRIMARY KEY CHECK(length(logical_path) > 0),
                backing_image_path TEXT,
                state TEXT NOT NULL,
                compressed INTEGER NOT NULL DEFAULT 0 CHECK(compressed IN (0, 1)),
                content_fingerprint TEXT CHECK(content_fingerprint IS NULL OR length(content_fingerprint) = 64),
                size_bytes INTEGER NOT NULL DEFAULT 0 CHECK(size_bytes >= 0),
                file_count INTEGER NOT NULL DEFAULT 0 CHECK(file_count >= 0),
                pending_kind TEXT,
                pending_step TEXT,
                pending_started_at TEXT,
                failure_reason TEXT,
                failure_type TEXT,
                resume_step TEXT,
                retryable INTEGER,
                version INTEGER NOT NULL CHECK(version >= 1),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS operations (
                op_id INTEGER PRIMARY KEY AUTOINCREMENT,
                logical_path TEXT NOT NULL,
                kind TEXT NOT NULL,
                step TEXT NOT NULL,
                phase TEXT NOT NULL CHECK(phase IN ('begin', 'done', 'failed', 'checkpoint')),
                detail TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS operations_by_path ON operations (logical_path, op_id)"
        )
        self._ensure_schema_version()
        self._conn.commit()

    def _ensure_schema_version(self) -> None:
        version = self._get_metadata("schema_version")
        if version is None:
            row = self._conn.execute("SELECT COUNT(*) FROM managed_paths").fetchone()
            if row and row[0] > 0:
                raise CorruptLedger("Ledger missing schema_version - created by old version?")
            self._set_metadata("schema_version", str(_SCHEMA_VERSION))
            return
        if int(version) > _SCHEMA_VERSION:
            raise CorruptLedger(
                f"Ledger schema {version} > supported {_SCHEMA_VERSION}. Please upgrade afpack."
            )

    def _get_metadata(self, key: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM schema_metadata WHERE key = ?",
            (key,),
        ).fetchone()
        return row[0] if row else None

    def _set_metadata(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO schema_metadata (key, value) VALUES (?, ?)",
            (key, value),
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _row_to_entry(self, row: tuple) -> ManagedPath:
        try:
            pending = None
            if row[7]:
                pending = PendingOperation(
                    kind=OperationKind(row[7]),
                    step=row[8],
                    started_at=row[9],
                )
            failure = None
            if row[10] is not None:
                failure = Failure(
                    reason=row[10],
                    error_type=row[11] or "",
                    resume_step=row[12],
                    retryable=bool(row[13]),
                )
            state = ManagedState(row[2])
        except (ValueError, TypeError) as exc:
            raise CorruptLedger(
                f"Ledger entry for {row[0]} is inconsistent: {exc}",
                path=Path(row[0]),
            ) from exc
        if state == ManagedState.FAILED and (failure is None or pending is None):
            raise CorruptLedger(
                f"Ledger entry for {row[0]} is FAILED without failure context",
                path=Path(row[0]),
                state=state.value,
            )
        return ManagedPath(
            logical_path=Path(row[0]),
            backing_image_path=Path(row[1]) if row[1] else None,
            state=state,
            compressed=bool(row[3]),
            content_fingerprint=row[4],
            size_bytes=row[5],
            file_count=row[6],
            pending_operation=pending,
            failure=failure,
            version=row[14],
            created_at=row[15],
            updated_at=row[16],
        )

    def get(self, logical_path: Path) -> Optional[ManagedPath]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM managed_paths WHERE logical_path = ?",
                (str(logical_path),),
            ).fetchone()
        if not row:
            return None
        return self._row_to_entry(row)

    def list_all(self) -> list[ManagedPath]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM managed_paths ORDER BY logical_path ASC"
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def list_by_state(self, state: ManagedState) -> list[ManagedPath]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM managed_paths WHERE state = ? ORDER BY logical_path ASC",
                (state.value,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def put(self, entry: ManagedPath) -> ManagedPath:
        """Write ``entry`` if the stored version still equals ``entry.version``.

        Returns the entry as stored, with its version bumped.
        """
        now = self._now_iso()
        created_at = entry.created_at or now
        pending = entry.pending_operation
        failure = entry.failure
        key = str(entry.logical_path)
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                row = self._conn.execute(
                    "SELECT version FROM managed_paths WHERE logical_path = ?",
                    (key,),
                ).fetchone()
                stored = row[0] if row else 0
                if stored != entry.version:
                    raise LedgerConflict(
                        f"Ledger entry for {key} changed underneath (stored v{stored}, "
                        f"writer v{entry.version})",
                        path=entry.logical_path,
                    )
                self._conn.execute(
                    f"""
                    INSERT OR REPLACE INTO managed_paths ({_ENTRY_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        key,
                        str(entry.backing_image_path) if entry.backing_image_path else None,
                        entry.state.value,
                        int(entry.compressed),
                        entry.content_fingerprint,
                        entry.size_bytes,
                        entry.file_count,
                        pending.kind.value if pending else None,
                        pending.step if pending else None,
                        pending.started_at if pending else None,
                        failure.reason if failure else None,
                        failure.error_type if failure else None,
                        failure.resume_step if failure else None,
                        int(failure.retryable) if failure else None,
                        entry.version + 1,
                        created_at,
                        now,
                    ),
                )
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise
        return replace(entry, version=entry.version + 1, created_at=created_at, updated_at=now)

    def remove(self, logical_path: Path) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM managed_paths WHERE logical_path = ?",
                (str(logical_path),),
            )
            self._conn.commit()
        self._logger.debug("Removed ledger entry for %s", logical_path)

    def append_operation(self, record: OperationRecord) -> OperationRecord:
        now = self._now_iso()
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO operations (logical_path, kind, step, phase, detail, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(record.logical_path),
                    record.kind.value,
                    record.step,
                    record.phase,
                    json.dumps(record.detail, sort_keys=True, default=str),
                    now,
                ),
            )
            self._conn.commit()
        return replace(record, op_id=cursor.lastrowid, created_at=now)

    def operations(self, logical_path: Path, limit: Optional[int] = None) -> list[OperationRecord]:
        """Operation log for a path, oldest first (the newest ``limit`` when given)."""
        query = (
            "SELECT op_id, logical_path, kind, step, phase, detail, created_at "
            "FROM operations WHERE logical_path = ? ORDER BY op_id DESC"
        )
        params: tuple = (str(logical_path),)
        if limit is not None:
            query += " LIMIT ?"
            params = (str(logical_path), limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        records = []
        for row in reversed(rows):
            try:
                detail = json.loads(row[5])
                kind = OperationKind(row[2])
            except (ValueError, TypeError) as exc:
                raise CorruptLedger(
                    f"Operation {row[0]} for {row[1]} is unreadable: {exc}",
                    path=Path(row[1]),
                ) from exc
            records.append(
                OperationRecord(
                    logical_path=Path(row[1]),
                    kind=kind,
                    step=row[3],
                    phase=row[4],
                    detail=detail,
                    op_id=row[0],
                    created_at=row[6],
                )
            )
        return records
