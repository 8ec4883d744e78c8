"""SQLite backed persistence used by the send queue.

Every public coroutine opens its own connection. Operations that must be
atomic across concurrent workers (claiming a job, bumping a rate-limit
counter, incrementing progress counters, conditional status changes) are
either a single conditional statement or run inside ``BEGIN IMMEDIATE``.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

JSON_COLUMNS = {
    "jobs": ("payload",),
    "progress": ("metadata",),
    "campaigns": ("segment",),
    "leads": ("tags", "custom_fields"),
}

UPDATABLE_COLUMNS = {
    "jobs": {
        "status", "priority", "payload", "retry_count", "processed_count", "failed_count",
        "worker_id", "scheduled_at", "started_at", "completed_at", "failed_at", "error_message",
    },
    "batches": {"status", "valid_count", "invalid_count", "error_message", "started_at", "completed_at"},
    "recipients": {"status", "provider_id", "attempts", "error_message", "sent_at"},
    "retry_entries": {"attempt_count", "delay_seconds", "next_attempt_at", "status", "error_message"},
    "progress": {"status", "total_items", "processed_items", "failed_items", "message", "end_time", "metadata"},
    "campaigns": {"status", "total_recipients", "job_id", "sent_at", "scheduled_at", "segment"},
    "workers": {
        "name", "status", "current_job_id", "last_heartbeat", "consecutive_failures",
        "jobs_processed", "emails_sent", "emails_failed", "draining",
    },
}

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        campaign_id TEXT,
        job_type TEXT NOT NULL DEFAULT 'campaign',
        priority INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending',
        payload TEXT NOT NULL,
        batch_size INTEGER NOT NULL,
        max_retries INTEGER NOT NULL DEFAULT 3,
        retry_count INTEGER NOT NULL DEFAULT 0,
        total_recipients INTEGER NOT NULL,
        processed_count INTEGER NOT NULL DEFAULT 0,
        failed_count INTEGER NOT NULL DEFAULT 0,
        worker_id TEXT,
        scheduled_at REAL,
        started_at REAL,
        completed_at REAL,
        failed_at REAL,
        error_message TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, priority, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_worker ON jobs(worker_id)",
    """
    CREATE TABLE IF NOT EXISTS batches (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL,
        batch_index INTEGER NOT NULL,
        start_record INTEGER NOT NULL,
        end_record INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        valid_count INTEGER NOT NULL DEFAULT 0,
        invalid_count INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        started_at REAL,
        completed_at REAL,
        UNIQUE (job_id, batch_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recipients (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL,
        batch_index INTEGER NOT NULL,
        position INTEGER NOT NULL,
        lead_id TEXT,
        email TEXT NOT NULL,
        subject TEXT NOT NULL,
        html TEXT NOT NULL,
        text TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        provider_id TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        sent_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_recipients_batch ON recipients(job_id, batch_index, position)",
    """
    CREATE TABLE IF NOT EXISTS retry_entries (
        id TEXT PRIMARY KEY,
        original_job_id TEXT NOT NULL,
        target_id TEXT NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 1,
        max_retries INTEGER NOT NULL,
        delay_seconds REAL NOT NULL,
        next_attempt_at REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'scheduled',
        error_message TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_retry_due ON retry_entries(status, next_attempt_at)",
    """
    CREATE TABLE IF NOT EXISTS progress (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        owner_id TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        total_items INTEGER NOT NULL DEFAULT 0,
        processed_items INTEGER NOT NULL DEFAULT 0,
        failed_items INTEGER NOT NULL DEFAULT 0,
        message TEXT,
        start_time REAL NOT NULL,
        end_time REAL,
        metadata TEXT,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_progress_owner ON progress(owner_id)",
    """
    CREATE TABLE IF NOT EXISTS campaigns (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        name TEXT,
        subject TEXT NOT NULL,
        html_content TEXT NOT NULL,
        text_content TEXT,
        from_email TEXT NOT NULL,
        reply_to TEXT,
        segment TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        total_recipients INTEGER NOT NULL DEFAULT 0,
        job_id TEXT,
        sent_at REAL,
        scheduled_at REAL,
        created_at REAL,
        updated_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leads (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        email TEXT NOT NULL,
        name TEXT,
        company TEXT,
        position TEXT,
        phone TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        tags TEXT,
        custom_fields TEXT,
        created_at REAL,
        UNIQUE (workspace_id, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'idle',
        current_job_id TEXT,
        last_heartbeat REAL,
        started_at REAL,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        jobs_processed INTEGER NOT NULL DEFAULT 0,
        emails_sent INTEGER NOT NULL DEFAULT 0,
        emails_failed INTEGER NOT NULL DEFAULT 0,
        draining INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        identifier TEXT NOT NULL,
        resource TEXT NOT NULL,
        window_start REAL NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        limit_value INTEGER NOT NULL,
        window_seconds REAL NOT NULL,
        PRIMARY KEY (identifier, resource)
    )
    """,
)


class Persistence:
    """Helper class responsible for reading and writing queue state."""

    def __init__(self, db_path: str = "/data/mailgenius.db", *, busy_timeout: float = 30.0):
        """Persist data to the given database path."""
        self.db_path = db_path or ":memory:"
        self.busy_timeout = busy_timeout

    def _connect(self, **kwargs: Any) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self.busy_timeout, **kwargs)

    @asynccontextmanager
    async def _immediate(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection holding the write lock for the whole block."""
        async with self._connect(isolation_level=None) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def init_db(self) -> None:
        """Create the database schema."""
        async with self._connect() as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()

    # Row helpers --------------------------------------------------------------
    @staticmethod
    def _decode(table: str, row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        for col in JSON_COLUMNS.get(table, ()):
            value = data.get(col)
            if value is not None:
                data[col] = json.loads(value)
        return data

    @staticmethod
    def _encode(table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        encoded = dict(data)
        for col in JSON_COLUMNS.get(table, ()):
            if encoded.get(col) is not None:
                encoded[col] = json.dumps(encoded[col])
        return encoded

    async def _fetch_all(self, table: str, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode(table, row, cols) for row in rows]

    async def _fetch_one(self, table: str, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = await self._fetch_all(table, query, params)
        return rows[0] if rows else None

    @staticmethod
    async def _insert(db: aiosqlite.Connection, table: str, data: Dict[str, Any]) -> None:
        cols = list(data)
        placeholders = ", ".join("?" for _ in cols)
        await db.execute(
            f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders})",
            [data[c] for c in cols],
        )

    async def _update_fields(
        self,
        table: str,
        key: Dict[str, Any],
        fields: Dict[str, Any],
        *,
        extra_where: str = "",
        extra_params: Sequence[Any] = (),
    ) -> int:
        unknown = set(fields) - UPDATABLE_COLUMNS[table]
        if unknown:
            raise ValueError(f"Cannot update {sorted(unknown)} on {table}")
        if not fields:
            return 0
        encoded = self._encode(table, fields)
        assignments = ", ".join(f"{col}=?" for col in encoded)
        where = " AND ".join(f"{col}=?" for col in key)
        if extra_where:
            where = f"{where} AND {extra_where}"
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE {table} SET {assignments} WHERE {where}",
                [*encoded.values(), *key.values(), *extra_params],
            )
            await db.commit()
            return cursor.rowcount

    # Jobs ---------------------------------------------------------------------
    async def insert_job(
        self,
        job: Dict[str, Any],
        batches: Sequence[Dict[str, Any]],
        recipients: Sequence[Dict[str, Any]],
        progress: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Store a job together with its batches, recipients and progress record."""
        async with self._immediate() as db:
            await self._insert(db, "jobs", self._encode("jobs", job))
            for batch in batches:
                await self._insert(db, "batches", batch)
            for recipient in recipients:
                await self._insert(db, "recipients", recipient)
            if progress is not None:
                await self._insert(db, "progress", self._encode("progress", progress))

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("jobs", "SELECT * FROM jobs WHERE id=?", (job_id,))

    async def list_jobs(
        self,
        *,
        workspace_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Return jobs, most recent first."""
        clauses: List[str] = []
        params: List[Any] = []
        if workspace_id:
            clauses.append("workspace_id=?")
            params.append(workspace_id)
        if status:
            clauses.append("status=?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        return await self._fetch_all(
            "jobs", f"SELECT * FROM jobs {where} ORDER BY created_at DESC, id ASC LIMIT ?", params
        )

    async def claim_candidates(self, now: float, limit: int = 10) -> List[Tuple[str, str]]:
        """Return ``(id, status)`` of claimable jobs in claim order."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT id, status FROM jobs
                WHERE status IN ('pending', 'retrying')
                  AND (scheduled_at IS NULL OR scheduled_at <= ?)
                ORDER BY priority DESC, created_at ASC, id ASC
                LIMIT ?
                """,
                (now, limit),
            ) as cur:
                rows = await cur.fetchall()
        return [(row[0], row[1]) for row in rows]

    async def try_claim_job(self, job_id: str, expected_status: str, worker_id: str, now: float) -> bool:
        """Move a job to ``processing`` if it is still in ``expected_status``.

        The worker row is flipped to ``busy`` in the same transaction.
        """
        async with self._immediate() as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status='processing', worker_id=?, started_at=COALESCE(started_at, ?), updated_at=?,
                    retry_count=retry_count + CASE WHEN status='retrying' THEN 1 ELSE 0 END
                WHERE id=? AND status=?
                """,
                (worker_id, now, now, job_id, expected_status),
            )
            if cursor.rowcount != 1:
                return False
            await db.execute(
                "UPDATE workers SET status='busy', current_job_id=?, last_heartbeat=? WHERE id=?",
                (job_id, now, worker_id),
            )
        return True

    async def transition_job(
        self,
        job_id: str,
        expected_status: str,
        new_status: str,
        now: float,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Conditionally change a job status; return ``False`` when it moved meanwhile."""
        values = dict(fields or {})
        values["status"] = new_status
        values["updated_at"] = now
        encoded = self._encode("jobs", values)
        assignments = ", ".join(f"{col}=?" for col in encoded)
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE jobs SET {assignments} WHERE id=? AND status=?",
                [*encoded.values(), job_id, expected_status],
            )
            await db.commit()
            return cursor.rowcount == 1

    async def update_job(self, job_id: str, fields: Dict[str, Any]) -> int:
        return await self._update_fields("jobs", {"id": job_id}, fields)

    async def add_job_counts(self, job_id: str, processed: int = 0, failed: int = 0) -> None:
        """Atomically add to the job's processed/failed counters."""
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE jobs
                SET processed_count=processed_count + ?, failed_count=failed_count + ?
                WHERE id=?
                """,
                (int(processed), int(failed), job_id),
            )
            await db.commit()

    async def release_worker_jobs(self, worker_id: str, now: float) -> List[str]:
        """Put every job a worker holds back in the queue as ``retrying``."""
        async with self._immediate() as db:
            async with db.execute(
                "SELECT id FROM jobs WHERE worker_id=? AND status='processing'", (worker_id,)
            ) as cur:
                ids = [row[0] for row in await cur.fetchall()]
            if ids:
                await db.execute(
                    """
                    UPDATE jobs
                    SET status='retrying', worker_id=NULL, scheduled_at=?, updated_at=?
                    WHERE worker_id=? AND status='processing'
                    """,
                    (now, now, worker_id),
                )
        return ids

    async def job_status_counts(self, workspace_id: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """Return job counters grouped by status."""
        query = """
            SELECT status, COUNT(*), COALESCE(SUM(total_recipients), 0),
                   COALESCE(SUM(processed_count), 0), COALESCE(SUM(failed_count), 0)
            FROM jobs
        """
        params: Tuple[Any, ...] = ()
        if workspace_id:
            query += " WHERE workspace_id=?"
            params = (workspace_id,)
        query += " GROUP BY status"
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return {
            row[0]: {"jobs": row[1], "total": row[2], "processed": row[3], "failed": row[4]}
            for row in rows
        }

    async def count_jobs_finished_since(self, since: float) -> Dict[str, int]:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT status, COUNT(*), COALESCE(SUM(processed_count), 0) FROM jobs
                WHERE status IN ('completed', 'failed')
                  AND COALESCE(completed_at, failed_at) >= ?
                GROUP BY status
                """,
                (since,),
            ) as cur:
                rows = await cur.fetchall()
        result = {"completed": 0, "failed": 0, "emails": 0}
        for status, count, processed in rows:
            result[status] = count
            result["emails"] += processed
        return result

    async def delete_jobs_finished_before(self, cutoff: float) -> int:
        """Delete terminal jobs (and their batches, recipients, retries, progress) older than ``cutoff``."""
        async with self._immediate() as db:
            async with db.execute(
                """
                SELECT id FROM jobs
                WHERE status IN ('completed', 'failed', 'cancelled')
                  AND COALESCE(completed_at, failed_at, updated_at) < ?
                """,
                (cutoff,),
            ) as cur:
                ids = [row[0] for row in await cur.fetchall()]
            if not ids:
                return 0
            placeholders = ",".join("?" for _ in ids)
            await db.execute(f"DELETE FROM batches WHERE job_id IN ({placeholders})", ids)
            await db.execute(f"DELETE FROM recipients WHERE job_id IN ({placeholders})", ids)
            await db.execute(f"DELETE FROM retry_entries WHERE original_job_id IN ({placeholders})", ids)
            await db.execute(f"DELETE FROM progress WHERE id IN ({placeholders})", ids)
            await db.execute(f"DELETE FROM jobs WHERE id IN ({placeholders})", ids)
        return len(ids)

    async def delete_job(self, job_id: str) -> bool:
        """Remove a job and everything attached to it."""
        async with self._immediate() as db:
            cursor = await db.execute("DELETE FROM jobs WHERE id=?", (job_id,))
            if cursor.rowcount == 0:
                return False
            await db.execute("DELETE FROM batches WHERE job_id=?", (job_id,))
            await db.execute("DELETE FROM recipients WHERE job_id=?", (job_id,))
            await db.execute("DELETE FROM retry_entries WHERE original_job_id=?", (job_id,))
            await db.execute("DELETE FROM progress WHERE id=?", (job_id,))
        return True

    # Batches ------------------------------------------------------------------
    async def list_batches(self, job_id: str) -> List[Dict[str, Any]]:
        return await self._fetch_all(
            "batches", "SELECT * FROM batches WHERE job_id=? ORDER BY batch_index ASC", (job_id,)
        )

    async def update_batch(self, batch_id: str, fields: Dict[str, Any], *, only_open: bool = True) -> int:
        """Update a batch; terminal batches are left untouched unless ``only_open`` is False."""
        if only_open:
            return await self._update_fields(
                "batches", {"id": batch_id}, fields, extra_where="status NOT IN ('completed', 'failed')"
            )
        return await self._update_fields("batches", {"id": batch_id}, fields)

    async def add_batch_counts(self, job_id: str, batch_index: int, valid: int = 0, invalid: int = 0) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE batches
                SET valid_count=valid_count + ?, invalid_count=invalid_count + ?
                WHERE job_id=? AND batch_index=?
                """,
                (int(valid), int(invalid), job_id, int(batch_index)),
            )
            await db.commit()

    # Recipients ---------------------------------------------------------------
    async def list_recipients(
        self,
        job_id: str,
        *,
        batch_index: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM recipients WHERE job_id=?"
        params: List[Any] = [job_id]
        if batch_index is not None:
            query += " AND batch_index=?"
            params.append(int(batch_index))
        if status is not None:
            query += " AND status=?"
            params.append(status)
        query += " ORDER BY position ASC"
        return await self._fetch_all("recipients", query, params)

    async def get_recipient(self, recipient_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("recipients", "SELECT * FROM recipients WHERE id=?", (recipient_id,))

    async def update_recipient(self, recipient_id: str, fields: Dict[str, Any], *, only_open: bool = False) -> int:
        """Update a recipient row; with ``only_open`` sent/failed rows are left untouched."""
        if only_open:
            return await self._update_fields(
                "recipients", {"id": recipient_id}, fields, extra_where="status NOT IN ('sent', 'failed')"
            )
        return await self._update_fields("recipients", {"id": recipient_id}, fields)

    async def recipient_status_counts(self, job_id: str, batch_index: Optional[int] = None) -> Dict[str, int]:
        query = "SELECT status, COUNT(*) FROM recipients WHERE job_id=?"
        params: List[Any] = [job_id]
        if batch_index is not None:
            query += " AND batch_index=?"
            params.append(int(batch_index))
        query += " GROUP BY status"
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return {row[0]: row[1] for row in rows}

    # Retry entries ------------------------------------------------------------
    async def insert_retry(self, entry: Dict[str, Any]) -> None:
        async with self._connect() as db:
            await self._insert(db, "retry_entries", entry)
            await db.commit()

    async def get_retry(self, retry_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("retry_entries", "SELECT * FROM retry_entries WHERE id=?", (retry_id,))

    async def list_retries(
        self,
        *,
        job_id: Optional[str] = None,
        status: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for col, value in (("original_job_id", job_id), ("status", status), ("target_id", target_id)):
            if value is not None:
                clauses.append(f"{col}=?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return await self._fetch_all(
            "retry_entries", f"SELECT * FROM retry_entries {where} ORDER BY created_at ASC, id ASC", params
        )

    async def due_retries(self, now: float, *, limit: int = 50, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM retry_entries WHERE status='scheduled' AND next_attempt_at <= ?"
        params: List[Any] = [now]
        if job_id is not None:
            query += " AND original_job_id=?"
            params.append(job_id)
        query += " ORDER BY next_attempt_at ASC, id ASC LIMIT ?"
        params.append(int(limit))
        return await self._fetch_all("retry_entries", query, params)

    async def try_mark_retry_executing(self, retry_id: str, now: float) -> bool:
        """Take exclusive ownership of a scheduled retry entry."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE retry_entries SET status='executing', updated_at=? WHERE id=? AND status='scheduled'",
                (now, retry_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def update_retry(self, retry_id: str, fields: Dict[str, Any], now: float) -> int:
        values = dict(fields)
        async with self._connect() as db:
            unknown = set(values) - UPDATABLE_COLUMNS["retry_entries"]
            if unknown:
                raise ValueError(f"Cannot update {sorted(unknown)} on retry_entries")
            assignments = ", ".join(f"{col}=?" for col in values)
            cursor = await db.execute(
                f"UPDATE retry_entries SET {assignments}, updated_at=? WHERE id=?",
                [*values.values(), now, retry_id],
            )
            await db.commit()
            return cursor.rowcount

    async def count_open_retries(self, job_id: str, batch_index: Optional[int] = None) -> int:
        """Count ``scheduled``/``executing`` retries of a job, optionally for one batch."""
        query = """
            SELECT COUNT(*) FROM retry_entries r
            JOIN recipients rc ON rc.id = r.target_id
            WHERE r.original_job_id=? AND r.status IN ('scheduled', 'executing')
        """
        params: List[Any] = [job_id]
        if batch_index is not None:
            query += " AND rc.batch_index=?"
            params.append(int(batch_index))
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def next_retry_at(self, job_id: str) -> Optional[float]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT MIN(next_attempt_at) FROM retry_entries WHERE original_job_id=? AND status='scheduled'",
                (job_id,),
            ) as cur:
                row = await cur.fetchone()
        return row[0] if row else None

    async def retry_status_counts(self) -> Dict[str, int]:
        async with self._connect() as db:
            async with db.execute("SELECT status, COUNT(*) FROM retry_entries GROUP BY status") as cur:
                rows = await cur.fetchall()
        return {row[0]: row[1] for row in rows}

    async def delete_retries_before(self, cutoff: float) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                DELETE FROM retry_entries
                WHERE status IN ('succeeded', 'exhausted') AND updated_at < ?
                """,
                (cutoff,),
            )
            await db.commit()
            return cursor.rowcount

    # Progress -----------------------------------------------------------------
    async def insert_progress(self, record: Dict[str, Any]) -> None:
        async with self._connect() as db:
            await self._insert(db, "progress", self._encode("progress", record))
            await db.commit()

    async def get_progress(self, progress_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("progress", "SELECT * FROM progress WHERE id=?", (progress_id,))

    async def list_progress(self, owner_id: str) -> List[Dict[str, Any]]:
        return await self._fetch_all(
            "progress", "SELECT * FROM progress WHERE owner_id=? ORDER BY start_time DESC", (owner_id,)
        )

    async def update_progress(self, progress_id: str, fields: Dict[str, Any], now: float) -> int:
        values = dict(fields)
        values_sql = self._encode("progress", values)
        unknown = set(values) - UPDATABLE_COLUMNS["progress"]
        if unknown:
            raise ValueError(f"Cannot update {sorted(unknown)} on progress")
        assignments = ", ".join(f"{col}=?" for col in values_sql)
        separator = ", " if assignments else ""
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE progress SET {assignments}{separator}updated_at=? WHERE id=?",
                [*values_sql.values(), now, progress_id],
            )
            await db.commit()
            return cursor.rowcount

    async def set_progress_total(self, progress_id: str, total_items: int, now: float) -> int:
        """Change ``total_items`` unless it would drop below the stored counters."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE progress SET total_items=?, updated_at=?
                WHERE id=? AND processed_items + failed_items <= ?
                """,
                (int(total_items), now, progress_id, int(total_items)),
            )
            await db.commit()
            return cursor.rowcount

    async def raise_progress_counters(
        self, progress_id: str, processed_items: Optional[int], failed_items: Optional[int], now: float
    ) -> int:
        """Set counters to the given values without ever lowering them."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE progress
                SET processed_items=MAX(processed_items, COALESCE(?, processed_items)),
                    failed_items=MAX(failed_items, COALESCE(?, failed_items)),
                    updated_at=?
                WHERE id=?
                  AND MAX(processed_items, COALESCE(?, processed_items))
                      + MAX(failed_items, COALESCE(?, failed_items)) <= total_items
                """,
                (processed_items, failed_items, now, progress_id, processed_items, failed_items),
            )
            await db.commit()
            return cursor.rowcount

    async def increment_progress(self, progress_id: str, processed: int, failed: int, now: float) -> int:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE progress
                SET processed_items=processed_items + ?, failed_items=failed_items + ?, updated_at=?
                WHERE id=? AND processed_items + failed_items + ? <= total_items
                """,
                (int(processed), int(failed), now, progress_id, int(processed) + int(failed)),
            )
            await db.commit()
            return cursor.rowcount

    async def delete_progress(self, progress_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM progress WHERE id=?", (progress_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def delete_progress_before(self, cutoff: float) -> int:
        """Drop finished progress records last touched before ``cutoff``."""
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM progress WHERE status IN ('completed', 'failed', 'cancelled') AND updated_at < ?",
                (cutoff,),
            )
            await db.commit()
            return cursor.rowcount

    # Campaigns and leads ------------------------------------------------------
    async def add_campaign(self, campaign: Dict[str, Any]) -> None:
        """Insert or overwrite a campaign definition."""
        record = self._encode("campaigns", campaign)
        cols = list(record)
        async with self._connect() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO campaigns ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                [record[c] for c in cols],
            )
            await db.commit()

    async def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("campaigns", "SELECT * FROM campaigns WHERE id=?", (campaign_id,))

    async def list_campaigns(self, workspace_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if workspace_id:
            return await self._fetch_all(
                "campaigns", "SELECT * FROM campaigns WHERE workspace_id=? ORDER BY created_at ASC", (workspace_id,)
            )
        return await self._fetch_all("campaigns", "SELECT * FROM campaigns ORDER BY created_at ASC")

    async def transition_campaign(
        self,
        campaign_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        fields: Optional[Dict[str, Any]] = None,
        now: Optional[float] = None,
    ) -> bool:
        """Change a campaign status only when it currently is one of ``from_statuses``."""
        allowed = list(from_statuses)
        values = self._encode("campaigns", dict(fields or {}))
        values["status"] = to_status
        values["updated_at"] = now
        assignments = ", ".join(f"{col}=?" for col in values)
        placeholders = ",".join("?" for _ in allowed)
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE campaigns SET {assignments} WHERE id=? AND status IN ({placeholders})",
                [*values.values(), campaign_id, *allowed],
            )
            await db.commit()
            return cursor.rowcount == 1

    async def due_scheduled_campaigns(self, now: float) -> List[Dict[str, Any]]:
        return await self._fetch_all(
            "campaigns",
            """
            SELECT * FROM campaigns
            WHERE status='scheduled' AND scheduled_at IS NOT NULL AND scheduled_at <= ?
            ORDER BY scheduled_at ASC
            """,
            (now,),
        )

    async def add_lead(self, lead: Dict[str, Any]) -> None:
        record = self._encode("leads", lead)
        cols = list(record)
        async with self._connect() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO leads ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                [record[c] for c in cols],
            )
            await db.commit()

    async def list_leads(self, workspace_id: str, *, status: Optional[str] = "active") -> List[Dict[str, Any]]:
        if status is None:
            return await self._fetch_all(
                "leads", "SELECT * FROM leads WHERE workspace_id=? ORDER BY created_at ASC, id ASC", (workspace_id,)
            )
        return await self._fetch_all(
            "leads",
            "SELECT * FROM leads WHERE workspace_id=? AND status=? ORDER BY created_at ASC, id ASC",
            (workspace_id, status),
        )

    # Workers ------------------------------------------------------------------
    async def register_worker(self, worker_id: str, name: str, now: float) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO workers (id, name, status, last_heartbeat, started_at)
                VALUES (?, ?, 'idle', ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name=excluded.name, status='idle', current_job_id=NULL, draining=0,
                    last_heartbeat=excluded.last_heartbeat
                """,
                (worker_id, name, now, now),
            )
            await db.commit()

    async def get_worker(self, worker_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one("workers", "SELECT * FROM workers WHERE id=?", (worker_id,))

    async def list_workers(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status:
            return await self._fetch_all(
                "workers", "SELECT * FROM workers WHERE status=? ORDER BY started_at ASC", (status,)
            )
        return await self._fetch_all("workers", "SELECT * FROM workers ORDER BY started_at ASC")

    async def update_worker(self, worker_id: str, fields: Dict[str, Any]) -> int:
        return await self._update_fields("workers", {"id": worker_id}, fields)

    async def release_worker(self, worker_id: str, now: float) -> bool:
        """Flip a busy worker back to idle; offline workers stay offline."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE workers SET status='idle', current_job_id=NULL, last_heartbeat=?
                WHERE id=? AND status='busy'
                """,
                (now, worker_id),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def add_worker_counts(self, worker_id: str, *, jobs: int = 0, sent: int = 0, failed: int = 0) -> None:
        """Add to the lifetime counters; a delivery resets the failure streak, a failure extends it."""
        async with self._connect() as db:
            await db.execute(
                """
                UPDATE workers
                SET jobs_processed=jobs_processed + ?, emails_sent=emails_sent + ?, emails_failed=emails_failed + ?,
                    consecutive_failures=CASE WHEN ? > 0 THEN 0 ELSE consecutive_failures + ? END
                WHERE id=?
                """,
                (int(jobs), int(sent), int(failed), int(sent), int(failed), worker_id),
            )
            await db.commit()

    async def stale_workers(self, cutoff: float) -> List[Dict[str, Any]]:
        """Return workers not marked offline whose last heartbeat is at or before ``cutoff``."""
        return await self._fetch_all(
            "workers",
            "SELECT * FROM workers WHERE status != 'offline' AND (last_heartbeat IS NULL OR last_heartbeat <= ?)",
            (cutoff,),
        )

    async def worker_status_counts(self) -> Dict[str, int]:
        async with self._connect() as db:
            async with db.execute("SELECT status, COUNT(*) FROM workers GROUP BY status") as cur:
                rows = await cur.fetchall()
        return {row[0]: row[1] for row in rows}

    # Rate limits --------------------------------------------------------------
    async def hit_rate_limit(
        self,
        identifier: str,
        resource: str,
        limit: int,
        window_seconds: float,
        now: float,
    ) -> Tuple[bool, int, float]:
        """Try to take one admission from the window; return ``(allowed, count, window_start)``.

        Expired windows are reset and the increment is conditional on the
        count staying within ``limit``, all under the write lock.
        """
        async with self._immediate() as db:
            await db.execute(
                """
                INSERT INTO rate_limits (identifier, resource, window_start, count, limit_value, window_seconds)
                VALUES (?, ?, ?, 0, ?, ?)
                ON CONFLICT(identifier, resource) DO UPDATE SET
                    count=CASE WHEN rate_limits.window_start + excluded.window_seconds <= excluded.window_start
                               THEN 0 ELSE rate_limits.count END,
                    window_start=CASE WHEN rate_limits.window_start + excluded.window_seconds <= excluded.window_start
                                      THEN excluded.window_start ELSE rate_limits.window_start END,
                    limit_value=excluded.limit_value,
                    window_seconds=excluded.window_seconds
                """,
                (identifier, resource, now, int(limit), float(window_seconds)),
            )
            cursor = await db.execute(
                "UPDATE rate_limits SET count=count + 1 WHERE identifier=? AND resource=? AND count < ?",
                (identifier, resource, int(limit)),
            )
            allowed = cursor.rowcount == 1
            async with db.execute(
                "SELECT count, window_start FROM rate_limits WHERE identifier=? AND resource=?",
                (identifier, resource),
            ) as cur:
                row = await cur.fetchone()
        return allowed, int(row[0]), float(row[1])

    async def get_rate_limit(self, identifier: str, resource: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            "rate_limits", "SELECT * FROM rate_limits WHERE identifier=? AND resource=?", (identifier, resource)
        )

    async def delete_rate_limit(self, identifier: str, resource: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM rate_limits WHERE identifier=? AND resource=?", (identifier, resource)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete_expired_rate_limits(self, now: float) -> int:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM rate_limits WHERE window_start + window_seconds <= ?", (now,))
            await db.commit()
            return cursor.rowcount
