"""Progress records polled by dashboards and the admin API."""

from __future__ import annotations

import math
import time
from typing import Any, Callable, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .logger import get_logger
from .persistence import Persistence

PROGRESS_PENDING = "pending"
PROGRESS_PROCESSING = "processing"
PROGRESS_COMPLETED = "completed"
PROGRESS_FAILED = "failed"
PROGRESS_CANCELLED = "cancelled"
FINISHED_PROGRESS_STATUSES = (PROGRESS_COMPLETED, PROGRESS_FAILED, PROGRESS_CANCELLED)

COUNTER_FIELDS = ("processed_items", "failed_items")
PLAIN_FIELDS = ("status", "message", "metadata", "end_time")
TOTAL_FIELD = "total_items"


def progress_percentage(record: Dict[str, Any]) -> int:
    total = int(record.get("total_items") or 0)
    if total <= 0:
        return 0
    done = int(record.get("processed_items") or 0) + int(record.get("failed_items") or 0)
    return math.floor(100 * done / total + 0.5)


class ProgressTracker:
    """Read-mostly projection of job state.

    Counter updates are applied by the database (additive increments, or
    ``MAX`` of stored and supplied values) so concurrent writers never lose
    updates and counters never move backwards outside :meth:`reset`.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        clock: Callable[[], float] = time.time,
        ttl_seconds: int = 3600,
        logger=None,
    ):
        self.persistence = persistence
        self.clock = clock
        self.ttl_seconds = int(ttl_seconds)
        self.logger = logger or get_logger("MailGenius.progress")

    def build_record(
        self,
        progress_id: str,
        type: str,
        owner_id: Optional[str],
        total_items: int,
        metadata: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return a new record ready to be inserted (used by the queue's atomic enqueue)."""
        total = int(total_items)
        if total < 0:
            raise ValidationError("total_items must not be negative")
        now = self.clock()
        return {
            "id": progress_id,
            "type": type,
            "owner_id": owner_id,
            "status": PROGRESS_PENDING,
            "total_items": total,
            "processed_items": 0,
            "failed_items": 0,
            "message": message,
            "start_time": now,
            "end_time": None,
            "metadata": metadata or {},
            "updated_at": now,
        }

    async def create_progress(
        self,
        progress_id: str,
        type: str,
        owner_id: Optional[str],
        total_items: int,
        metadata: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = self.build_record(progress_id, type, owner_id, total_items, metadata, message)
        await self.persistence.insert_progress(record)
        return self._present(record)

    async def update_progress(self, progress_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial update.

        ``processed_items``/``failed_items`` are treated as high-water marks:
        a lower value than the stored one is ignored. ``total_items`` may
        only change to a value still covering both counters.
        """
        unknown = set(fields) - set(COUNTER_FIELDS) - set(PLAIN_FIELDS) - {TOTAL_FIELD}
        if unknown:
            raise ValidationError(f"Unknown progress fields: {sorted(unknown)}")
        current = await self.persistence.get_progress(progress_id)
        if current is None:
            raise NotFoundError(f"Progress record '{progress_id}' not found")
        now = self.clock()

        if TOTAL_FIELD in fields:
            try:
                total = int(fields[TOTAL_FIELD])
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid total_items: {fields[TOTAL_FIELD]!r}")
            if total < 0:
                raise ValidationError("total_items must not be negative")
            if not await self.persistence.set_progress_total(progress_id, total, now):
                raise ValidationError("total_items cannot be lower than processed_items + failed_items")

        plain = {key: fields[key] for key in PLAIN_FIELDS if key in fields}
        if plain.get("status") in FINISHED_PROGRESS_STATUSES and "end_time" not in plain:
            plain["end_time"] = now
        if plain:
            await self.persistence.update_progress(progress_id, plain, now)

        if any(key in fields for key in COUNTER_FIELDS):
            processed = fields.get("processed_items")
            failed = fields.get("failed_items")
            changed = await self.persistence.raise_progress_counters(
                progress_id,
                None if processed is None else int(processed),
                None if failed is None else int(failed),
                now,
            )
            if not changed:
                raise ValidationError("processed_items + failed_items cannot exceed total_items")
        return await self.get_progress(progress_id)

    async def increment(self, progress_id: str, processed: int = 0, failed: int = 0) -> bool:
        """Atomically add to the counters; returns ``False`` if the record is gone or full."""
        if processed < 0 or failed < 0:
            raise ValidationError("Progress increments must be non-negative")
        if not processed and not failed:
            return True
        changed = await self.persistence.increment_progress(progress_id, processed, failed, self.clock())
        if not changed:
            self.logger.warning(
                "Progress increment ignored for %s (processed=%d, failed=%d)", progress_id, processed, failed
            )
        return bool(changed)

    async def reset(self, progress_id: str, message: Optional[str] = None) -> Dict[str, Any]:
        """Explicitly zero the counters, the one operation allowed to lower them."""
        if await self.persistence.get_progress(progress_id) is None:
            raise NotFoundError(f"Progress record '{progress_id}' not found")
        await self.persistence.update_progress(
            progress_id,
            {"processed_items": 0, "failed_items": 0, "status": PROGRESS_PENDING, "message": message, "end_time": None},
            self.clock(),
        )
        return await self.get_progress(progress_id)

    async def get_progress(self, progress_id: str) -> Optional[Dict[str, Any]]:
        record = await self.persistence.get_progress(progress_id)
        return self._present(record) if record else None

    async def get_user_progress(self, owner_id: str) -> List[Dict[str, Any]]:
        records = await self.persistence.list_progress(owner_id)
        return [self._present(record) for record in records]

    async def delete_progress(self, progress_id: str) -> bool:
        return await self.persistence.delete_progress(progress_id)

    async def cleanup_expired(self) -> int:
        """Delete finished records older than the configured TTL."""
        if self.ttl_seconds <= 0:
            return 0
        removed = await self.persistence.delete_progress_before(self.clock() - self.ttl_seconds)
        if removed:
            self.logger.info("Removed %d expired progress records", removed)
        return removed

    @staticmethod
    def _present(record: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(record)
        data["progress"] = progress_percentage(data)
        return data
