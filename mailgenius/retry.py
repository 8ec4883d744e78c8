"""Deferred re-attempts of failed recipient sends."""

from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, Optional

from .dispatcher import Dispatcher
from .errors import NotFoundError, RateLimitExceeded, RetryExhaustedError, ValidationError
from .logger import get_logger
from .persistence import Persistence
from .states import (
    JOB_CANCELLED,
    JOB_RETRYING,
    OPEN_RETRY_STATUSES,
    RETRY_EXHAUSTED,
    RETRY_SCHEDULED,
    RETRY_SUCCEEDED,
)

DEFAULT_BASE_DELAY = 300
DEFAULT_MULTIPLIER = 3
DEFAULT_MAX_DELAY = 7200
DEFAULT_MAX_RETRIES = 3
DEFAULT_SWEEP_LIMIT = 50


class RetrySystem:
    """Schedule, execute and expire retry entries.

    ``attempt_count`` is the number of the re-attempt an entry is waiting
    for: it starts at 1 and is bumped each time an attempt fails and another
    one is allowed, so it never exceeds ``max_retries``. Delays grow as
    ``base * multiplier ** (attempt_count - 1)`` capped at ``max_delay``.
    """

    def __init__(
        self,
        persistence: Persistence,
        dispatcher: Dispatcher,
        *,
        clock: Callable[[], float] = time.time,
        logger=None,
        metrics=None,
        base_delay: float = DEFAULT_BASE_DELAY,
        multiplier: float = DEFAULT_MULTIPLIER,
        max_delay: float = DEFAULT_MAX_DELAY,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        sweep_limit: int = DEFAULT_SWEEP_LIMIT,
    ):
        if base_delay < 0 or max_delay < 0 or multiplier < 1:
            raise ValueError("Retry delays must be non-negative and the multiplier at least 1")
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.clock = clock
        self.logger = logger or get_logger("MailGenius.retry")
        self.metrics = metrics
        self.base_delay = float(base_delay)
        self.multiplier = float(multiplier)
        self.max_delay = float(max_delay)
        self.default_max_retries = int(default_max_retries)
        self.sweep_limit = max(1, int(sweep_limit))

    def compute_delay(self, attempt_count: int, base: Optional[float] = None) -> float:
        base_delay = self.base_delay if base is None else float(base)
        return min(self.max_delay, base_delay * self.multiplier ** max(0, attempt_count - 1))

    def next_delay(self, previous_delay: float) -> float:
        return min(self.max_delay, max(float(previous_delay), float(previous_delay) * self.multiplier))

    async def create_retry(
        self,
        original_job_id: str,
        target_id: str,
        max_retries: Optional[int] = None,
        delay_seconds: Optional[float] = None,
        error: Optional[str] = None,
    ) -> str:
        """Schedule the first re-attempt of ``target_id``; returns the entry id.

        An already open entry for the same target is reused.
        """
        limit = self.default_max_retries if max_retries is None else int(max_retries)
        if limit < 1:
            raise ValidationError("max_retries must be at least 1 to schedule a retry")
        if delay_seconds is not None and float(delay_seconds) < 0:
            raise ValidationError("delay_seconds must not be negative")
        for entry in await self.persistence.list_retries(target_id=target_id):
            if entry["status"] in OPEN_RETRY_STATUSES:
                return entry["id"]
        now = self.clock()
        delay = self.compute_delay(1, delay_seconds)
        retry_id = str(uuid.uuid4())
        await self.persistence.insert_retry(
            {
                "id": retry_id,
                "original_job_id": original_job_id,
                "target_id": target_id,
                "attempt_count": 1,
                "max_retries": limit,
                "delay_seconds": delay,
                "next_attempt_at": now + delay,
                "status": RETRY_SCHEDULED,
                "error_message": error,
                "created_at": now,
                "updated_at": now,
            }
        )
        self.logger.info("Retry %s scheduled for %s in %ds", retry_id, target_id, int(delay))
        return retry_id

    async def get_retry(self, retry_id: str) -> Dict[str, Any]:
        entry = await self.persistence.get_retry(retry_id)
        if entry is None:
            raise NotFoundError(f"Retry entry '{retry_id}' not found")
        return entry

    # -------------------------------------------------------------------- sweep
    async def sweep(self, *, job_id: Optional[str] = None, limit: Optional[int] = None) -> Dict[str, int]:
        """Execute due entries; with ``job_id`` only that job's entries are considered."""
        summary = {"processed": 0, "succeeded": 0, "rescheduled": 0, "exhausted": 0, "deferred": 0}
        now = self.clock()
        due = await self.persistence.due_retries(now, limit=limit or self.sweep_limit, job_id=job_id)
        touched = set()
        for entry in due:
            if not await self.persistence.try_mark_retry_executing(entry["id"], now):
                continue
            outcome = await self._execute(entry)
            summary["processed"] += 1
            summary[outcome] += 1
            touched.add(entry["original_job_id"])
        if job_id is None:
            for touched_job in touched:
                await self._wake_job(touched_job)
        if summary["processed"]:
            self.logger.info("Retry sweep: %s", summary)
        return summary

    async def _execute(self, entry: Dict[str, Any]) -> str:
        now = self.clock()
        recipient = await self.persistence.get_recipient(entry["target_id"])
        job = await self.persistence.get_job(entry["original_job_id"])
        if recipient is None or job is None:
            await self.persistence.update_retry(
                entry["id"], {"status": RETRY_EXHAUSTED, "error_message": "retry target no longer exists"}, now
            )
            return "exhausted"
        if job["status"] == JOB_CANCELLED:
            return await self._exhaust(entry, job, recipient, "job cancelled")

        try:
            result = await self.dispatcher.deliver(job, recipient, retry_attempt=entry["attempt_count"])
        except RateLimitExceeded as exc:
            await self.persistence.update_retry(
                entry["id"], {"status": RETRY_SCHEDULED, "next_attempt_at": exc.reset_time}, now
            )
            return "deferred"

        if result.get("success"):
            await self.persistence.update_retry(entry["id"], {"status": RETRY_SUCCEEDED, "error_message": None}, now)
            await self.dispatcher.record_sent(job, recipient, result)
            await self.dispatcher.maybe_close_batch(job["id"], recipient["batch_index"])
            return "succeeded"

        error = result.get("error") or "send failed"
        if not result.get("permanent") and entry["attempt_count"] < entry["max_retries"]:
            delay = self.next_delay(entry["delay_seconds"])
            await self.persistence.update_retry(
                entry["id"],
                {
                    "status": RETRY_SCHEDULED,
                    "attempt_count": entry["attempt_count"] + 1,
                    "delay_seconds": delay,
                    "next_attempt_at": now + delay,
                    "error_message": error,
                },
                now,
            )
            if self.metrics:
                self.metrics.inc_retried(job["workspace_id"])
            self.logger.warning(
                "Retry %s for %s failed (attempt %d/%d): %s - retrying in %ds",
                entry["id"],
                recipient["email"],
                entry["attempt_count"],
                entry["max_retries"],
                error,
                int(delay),
            )
            return "rescheduled"
        return await self._exhaust(entry, job, recipient, error)

    async def _exhaust(self, entry: Dict[str, Any], job: Dict[str, Any], recipient: Dict[str, Any], error: str) -> str:
        exc = RetryExhaustedError(f"Failed after {entry['attempt_count']} retry attempts: {error}")
        await self.persistence.update_retry(
            entry["id"], {"status": RETRY_EXHAUSTED, "error_message": str(exc)}, self.clock()
        )
        await self.dispatcher.record_failed(job, recipient, str(exc))
        await self.dispatcher.maybe_close_batch(job["id"], recipient["batch_index"])
        self.logger.error("Retry %s exhausted for %s: %s", entry["id"], recipient["email"], exc)
        return "exhausted"

    async def _wake_job(self, job_id: str) -> None:
        """Bring a ``retrying`` job forward to its next due retry, or now when none is left."""
        next_at = await self.persistence.next_retry_at(job_id)
        scheduled_at = self.clock() if next_at is None else next_at
        await self.persistence.transition_job(
            job_id, JOB_RETRYING, JOB_RETRYING, self.clock(), {"scheduled_at": scheduled_at}
        )

    # ---------------------------------------------------------------- retention
    async def cleanup_old_retry_jobs(self, days: int = 30) -> int:
        """Remove succeeded/exhausted entries older than ``days``."""
        cutoff = self.clock() - int(days) * 86400
        removed = await self.persistence.delete_retries_before(cutoff)
        if removed:
            self.logger.info("Removed %d retry entries older than %d days", removed, days)
        return removed

    async def stats(self) -> Dict[str, Any]:
        counts = await self.persistence.retry_status_counts()
        finished = counts.get(RETRY_SUCCEEDED, 0) + counts.get(RETRY_EXHAUSTED, 0)
        success_rate = round(100.0 * counts.get(RETRY_SUCCEEDED, 0) / finished, 2) if finished else 0.0
        return {
            "total": sum(counts.values()),
            "by_status": counts,
            "success_rate": success_rate,
        }
