"""Per-recipient delivery and outcome bookkeeping shared by workers and retries."""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .batching import batch_id
from .errors import RateLimitExceeded
from .logger import get_logger
from .persistence import Persistence
from .progress import ProgressTracker
from .rate_limit import RateLimiter
from .states import (
    BATCH_COMPLETED,
    RECIPIENT_FAILED,
    RECIPIENT_PENDING,
    RECIPIENT_RETRYING,
    RECIPIENT_SENT,
)

SEND_RESOURCE = "email-sending"

# Called with the number of seconds until the rate-limit window resets.
# Returns False to give up waiting.
WaitCallable = Callable[[float], Awaitable[bool]]


class Dispatcher:
    """Send one stored recipient through the configured provider.

    Sends are gated by the rate limiter, keyed by the job's workspace. The
    ``record_*`` helpers update recipient, batch, job, worker and progress
    counters exactly once per terminal outcome: the recipient row is
    switched conditionally and counters only move when that switch wins.
    """

    def __init__(
        self,
        persistence: Persistence,
        sender,
        rate_limiter: RateLimiter,
        progress: ProgressTracker,
        *,
        metrics=None,
        clock: Callable[[], float] = time.time,
        logger=None,
        log_delivery_activity: bool = False,
        rate_limit_resource: str = SEND_RESOURCE,
    ):
        self.persistence = persistence
        self.sender = sender
        self.rate_limiter = rate_limiter
        self.progress = progress
        self.metrics = metrics
        self.clock = clock
        self.logger = logger or get_logger("MailGenius.dispatcher")
        self._log_delivery_activity = bool(log_delivery_activity)
        self.rate_limit_resource = rate_limit_resource

    @staticmethod
    def build_message(job: Dict[str, Any], recipient: Dict[str, Any], retry_attempt: Optional[int] = None) -> Dict[str, Any]:
        payload = job.get("payload") or {}
        sender = payload.get("sender") or {}
        tags = {"workspace_id": job["workspace_id"]}
        if job.get("campaign_id"):
            tags["campaign_id"] = job["campaign_id"]
        if retry_attempt is not None:
            tags["retry_attempt"] = str(retry_attempt)
        return {
            "to": recipient["email"],
            "subject": recipient["subject"],
            "html": recipient["html"],
            "text": recipient.get("text"),
            "from": sender.get("from_email"),
            "reply_to": sender.get("reply_to"),
            "tags": tags,
        }

    async def acquire_send_slot(self, workspace_id: str, wait: Optional[WaitCallable] = None) -> None:
        """Block until the workspace may send one more email.

        Raises :class:`RateLimitExceeded` when ``wait`` is missing or gives up.
        """
        while True:
            decision = await self.rate_limiter.check(workspace_id, self.rate_limit_resource)
            if decision["allowed"]:
                return
            if self.metrics:
                self.metrics.inc_rate_limited(workspace_id)
            delay = max(0.0, decision["reset_time"] - self.clock())
            self.logger.info("Workspace %s rate limited, window resets in %.1fs", workspace_id, delay)
            if wait is None or not await wait(delay):
                raise RateLimitExceeded(workspace_id, self.rate_limit_resource, decision["reset_time"])

    async def deliver(
        self,
        job: Dict[str, Any],
        recipient: Dict[str, Any],
        *,
        retry_attempt: Optional[int] = None,
        wait: Optional[WaitCallable] = None,
    ) -> Dict[str, Any]:
        """Send a recipient's stored content and return the provider result."""
        await self.acquire_send_slot(job["workspace_id"], wait)
        message = self.build_message(job, recipient, retry_attempt)
        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery for job %s to %s (attempt=%s)",
                job["id"],
                recipient["email"],
                retry_attempt or 1,
            )
        try:
            result = await self.sender.send(message)
        except Exception as exc:
            self.logger.exception("Sender raised while delivering to %s", recipient["email"])
            result = {"id": "", "success": False, "error": str(exc) or exc.__class__.__name__, "permanent": False}
        await self.persistence.update_recipient(
            recipient["id"], {"attempts": int(recipient.get("attempts") or 0) + 1}
        )
        recipient["attempts"] = int(recipient.get("attempts") or 0) + 1
        return result

    # ----------------------------------------------------------- bookkeeping
    async def record_sent(
        self,
        job: Dict[str, Any],
        recipient: Dict[str, Any],
        result: Dict[str, Any],
        *,
        worker_id: Optional[str] = None,
    ) -> bool:
        changed = await self.persistence.update_recipient(
            recipient["id"],
            {
                "status": RECIPIENT_SENT,
                "provider_id": result.get("id") or None,
                "sent_at": self.clock(),
                "error_message": None,
            },
            only_open=True,
        )
        if not changed:
            return False
        await self.persistence.add_batch_counts(job["id"], recipient["batch_index"], valid=1)
        await self.persistence.add_job_counts(job["id"], processed=1)
        await self.progress.increment(job["id"], processed=1)
        if worker_id:
            await self.persistence.add_worker_counts(worker_id, sent=1)
        if self.metrics:
            self.metrics.inc_sent(job["workspace_id"])
        if self._log_delivery_activity:
            self.logger.info("Delivery succeeded for job %s to %s", job["id"], recipient["email"])
        return True

    async def record_failed(
        self,
        job: Dict[str, Any],
        recipient: Dict[str, Any],
        error: Optional[str],
        *,
        worker_id: Optional[str] = None,
    ) -> bool:
        changed = await self.persistence.update_recipient(
            recipient["id"], {"status": RECIPIENT_FAILED, "error_message": error}, only_open=True
        )
        if not changed:
            return False
        await self.persistence.add_batch_counts(job["id"], recipient["batch_index"], invalid=1)
        await self.persistence.add_job_counts(job["id"], failed=1)
        await self.progress.increment(job["id"], failed=1)
        if worker_id:
            await self.persistence.add_worker_counts(worker_id, failed=1)
        if self.metrics:
            self.metrics.inc_failed(job["workspace_id"])
        self.logger.warning("Delivery failed for job %s to %s: %s", job["id"], recipient["email"], error)
        return True

    async def mark_retrying(self, recipient: Dict[str, Any], error: Optional[str]) -> None:
        await self.persistence.update_recipient(
            recipient["id"], {"status": RECIPIENT_RETRYING, "error_message": error}, only_open=True
        )

    async def maybe_close_batch(self, job_id: str, batch_index: int) -> bool:
        """Mark a batch completed once none of its recipients is pending or retrying."""
        counts = await self.persistence.recipient_status_counts(job_id, batch_index)
        if counts.get(RECIPIENT_PENDING) or counts.get(RECIPIENT_RETRYING):
            return False
        closed = await self.persistence.update_batch(
            batch_id(job_id, batch_index), {"status": BATCH_COMPLETED, "completed_at": self.clock()}
        )
        return bool(closed)
