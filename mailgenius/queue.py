"""Durable job queue: enqueue, exclusive claim, status transitions, retention."""

from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from .batching import batch_id, coerce_batch_size, split_batches
from .errors import ClaimConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .logger import get_logger
from .persistence import Persistence
from .progress import ProgressTracker
from .states import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_RETRYING,
    RECIPIENT_PENDING,
    check_job_transition,
)
from .templating import render

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_RETRIES = 3
DEFAULT_PRIORITY = 0
JOB_TYPES = ("campaign", "automation", "transactional")


class JobQueue:
    """Job store contract consumed by the workers and the orchestrator."""

    def __init__(
        self,
        persistence: Persistence,
        progress: ProgressTracker,
        *,
        clock: Callable[[], float] = time.time,
        logger=None,
        default_batch_size: int = DEFAULT_BATCH_SIZE,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        claim_scan_limit: int = 10,
    ):
        self.persistence = persistence
        self.progress = progress
        self.clock = clock
        self.logger = logger or get_logger("MailGenius.queue")
        self.default_batch_size = int(default_batch_size)
        self.default_max_retries = int(default_max_retries)
        self.claim_scan_limit = max(1, int(claim_scan_limit))

    # ------------------------------------------------------------------ enqueue
    async def enqueue(self, job: Dict[str, Any]) -> str:
        """Validate and store a job with its batches, recipients and progress record.

        ``job`` carries ``workspace_id``, optional ``campaign_id``/``id``/``job_type``/
        ``priority``/``batch_size``/``max_retries``/``scheduled_at``/``owner_id`` and a
        ``payload`` with ``recipients``, ``template``, ``sender`` and ``tracking``.
        Recipients may arrive pre-rendered (``subject``/``html``/``text``); otherwise
        the template is rendered with the recipient's ``variables``.
        """
        if not isinstance(job, dict):
            raise ValidationError("Job must be a mapping")
        workspace_id = job.get("workspace_id")
        if not workspace_id:
            raise ValidationError("missing workspace_id")
        payload = dict(job.get("payload") or {})
        recipients = payload.pop("recipients", None)
        if not isinstance(recipients, list) or not recipients:
            raise ValidationError("Job has no recipients")
        batch_size = job.get("batch_size", self.default_batch_size)
        descriptors = split_batches(recipients, batch_size)
        batch_size = coerce_batch_size(batch_size)

        max_retries = job.get("max_retries", self.default_max_retries)
        try:
            max_retries = int(max_retries)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid max_retries: {max_retries!r}")
        if max_retries < 0:
            raise ValidationError("max_retries must not be negative")
        try:
            priority = int(job.get("priority", DEFAULT_PRIORITY) or 0)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid priority: {job.get('priority')!r}")
        job_type = job.get("job_type") or "campaign"
        if job_type not in JOB_TYPES:
            raise ValidationError(f"Unknown job type '{job_type}'")

        template = payload.get("template") or {}
        sender = payload.get("sender") or {}
        if not sender.get("from_email"):
            raise ValidationError("missing sender.from_email")

        job_id = str(job.get("id") or uuid.uuid4())
        rows = []
        for position, recipient in enumerate(recipients):
            rows.append(self._recipient_row(job_id, position, recipient, template, batch_size))

        now = self.clock()
        tracking = dict(payload.get("tracking") or {})
        tracking.setdefault("workspace_id", workspace_id)
        if job.get("campaign_id"):
            tracking.setdefault("campaign_id", job["campaign_id"])
        payload["tracking"] = tracking
        record = {
            "id": job_id,
            "workspace_id": workspace_id,
            "campaign_id": job.get("campaign_id"),
            "job_type": job_type,
            "priority": priority,
            "status": JOB_PENDING,
            "payload": payload,
            "batch_size": batch_size,
            "max_retries": max_retries,
            "retry_count": 0,
            "total_recipients": len(rows),
            "scheduled_at": job.get("scheduled_at"),
            "created_at": now,
            "updated_at": now,
        }
        batches = [
            {
                "id": batch_id(job_id, item["batch_index"]),
                "job_id": job_id,
                "batch_index": item["batch_index"],
                "start_record": item["start_record"],
                "end_record": item["end_record"],
                "status": "pending",
            }
            for item in descriptors
        ]
        progress = self.progress.build_record(
            job_id,
            f"{job_type}_send",
            job.get("owner_id") or workspace_id,
            len(rows),
            metadata={
                "workspace_id": workspace_id,
                "campaign_id": job.get("campaign_id"),
                "batches": len(batches),
            },
            message="Queued",
        )
        await self.persistence.insert_job(record, batches, rows, progress)
        self.logger.info(
            "Enqueued job %s (%d recipients, %d batches, priority=%d)", job_id, len(rows), len(batches), priority
        )
        return job_id

    @staticmethod
    def _recipient_row(
        job_id: str,
        position: int,
        recipient: Any,
        template: Dict[str, Any],
        batch_size: int,
    ) -> Dict[str, Any]:
        if isinstance(recipient, str):
            recipient = {"email": recipient}
        if not isinstance(recipient, dict) or not recipient.get("email"):
            raise ValidationError(f"Recipient #{position} has no email address")
        variables = recipient.get("variables") or {"email": recipient["email"]}
        subject = recipient.get("subject") or render(template.get("subject"), variables)
        html = recipient.get("html") or render(template.get("html"), variables)
        text = recipient.get("text") or (render(template["text"], variables) if template.get("text") else None)
        if not subject:
            raise ValidationError(f"Recipient #{position} has no subject")
        if not html and not text:
            raise ValidationError(f"Recipient #{position} has no content")
        return {
            "id": f"{job_id}:{position}",
            "job_id": job_id,
            "batch_index": position // batch_size,
            "position": position,
            "lead_id": recipient.get("lead_id"),
            "email": recipient["email"],
            "subject": subject,
            "html": html or "",
            "text": text,
            "status": RECIPIENT_PENDING,
        }

    # -------------------------------------------------------------------- claim
    async def claim_next(self, worker_id: str) -> Optional[Dict[str, Any]]:
        """Claim the most urgent eligible job for ``worker_id`` or return ``None``."""
        now = self.clock()
        for job_id, status in await self.persistence.claim_candidates(now, self.claim_scan_limit):
            try:
                await self._claim(job_id, status, worker_id, now)
            except ClaimConflictError:
                self.logger.debug("Job %s claimed by another worker, trying next", job_id)
                continue
            return await self.persistence.get_job(job_id)
        return None

    async def _claim(self, job_id: str, status: str, worker_id: str, now: float) -> None:
        if not await self.persistence.try_claim_job(job_id, status, worker_id, now):
            raise ClaimConflictError(f"Job {job_id} is no longer {status}")

    # --------------------------------------------------------------- transitions
    async def update_status(
        self,
        job_id: str,
        status: str,
        error: Optional[str] = None,
        *,
        scheduled_at: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Move a job along the state graph, leaving it untouched on illegal moves."""
        job = await self.persistence.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        current = job["status"]
        check_job_transition(current, status)
        now = self.clock()
        fields: Dict[str, Any] = {}
        if error is not None:
            fields["error_message"] = error
        if status == JOB_COMPLETED:
            fields.update(completed_at=now, worker_id=None)
        elif status == JOB_FAILED:
            fields.update(failed_at=now, worker_id=None)
        elif status == JOB_CANCELLED:
            fields.update(completed_at=now, worker_id=None)
        elif status == JOB_RETRYING:
            fields.update(worker_id=None, scheduled_at=scheduled_at if scheduled_at is not None else now)
        elif status == JOB_PROCESSING:
            fields["started_at"] = job.get("started_at") or now
        if not await self.persistence.transition_job(job_id, current, status, now, fields):
            latest = await self.persistence.get_job(job_id)
            raise InvalidTransitionError(latest["status"] if latest else current, status)
        self.logger.debug("Job %s: %s -> %s", job_id, current, status)
        return await self.persistence.get_job(job_id)

    async def reschedule(self, job_id: str, scheduled_at: float) -> bool:
        """Move the due time of a ``retrying`` job."""
        return await self.persistence.transition_job(
            job_id, JOB_RETRYING, JOB_RETRYING, self.clock(), {"scheduled_at": scheduled_at}
        )

    # ------------------------------------------------------------------ queries
    async def get_job(self, job_id: str) -> Dict[str, Any]:
        job = await self.persistence.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return job

    async def list_jobs(self, **filters: Any) -> List[Dict[str, Any]]:
        return await self.persistence.list_jobs(**filters)

    async def list_batches(self, job_id: str) -> List[Dict[str, Any]]:
        return await self.persistence.list_batches(job_id)

    async def stats(self, workspace_id: Optional[str] = None) -> Dict[str, Any]:
        """Counts per status plus email totals."""
        by_status = await self.persistence.job_status_counts(workspace_id)
        totals = {"total_emails": 0, "sent_emails": 0, "failed_emails": 0}
        for row in by_status.values():
            totals["total_emails"] += row["total"]
            totals["sent_emails"] += row["processed"]
            totals["failed_emails"] += row["failed"]
        jobs = {status: row["jobs"] for status, row in by_status.items()}
        return {"jobs": jobs, "total_jobs": sum(jobs.values()), **totals}

    # ---------------------------------------------------------------- retention
    async def cleanup_older_than(self, days: int) -> int:
        """Delete terminal jobs (with batches, recipients and progress) older than ``days``."""
        if int(days) < 0:
            raise ValidationError("days must not be negative")
        cutoff = self.clock() - int(days) * 86400
        removed = await self.persistence.delete_jobs_finished_before(cutoff)
        if removed:
            self.logger.info("Removed %d jobs older than %d days", removed, days)
        return removed
