"""Process-level service wiring the send queue components together."""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from .dispatcher import SEND_RESOURCE, Dispatcher
from .errors import InvalidTransitionError, MailGeniusError, NotFoundError, ValidationError
from .logger import get_logger
from .metrics import QueueMetrics
from .orchestrator import CampaignSendOrchestrator, segment_conditions
from .persistence import Persistence
from .progress import PROGRESS_CANCELLED, ProgressTracker
from .queue import DEFAULT_BATCH_SIZE, DEFAULT_MAX_RETRIES, DEFAULT_PRIORITY, JobQueue
from .rate_limit import RateLimiter
from .retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY, DEFAULT_MULTIPLIER, RetrySystem
from .senders import DryRunSender, build_sender
from .states import JOB_CANCELLED, JOB_FAILED, RECIPIENT_FAILED, TERMINAL_JOB_STATUSES
from .workers import WorkerPool

CLEANUP_INTERVAL = 3600.0


class MailGeniusService:
    """Own persistence, queue, workers and the maintenance loop.

    Every collaborator is built here from explicit arguments; nothing is a
    module-level singleton. ``clock`` is shared by all components so tests
    can drive time deterministically.
    """

    def __init__(
        self,
        *,
        db_path: str | None = "/data/mailgenius.db",
        logger=None,
        metrics: QueueMetrics | None = None,
        sender=None,
        clock: Callable[[], float] = time.time,
        min_workers: int = 2,
        max_workers: int = 10,
        worker_lower_bound: int = 1,
        worker_upper_bound: int = 20,
        autoscale: bool = True,
        poll_interval: float = 1.0,
        heartbeat_interval: float = 30.0,
        stop_timeout: float = 30.0,
        max_rate_limit_wait: float = 60.0,
        max_queue_size: int = 1000,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        default_priority: int = DEFAULT_PRIORITY,
        retry_base_delay: float = DEFAULT_BASE_DELAY,
        retry_multiplier: float = DEFAULT_MULTIPLIER,
        retry_max_delay: float = DEFAULT_MAX_DELAY,
        rate_limit_profiles: Optional[Mapping[str, Any]] = None,
        rate_limit_resource: str = SEND_RESOURCE,
        maintenance_interval: float = 30.0,
        retention_days: int = 30,
        progress_ttl_seconds: int = 3600,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
    ):
        self.logger = logger or get_logger()
        self.clock = clock
        self.metrics = metrics or QueueMetrics()
        self.persistence = Persistence(db_path or ":memory:")
        self.sender = sender or DryRunSender(logger=self.logger)
        self.progress = ProgressTracker(
            self.persistence, clock=clock, ttl_seconds=progress_ttl_seconds, logger=self.logger
        )
        self.rate_limiter = RateLimiter(
            self.persistence, profiles=rate_limit_profiles, clock=clock, logger=self.logger
        )
        self.queue = JobQueue(
            self.persistence,
            self.progress,
            clock=clock,
            logger=self.logger,
            default_batch_size=batch_size,
            default_max_retries=max_retries,
        )
        self.dispatcher = Dispatcher(
            self.persistence,
            self.sender,
            self.rate_limiter,
            self.progress,
            metrics=self.metrics,
            clock=clock,
            logger=self.logger,
            log_delivery_activity=log_delivery_activity,
            rate_limit_resource=rate_limit_resource,
        )
        self.retry_system = RetrySystem(
            self.persistence,
            self.dispatcher,
            clock=clock,
            logger=self.logger,
            metrics=self.metrics,
            base_delay=retry_base_delay,
            multiplier=retry_multiplier,
            max_delay=retry_max_delay,
            default_max_retries=max_retries,
        )
        self.orchestrator = CampaignSendOrchestrator(
            self.persistence,
            self.queue,
            clock=clock,
            logger=self.logger,
            default_priority=default_priority,
            on_enqueued=lambda _job_id: self.pool.wake(),
        )
        self.pool = WorkerPool(
            self.persistence,
            self.queue,
            self.dispatcher,
            self.retry_system,
            self.progress,
            clock=clock,
            logger=self.logger,
            metrics=self.metrics,
            min_workers=min_workers,
            max_workers=max_workers,
            lower_bound=worker_lower_bound,
            upper_bound=worker_upper_bound,
            poll_interval=poll_interval,
            heartbeat_interval=heartbeat_interval,
            stop_timeout=stop_timeout,
            max_rate_limit_wait=max_rate_limit_wait,
            max_queue_size=max_queue_size,
            test_mode=test_mode,
            on_job_finished=self.orchestrator.on_job_finished,
        )
        self._autoscale = bool(autoscale)
        self._test_mode = bool(test_mode)
        self._maintenance_interval = math.inf if self._test_mode else max(1.0, float(maintenance_interval))
        self._retention_days = int(retention_days)
        self._last_cleanup = 0.0
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task_maintenance: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any], **overrides: Any) -> "MailGeniusService":
        """Build a service from :func:`mailgenius.config.load_settings` output."""
        logger = overrides.pop("logger", None) or get_logger()
        keys = (
            "db_path", "min_workers", "max_workers", "worker_lower_bound", "worker_upper_bound", "autoscale",
            "poll_interval", "heartbeat_interval", "stop_timeout", "max_rate_limit_wait", "max_queue_size",
            "batch_size", "max_retries", "default_priority", "retry_base_delay", "retry_multiplier", "retry_max_delay",
            "rate_limit_profiles", "rate_limit_resource", "maintenance_interval", "retention_days",
            "progress_ttl_seconds", "test_mode", "log_delivery_activity",
        )
        kwargs = {key: settings[key] for key in keys if settings.get(key) is not None}
        if "sender" not in overrides:
            kwargs["sender"] = build_sender(dict(settings), logger=logger)
        kwargs.update(overrides)
        return cls(logger=logger, **kwargs)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        await self.persistence.init_db()

    async def start(self) -> None:
        """Create the schema, start the workers and the maintenance loop."""
        self.logger.debug("Starting MailGeniusService...")
        await self.init()
        self._stop.clear()
        await self.pool.start()
        if not self._test_mode:
            self._task_maintenance = asyncio.create_task(self._maintenance_loop(), name="mailgenius-maintenance")
        self.logger.info("MailGenius service started")

    async def stop(self) -> None:
        """Stop workers gracefully, then the maintenance loop and the sender."""
        self._stop.set()
        self._wake_event.set()
        await self.pool.stop()
        if self._task_maintenance:
            await asyncio.gather(self._task_maintenance, return_exceptions=True)
            self._task_maintenance = None
        close = getattr(self.sender, "close", None)
        if close is not None:
            await close()
        self.logger.info("MailGenius service stopped")

    async def _maintenance_loop(self) -> None:
        """Reap stale workers, sweep retries, scale the pool and refresh gauges."""
        while not self._stop.is_set():
            try:
                await self.run_maintenance()
            except Exception as exc:
                self.logger.exception("Unhandled error in maintenance loop: %s", exc)
            await self._wait_for_wakeup(self._maintenance_interval)

    async def run_maintenance(self) -> Dict[str, Any]:
        requeued = await self.pool.reap_stale_workers()
        sweep = await self.retry_system.sweep()
        scheduled = await self.orchestrator.process_scheduled()
        scaled = await self.pool.check_and_scale() if self._autoscale else None
        await self.pool.stats()
        health = await self.pool.health()
        cleaned = None
        if self.clock() - self._last_cleanup >= CLEANUP_INTERVAL:
            cleaned = await self.cleanup()
            self._last_cleanup = self.clock()
        if sweep["processed"] or requeued:
            self.pool.wake()
        return {
            "requeued": requeued,
            "retry_sweep": sweep,
            "scheduled": scheduled,
            "scaled": scaled,
            "cleaned": cleaned,
            "alerts": health["alerts"],
        }

    async def cleanup(self, days: Optional[int] = None) -> Dict[str, int]:
        """Apply retention to jobs and retries and expire progress and rate-limit windows."""
        retention = self._retention_days if days is None else int(days)
        return {
            "jobs": await self.queue.cleanup_older_than(retention),
            "retries": await self.retry_system.cleanup_old_retry_jobs(retention),
            "progress": await self.progress.cleanup_expired(),
            "rate_limits": await self.rate_limiter.cleanup_expired(),
        }

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the maintenance loop while allowing early shutdown."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            async with asyncio.timeout(max(0.0, float(timeout))):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands.

        Domain errors are returned as ``{"ok": False, "error", "code", "status"}``.
        """
        payload = payload or {}
        try:
            return await self._dispatch(cmd, payload)
        except MailGeniusError as exc:
            self.logger.info("Command %s rejected: %s", cmd, exc)
            return {"ok": False, "error": str(exc), "code": exc.code, "status": exc.status_code}

    async def _dispatch(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "run now":
            self.pool.wake()
            return {"ok": True}
        if cmd == "pause":
            self.pool.pause()
            return {"ok": True, "paused": True}
        if cmd == "resume":
            self.pool.resume()
            return {"ok": True, "paused": False}
        if cmd == "clean":
            days = payload.get("days")
            return {"ok": True, "removed": await self.cleanup(None if days is None else int(days))}
        if cmd == "sendCampaign":
            campaign_id = _require(payload, "campaign_id")
            result = await self.orchestrator.send_campaign(
                campaign_id,
                batch_size=payload.get("batch_size"),
                priority=payload.get("priority"),
                max_retries=payload.get("max_retries"),
                owner_id=payload.get("owner_id"),
            )
            return {"ok": True, **result}
        if cmd == "enqueueJob":
            job_id = await self.queue.enqueue(payload)
            self.pool.wake()
            return {"ok": True, "job_id": job_id}
        if cmd == "listJobs":
            jobs = await self.queue.list_jobs(
                workspace_id=payload.get("workspace_id"),
                status=payload.get("status"),
                limit=int(payload.get("limit") or 100),
            )
            return {"ok": True, "jobs": jobs}
        if cmd == "getJob":
            job_id = _require(payload, "id")
            job = await self.queue.get_job(job_id)
            return {
                "ok": True,
                "job": job,
                "batches": await self.queue.list_batches(job_id),
                "progress": await self.progress.get_progress(job_id),
            }
        if cmd == "cancelJob":
            return {"ok": True, "job": await self.cancel_job(_require(payload, "id"))}
        if cmd == "retryJob":
            return {"ok": True, "job_id": await self.retry_job(_require(payload, "id"))}
        if cmd == "removeJob":
            job_id = _require(payload, "id")
            job = await self.queue.get_job(job_id)
            if job["status"] not in TERMINAL_JOB_STATUSES:
                raise InvalidTransitionError(job["status"], "removed", f"Job '{job_id}' is still {job['status']}")
            return {"ok": True, "removed": await self.persistence.delete_job(job_id)}
        if cmd == "restartWorkers":
            await self.pool.restart()
            return {"ok": True, "workers": await self.pool.list_workers()}
        if cmd == "scaleWorkers":
            return await self.pool.scale_workers(_require(payload, "count"))
        if cmd == "listWorkers":
            return {"ok": True, "workers": await self.pool.list_workers()}
        if cmd == "workerHealth":
            return {"ok": True, **await self.pool.health()}
        if cmd == "getProgress":
            progress_id = _require(payload, "id")
            record = await self.progress.get_progress(progress_id)
            if record is None:
                raise NotFoundError(f"Progress record '{progress_id}' not found")
            return {"ok": True, "progress": record}
        if cmd == "listProgress":
            owner_id = _require(payload, "owner_id")
            return {"ok": True, "progress": await self.progress.get_user_progress(owner_id)}
        if cmd == "resetRateLimit":
            identifier = _require(payload, "identifier")
            resource = payload.get("resource") or self.dispatcher.rate_limit_resource
            return {"ok": True, "reset": await self.rate_limiter.reset(identifier, resource)}
        if cmd == "rateLimitStatus":
            identifier = _require(payload, "identifier")
            resource = payload.get("resource") or self.dispatcher.rate_limit_resource
            return {"ok": True, **await self.rate_limiter.status(identifier, resource)}
        if cmd == "retrySweep":
            summary = await self.retry_system.sweep()
            if summary["processed"]:
                self.pool.wake()
            return {"ok": True, **summary}
        if cmd == "processScheduled":
            return {"ok": True, **await self.orchestrator.process_scheduled()}
        if cmd == "cleanupExpired":
            return {
                "ok": True,
                "progress": await self.progress.cleanup_expired(),
                "rate_limits": await self.rate_limiter.cleanup_expired(),
            }
        if cmd == "stats":
            return {
                "ok": True,
                "jobs": await self.queue.stats(payload.get("workspace_id")),
                "retries": await self.retry_system.stats(),
                "system": await self.pool.stats(),
            }
        if cmd == "addCampaign":
            return {"ok": True, "campaign": await self.add_campaign(payload)}
        if cmd == "listCampaigns":
            return {"ok": True, "campaigns": await self.persistence.list_campaigns(payload.get("workspace_id"))}
        if cmd == "addLead":
            return {"ok": True, "lead": await self.add_lead(payload)}
        if cmd == "listLeads":
            workspace_id = _require(payload, "workspace_id")
            leads = await self.persistence.list_leads(workspace_id, status=payload.get("status", "active"))
            return {"ok": True, "leads": leads}
        return {"ok": False, "error": "unknown command"}

    # ------------------------------------------------------------------- jobs
    async def cancel_job(self, job_id: str) -> Dict[str, Any]:
        """Cancel a non-terminal job; a worker honours it at the next batch boundary."""
        job = await self.queue.update_status(job_id, JOB_CANCELLED)
        try:
            await self.progress.update_progress(job_id, {"status": PROGRESS_CANCELLED, "message": "Cancelled"})
        except NotFoundError:
            pass
        await self.orchestrator.on_job_finished(job)
        self.logger.info("Job %s cancelled", job_id)
        return job

    async def retry_job(self, job_id: str) -> str:
        """Queue a new job with the permanently failed recipients of a ``failed`` job."""
        job = await self.queue.get_job(job_id)
        if job["status"] != JOB_FAILED:
            raise InvalidTransitionError(job["status"], "retry", f"Only failed jobs can be retried (job is {job['status']})")
        failed = await self.persistence.list_recipients(job_id, status=RECIPIENT_FAILED)
        if not failed:
            raise ValidationError(f"Job '{job_id}' has no failed recipients")
        payload = dict(job["payload"] or {})
        payload["recipients"] = [
            {
                "lead_id": row["lead_id"],
                "email": row["email"],
                "subject": row["subject"],
                "html": row["html"],
                "text": row["text"],
            }
            for row in failed
        ]
        payload["tracking"] = {**(payload.get("tracking") or {}), "retry_of": job_id}
        new_id = await self.queue.enqueue(
            {
                "workspace_id": job["workspace_id"],
                "campaign_id": job["campaign_id"],
                "job_type": job["job_type"],
                "priority": job["priority"],
                "batch_size": job["batch_size"],
                "max_retries": job["max_retries"],
                "payload": payload,
            }
        )
        self.logger.info("Job %s retried as %s (%d recipients)", job_id, new_id, len(failed))
        self.pool.wake()
        return new_id

    # ------------------------------------------------------------ campaigns/leads
    async def add_campaign(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        for key in ("id", "workspace_id", "subject", "html_content", "from_email"):
            _require(payload, key)
        segment_conditions(payload.get("segment"))
        status = payload.get("status") or ("scheduled" if payload.get("scheduled_at") else "draft")
        now = self.clock()
        campaign = {
            "id": payload["id"],
            "workspace_id": payload["workspace_id"],
            "name": payload.get("name"),
            "subject": payload["subject"],
            "html_content": payload["html_content"],
            "text_content": payload.get("text_content"),
            "from_email": payload["from_email"],
            "reply_to": payload.get("reply_to"),
            "segment": payload.get("segment"),
            "status": status,
            "scheduled_at": payload.get("scheduled_at"),
            "created_at": now,
            "updated_at": now,
        }
        await self.persistence.add_campaign(campaign)
        return await self.persistence.get_campaign(campaign["id"])

    async def add_lead(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        for key in ("id", "workspace_id", "email"):
            _require(payload, key)
        tags = payload.get("tags") or []
        if not isinstance(tags, list):
            raise ValidationError("tags must be a list")
        lead = {
            "id": payload["id"],
            "workspace_id": payload["workspace_id"],
            "email": payload["email"],
            "name": payload.get("name"),
            "company": payload.get("company"),
            "position": payload.get("position"),
            "phone": payload.get("phone"),
            "status": payload.get("status") or "active",
            "tags": tags,
            "custom_fields": payload.get("custom_fields") or {},
            "created_at": payload.get("created_at") or self.clock(),
        }
        await self.persistence.add_lead(lead)
        return lead

    async def list_jobs(self, **filters: Any) -> List[Dict[str, Any]]:
        return await self.queue.list_jobs(**filters)


def _require(payload: Mapping[str, Any], key: str) -> Any:
    value = payload.get(key) if isinstance(payload, Mapping) else None
    if value is None or value == "":
        raise ValidationError(f"missing '{key}'")
    return value
