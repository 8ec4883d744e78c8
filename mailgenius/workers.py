"""Worker pool: claim jobs, send their batches, report heartbeats."""

from __future__ import annotations

import asyncio
import math
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .dispatcher import Dispatcher
from .errors import InvalidTransitionError, NotFoundError, RateLimitExceeded, StaleWorkerError, ValidationError
from .logger import get_logger
from .persistence import Persistence
from .progress import ProgressTracker
from .queue import JobQueue
from .retry import RetrySystem
from .states import (
    BATCH_FAILED,
    BATCH_PENDING,
    BATCH_PROCESSING,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_RETRYING,
    RECIPIENT_PENDING,
    TERMINAL_BATCH_STATUSES,
    WORKER_BUSY,
    WORKER_IDLE,
    WORKER_OFFLINE,
)

POOL_LOWER_BOUND = 1
POOL_UPPER_BOUND = 20
DEFAULT_MIN_WORKERS = 2
DEFAULT_MAX_WORKERS = 10
DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_MAX_QUEUE_SIZE = 1000
FAILURE_STREAK_LIMIT = 5


class Worker:
    """In-process handle of one worker loop."""

    def __init__(self, worker_id: str, name: str):
        self.id = worker_id
        self.name = name
        self.draining = False
        self.current_job_id: Optional[str] = None
        self.task: Optional[asyncio.Task] = None
        self.heartbeat_task: Optional[asyncio.Task] = None


class WorkerPool:
    """Own a set of named workers pulling jobs from the :class:`JobQueue`.

    Each worker runs ``claim_next`` -> process batches in ``batch_index``
    order -> finalize or release. Ownership and cancellation are re-checked
    at every batch boundary, so a cancelled job or a job reclaimed from a
    stale worker never starts another batch under the old owner.
    """

    def __init__(
        self,
        persistence: Persistence,
        queue: JobQueue,
        dispatcher: Dispatcher,
        retry_system: RetrySystem,
        progress: ProgressTracker,
        *,
        clock: Callable[[], float] = time.time,
        logger=None,
        metrics=None,
        min_workers: int = DEFAULT_MIN_WORKERS,
        max_workers: int = DEFAULT_MAX_WORKERS,
        lower_bound: int = POOL_LOWER_BOUND,
        upper_bound: int = POOL_UPPER_BOUND,
        poll_interval: float = 1.0,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        stale_multiplier: float = 2.0,
        stop_timeout: float = 30.0,
        max_rate_limit_wait: float = 60.0,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        test_mode: bool = False,
        on_job_finished: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        name_prefix: str = "worker",
    ):
        if not (1 <= lower_bound <= min_workers <= max_workers <= upper_bound):
            raise ValueError(
                f"Worker bounds must satisfy 1 <= lower({lower_bound}) <= min({min_workers}) "
                f"<= max({max_workers}) <= upper({upper_bound})"
            )
        self.persistence = persistence
        self.queue = queue
        self.dispatcher = dispatcher
        self.retry_system = retry_system
        self.progress = progress
        self.clock = clock
        self.logger = logger or get_logger("MailGenius.workers")
        self.metrics = metrics
        self.min_workers = int(min_workers)
        self.max_workers = int(max_workers)
        self.lower_bound = int(lower_bound)
        self.upper_bound = int(upper_bound)
        self.heartbeat_interval = float(heartbeat_interval)
        self.stale_after = self.heartbeat_interval * float(stale_multiplier)
        self.stop_timeout = float(stop_timeout)
        self.max_rate_limit_wait = float(max_rate_limit_wait)
        self.max_queue_size = int(max_queue_size)
        self.on_job_finished = on_job_finished
        self.name_prefix = name_prefix
        self._test_mode = bool(test_mode)
        self._poll_interval = math.inf if self._test_mode else max(0.05, float(poll_interval))

        self._workers: Dict[str, Worker] = {}
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._paused = False
        self._running = False
        self._desired_workers = self.min_workers

    # ----------------------------------------------------------------- lifecycle
    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return self._paused

    def active_workers(self) -> List[Worker]:
        return [w for w in self._workers.values() if not w.draining]

    async def start(self, count: Optional[int] = None) -> None:
        """Register and launch the worker loops."""
        if self._running:
            return
        target = self._desired_workers if count is None else self._check_target(count)
        self._stop.clear()
        self._running = True
        await self._spawn(target)
        self.logger.info("Worker pool started with %d workers", target)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop every worker after its current batch.

        Workers that do not finish within ``timeout`` are cancelled; their
        jobs go back to the queue as ``retrying``.
        """
        if not self._running:
            return
        self._running = False
        self._desired_workers = max(self.lower_bound, len(self.active_workers()) or self._desired_workers)
        self._stop.set()
        self._wake_event.set()
        workers = list(self._workers.values())
        tasks = [w.task for w in workers if w.task]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.stop_timeout if timeout is None else timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                self.logger.warning("Cancelled %d workers that did not stop in time", len(pending))
        for worker in workers:
            await self._retire(worker)
        self.logger.info("Worker pool stopped")

    async def restart(self) -> None:
        count = len(self.active_workers()) or self._desired_workers
        await self.stop()
        await self.start(count)

    def pause(self) -> None:
        self._paused = True
        self.logger.info("Worker pool paused")

    def resume(self) -> None:
        self._paused = False
        self._wake_event.set()
        self.logger.info("Worker pool resumed")

    def wake(self) -> None:
        """Let idle workers poll the queue right away."""
        self._wake_event.set()

    async def _spawn(self, count: int) -> List[Worker]:
        spawned = []
        for _ in range(count):
            worker_id = f"{self.name_prefix}-{uuid.uuid4().hex[:8]}"
            worker = Worker(worker_id, worker_id)
            await self.persistence.register_worker(worker_id, worker.name, self.clock())
            self._workers[worker_id] = worker
            worker.task = asyncio.create_task(self._worker_loop(worker), name=f"mailgenius-{worker.name}")
            worker.heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(worker), name=f"mailgenius-{worker.name}-heartbeat"
            )
            spawned.append(worker)
        return spawned

    async def _retire(self, worker: Worker) -> None:
        if self._workers.pop(worker.id, None) is None:
            return
        if worker.heartbeat_task and worker.heartbeat_task is not asyncio.current_task():
            worker.heartbeat_task.cancel()
            await asyncio.gather(worker.heartbeat_task, return_exceptions=True)
        released = await self.persistence.release_worker_jobs(worker.id, self.clock())
        if released:
            self.logger.warning("Worker %s abandoned jobs %s, requeued", worker.name, ", ".join(released))
        await self.persistence.update_worker(
            worker.id, {"status": WORKER_OFFLINE, "current_job_id": None, "draining": 0}
        )
        self.logger.info("Worker %s stopped", worker.name)

    # --------------------------------------------------------------------- loops
    async def _worker_loop(self, worker: Worker) -> None:
        self.logger.debug("Worker %s loop started", worker.name)
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self._test_mode:
                await self._wait_for_wakeup(self._poll_interval)
            first_iteration = False
            if worker.draining or self._stop.is_set():
                break
            if self._paused:
                await self._wait_for_wakeup(self._poll_interval)
                continue
            try:
                processed = await self.run_once(worker.id)
            except Exception as exc:
                self.logger.exception("Unhandled error in worker %s: %s", worker.name, exc)
                processed = False
            if worker.draining:
                break
            if not processed:
                await self._wait_for_wakeup(self._poll_interval)
        await self._retire(worker)

    async def _heartbeat_loop(self, worker: Worker) -> None:
        while not self._stop.is_set():
            try:
                await self.persistence.update_worker(worker.id, {"last_heartbeat": self.clock()})
            except Exception as exc:
                self.logger.exception("Heartbeat failed for worker %s: %s", worker.name, exc)
            try:
                async with asyncio.timeout(self.heartbeat_interval):
                    await self._stop.wait()
            except TimeoutError:
                continue

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause a worker while allowing external wake-ups via ``wake``."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()

    async def _rate_limit_wait(self, delay: float) -> bool:
        """Hold the current batch until the window resets; ``False`` to give the job back."""
        if self._stop.is_set() or delay > self.max_rate_limit_wait:
            return False
        try:
            async with asyncio.timeout(max(0.0, delay)):
                await self._stop.wait()
        except TimeoutError:
            return True
        return False

    # ---------------------------------------------------------------- processing
    async def run_once(self, worker_id: str) -> bool:
        """Claim and process one job; ``False`` when nothing was eligible."""
        job = await self.queue.claim_next(worker_id)
        if job is None:
            return False
        worker = self._workers.get(worker_id)
        if worker:
            worker.current_job_id = job["id"]
        try:
            await self.process_job(worker_id, job)
        finally:
            if worker:
                worker.current_job_id = None
            await self.persistence.release_worker(worker_id, self.clock())
        return True

    async def process_job(self, worker_id: str, job: Dict[str, Any]) -> None:
        job_id = job["id"]
        self.logger.info("Worker %s processing job %s (retry_count=%d)", worker_id, job_id, job["retry_count"])
        await self._set_progress(job_id, {"status": "processing", "message": "Processing"})
        await self.retry_system.sweep(job_id=job_id)

        batches = await self.persistence.list_batches(job_id)
        for batch in batches:
            if batch["status"] in TERMINAL_BATCH_STATUSES:
                continue
            current = await self.persistence.get_job(job_id)
            if current is None:
                self.logger.warning("Job %s disappeared while processing", job_id)
                return
            if current["status"] == JOB_CANCELLED:
                self.logger.info("Job %s cancelled, not starting batch %d", job_id, batch["batch_index"])
                return
            if current["status"] != JOB_PROCESSING or current["worker_id"] != worker_id:
                self.logger.warning("%s", StaleWorkerError(f"Worker {worker_id} no longer owns job {job_id}"))
                return
            if self._stop.is_set():
                await self._release(job_id, self.clock(), "worker pool stopping")
                return
            try:
                await self.process_batch(worker_id, current, batch, total_batches=len(batches))
            except RateLimitExceeded as exc:
                await self._release(job_id, exc.reset_time, str(exc))
                return
        await self._finish_job(worker_id, job_id)

    async def process_batch(
        self,
        worker_id: str,
        job: Dict[str, Any],
        batch: Dict[str, Any],
        *,
        total_batches: Optional[int] = None,
    ) -> None:
        """Send every still-pending recipient of ``batch``.

        A rate-limit hold that cannot be waited out propagates as
        :class:`RateLimitExceeded`, leaving the batch open; any other error
        fails the batch's remaining recipients and closes it.
        """
        job_id = job["id"]
        index = batch["batch_index"]
        if batch["status"] == BATCH_PENDING:
            await self.persistence.update_batch(batch["id"], {"status": BATCH_PROCESSING, "started_at": self.clock()})
        recipients = await self.persistence.list_recipients(job_id, batch_index=index, status=RECIPIENT_PENDING)
        try:
            for recipient in recipients:
                await self._send_recipient(worker_id, job, recipient)
        except RateLimitExceeded:
            raise
        except Exception as exc:
            self.logger.exception("Batch %d of job %s failed", index, job_id)
            await self._fail_batch(worker_id, job, batch, str(exc) or exc.__class__.__name__)
            return
        await self.dispatcher.maybe_close_batch(job_id, index)
        total = total_batches or index + 1
        await self._set_progress(job_id, {"message": f"Batch {index + 1}/{total} processed"})

    async def _send_recipient(self, worker_id: str, job: Dict[str, Any], recipient: Dict[str, Any]) -> None:
        result = await self.dispatcher.deliver(job, recipient, wait=self._rate_limit_wait)
        if result.get("success"):
            await self.dispatcher.record_sent(job, recipient, result, worker_id=worker_id)
            return
        error = result.get("error") or "send failed"
        if result.get("permanent") or int(job["max_retries"]) < 1:
            await self.dispatcher.record_failed(job, recipient, error, worker_id=worker_id)
            return
        await self.dispatcher.mark_retrying(recipient, error)
        await self.retry_system.create_retry(
            job["id"], recipient["id"], max_retries=int(job["max_retries"]), error=error
        )
        if self.metrics:
            self.metrics.inc_retried(job["workspace_id"])

    async def _fail_batch(self, worker_id: str, job: Dict[str, Any], batch: Dict[str, Any], error: str) -> None:
        remaining = await self.persistence.list_recipients(
            job["id"], batch_index=batch["batch_index"], status=RECIPIENT_PENDING
        )
        for recipient in remaining:
            await self.dispatcher.record_failed(job, recipient, f"Batch failed: {error}", worker_id=worker_id)
        await self.persistence.update_batch(
            batch["id"], {"status": BATCH_FAILED, "error_message": error, "completed_at": self.clock()}
        )

    async def _release(self, job_id: str, scheduled_at: float, reason: str) -> None:
        """Hand a job back to the queue as ``retrying``."""
        try:
            await self.queue.update_status(job_id, JOB_RETRYING, scheduled_at=scheduled_at)
        except InvalidTransitionError as exc:
            self.logger.info("Job %s not released (%s)", job_id, exc)
            return
        await self._set_progress(job_id, {"message": f"Waiting: {reason}"})
        self.logger.info("Job %s released until %.0f: %s", job_id, scheduled_at, reason)

    async def _finish_job(self, worker_id: str, job_id: str) -> None:
        open_retries = await self.persistence.count_open_retries(job_id)
        if open_retries:
            next_at = await self.persistence.next_retry_at(job_id)
            await self._release(job_id, next_at if next_at is not None else self.clock(), f"{open_retries} retries pending")
            return
        job = await self.persistence.get_job(job_id)
        failed = int(job["failed_count"])
        final = JOB_COMPLETED if failed == 0 else JOB_FAILED
        error = None if failed == 0 else f"{failed} of {job['total_recipients']} recipients failed"
        try:
            job = await self.queue.update_status(job_id, final, error)
        except InvalidTransitionError as exc:
            self.logger.info("Job %s not finalized (%s)", job_id, exc)
            return
        await self.persistence.add_worker_counts(worker_id, jobs=1)
        await self._set_progress(
            job_id,
            {"status": final, "message": f"{job['processed_count']} sent, {failed} failed"},
        )
        self.logger.info(
            "Job %s %s: %d sent, %d failed", job_id, final, job["processed_count"], failed
        )
        await self._notify_finished(job)

    async def _notify_finished(self, job: Dict[str, Any]) -> None:
        if self.on_job_finished is None:
            return
        try:
            await self.on_job_finished(job)
        except Exception as exc:
            self.logger.exception("Job completion callback failed for %s: %s", job["id"], exc)

    async def _set_progress(self, job_id: str, fields: Dict[str, Any]) -> None:
        try:
            await self.progress.update_progress(job_id, fields)
        except NotFoundError:
            self.logger.debug("No progress record for job %s", job_id)

    # ------------------------------------------------------------------ scaling
    def _check_target(self, target_count: int) -> int:
        try:
            target = int(target_count)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid worker count: {target_count!r}")
        if not self.lower_bound <= target <= self.upper_bound:
            raise ValidationError(f"Worker count must be between {self.lower_bound} and {self.upper_bound}")
        return target

    async def scale_workers(self, target_count: int) -> Dict[str, Any]:
        """Add or drain workers until ``target_count`` are active.

        Idle workers are removed first; a busy worker is only marked as
        draining and leaves once its current job is done.
        """
        target = self._check_target(target_count)
        self._desired_workers = target
        if not self._running:
            return {"ok": True, "target": target, "active": 0, "running": False}
        active = self.active_workers()
        added: List[str] = []
        draining: List[str] = []
        if target > len(active):
            added = [w.id for w in await self._spawn(target - len(active))]
        elif target < len(active):
            by_idleness = sorted(active, key=lambda w: w.current_job_id is not None)
            for worker in by_idleness[: len(active) - target]:
                worker.draining = True
                await self.persistence.update_worker(worker.id, {"draining": 1})
                draining.append(worker.id)
            self._wake_event.set()
        if added or draining:
            self.logger.info("Scaled workers to %d (added=%d, draining=%d)", target, len(added), len(draining))
        return {"ok": True, "target": target, "active": len(self.active_workers()), "added": added, "draining": draining}

    async def check_and_scale(self) -> Optional[Dict[str, Any]]:
        """Grow when every worker is busy and work is waiting; shrink when mostly idle."""
        if not self._running:
            return None
        counts = await self.persistence.job_status_counts()
        load = sum(counts.get(status, {}).get("jobs", 0) for status in ("pending", "retrying", "processing"))
        active = self.active_workers()
        idle = [w for w in active if w.current_job_id is None]
        size = len(active)
        if load > 0 and not idle and size < self.max_workers:
            return await self.scale_workers(min(self.max_workers, size + math.ceil(load / 10)))
        if len(idle) > 2 and load < 5 and size > self.min_workers:
            return await self.scale_workers(max(self.min_workers, size - len(idle) // 2))
        return None

    # --------------------------------------------------------------- monitoring
    async def reap_stale_workers(self) -> List[str]:
        """Mark workers without a recent heartbeat offline and requeue their jobs."""
        now = self.clock()
        requeued: List[str] = []
        for row in await self.persistence.stale_workers(now - self.stale_after):
            self.logger.warning(
                "%s", StaleWorkerError(f"Worker {row['name']} missed heartbeats (last={row['last_heartbeat']})")
            )
            await self.persistence.update_worker(row["id"], {"status": WORKER_OFFLINE, "current_job_id": None})
            requeued.extend(await self.persistence.release_worker_jobs(row["id"], now))
            local = self._workers.get(row["id"])
            if local:
                local.draining = True
        if requeued:
            self.logger.warning("Requeued jobs from stale workers: %s", ", ".join(requeued))
            self._wake_event.set()
        return requeued

    async def list_workers(self) -> List[Dict[str, Any]]:
        rows = await self.persistence.list_workers()
        for row in rows:
            row["local"] = row["id"] in self._workers
            row["draining"] = bool(row.get("draining"))
        return rows

    async def stats(self) -> Dict[str, Any]:
        workers = await self.persistence.worker_status_counts()
        jobs = await self.persistence.job_status_counts()
        last_hour = await self.persistence.count_jobs_finished_since(self.clock() - 3600)
        if self.metrics:
            self.metrics.set_workers(workers)
            self.metrics.set_pending(
                jobs.get("pending", {}).get("jobs", 0) + jobs.get("retrying", {}).get("jobs", 0)
            )
        return {
            "running": self._running,
            "paused": self._paused,
            "local_workers": len(self._workers),
            "idle_workers": workers.get(WORKER_IDLE, 0),
            "busy_workers": workers.get(WORKER_BUSY, 0),
            "offline_workers": workers.get(WORKER_OFFLINE, 0),
            "pending_jobs": jobs.get("pending", {}).get("jobs", 0),
            "retrying_jobs": jobs.get(JOB_RETRYING, {}).get("jobs", 0),
            "processing_jobs": jobs.get(JOB_PROCESSING, {}).get("jobs", 0),
            "jobs_completed_last_hour": last_hour["completed"],
            "jobs_failed_last_hour": last_hour["failed"],
            "emails_last_hour": last_hour["emails"],
        }

    async def health(self) -> Dict[str, Any]:
        """Per-worker health plus the alerts an operator should act on.

        A worker is unhealthy when it missed its heartbeats or when its last
        ``FAILURE_STREAK_LIMIT`` deliveries all failed. Alerts are logged as
        errors for ``high`` severity and as warnings otherwise.
        """
        now = self.clock()
        cutoff = now - self.stale_after
        jobs = await self.persistence.job_status_counts()
        pending = jobs.get("pending", {}).get("jobs", 0)
        alerts: List[Dict[str, Any]] = []
        workers: List[Dict[str, Any]] = []
        offline = 0
        for row in await self.persistence.list_workers():
            streak = int(row.get("consecutive_failures") or 0)
            if row["status"] == WORKER_OFFLINE:
                offline += 1
                healthy = False
            else:
                beat = row.get("last_heartbeat")
                alive = beat is not None and beat > cutoff
                healthy = alive and streak <= FAILURE_STREAK_LIMIT
                if not alive:
                    alerts.append(
                        {
                            "type": "worker_unhealthy",
                            "severity": "high",
                            "worker_id": row["id"],
                            "message": f"Worker {row['name']} missed its heartbeats",
                        }
                    )
            if streak > FAILURE_STREAK_LIMIT:
                alerts.append(
                    {
                        "type": "high_failure_rate",
                        "severity": "high",
                        "worker_id": row["id"],
                        "message": f"Worker {row['name']} has {streak} consecutive failures",
                    }
                )
            workers.append(
                {
                    "id": row["id"],
                    "name": row["name"],
                    "status": row["status"],
                    "healthy": healthy,
                    "last_heartbeat": row.get("last_heartbeat"),
                    "consecutive_failures": streak,
                }
            )
        if pending > self.max_queue_size:
            alerts.append(
                {
                    "type": "high_queue_size",
                    "severity": "high",
                    "worker_id": None,
                    "message": f"Queue holds {pending} pending jobs (limit {self.max_queue_size})",
                }
            )
        if offline:
            alerts.append(
                {
                    "type": "workers_offline",
                    "severity": "medium",
                    "worker_id": None,
                    "message": f"{offline} workers are offline",
                }
            )
        for alert in alerts:
            if alert["severity"] == "high":
                self.logger.error("Alert %s: %s", alert["type"], alert["message"])
            else:
                self.logger.warning("Alert %s: %s", alert["type"], alert["message"])
        return {
            "healthy": not any(alert["severity"] == "high" for alert in alerts),
            "pending_jobs": pending,
            "workers": workers,
            "alerts": alerts,
        }
