"""
FastAPI application factory and HTTP schemas for the MailGenius send queue.

The module exposes a `create_app` function that builds the REST API used to
enqueue campaign sends, poll progress and operate the worker pool, and
defines the pydantic payloads that document each command. Control endpoints
are protected by an API token carried in the ``X-API-Token`` header; the
``/cron`` endpoints used by the external scheduler require the shared secret
in ``X-Cron-Secret`` instead.
"""

from typing import Optional, Dict, Any, List, Literal, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, ConfigDict

from .service import MailGeniusService

app = FastAPI(title="MailGenius Send Queue")
service: MailGeniusService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
CRON_SECRET_HEADER_NAME = "X-Cron-Secret"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
cron_secret_scheme = APIKeyHeader(name=CRON_SECRET_HEADER_NAME, auto_error=False)
app.state.api_token = None
app.state.cron_secret = None


def _state(name: str):
    return getattr(app.state, name, None)


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = _state("api_token")
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


async def require_cron_secret(secret: str | None = Depends(cron_secret_scheme)) -> None:
    """Validate the ``X-Cron-Secret`` header; cron endpoints are closed when no secret is set."""
    expected = _state("cron_secret")
    if expected is None:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Cron endpoints are disabled")
    if not secret or secret != expected:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Invalid or missing cron secret")


auth_dependency = Depends(require_token)
cron_dependency = Depends(require_cron_secret)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None
    code: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class PausedResponse(CommandStatus):
    paused: bool


class SendCampaignPayload(BaseModel):
    """Request to send a campaign to its active leads."""
    campaign_id: str
    batch_size: Optional[int] = None
    priority: Optional[int] = None
    max_retries: Optional[int] = None
    owner_id: Optional[str] = None


class SendCampaignResponse(CommandStatus):
    campaign_id: str
    job_id: str
    total_recipients: int


class RecipientPayload(BaseModel):
    """One recipient; either template variables or pre-rendered content."""
    email: str
    lead_id: Optional[str] = None
    variables: Optional[Dict[str, Any]] = None
    subject: Optional[str] = None
    html: Optional[str] = None
    text: Optional[str] = None


class TemplatePayload(BaseModel):
    subject: Optional[str] = None
    html: Optional[str] = None
    text: Optional[str] = None


class SenderPayload(BaseModel):
    from_email: str
    reply_to: Optional[str] = None


class EnqueueJobPayload(BaseModel):
    """Payload accepted by ``enqueueJob``."""
    id: Optional[str] = None
    workspace_id: str
    campaign_id: Optional[str] = None
    job_type: Literal["campaign", "automation", "transactional"] = "campaign"
    priority: Optional[int] = None
    batch_size: Optional[int] = None
    max_retries: Optional[int] = None
    scheduled_at: Optional[float] = None
    owner_id: Optional[str] = None
    recipients: List[RecipientPayload]
    template: TemplatePayload = Field(default_factory=TemplatePayload)
    sender: SenderPayload
    tracking: Optional[Dict[str, Any]] = None

    def to_job(self) -> Dict[str, Any]:
        job = self.model_dump(
            exclude_none=True, exclude={"recipients", "template", "sender", "tracking"}
        )
        job["payload"] = {
            "recipients": [r.model_dump(exclude_none=True) for r in self.recipients],
            "template": self.template.model_dump(exclude_none=True),
            "sender": self.sender.model_dump(exclude_none=True),
            "tracking": self.tracking or {},
        }
        return job


class EnqueueJobResponse(CommandStatus):
    job_id: str


class JobRecord(BaseModel):
    """Stored job as returned by ``listJobs``/``getJob``."""
    model_config = ConfigDict(extra="ignore")
    id: str
    workspace_id: str
    campaign_id: Optional[str] = None
    job_type: str
    priority: int
    status: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    batch_size: int
    max_retries: int
    retry_count: int
    total_recipients: int
    processed_count: int
    failed_count: int
    worker_id: Optional[str] = None
    scheduled_at: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    failed_at: Optional[float] = None
    error_message: Optional[str] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None


class BatchRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    job_id: str
    batch_index: int
    start_record: int
    end_record: int
    status: str
    valid_count: int
    invalid_count: int
    error_message: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None


class ProgressRecord(BaseModel):
    """Progress projection polled by dashboards."""
    model_config = ConfigDict(extra="ignore")
    id: str
    type: str
    owner_id: Optional[str] = None
    status: str
    progress: int
    total_items: int
    processed_items: int
    failed_items: int
    message: Optional[str] = None
    start_time: float
    end_time: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None


class JobsResponse(CommandStatus):
    jobs: List[JobRecord]


class JobResponse(CommandStatus):
    job: JobRecord


class JobDetailResponse(JobResponse):
    batches: List[BatchRecord] = Field(default_factory=list)
    progress: Optional[ProgressRecord] = None


class ProgressResponse(CommandStatus):
    progress: ProgressRecord


class ProgressListResponse(CommandStatus):
    progress: List[ProgressRecord]


class CleanPayload(BaseModel):
    days: Optional[int] = Field(default=None, ge=0)


class CleanResponse(CommandStatus):
    removed: Dict[str, int]


class ScaleWorkersPayload(BaseModel):
    count: int


class ScaleWorkersResponse(CommandStatus):
    target: int
    active: int
    running: Optional[bool] = None
    added: List[str] = Field(default_factory=list)
    draining: List[str] = Field(default_factory=list)


class WorkerRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    name: str
    status: str
    current_job_id: Optional[str] = None
    last_heartbeat: Optional[float] = None
    started_at: Optional[float] = None
    consecutive_failures: int = 0
    jobs_processed: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    draining: bool = False
    local: bool = False


class WorkersResponse(CommandStatus):
    workers: List[WorkerRecord]


class WorkerHealthRecord(BaseModel):
    id: str
    name: str
    status: str
    healthy: bool
    last_heartbeat: Optional[float] = None
    consecutive_failures: int = 0


class HealthAlert(BaseModel):
    type: str
    severity: str
    message: str
    worker_id: Optional[str] = None


class WorkerHealthResponse(CommandStatus):
    healthy: bool
    pending_jobs: int
    workers: List[WorkerHealthRecord]
    alerts: List[HealthAlert]


class RateLimitPayload(BaseModel):
    identifier: str
    resource: Optional[str] = None


class RateLimitResetResponse(CommandStatus):
    reset: bool


class RateLimitStatusResponse(CommandStatus):
    identifier: str
    resource: str
    count: int
    limit: int
    remaining: int
    reset_time: Optional[float] = None


class RetrySweepResponse(CommandStatus):
    processed: int
    succeeded: int
    rescheduled: int
    exhausted: int
    deferred: int


class ProcessScheduledResponse(CommandStatus):
    processed: int
    jobs: List[str] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class CleanupExpiredResponse(CommandStatus):
    progress: int
    rate_limits: int


class StatsResponse(CommandStatus):
    jobs: Dict[str, Any]
    retries: Dict[str, Any]
    system: Dict[str, Any]


class CampaignPayload(BaseModel):
    """Campaign definition used by ``addCampaign``."""
    id: str
    workspace_id: str
    name: Optional[str] = None
    subject: str
    html_content: str
    text_content: Optional[str] = None
    from_email: str
    reply_to: Optional[str] = None
    segment: Optional[Any] = None
    status: Optional[Literal["draft", "scheduled"]] = None
    scheduled_at: Optional[float] = None


class CampaignResponse(CommandStatus):
    campaign: Dict[str, Any]


class CampaignsResponse(CommandStatus):
    campaigns: List[Dict[str, Any]]


class LeadPayload(BaseModel):
    id: str
    workspace_id: str
    email: str
    name: Optional[str] = None
    company: Optional[str] = None
    position: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class LeadResponse(CommandStatus):
    lead: Dict[str, Any]


class LeadsResponse(CommandStatus):
    leads: List[Dict[str, Any]]


async def _execute(cmd: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Run a service command and turn a rejected result into an ``HTTPException``."""
    if not service:
        raise HTTPException(500, "Service not initialized")
    result = await service.handle_command(cmd, payload or {})
    if not isinstance(result, dict) or result.get("ok") is not True:
        detail = {"error": result.get("error"), "code": result.get("code")}
        raise HTTPException(status_code=int(result.get("status") or 400), detail=detail)
    return result


def create_app(
    svc: MailGeniusService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
    cron_secret: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`mailgenius.service.MailGeniusService` that
        implements the business logic for each command.
    api_token:
        Optional secret protecting the control endpoints through the
        ``X-API-Token`` header.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    cron_secret:
        Shared secret expected in ``X-Cron-Secret`` by the ``/cron``
        endpoints. When omitted those endpoints answer ``403``.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="MailGenius Send Queue", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    api.state.cron_secret = cron_secret
    app.state.api_token = api_token
    app.state.cron_secret = cron_secret
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    control = APIRouter(tags=["control"], dependencies=[auth_dependency])
    cron = APIRouter(prefix="/cron", tags=["cron"], dependencies=[cron_dependency])

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    # ------------------------------------------------------------- commands
    @commands.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake idle workers so they poll the queue immediately."""
        return BasicOkResponse.model_validate(await _execute("run now"))

    @commands.post("/pause", response_model=PausedResponse, response_model_exclude_none=True)
    async def pause():
        """Stop claiming new jobs; jobs in progress continue."""
        return PausedResponse.model_validate(await _execute("pause"))

    @commands.post("/resume", response_model=PausedResponse, response_model_exclude_none=True)
    async def resume():
        return PausedResponse.model_validate(await _execute("resume"))

    @commands.post("/clean", response_model=CleanResponse, response_model_exclude_none=True)
    async def clean(payload: CleanPayload | None = None):
        """Apply retention to finished jobs, retries, progress and rate-limit windows."""
        data = payload.model_dump(exclude_none=True) if payload else {}
        return CleanResponse.model_validate(await _execute("clean", data))

    # ------------------------------------------------------------ campaigns
    @control.post("/campaigns", response_model=CampaignResponse, response_model_exclude_none=True)
    async def add_campaign(payload: CampaignPayload):
        """Register or replace a campaign definition."""
        return CampaignResponse.model_validate(await _execute("addCampaign", payload.model_dump(exclude_none=True)))

    @control.get("/campaigns", response_model=CampaignsResponse, response_model_exclude_none=True)
    async def list_campaigns(workspace_id: Optional[str] = None):
        return CampaignsResponse.model_validate(await _execute("listCampaigns", {"workspace_id": workspace_id}))

    @control.post("/campaigns/send", response_model=SendCampaignResponse, response_model_exclude_none=True)
    async def send_campaign(payload: SendCampaignPayload):
        """Resolve the campaign's recipients and enqueue one send job."""
        result = await _execute("sendCampaign", payload.model_dump(exclude_none=True))
        return SendCampaignResponse.model_validate(result)

    @control.post("/leads", response_model=LeadResponse, response_model_exclude_none=True)
    async def add_lead(payload: LeadPayload):
        return LeadResponse.model_validate(await _execute("addLead", payload.model_dump(exclude_none=True)))

    @control.get("/leads", response_model=LeadsResponse, response_model_exclude_none=True)
    async def list_leads(workspace_id: str, lead_status: Optional[str] = Query(default="active", alias="status")):
        result = await _execute("listLeads", {"workspace_id": workspace_id, "status": lead_status})
        return LeadsResponse.model_validate(result)

    # ----------------------------------------------------------------- jobs
    @control.post("/jobs", response_model=EnqueueJobResponse, response_model_exclude_none=True)
    async def enqueue_job(payload: EnqueueJobPayload):
        """Queue an arbitrary send job (automation or transactional sends)."""
        return EnqueueJobResponse.model_validate(await _execute("enqueueJob", payload.to_job()))

    @control.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True)
    async def list_jobs(
        workspace_id: Optional[str] = None,
        job_status: Optional[str] = Query(default=None, alias="status"),
        limit: int = 100,
    ):
        result = await _execute("listJobs", {"workspace_id": workspace_id, "status": job_status, "limit": limit})
        return JobsResponse.model_validate(result)

    @control.get("/jobs/{job_id}", response_model=JobDetailResponse, response_model_exclude_none=True)
    async def get_job(job_id: str):
        """Return a job with its batches and progress record."""
        return JobDetailResponse.model_validate(await _execute("getJob", {"id": job_id}))

    @control.post("/jobs/{job_id}/cancel", response_model=JobResponse, response_model_exclude_none=True)
    async def cancel_job(job_id: str):
        """Cancel a job; the batch in flight finishes and no further batch starts."""
        return JobResponse.model_validate(await _execute("cancelJob", {"id": job_id}))

    @control.post("/jobs/{job_id}/retry", response_model=EnqueueJobResponse, response_model_exclude_none=True)
    async def retry_job(job_id: str):
        """Queue a new job with the failed recipients of a failed job."""
        return EnqueueJobResponse.model_validate(await _execute("retryJob", {"id": job_id}))

    @control.delete("/jobs/{job_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def remove_job(job_id: str):
        await _execute("removeJob", {"id": job_id})
        return BasicOkResponse(ok=True)

    # ------------------------------------------------------------- progress
    @control.get("/progress", response_model=ProgressListResponse, response_model_exclude_none=True)
    async def list_progress(owner_id: str):
        return ProgressListResponse.model_validate(await _execute("listProgress", {"owner_id": owner_id}))

    @control.get("/progress/{progress_id}", response_model=ProgressResponse, response_model_exclude_none=True)
    async def get_progress(progress_id: str):
        return ProgressResponse.model_validate(await _execute("getProgress", {"id": progress_id}))

    # -------------------------------------------------------------- workers
    @control.get("/workers", response_model=WorkersResponse, response_model_exclude_none=True)
    async def list_workers():
        return WorkersResponse.model_validate(await _execute("listWorkers"))

    @control.get("/workers/health", response_model=WorkerHealthResponse, response_model_exclude_none=True)
    async def worker_health():
        """Report worker heartbeats, failure streaks and queue alerts."""
        return WorkerHealthResponse.model_validate(await _execute("workerHealth"))

    @control.post("/workers/scale", response_model=ScaleWorkersResponse, response_model_exclude_none=True)
    async def scale_workers(payload: ScaleWorkersPayload):
        """Grow or drain the worker pool to ``count`` workers."""
        return ScaleWorkersResponse.model_validate(await _execute("scaleWorkers", payload.model_dump()))

    @control.post("/workers/restart", response_model=WorkersResponse, response_model_exclude_none=True)
    async def restart_workers():
        return WorkersResponse.model_validate(await _execute("restartWorkers"))

    # ---------------------------------------------------------- rate limits
    @control.post("/rate-limits/reset", response_model=RateLimitResetResponse, response_model_exclude_none=True)
    async def reset_rate_limit(payload: RateLimitPayload):
        """Clear a rate-limit window before it expires."""
        result = await _execute("resetRateLimit", payload.model_dump(exclude_none=True))
        return RateLimitResetResponse.model_validate(result)

    @control.get("/rate-limits/status", response_model=RateLimitStatusResponse, response_model_exclude_none=True)
    async def rate_limit_status(identifier: str, resource: Optional[str] = None):
        result = await _execute("rateLimitStatus", {"identifier": identifier, "resource": resource})
        return RateLimitStatusResponse.model_validate(result)

    @control.get("/stats", response_model=StatsResponse, response_model_exclude_none=True)
    async def stats(workspace_id: Optional[str] = None):
        return StatsResponse.model_validate(await _execute("stats", {"workspace_id": workspace_id}))

    # ----------------------------------------------------------------- cron
    @cron.post("/process-scheduled", response_model=ProcessScheduledResponse, response_model_exclude_none=True)
    async def cron_process_scheduled():
        """Send the scheduled campaigns that are due."""
        return ProcessScheduledResponse.model_validate(await _execute("processScheduled"))

    @cron.post("/retry-sweep", response_model=RetrySweepResponse, response_model_exclude_none=True)
    async def cron_retry_sweep():
        return RetrySweepResponse.model_validate(await _execute("retrySweep"))

    @cron.post("/cleanup-expired", response_model=CleanupExpiredResponse, response_model_exclude_none=True)
    async def cron_cleanup_expired():
        return CleanupExpiredResponse.model_validate(await _execute("cleanupExpired"))

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the workers."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(commands)
    api.include_router(control)
    api.include_router(cron)
    return api
