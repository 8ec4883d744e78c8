"""Turn a campaign into one queued send job."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from .errors import CampaignNotSendableError, MailGeniusError, NoRecipientsError, NotFoundError, ValidationError
from .logger import get_logger
from .persistence import Persistence
from .queue import DEFAULT_PRIORITY, JobQueue
from .states import CAMPAIGN_SENDABLE_STATUSES, JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED
from .templating import lead_variables

CAMPAIGN_SENDING = "sending"
CAMPAIGN_SENT = "sent"
CAMPAIGN_FAILED = "failed"
CAMPAIGN_CANCELLED = "cancelled"
CAMPAIGN_STATUSES = ("draft", "scheduled", CAMPAIGN_SENDING, CAMPAIGN_SENT, CAMPAIGN_FAILED, "paused", CAMPAIGN_CANCELLED)

LEAD_FIELDS = ("email", "name", "company", "position", "phone", "status")
SEGMENT_OPERATORS = ("equals", "not_equals", "contains", "not_contains", "ends_with", "in", "not_in", "before", "after")
DATE_OPERATORS = ("before", "after")


def as_timestamp(value: Any) -> float:
    """Read an epoch number or an ISO 8601 string; naive dates are taken as UTC."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Invalid date value: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid date value: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def segment_conditions(segment: Any) -> List[Mapping[str, Any]]:
    """Return the conditions of ``segment``; raise :class:`ValidationError` if any is malformed."""
    if not segment:
        return []
    if isinstance(segment, Mapping):
        segment = segment.get("conditions") or []
    if not isinstance(segment, list):
        raise ValidationError("Segment must be a list of conditions")
    for condition in segment:
        if not isinstance(condition, Mapping) or not condition.get("field"):
            raise ValidationError(f"Invalid segment condition: {condition!r}")
        if condition.get("operator", "equals") not in SEGMENT_OPERATORS:
            raise ValidationError(f"Unknown segment operator '{condition.get('operator')}'")
        if condition.get("operator") in DATE_OPERATORS:
            as_timestamp(condition.get("value"))
    return list(segment)


def _field_value(lead: Mapping[str, Any], condition: Mapping[str, Any]) -> Any:
    field = condition["field"]
    if field == "custom_field":
        return (lead.get("custom_fields") or {}).get(condition.get("custom_field_key"))
    if field in LEAD_FIELDS or field in ("tags", "created_at"):
        return lead.get(field)
    return (lead.get("custom_fields") or {}).get(field)


def matches_condition(lead: Mapping[str, Any], condition: Mapping[str, Any]) -> bool:
    """Evaluate one ``{field, operator, value}`` condition against a lead.

    ``tags`` is a list: ``contains``/``not_contains`` test membership. String
    comparisons for ``contains`` and ``ends_with`` ignore case.
    """
    operator = condition.get("operator", "equals")
    expected = condition.get("value")
    actual = _field_value(lead, condition)

    if isinstance(actual, list):
        present = expected in actual
        if operator in ("contains", "equals"):
            return present
        if operator in ("not_contains", "not_equals"):
            return not present
        if operator == "in":
            return any(item in actual for item in (expected or []))
        if operator == "not_in":
            return not any(item in actual for item in (expected or []))
        return False

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "in":
        return actual in (expected or [])
    if operator == "not_in":
        return actual not in (expected or [])
    if actual is None:
        return operator == "not_contains"
    if operator in DATE_OPERATORS:
        limit = as_timestamp(expected)
        try:
            moment = as_timestamp(actual)
        except ValidationError:
            return False
        return moment < limit if operator == "before" else moment > limit
    text, needle = str(actual).lower(), str(expected or "").lower()
    if operator == "contains":
        return needle in text
    if operator == "not_contains":
        return needle not in text
    if operator == "ends_with":
        return text.endswith(needle)
    return False


def filter_leads(leads: Iterable[Mapping[str, Any]], segment: Any) -> List[Mapping[str, Any]]:
    """Keep the leads matching every condition of ``segment``."""
    conditions = segment_conditions(segment)
    return [lead for lead in leads if all(matches_condition(lead, c) for c in conditions)]


class CampaignSendOrchestrator:
    """Entry point for sending a campaign.

    The campaign is switched to ``sending`` with a conditional update before
    the job is enqueued, so a second invocation finds it no longer sendable.
    """

    def __init__(
        self,
        persistence: Persistence,
        queue: JobQueue,
        *,
        clock: Callable[[], float] = time.time,
        logger=None,
        default_batch_size: Optional[int] = None,
        default_max_retries: Optional[int] = None,
        default_priority: int = DEFAULT_PRIORITY,
        on_enqueued: Optional[Callable[[str], None]] = None,
    ):
        self.persistence = persistence
        self.queue = queue
        self.clock = clock
        self.logger = logger or get_logger("MailGenius.orchestrator")
        self.default_batch_size = default_batch_size
        self.default_max_retries = default_max_retries
        self.default_priority = int(default_priority)
        self.on_enqueued = on_enqueued

    async def resolve_recipients(self, campaign: Dict[str, Any]) -> List[Dict[str, Any]]:
        leads = await self.persistence.list_leads(campaign["workspace_id"], status="active")
        recipients = []
        for lead in filter_leads(leads, campaign.get("segment")):
            recipients.append(
                {"lead_id": lead["id"], "email": lead["email"], "variables": lead_variables(lead)}
            )
        return recipients

    async def send_campaign(
        self,
        campaign_id: str,
        *,
        batch_size: Optional[int] = None,
        priority: Optional[int] = None,
        max_retries: Optional[int] = None,
        owner_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Resolve recipients, flip the campaign to ``sending`` and enqueue its job."""
        campaign = await self.persistence.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign '{campaign_id}' not found")
        previous = campaign["status"]
        if previous not in CAMPAIGN_SENDABLE_STATUSES:
            raise CampaignNotSendableError(f"Campaign '{campaign_id}' is {previous}")

        recipients = await self.resolve_recipients(campaign)
        if not recipients:
            raise NoRecipientsError(f"Campaign '{campaign_id}' has no active recipients")

        job: Dict[str, Any] = {
            "workspace_id": campaign["workspace_id"],
            "campaign_id": campaign_id,
            "job_type": "campaign",
            "priority": self.default_priority if priority is None else priority,
            "owner_id": owner_id,
            "payload": {
                "recipients": recipients,
                "template": {
                    "subject": campaign["subject"],
                    "html": campaign["html_content"],
                    "text": campaign.get("text_content"),
                },
                "sender": {"from_email": campaign["from_email"], "reply_to": campaign.get("reply_to")},
                "tracking": {"campaign_id": campaign_id, "workspace_id": campaign["workspace_id"]},
            },
        }
        if batch_size is not None or self.default_batch_size is not None:
            job["batch_size"] = batch_size if batch_size is not None else self.default_batch_size
        if max_retries is not None or self.default_max_retries is not None:
            job["max_retries"] = max_retries if max_retries is not None else self.default_max_retries

        now = self.clock()
        claimed = await self.persistence.transition_campaign(
            campaign_id,
            [previous],
            CAMPAIGN_SENDING,
            {"total_recipients": len(recipients)},
            now,
        )
        if not claimed:
            raise CampaignNotSendableError(f"Campaign '{campaign_id}' changed status concurrently")
        try:
            job_id = await self.queue.enqueue(job)
        except Exception:
            await self.persistence.transition_campaign(campaign_id, [CAMPAIGN_SENDING], previous, None, self.clock())
            self.logger.warning("Enqueue failed for campaign %s, status restored to %s", campaign_id, previous)
            raise
        await self.persistence.transition_campaign(
            campaign_id, [CAMPAIGN_SENDING], CAMPAIGN_SENDING, {"job_id": job_id}, self.clock()
        )
        self.logger.info("Campaign %s queued as job %s (%d recipients)", campaign_id, job_id, len(recipients))
        if self.on_enqueued:
            self.on_enqueued(job_id)
        return {"campaign_id": campaign_id, "job_id": job_id, "total_recipients": len(recipients)}

    async def on_job_finished(self, job: Dict[str, Any]) -> None:
        """Mirror a terminal job status onto its campaign."""
        campaign_id = job.get("campaign_id")
        if not campaign_id:
            return
        status = job["status"]
        fields: Dict[str, Any] = {}
        if status == JOB_COMPLETED or (status == JOB_FAILED and int(job.get("processed_count") or 0) > 0):
            target = CAMPAIGN_SENT
            fields["sent_at"] = self.clock()
        elif status == JOB_FAILED:
            target = CAMPAIGN_FAILED
        elif status == JOB_CANCELLED:
            target = CAMPAIGN_CANCELLED
        else:
            return
        if await self.persistence.transition_campaign(campaign_id, [CAMPAIGN_SENDING], target, fields, self.clock()):
            self.logger.info("Campaign %s marked %s (job %s %s)", campaign_id, target, job["id"], status)

    async def process_scheduled(self) -> Dict[str, Any]:
        """Send every ``scheduled`` campaign whose time has come."""
        started: List[str] = []
        errors: List[Dict[str, str]] = []
        for campaign in await self.persistence.due_scheduled_campaigns(self.clock()):
            try:
                result = await self.send_campaign(campaign["id"])
            except MailGeniusError as exc:
                self.logger.warning("Scheduled campaign %s not sent: %s", campaign["id"], exc)
                errors.append({"campaign_id": campaign["id"], "error": str(exc), "code": exc.code})
                if isinstance(exc, NoRecipientsError):
                    await self.persistence.transition_campaign(
                        campaign["id"], ["scheduled"], CAMPAIGN_FAILED, None, self.clock()
                    )
                continue
            started.append(result["job_id"])
        return {"processed": len(started) + len(errors), "jobs": started, "errors": errors}
