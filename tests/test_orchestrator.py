import pytest

from mailgenius.errors import CampaignNotSendableError, NoRecipientsError, NotFoundError, ValidationError
from mailgenius.orchestrator import filter_leads, matches_condition

LEADS = [
    {"id": "l1", "email": "ada@acme.io", "name": "Ada", "tags": ["vip", "beta"], "custom_fields": {"plan": "pro"},
     "created_at": 100.0},
    {"id": "l2", "email": "bob@GLOBEX.com", "name": "Bob", "tags": [], "custom_fields": {"plan": "free"},
     "created_at": 200.0},
    {"id": "l3", "email": "cy@acme.io", "name": None, "tags": ["vip"], "custom_fields": {}, "created_at": 300.0},
]


async def seed(svc, *, segment=None, status=None, scheduled_at=None):
    for lead in LEADS:
        await svc.add_lead({**lead, "workspace_id": "acme"})
    await svc.add_lead({"id": "l4", "workspace_id": "acme", "email": "gone@acme.io", "status": "inactive"})
    campaign = {
        "id": "spring",
        "workspace_id": "acme",
        "subject": "Hi {{name}}",
        "html_content": "<p>{{name}} on {{plan}}</p>",
        "from_email": "news@acme.io",
        "segment": segment,
        "scheduled_at": scheduled_at,
    }
    if status:
        campaign["status"] = status
    return await svc.add_campaign(campaign)


def test_segment_operators():
    ada = LEADS[0]
    assert matches_condition(ada, {"field": "tags", "operator": "contains", "value": "vip"})
    assert not matches_condition(ada, {"field": "tags", "operator": "not_contains", "value": "beta"})
    assert matches_condition(ada, {"field": "custom_field", "custom_field_key": "plan", "value": "pro"})
    assert matches_condition(ada, {"field": "plan", "operator": "in", "value": ["pro", "team"]})
    assert matches_condition(ada, {"field": "created_at", "operator": "before", "value": 150})
    assert matches_condition(LEADS[1], {"field": "email", "operator": "ends_with", "value": "@globex.com"})
    assert matches_condition(LEADS[2], {"field": "name", "operator": "not_contains", "value": "x"})


def test_filter_leads_requires_every_condition():
    segment = {
        "conditions": [
            {"field": "tags", "operator": "contains", "value": "vip"},
            {"field": "email", "operator": "ends_with", "value": "acme.io"},
            {"field": "created_at", "operator": "after", "value": 150},
        ]
    }
    assert [lead["id"] for lead in filter_leads(LEADS, segment)] == ["l3"]
    assert len(filter_leads(LEADS, None)) == 3


def test_filter_leads_rejects_unknown_operator():
    with pytest.raises(ValidationError):
        filter_leads(LEADS, [{"field": "email", "operator": "matches", "value": ".*"}])
    with pytest.raises(ValidationError):
        filter_leads(LEADS, "vip")


@pytest.mark.parametrize(
    "value",
    ["1970-01-01T00:02:30Z", "1970-01-01T00:02:30", "1970-01-01T01:02:30+01:00", "150", 150],
)
def test_date_operators_accept_iso_strings_and_epochs(value):
    def ids(operator):
        segment = [{"field": "created_at", "operator": operator, "value": value}]
        return [lead["id"] for lead in filter_leads(LEADS, segment)]

    assert ids("before") == ["l1"]
    assert ids("after") == ["l2", "l3"]


def test_date_operators_reject_unparsable_values():
    for value in ("next tuesday", None, True):
        with pytest.raises(ValidationError):
            filter_leads(LEADS, [{"field": "created_at", "operator": "before", "value": value}])
    with pytest.raises(ValidationError):
        matches_condition(LEADS[0], {"field": "created_at", "operator": "after", "value": "2024-13-45"})

    lead = {**LEADS[0], "custom_fields": {"renewal": "someday"}}
    assert not matches_condition(lead, {"field": "renewal", "operator": "before", "value": "2030-01-01"})
    lead["custom_fields"]["renewal"] = "2024-06-01"
    assert matches_condition(lead, {"field": "renewal", "operator": "before", "value": "2030-01-01"})


@pytest.mark.asyncio
async def test_add_campaign_rejects_invalid_date_segment(make_service):
    svc = await make_service()
    result = await svc.handle_command(
        "addCampaign",
        {
            "id": "spring",
            "workspace_id": "acme",
            "subject": "Hi",
            "html_content": "<p>Hi</p>",
            "from_email": "news@acme.io",
            "segment": [{"field": "created_at", "operator": "after", "value": "yesterday"}],
        },
    )
    assert result["ok"] is False
    assert result["code"] == "validation_error"
    assert await svc.persistence.get_campaign("spring") is None


@pytest.mark.asyncio
async def test_send_campaign_enqueues_one_job(make_service):
    svc = await make_service()
    await seed(svc)
    result = await svc.orchestrator.send_campaign("spring", batch_size=2)
    assert result["total_recipients"] == 3

    campaign = await svc.persistence.get_campaign("spring")
    assert campaign["status"] == "sending"
    assert campaign["job_id"] == result["job_id"]
    assert campaign["total_recipients"] == 3

    job = await svc.queue.get_job(result["job_id"])
    assert job["campaign_id"] == "spring"
    assert job["batch_size"] == 2
    recipients = await svc.persistence.list_recipients(job["id"])
    assert [r["email"] for r in recipients] == ["ada@acme.io", "bob@GLOBEX.com", "cy@acme.io"]
    assert recipients[0]["subject"] == "Hi Ada"
    assert recipients[0]["html"] == "<p>Ada on pro</p>"
    assert recipients[2]["subject"] == "Hi Cliente"
    assert recipients[0]["lead_id"] == "l1"

    with pytest.raises(CampaignNotSendableError):
        await svc.orchestrator.send_campaign("spring")
    assert len(await svc.queue.list_jobs()) == 1


@pytest.mark.asyncio
async def test_send_campaign_with_segment(make_service):
    svc = await make_service()
    await seed(svc, segment=[{"field": "tags", "operator": "contains", "value": "vip"}])
    result = await svc.orchestrator.send_campaign("spring")
    assert result["total_recipients"] == 2


@pytest.mark.asyncio
async def test_send_campaign_without_recipients_changes_nothing(make_service):
    svc = await make_service()
    await seed(svc, segment=[{"field": "tags", "operator": "contains", "value": "nobody"}])
    with pytest.raises(NoRecipientsError):
        await svc.orchestrator.send_campaign("spring")
    assert (await svc.persistence.get_campaign("spring"))["status"] == "draft"
    assert await svc.queue.list_jobs() == []


@pytest.mark.asyncio
async def test_send_campaign_missing(make_service):
    svc = await make_service()
    with pytest.raises(NotFoundError):
        await svc.orchestrator.send_campaign("nope")


@pytest.mark.asyncio
async def test_enqueue_failure_restores_campaign_status(make_service):
    svc = await make_service()
    await seed(svc)

    async def broken_enqueue(job):
        raise RuntimeError("database is locked")

    svc.orchestrator.queue.enqueue = broken_enqueue
    with pytest.raises(RuntimeError):
        await svc.orchestrator.send_campaign("spring")
    assert (await svc.persistence.get_campaign("spring"))["status"] == "draft"


@pytest.mark.asyncio
async def test_finished_job_updates_campaign(make_service, sender):
    svc = await make_service()
    await seed(svc)
    sender.fail("bob@GLOBEX.com", permanent=True)
    result = await svc.orchestrator.send_campaign("spring")
    assert await svc.pool.run_once("w1") is True

    job = await svc.queue.get_job(result["job_id"])
    assert job["status"] == "failed"
    campaign = await svc.persistence.get_campaign("spring")
    assert campaign["status"] == "sent"
    assert campaign["sent_at"] is not None


@pytest.mark.asyncio
async def test_fully_failed_job_marks_campaign_failed(make_service, sender):
    svc = await make_service()
    await seed(svc, segment=[{"field": "email", "operator": "equals", "value": "ada@acme.io"}])
    sender.fail("ada@acme.io", permanent=True)
    await svc.orchestrator.send_campaign("spring")
    await svc.pool.run_once("w1")
    assert (await svc.persistence.get_campaign("spring"))["status"] == "failed"


@pytest.mark.asyncio
async def test_cancelled_job_marks_campaign_cancelled(make_service):
    svc = await make_service()
    await seed(svc)
    result = await svc.orchestrator.send_campaign("spring")
    await svc.cancel_job(result["job_id"])
    assert (await svc.persistence.get_campaign("spring"))["status"] == "cancelled"


@pytest.mark.asyncio
async def test_process_scheduled(make_service, clock):
    svc = await make_service()
    await seed(svc, scheduled_at=clock.now + 60)
    assert (await svc.persistence.get_campaign("spring"))["status"] == "scheduled"

    assert (await svc.orchestrator.process_scheduled())["processed"] == 0
    clock.advance(60)
    result = await svc.orchestrator.process_scheduled()
    assert result["processed"] == 1
    assert len(result["jobs"]) == 1
    assert (await svc.persistence.get_campaign("spring"))["status"] == "sending"


@pytest.mark.asyncio
async def test_process_scheduled_without_recipients_fails_campaign(make_service, clock):
    svc = await make_service()
    await seed(svc, scheduled_at=clock.now, segment=[{"field": "name", "operator": "equals", "value": "Zed"}])
    result = await svc.orchestrator.process_scheduled()
    assert result["jobs"] == []
    assert result["errors"][0]["code"] == "no_recipients"
    assert (await svc.persistence.get_campaign("spring"))["status"] == "failed"
