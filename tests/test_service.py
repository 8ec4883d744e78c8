import math

import pytest

from mailgenius.service import MailGeniusService


@pytest.mark.asyncio
async def test_test_mode_start_waits_for_run_now(make_service):
    svc = await make_service()
    await svc.start()
    try:
        assert math.isinf(svc._maintenance_interval)
        assert svc._task_maintenance is None
        assert svc.pool.running
        result = await svc.handle_command("run now", {})
        assert result == {"ok": True}
    finally:
        await svc.stop()
    assert svc.sender.closed is True


@pytest.mark.asyncio
async def test_unknown_command(make_service):
    svc = await make_service()
    assert await svc.handle_command("explode", {}) == {"ok": False, "error": "unknown command"}


@pytest.mark.asyncio
async def test_domain_errors_become_results(make_service):
    svc = await make_service()
    result = await svc.handle_command("getJob", {"id": "missing"})
    assert result["ok"] is False
    assert result["code"] == "not_found"
    assert result["status"] == 404

    result = await svc.handle_command("getJob", {})
    assert result["code"] == "validation_error"
    assert result["error"] == "missing 'id'"

    result = await svc.handle_command("scaleWorkers", {"count": 50})
    assert result["status"] == 400


@pytest.mark.asyncio
async def test_pause_and_resume(make_service):
    svc = await make_service()
    assert await svc.handle_command("pause") == {"ok": True, "paused": True}
    assert svc.pool.paused
    assert await svc.handle_command("resume") == {"ok": True, "paused": False}
    assert not svc.pool.paused


@pytest.mark.asyncio
async def test_campaign_flow_through_commands(make_service, sender):
    svc = await make_service()
    assert (await svc.handle_command("addLead", {"id": "l1", "workspace_id": "acme", "email": "ada@acme.io"}))["ok"]
    result = await svc.handle_command(
        "addCampaign",
        {
            "id": "c1",
            "workspace_id": "acme",
            "subject": "Hi {{name}}",
            "html_content": "<p>Hello</p>",
            "from_email": "news@acme.io",
        },
    )
    assert result["campaign"]["status"] == "draft"

    sent = await svc.handle_command("sendCampaign", {"campaign_id": "c1"})
    assert sent["ok"] is True
    assert sent["total_recipients"] == 1

    await svc.pool.run_once("w1")
    detail = await svc.handle_command("getJob", {"id": sent["job_id"]})
    assert detail["job"]["status"] == "completed"
    assert [b["status"] for b in detail["batches"]] == ["completed"]
    assert detail["progress"]["progress"] == 100

    campaigns = await svc.handle_command("listCampaigns", {"workspace_id": "acme"})
    assert campaigns["campaigns"][0]["status"] == "sent"

    stats = await svc.handle_command("stats", {})
    assert stats["jobs"]["sent_emails"] == 1
    assert stats["system"]["jobs_completed_last_hour"] == 1

    again = await svc.handle_command("sendCampaign", {"campaign_id": "c1"})
    assert again["code"] == "campaign_not_sendable"


@pytest.mark.asyncio
async def test_add_campaign_and_lead_validation(make_service):
    svc = await make_service()
    result = await svc.handle_command("addCampaign", {"id": "c1", "workspace_id": "acme"})
    assert result["ok"] is False
    assert result["error"] == "missing 'subject'"
    result = await svc.handle_command(
        "addLead", {"id": "l1", "workspace_id": "acme", "email": "a@acme.io", "tags": "vip"}
    )
    assert result["error"] == "tags must be a list"


@pytest.mark.asyncio
async def test_list_leads_filters_status(make_service):
    svc = await make_service()
    await svc.handle_command("addLead", {"id": "l1", "workspace_id": "acme", "email": "a@acme.io"})
    await svc.handle_command(
        "addLead", {"id": "l2", "workspace_id": "acme", "email": "b@acme.io", "status": "unsubscribed"}
    )
    active = await svc.handle_command("listLeads", {"workspace_id": "acme"})
    assert [lead["id"] for lead in active["leads"]] == ["l1"]
    everyone = await svc.handle_command("listLeads", {"workspace_id": "acme", "status": None})
    assert len(everyone["leads"]) == 2


@pytest.mark.asyncio
async def test_retry_job_requeues_failed_recipients(make_service, job_payload, sender):
    svc = await make_service()
    sender.fail("bad@example.com", times=1, permanent=True)
    queued = await svc.handle_command(
        "enqueueJob", job_payload(["ok@example.com", "bad@example.com"])
    )
    await svc.pool.run_once("w1")
    assert (await svc.queue.get_job(queued["job_id"]))["status"] == "failed"

    retried = await svc.handle_command("retryJob", {"id": queued["job_id"]})
    assert retried["ok"] is True
    new_job = await svc.queue.get_job(retried["job_id"])
    assert new_job["total_recipients"] == 1
    assert new_job["payload"]["tracking"]["retry_of"] == queued["job_id"]
    [recipient] = await svc.persistence.list_recipients(new_job["id"])
    assert recipient["email"] == "bad@example.com"
    assert recipient["subject"] == "Hello bad"

    await svc.pool.run_once("w1")
    assert (await svc.queue.get_job(new_job["id"]))["status"] == "completed"

    not_failed = await svc.handle_command("retryJob", {"id": new_job["id"]})
    assert not_failed["code"] == "invalid_transition"


@pytest.mark.asyncio
async def test_cancel_and_remove_job(make_service, job_payload):
    svc = await make_service()
    queued = await svc.handle_command("enqueueJob", job_payload(["a@example.com"]))
    job_id = queued["job_id"]

    still_pending = await svc.handle_command("removeJob", {"id": job_id})
    assert still_pending["status"] == 409

    cancelled = await svc.handle_command("cancelJob", {"id": job_id})
    assert cancelled["job"]["status"] == "cancelled"
    progress = await svc.handle_command("getProgress", {"id": job_id})
    assert progress["progress"]["status"] == "cancelled"

    again = await svc.handle_command("cancelJob", {"id": job_id})
    assert again["code"] == "invalid_transition"

    assert await svc.handle_command("removeJob", {"id": job_id}) == {"ok": True, "removed": True}
    assert (await svc.handle_command("getProgress", {"id": job_id}))["code"] == "not_found"


@pytest.mark.asyncio
async def test_progress_listing_by_owner(make_service, job_payload):
    svc = await make_service()
    await svc.handle_command("enqueueJob", job_payload(["a@example.com"], owner_id="user-7"))
    await svc.handle_command("enqueueJob", job_payload(["b@example.com"]))
    listed = await svc.handle_command("listProgress", {"owner_id": "user-7"})
    assert len(listed["progress"]) == 1
    assert listed["progress"][0]["type"] == "campaign_send"


@pytest.mark.asyncio
async def test_rate_limit_commands(make_service):
    svc = await make_service(rate_limit_profiles={"email-sending": "3/60"})
    await svc.rate_limiter.check("acme", "email-sending")
    status = await svc.handle_command("rateLimitStatus", {"identifier": "acme"})
    assert status["remaining"] == 2
    assert status["resource"] == "email-sending"
    assert (await svc.handle_command("resetRateLimit", {"identifier": "acme"}))["reset"] is True
    assert (await svc.handle_command("rateLimitStatus", {"identifier": "acme"}))["remaining"] == 3


@pytest.mark.asyncio
async def test_maintenance_requeues_and_sweeps(make_service, job_payload, sender, clock):
    svc = await make_service(retry_base_delay=30, heartbeat_interval=10, autoscale=False)
    sender.fail("a@example.com", times=1)
    await svc.handle_command("enqueueJob", job_payload(["a@example.com"]))
    await svc.pool.run_once("w1")

    clock.advance(30)
    report = await svc.run_maintenance()
    assert report["retry_sweep"]["succeeded"] == 1
    assert set(report["cleaned"]) == {"jobs", "retries", "progress", "rate_limits"}

    await svc.pool.run_once("w1")
    [job] = (await svc.handle_command("listJobs", {"status": "completed"}))["jobs"]
    assert job["processed_count"] == 1


@pytest.mark.asyncio
async def test_cleanup_command(make_service, job_payload, clock):
    svc = await make_service(progress_ttl_seconds=60)
    queued = await svc.handle_command("enqueueJob", job_payload(["a@example.com"]))
    await svc.pool.run_once("w1")
    clock.advance(2 * 86400)
    result = await svc.handle_command("clean", {"days": 1})
    assert result["removed"]["jobs"] == 1
    assert (await svc.handle_command("getJob", {"id": queued["job_id"]}))["code"] == "not_found"


def test_from_settings_uses_configured_values(tmp_path):
    settings = {
        "db_path": str(tmp_path / "db.sqlite"),
        "min_workers": 3,
        "max_workers": 5,
        "batch_size": 25,
        "email_provider": "dry-run",
        "rate_limit_profiles": {"email-sending": (10, 60.0)},
        "test_mode": True,
    }
    svc = MailGeniusService.from_settings(settings)
    assert svc.pool.min_workers == 3
    assert svc.pool.max_workers == 5
    assert svc.queue.default_batch_size == 25
    assert svc.rate_limiter.profile_for("email-sending") == (10, 60.0)
    assert svc.sender.__class__.__name__ == "DryRunSender"


@pytest.mark.asyncio
async def test_worker_health_command_and_maintenance_alerts(make_service, clock):
    svc = await make_service(heartbeat_interval=10, autoscale=False)
    await svc.persistence.register_worker("w1", "w1", clock())

    result = await svc.handle_command("workerHealth")
    assert result["ok"] is True
    assert result["healthy"] is True
    assert result["alerts"] == []

    for _ in range(6):
        await svc.persistence.add_worker_counts("w1", failed=1)
    report = await svc.run_maintenance()
    assert [a["type"] for a in report["alerts"]] == ["high_failure_rate"]

    clock.advance(20)
    report = await svc.run_maintenance()
    assert report["requeued"] == []
    assert [a["type"] for a in report["alerts"]] == ["high_failure_rate", "workers_offline"]
