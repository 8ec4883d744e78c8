import pytest

from mailgenius.persistence import Persistence

NOW = 1_700_000_000.0


async def _persistence(tmp_path):
    p = Persistence(str(tmp_path / "store.db"))
    await p.init_db()
    return p


def _job(job_id, **fields):
    job = {
        "id": job_id,
        "workspace_id": "acme",
        "payload": {"template": {"subject": "s"}},
        "batch_size": 10,
        "total_recipients": 0,
        "created_at": NOW,
        "updated_at": NOW,
    }
    job.update(fields)
    return job


@pytest.mark.asyncio
async def test_init_db_is_idempotent(tmp_path):
    p = await _persistence(tmp_path)
    await p.init_db()
    assert await p.list_jobs() == []


@pytest.mark.asyncio
async def test_campaign_and_lead_json_columns(tmp_path):
    p = await _persistence(tmp_path)
    await p.add_campaign(
        {
            "id": "c1",
            "workspace_id": "acme",
            "subject": "Hi",
            "html_content": "<p>Hi</p>",
            "from_email": "news@acme.io",
            "segment": {"conditions": [{"field": "tags", "operator": "contains", "value": "vip"}]},
            "created_at": NOW,
        }
    )
    campaign = await p.get_campaign("c1")
    assert campaign["status"] == "draft"
    assert campaign["segment"]["conditions"][0]["value"] == "vip"

    await p.add_lead(
        {"id": "l1", "workspace_id": "acme", "email": "a@example.com", "tags": ["vip"], "custom_fields": {"plan": "pro"}}
    )
    await p.add_lead({"id": "l2", "workspace_id": "acme", "email": "b@example.com", "status": "inactive"})
    active = await p.list_leads("acme")
    assert [lead["id"] for lead in active] == ["l1"]
    assert active[0]["tags"] == ["vip"]
    assert active[0]["custom_fields"] == {"plan": "pro"}
    assert len(await p.list_leads("acme", status=None)) == 2


@pytest.mark.asyncio
async def test_transition_campaign_is_conditional(tmp_path):
    p = await _persistence(tmp_path)
    await p.add_campaign(
        {"id": "c1", "workspace_id": "acme", "subject": "s", "html_content": "h", "from_email": "f@acme.io"}
    )
    assert await p.transition_campaign("c1", ["draft"], "sending", {"job_id": "j1"}, NOW) is True
    assert await p.transition_campaign("c1", ["draft"], "sending", {"job_id": "j2"}, NOW) is False
    campaign = await p.get_campaign("c1")
    assert campaign["status"] == "sending"
    assert campaign["job_id"] == "j1"


@pytest.mark.asyncio
async def test_update_rejects_unknown_columns(tmp_path):
    p = await _persistence(tmp_path)
    await p.insert_job(_job("j1"), [], [])
    with pytest.raises(ValueError):
        await p.update_job("j1", {"workspace_id": "other"})
    assert await p.update_job("j1", {}) == 0


@pytest.mark.asyncio
async def test_claim_moves_worker_to_busy(tmp_path):
    p = await _persistence(tmp_path)
    await p.register_worker("w1", "worker-1", NOW)
    await p.insert_job(_job("j1"), [], [])

    assert await p.claim_candidates(NOW) == [("j1", "pending")]
    assert await p.try_claim_job("j1", "pending", "w1", NOW) is True
    assert await p.try_claim_job("j1", "pending", "w2", NOW) is False

    worker = await p.get_worker("w1")
    assert worker["status"] == "busy"
    assert worker["current_job_id"] == "j1"
    assert await p.claim_candidates(NOW) == []


@pytest.mark.asyncio
async def test_stale_worker_jobs_are_released(tmp_path):
    p = await _persistence(tmp_path)
    await p.register_worker("w1", "worker-1", NOW)
    await p.register_worker("w2", "worker-2", NOW + 100)
    await p.insert_job(_job("j1"), [], [])
    await p.try_claim_job("j1", "pending", "w1", NOW)

    stale = await p.stale_workers(NOW + 50)
    assert [w["id"] for w in stale] == ["w1"]

    released = await p.release_worker_jobs("w1", NOW + 60)
    assert released == ["j1"]
    job = await p.get_job("j1")
    assert job["status"] == "retrying"
    assert job["worker_id"] is None

    assert await p.try_claim_job("j1", "retrying", "w2", NOW + 61) is True
    assert (await p.get_job("j1"))["retry_count"] == 1


@pytest.mark.asyncio
async def test_release_worker_keeps_offline(tmp_path):
    p = await _persistence(tmp_path)
    await p.register_worker("w1", "worker-1", NOW)
    assert await p.release_worker("w1", NOW) is False
    await p.update_worker("w1", {"status": "offline"})
    assert await p.release_worker("w1", NOW) is False
    assert (await p.get_worker("w1"))["status"] == "offline"

    await p.add_worker_counts("w1", jobs=1, sent=3, failed=1)
    worker = await p.get_worker("w1")
    assert (worker["jobs_processed"], worker["emails_sent"], worker["emails_failed"]) == (1, 3, 1)
    assert await p.worker_status_counts() == {"offline": 1}


@pytest.mark.asyncio
async def test_worker_failure_streak_resets_on_delivery(tmp_path):
    p = await _persistence(tmp_path)
    await p.register_worker("w1", "worker-1", NOW)
    for _ in range(3):
        await p.add_worker_counts("w1", failed=1)
    assert (await p.get_worker("w1"))["consecutive_failures"] == 3

    await p.add_worker_counts("w1", jobs=1)
    assert (await p.get_worker("w1"))["consecutive_failures"] == 3

    await p.add_worker_counts("w1", sent=1)
    worker = await p.get_worker("w1")
    assert (worker["consecutive_failures"], worker["emails_failed"], worker["emails_sent"]) == (0, 3, 1)


@pytest.mark.asyncio
async def test_hit_rate_limit_window(tmp_path):
    p = await _persistence(tmp_path)
    assert await p.hit_rate_limit("acme", "email-sending", 2, 60, NOW) == (True, 1, NOW)
    assert await p.hit_rate_limit("acme", "email-sending", 2, 60, NOW + 1) == (True, 2, NOW)
    assert await p.hit_rate_limit("acme", "email-sending", 2, 60, NOW + 2) == (False, 2, NOW)
    assert await p.hit_rate_limit("acme", "email-sending", 2, 60, NOW + 60) == (True, 1, NOW + 60)

    assert await p.delete_expired_rate_limits(NOW + 119) == 0
    assert await p.delete_expired_rate_limits(NOW + 120) == 1
    assert await p.get_rate_limit("acme", "email-sending") is None
