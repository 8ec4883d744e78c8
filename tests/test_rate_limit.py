import asyncio

import pytest

from mailgenius.errors import ValidationError
from mailgenius.persistence import Persistence
from mailgenius.rate_limit import DEFAULT_PROFILES, RateLimiter, parse_profile


async def make_limiter(tmp_path, clock, profiles=None) -> RateLimiter:
    persistence = Persistence(str(tmp_path / "rate.db"))
    await persistence.init_db()
    return RateLimiter(persistence, profiles=profiles, clock=clock)


def test_parse_profile_formats():
    assert parse_profile("100/60") == (100, 60.0)
    assert parse_profile((5, 10)) == (5, 10.0)
    assert parse_profile({"limit": 3, "window_seconds": 30}) == (3, 30.0)


@pytest.mark.parametrize("value", ["100", "0/60", "10/-1", {"window": 10}, "x/y"])
def test_parse_profile_rejects_invalid(value):
    with pytest.raises(ValidationError):
        parse_profile(value)


@pytest.mark.asyncio
async def test_window_admits_limit_then_rejects(tmp_path, clock):
    limiter = await make_limiter(tmp_path, clock)
    config = {"limit": 5, "window_seconds": 60}

    remaining = []
    for _ in range(5):
        decision = await limiter.check("acme", "email-sending", config)
        assert decision["allowed"] is True
        remaining.append(decision["remaining"])
    assert remaining == [4, 3, 2, 1, 0]

    rejected = await limiter.check("acme", "email-sending", config)
    assert rejected["allowed"] is False
    assert rejected["remaining"] == 0
    assert rejected["reset_time"] == clock.now + 60

    status = await limiter.status("acme", "email-sending")
    assert status["count"] == 5


@pytest.mark.asyncio
async def test_window_resets_after_expiry(tmp_path, clock):
    limiter = await make_limiter(tmp_path, clock)
    config = "2/60"
    await limiter.check("acme", "api", config)
    await limiter.check("acme", "api", config)
    assert (await limiter.check("acme", "api", config))["allowed"] is False

    clock.advance(60)
    decision = await limiter.check("acme", "api", config)
    assert decision["allowed"] is True
    assert decision["remaining"] == 1
    assert decision["reset_time"] == clock.now + 60


@pytest.mark.asyncio
async def test_identifiers_and_resources_are_independent(tmp_path, clock):
    limiter = await make_limiter(tmp_path, clock, profiles={"email-sending": "1/60"})
    assert (await limiter.check("acme", "email-sending"))["allowed"] is True
    assert (await limiter.check("acme", "email-sending"))["allowed"] is False
    assert (await limiter.check("globex", "email-sending"))["allowed"] is True
    assert (await limiter.check("acme", "api"))["allowed"] is True


@pytest.mark.asyncio
async def test_unknown_resource_uses_default_profile(tmp_path, clock):
    limiter = await make_limiter(tmp_path, clock)
    decision = await limiter.check("acme", "webhooks")
    assert decision["limit"] == DEFAULT_PROFILES["default"][0]


@pytest.mark.asyncio
async def test_concurrent_checks_never_exceed_limit(tmp_path, clock):
    limiter = await make_limiter(tmp_path, clock)
    results = await asyncio.gather(*(limiter.check("acme", "burst", "3/60") for _ in range(8)))
    assert sum(1 for r in results if r["allowed"]) == 3


@pytest.mark.asyncio
async def test_reset_and_status(tmp_path, clock):
    limiter = await make_limiter(tmp_path, clock, profiles={"email-sending": "2/60"})
    await limiter.check("acme", "email-sending")
    await limiter.check("acme", "email-sending")
    status = await limiter.status("acme", "email-sending")
    assert status["remaining"] == 0
    assert status["reset_time"] == clock.now + 60

    assert await limiter.reset("acme", "email-sending") is True
    assert await limiter.reset("acme", "email-sending") is False
    status = await limiter.status("acme", "email-sending")
    assert status["count"] == 0
    assert status["remaining"] == 2
    assert status["reset_time"] is None


@pytest.mark.asyncio
async def test_cleanup_expired_windows(tmp_path, clock):
    limiter = await make_limiter(tmp_path, clock)
    await limiter.check("acme", "api", "10/60")
    assert await limiter.cleanup_expired() == 0
    clock.advance(61)
    assert await limiter.cleanup_expired() == 1
