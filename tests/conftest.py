import types
from typing import Any, Dict, List

import pytest

from mailgenius.service import MailGeniusService

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class DummySender:
    """Records every message; ``fail`` makes an address bounce."""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self.delivered: List[str] = []
        self.failures: Dict[str, Dict[str, Any]] = {}
        self.on_send = None
        self.closed = False

    def fail(self, email: str, times: int | None = None, permanent: bool = False, error: str = "mailbox busy"):
        self.failures[email] = {"times": times, "permanent": permanent, "error": error}

    async def send(self, message: Dict[str, Any]) -> Dict[str, Any]:
        self.messages.append(message)
        if self.on_send is not None:
            await self.on_send(message)
        rule = self.failures.get(message["to"])
        if rule is not None and (rule["times"] is None or rule["times"] > 0):
            if rule["times"] is not None:
                rule["times"] -= 1
            return {"id": "", "success": False, "error": rule["error"], "permanent": rule["permanent"]}
        self.delivered.append(message["to"])
        return {"id": f"msg-{len(self.messages)}", "success": True, "error": None, "permanent": False}

    async def close(self):
        self.closed = True


def quiet_logger():
    return types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return DummySender()


@pytest.fixture
def make_service(tmp_path, clock, sender):
    """Return an async factory building an initialised service on a temporary database."""

    async def _make(**overrides: Any) -> MailGeniusService:
        kwargs: Dict[str, Any] = {
            "db_path": str(tmp_path / "mailgenius.db"),
            "sender": sender,
            "clock": clock,
            "logger": quiet_logger(),
            "test_mode": True,
            "min_workers": 1,
            "max_workers": 4,
            "max_rate_limit_wait": 0,
        }
        kwargs.update(overrides)
        svc = MailGeniusService(**kwargs)
        await svc.init()
        return svc

    return _make


@pytest.fixture
def job_payload():
    """Return a builder for ``enqueue`` payloads addressed to ``emails``."""

    def _build(emails, **fields: Any) -> Dict[str, Any]:
        job: Dict[str, Any] = {
            "workspace_id": "acme",
            "payload": {
                "recipients": [{"email": email, "variables": {"name": email.split("@")[0]}} for email in emails],
                "template": {"subject": "Hello {{name}}", "html": "<p>Hi {{name}}</p>"},
                "sender": {"from_email": "news@acme.io"},
            },
        }
        job.update(fields)
        return job

    return _build
