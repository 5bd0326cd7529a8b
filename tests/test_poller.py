"""Tests for client-side discovery polling."""

import httpx
import pytest

from compmatch.client.poller import poll_discovery
from compmatch.config import settings
from compmatch.enums import PlanTier, RunStatus
from compmatch.errors import NotFoundError


class FakeTime:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://testserver")


async def test_returns_on_terminal_status():
    statuses = iter(["processing", "processing", "ready"])
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": next(statuses), "run_id": "abc"})

    fake = FakeTime()
    async with _client(handler) as client:
        outcome = await poll_discovery(client, 7, 1, run_id="abc", clock=fake.clock, sleep=fake.sleep)

    assert outcome.status == RunStatus.READY
    assert outcome.completed
    assert not outcome.timed_out
    assert outcome.run_id == "abc"
    assert fake.sleeps == [2.0, 2.0]
    assert seen[0].url.path == "/api/competitors/7/status"
    assert seen[0].url.params["run_id"] == "abc"
    assert seen[0].headers["X-Store-Id"] == "1"


async def test_timeout_is_not_yet_complete():
    fake = FakeTime()
    async with _client(lambda request: httpx.Response(200, json={"status": "processing"})) as client:
        outcome = await poll_discovery(client, 7, 1, timeout=10, interval=2, clock=fake.clock, sleep=fake.sleep)

    assert outcome.status == RunStatus.PROCESSING
    assert not outcome.completed
    assert outcome.timed_out
    assert fake.now == 10


async def test_transport_errors_keep_polling():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"status": "blocked", "run_id": "r1"})

    fake = FakeTime()
    async with _client(handler) as client:
        outcome = await poll_discovery(client, 7, 1, clock=fake.clock, sleep=fake.sleep)

    assert outcome.status == RunStatus.BLOCKED
    assert outcome.completed
    assert calls["n"] == 2


async def test_legacy_status_synonyms():
    fake = FakeTime()
    async with _client(lambda request: httpx.Response(200, json={"status": "completed"})) as client:
        outcome = await poll_discovery(client, 7, 1, clock=fake.clock, sleep=fake.sleep)
    assert outcome.status == RunStatus.READY


async def test_unknown_competitor_raises():
    fake = FakeTime()
    async with _client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(NotFoundError):
            await poll_discovery(client, 7, 1, clock=fake.clock, sleep=fake.sleep)


async def test_error_status_keeps_polling():
    responses = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200, json={"status": "ready"})])
    fake = FakeTime()
    async with _client(lambda request: next(responses)) as client:
        outcome = await poll_discovery(client, 7, 1, clock=fake.clock, sleep=fake.sleep)

    assert outcome.status == RunStatus.READY
    assert outcome.completed
    assert fake.sleeps == [2.0, 2.0]


async def test_unreadable_body_keeps_polling():
    responses = iter(
        [
            httpx.Response(200, text="<html>gateway</html>"),
            httpx.Response(200, json=["ready"]),
            httpx.Response(200, json={"status": "empty"}),
        ]
    )
    fake = FakeTime()
    async with _client(lambda request: next(responses)) as client:
        outcome = await poll_discovery(client, 7, 1, clock=fake.clock, sleep=fake.sleep)

    assert outcome.status == RunStatus.EMPTY
    assert outcome.completed


async def test_defaults_come_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "poll_timeout_seconds", 4.0)
    monkeypatch.setattr(settings, "poll_interval_seconds", 1.0)
    fake = FakeTime()
    async with _client(lambda request: httpx.Response(200, json={"status": "processing"})) as client:
        outcome = await poll_discovery(client, 7, 1, clock=fake.clock, sleep=fake.sleep)

    assert outcome.timed_out
    assert fake.sleeps == [1.0, 1.0, 1.0, 1.0]


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("", RunStatus.PENDING),
        (None, RunStatus.PENDING),
        ("READY", RunStatus.READY),
        ("running", RunStatus.PROCESSING),
        ("bot_blocked", RunStatus.BLOCKED),
    ],
)
def test_run_status_parse(raw, expected):
    assert RunStatus.parse(raw) == expected


def test_run_status_parse_rejects_unknown():
    with pytest.raises(ValueError):
        RunStatus.parse("exploded")


def test_plan_tier_parse_falls_back_to_starter():
    assert PlanTier.parse("pro") == PlanTier.PRO
    assert PlanTier.parse("mystery") == PlanTier.STARTER
    assert PlanTier.parse(None) == PlanTier.STARTER
