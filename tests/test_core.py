import types
from datetime import datetime, timedelta, timezone
from typing import Any, List

import pytest

from async_mail_queue.core import AsyncMailQueue
from async_mail_queue.models import (
    Failed,
    JobNotFoundError,
    JobStateError,
    JobStatus,
    JobValidationError,
    RateLimited,
    SendRequest,
    Sent,
)
from async_mail_queue.transport import RateLimitedTransport

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
REQUEST = {"from": "a@x.org", "to": ["b@x.org"], "subject": "Hello", "text_body": "Hi"}


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeTransport:
    """Return scripted outcomes, repeating the last one."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [Sent("m-1")]
        self.calls: List[Any] = []
        self.closed = False

    async def send(self, owner, request, attachments=None):
        self.calls.append((owner, request, attachments))
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]

    async def close(self):
        self.closed = True


async def make_queue(tmp_path, transport=None, **kwargs) -> AsyncMailQueue:
    clock = kwargs.pop("clock", FakeClock())
    logger = types.SimpleNamespace(
        warning=lambda *args, **kwargs: None,
        error=lambda *args, **kwargs: None,
        exception=lambda *args, **kwargs: None,
        info=lambda *args, **kwargs: None,
        debug=lambda *args, **kwargs: None,
    )
    queue = AsyncMailQueue(
        transport=transport or FakeTransport(),
        db_path=str(tmp_path / "core.db"),
        clock=clock,
        logger=logger,
        start_active=False,
        **kwargs,
    )
    await queue.init()
    return queue


@pytest.mark.asyncio
async def test_submitted_job_completes_after_one_cycle(tmp_path):
    transport = FakeTransport(Sent("relay-42"))
    queue = await make_queue(tmp_path, transport)

    job = await queue.submit("alice", REQUEST)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.inserted_at == T0

    await queue.scheduler.run_cycle()

    stored = await queue.status_of(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.provider_message_id == "relay-42"
    owner, request, _ = transport.calls[0]
    assert owner == "alice"
    assert isinstance(request, SendRequest)
    assert request.to == ["b@x.org"]


@pytest.mark.asyncio
async def test_rate_limited_then_sent_keeps_zero_attempts(tmp_path):
    queue = await make_queue(tmp_path, FakeTransport(RateLimited(), Sent("m-1")))
    job = await queue.submit("alice", REQUEST)

    await queue.scheduler.run_cycle()
    assert (await queue.status_of(job.id)).status == JobStatus.PENDING

    await queue.scheduler.run_cycle()
    stored = await queue.status_of(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.attempts == 0
    assert stored.last_error is None


@pytest.mark.asyncio
async def test_failure_records_attempt_and_reason(tmp_path):
    transport = FakeTransport(Failed("550 mailbox unavailable"))
    queue = await make_queue(tmp_path, transport, max_attempts=3)
    job = await queue.submit("alice", REQUEST)

    await queue.scheduler.run_cycle()

    stored = await queue.status_of(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 1
    assert stored.last_error == "550 mailbox unavailable"

    # failed is terminal for the poll loop
    await queue.scheduler.run_cycle()
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_scheduled_jobs_are_dispatched_when_due(tmp_path):
    clock = FakeClock()
    transport = FakeTransport()
    queue = await make_queue(tmp_path, transport, clock=clock)
    first = await queue.submit("alice", REQUEST, scheduled_for=T0 + timedelta(minutes=5))
    second = await queue.submit("alice", REQUEST, scheduled_for=T0 + timedelta(minutes=10))

    assert await queue.scheduler.run_cycle() == []

    clock.advance(6 * 60)
    results = await queue.scheduler.run_cycle()
    assert [r.job_id for r in results] == [first.id]
    assert (await queue.status_of(second.id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_submit_validation(tmp_path):
    queue = await make_queue(tmp_path)

    with pytest.raises(JobValidationError):
        await queue.submit("", REQUEST)
    with pytest.raises(JobValidationError) as excinfo:
        await queue.submit("alice", {"from": "a@x.org", "subject": "s"})
    assert "to" in str(excinfo.value)
    assert excinfo.value.errors
    with pytest.raises(JobValidationError):
        await queue.submit("alice", REQUEST, scheduled_for="tomorrow")
    with pytest.raises(JobValidationError):
        await queue.submit("alice", REQUEST, scheduled_for=1772355600)
    assert await queue.list_jobs() == []


@pytest.mark.asyncio
async def test_submit_normalises_scheduled_for(tmp_path):
    queue = await make_queue(tmp_path)
    job = await queue.submit("alice", REQUEST, scheduled_for="2026-03-01T10:00:00Z")
    assert job.scheduled_for == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    naive = await queue.submit("alice", REQUEST, scheduled_for=datetime(2026, 3, 1, 11, 0))
    assert (await queue.status_of(naive.id)).scheduled_for == datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_status_of_unknown_job(tmp_path):
    queue = await make_queue(tmp_path)
    with pytest.raises(JobNotFoundError):
        await queue.status_of("nope")


@pytest.mark.asyncio
async def test_requeue_failed_job(tmp_path):
    queue = await make_queue(tmp_path, FakeTransport(Failed("boom"), Sent("m-1")), max_attempts=2)
    job = await queue.submit("alice", REQUEST)

    with pytest.raises(JobStateError):
        await queue.requeue(job.id)

    await queue.scheduler.run_cycle()
    requeued = await queue.requeue(job.id)
    assert requeued.status == JobStatus.PENDING
    assert requeued.attempts == 1

    await queue.scheduler.run_cycle()
    assert (await queue.status_of(job.id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_requeue_refuses_exhausted_job(tmp_path):
    queue = await make_queue(tmp_path, FakeTransport(Failed("boom")), max_attempts=1)
    job = await queue.submit("alice", REQUEST)
    await queue.scheduler.run_cycle()

    with pytest.raises(JobStateError):
        await queue.requeue(job.id)
    with pytest.raises(JobNotFoundError):
        await queue.requeue("nope")


@pytest.mark.asyncio
async def test_list_jobs_filters(tmp_path):
    queue = await make_queue(tmp_path)
    await queue.submit("alice", REQUEST)
    await queue.submit("bob", REQUEST)

    assert [j.owner for j in await queue.list_jobs(owner="bob")] == ["bob"]
    assert len(await queue.list_jobs(status="pending")) == 2
    with pytest.raises(JobValidationError):
        await queue.list_jobs(status="bogus")


@pytest.mark.asyncio
async def test_handle_command_round_trip(tmp_path):
    queue = await make_queue(tmp_path, FakeTransport(Failed("boom")))

    submitted = await queue.handle_command("submit", {"owner": "alice", "request": REQUEST})
    assert submitted["ok"] is True
    job_id = submitted["job"]["id"]
    assert submitted["job"]["status"] == "pending"

    status = await queue.handle_command("status", {"id": job_id})
    assert status["job"]["owner"] == "alice"

    await queue.scheduler.run_cycle()
    listed = await queue.handle_command("listJobs", {"status": "failed"})
    assert [j["id"] for j in listed["jobs"]] == [job_id]

    requeued = await queue.handle_command("requeue", {"id": job_id})
    assert requeued["job"]["status"] == "pending"


@pytest.mark.asyncio
async def test_handle_command_errors(tmp_path):
    queue = await make_queue(tmp_path)

    missing = await queue.handle_command("status", {"id": "nope"})
    assert missing == {"ok": False, "error": "Job 'nope' not found", "code": "job_not_found"}

    invalid = await queue.handle_command("submit", {"request": REQUEST})
    assert invalid["ok"] is False
    assert invalid["code"] == "invalid_request"

    assert await queue.handle_command("bogus") == {"ok": False, "error": "unknown command"}


@pytest.mark.asyncio
async def test_run_now_wakes_scheduler(tmp_path):
    queue = await make_queue(tmp_path)
    result = await queue.handle_command("run now")
    assert result == {"ok": True}
    assert queue.scheduler._wake_event.is_set()


@pytest.mark.asyncio
async def test_suspend_and_activate(tmp_path):
    transport = FakeTransport()
    queue = await make_queue(tmp_path, transport)

    assert await queue.handle_command("activate") == {"ok": True, "active": True}
    assert queue.scheduler.running
    assert await queue.handle_command("suspend") == {"ok": True, "active": False}
    assert not queue.scheduler.running

    await queue.stop()
    assert transport.closed


@pytest.mark.asyncio
async def test_rate_limits_wrap_transport(tmp_path):
    transport = FakeTransport()
    queue = await make_queue(tmp_path, transport, rate_limits={"per_minute": 1})
    assert isinstance(queue.transport, RateLimitedTransport)

    first = await queue.submit("alice", REQUEST)
    second = await queue.submit("alice", REQUEST)
    await queue.scheduler.run_cycle()

    assert (await queue.status_of(first.id)).status == JobStatus.COMPLETED
    held = await queue.status_of(second.id)
    assert held.status == JobStatus.PENDING
    assert held.attempts == 0
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_init_publishes_gauges(tmp_path):
    queue = await make_queue(tmp_path)
    await queue.submit("alice", REQUEST)
    await queue.init()
    assert queue.metrics.registry.get_sample_value("amq_pending_jobs") == 1


def test_in_memory_database_is_rejected():
    with pytest.raises(ValueError):
        AsyncMailQueue(transport=FakeTransport(), db_path=":memory:")
    with pytest.raises(ValueError):
        AsyncMailQueue(transport=FakeTransport(), db_path="")
