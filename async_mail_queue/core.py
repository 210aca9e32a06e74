"""Queue facade: submission API, status reads and control commands."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from .dispatcher import Dispatcher
from .hooks import DeliveredCallable
from .logger import get_logger
from .models import (
    Job,
    JobStateError,
    JobStatus,
    JobValidationError,
    QueueError,
    SendRequest,
    encode_payload,
)
from .persistence import Persistence, utc_now
from .prometheus import QueueMetrics
from .rate_limit import RateLimiter
from .scheduler import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_INTERVAL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PROCESSING_TIMEOUT,
    Scheduler,
)
from .transport import RateLimitedTransport, Transport


def _as_utc(value: Union[datetime, str, None]) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif not isinstance(value, datetime):
        raise TypeError(f"expected datetime or ISO 8601 string, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AsyncMailQueue:
    """Coordinate the job store, dispatcher and scheduler."""

    def __init__(
        self,
        *,
        transport: Transport,
        db_path: str = "/data/mail_queue.db",
        on_delivered: Optional[DeliveredCallable] = None,
        metrics: QueueMetrics | None = None,
        logger=None,
        clock: Optional[Callable[[], datetime]] = None,
        interval: float = DEFAULT_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        processing_timeout: Optional[float] = DEFAULT_PROCESSING_TIMEOUT,
        start_active: bool = True,
        log_delivery_activity: bool = False,
        rate_limits: Optional[Dict[str, Optional[int]]] = None,
    ):
        """Prepare the runtime collaborators; nothing runs until :meth:`start`."""
        self.logger = logger or get_logger()
        self.clock = clock or utc_now
        self.metrics = metrics or QueueMetrics()
        self.persistence = Persistence(db_path, clock=self.clock)
        self.rate_limiter = RateLimiter(self.persistence, **(rate_limits or {}))
        if self.rate_limiter.enabled:
            transport = RateLimitedTransport(transport, self.rate_limiter)
        self.transport = transport
        self.dispatcher = Dispatcher(
            self.persistence,
            transport,
            on_delivered=on_delivered,
            metrics=self.metrics,
            logger=self.logger,
            log_delivery_activity=log_delivery_activity,
        )
        self.scheduler = Scheduler(
            self.persistence,
            self.dispatcher,
            interval=interval,
            batch_size=batch_size,
            max_attempts=max_attempts,
            processing_timeout=processing_timeout,
            clock=self.clock,
            metrics=self.metrics,
            logger=self.logger,
        )
        self._start_active = bool(start_active)

    @property
    def max_attempts(self) -> int:
        return self.scheduler.max_attempts

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the schema and publish the current queue gauges."""
        await self.persistence.init_db()
        await self.scheduler.refresh_gauges()

    async def start(self) -> None:
        """Initialise storage and start the poll loop when active."""
        self.logger.debug("Starting AsyncMailQueue...")
        await self.init()
        if self._start_active:
            await self.scheduler.start()

    async def stop(self) -> None:
        """Stop the poll loop and release transport resources."""
        await self.scheduler.stop()
        await self.transport.close()

    # ------------------------------------------------------------ submission API
    async def submit(
        self,
        owner: str,
        request: Union[SendRequest, Mapping[str, Any]],
        attachments: Any = None,
        scheduled_for: Union[datetime, str, None] = None,
    ) -> Job:
        """Validate and enqueue a send request as a new ``pending`` job."""
        if not owner:
            raise JobValidationError("missing owner")
        if not isinstance(request, SendRequest):
            try:
                request = SendRequest.model_validate(request)
            except ValidationError as exc:
                fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
                raise JobValidationError(f"invalid request: {fields}", errors=exc.errors()) from exc
        try:
            scheduled_at = _as_utc(scheduled_for)
        except (TypeError, ValueError) as exc:
            raise JobValidationError(f"invalid scheduled_for: {scheduled_for!r}") from exc

        now = self.clock()
        job = Job(
            id=uuid.uuid4().hex,
            owner=owner,
            payload=encode_payload(request),
            attachments=attachments,
            scheduled_for=scheduled_at,
            status=JobStatus.PENDING,
            attempts=0,
            inserted_at=now,
            updated_at=now,
        )
        await self.persistence.insert_job(job)
        self.logger.debug("Queued job %s for owner %s (scheduled_for=%s)", job.id, owner, scheduled_at)
        return job

    async def status_of(self, job_id: str) -> Job:
        """Return the stored job or raise :class:`JobNotFoundError`."""
        return await self.persistence.get_job(job_id)

    async def requeue(self, job_id: str) -> Job:
        """Return a ``failed`` job with attempts left to ``pending``.

        Failed jobs are never retried automatically; this is the explicit path.
        """
        job = await self.persistence.get_job(job_id)
        if job.status != JobStatus.FAILED:
            raise JobStateError(f"Job '{job_id}' is {job.status.value}, only failed jobs can be requeued")
        if job.attempts >= self.max_attempts:
            raise JobStateError(f"Job '{job_id}' has no attempts left ({job.attempts}/{self.max_attempts})")
        if not await self.persistence.requeue_job(job_id, max_attempts=self.max_attempts):
            raise JobStateError(f"Job '{job_id}' changed state while requeueing")
        self.logger.info("Requeued job %s (attempts=%d)", job_id, job.attempts)
        return await self.persistence.get_job(job_id)

    async def list_jobs(self, *, owner: Optional[str] = None, status: Optional[str] = None) -> List[Job]:
        try:
            status_value = JobStatus(status) if status else None
        except ValueError as exc:
            raise JobValidationError(f"unknown status {status!r}") from exc
        return await self.persistence.list_jobs(owner=owner, status=status_value)

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        try:
            if cmd == "run now":
                self.scheduler.wake()
                return {"ok": True}
            if cmd == "suspend":
                await self.scheduler.stop()
                return {"ok": True, "active": False}
            if cmd == "activate":
                await self.scheduler.start()
                return {"ok": True, "active": True}
            if cmd == "submit":
                job = await self.submit(
                    payload.get("owner"),
                    payload.get("request") or {},
                    attachments=payload.get("attachments"),
                    scheduled_for=payload.get("scheduled_for"),
                )
                return {"ok": True, "job": job.model_dump(mode="json")}
            if cmd == "status":
                job = await self.status_of(str(payload.get("id")))
                return {"ok": True, "job": job.model_dump(mode="json")}
            if cmd == "requeue":
                job = await self.requeue(str(payload.get("id")))
                return {"ok": True, "job": job.model_dump(mode="json")}
            if cmd == "listJobs":
                jobs = await self.list_jobs(owner=payload.get("owner"), status=payload.get("status"))
                return {"ok": True, "jobs": [job.model_dump(mode="json") for job in jobs]}
        except QueueError as exc:
            self.logger.debug("Command %s rejected: %s", cmd, exc)
            return {"ok": False, "error": str(exc), "code": exc.code}
        return {"ok": False, "error": "unknown command"}
