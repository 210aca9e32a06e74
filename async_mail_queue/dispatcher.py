"""Per-job delivery state machine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .hooks import DeliveredCallable
from .logger import get_logger
from .models import (
    Failed,
    Job,
    JobStatus,
    Outcome,
    PayloadDecodeError,
    RateLimited,
    Sent,
    StatusTransition,
)
from .persistence import Persistence
from .prometheus import QueueMetrics
from .transport import Transport


@dataclass(frozen=True)
class DispatchResult:
    """Result of one dispatch; ``status`` is ``None`` when the claim was lost."""

    job_id: str
    status: Optional[JobStatus]
    outcome: Optional[Outcome] = None


class Dispatcher:
    """Drive one job through ``processing`` to its next state.

    ``pending -> processing -> completed | pending | failed``:

    - :class:`Sent` completes the job and notifies ``on_delivered``.
    - :class:`RateLimited` returns it to ``pending`` without consuming an attempt.
    - :class:`Failed` (transport error, undecodable payload or an unexpected
      fault) consumes an attempt and records the reason.

    Store errors are not job scoped and propagate to the caller.
    """

    def __init__(
        self,
        persistence: Persistence,
        transport: Transport,
        *,
        on_delivered: Optional[DeliveredCallable] = None,
        metrics: Optional[QueueMetrics] = None,
        logger=None,
        log_delivery_activity: bool = False,
    ):
        self.persistence = persistence
        self.transport = transport
        self.on_delivered = on_delivered
        self.metrics = metrics or QueueMetrics()
        self.logger = logger or get_logger("Dispatcher")
        self._log_delivery_activity = bool(log_delivery_activity)

    async def dispatch(self, job: Job) -> DispatchResult:
        """Claim ``job``, deliver it and persist the resulting transition."""
        if not await self.persistence.claim_job(job.id):
            self.logger.debug("Job %s is no longer pending, skipping", job.id)
            return DispatchResult(job.id, None)

        if self._log_delivery_activity:
            self.logger.info("Attempting delivery for job %s (owner=%s, attempts=%d)", job.id, job.owner, job.attempts)

        try:
            outcome = await self._attempt(job)
        except Exception as exc:
            self.logger.exception("Unexpected error while dispatching job %s", job.id)
            outcome = Failed(f"unexpected error: {exc!r}")

        status = await self._record(job, outcome)
        return DispatchResult(job.id, status, outcome)

    async def _attempt(self, job: Job) -> Outcome:
        try:
            request = job.request()
        except PayloadDecodeError as exc:
            return Failed(str(exc))
        outcome = await self.transport.send(job.owner, request, job.attachments)
        if not isinstance(outcome, (Sent, RateLimited, Failed)):
            return Failed(f"transport returned unexpected result {outcome!r}")
        return outcome

    async def _record(self, job: Job, outcome: Outcome) -> JobStatus:
        if isinstance(outcome, Sent):
            await self.persistence.update_status(
                job.id,
                StatusTransition(JobStatus.COMPLETED, provider_message_id=outcome.provider_message_id),
            )
            self.metrics.inc_completed()
            if self._log_delivery_activity:
                self.logger.info("Delivery succeeded for job %s (owner=%s)", job.id, job.owner)
            await self._notify_delivered(job)
            return JobStatus.COMPLETED

        if isinstance(outcome, RateLimited):
            await self.persistence.update_status(job.id, StatusTransition(JobStatus.PENDING))
            self.metrics.inc_rate_limited()
            self.logger.warning(
                "Delivery rate limited for job %s (owner=%s), back to pending%s",
                job.id,
                job.owner,
                f", retry after {outcome.retry_after}s" if outcome.retry_after is not None else "",
            )
            return JobStatus.PENDING

        await self.persistence.update_status(
            job.id,
            StatusTransition(JobStatus.FAILED, increment_attempts=True, last_error=outcome.reason),
        )
        self.metrics.inc_failed()
        self.logger.error(
            "Delivery failed for job %s (owner=%s, attempt %d): %s",
            job.id,
            job.owner,
            job.attempts + 1,
            outcome.reason,
        )
        return JobStatus.FAILED

    async def _notify_delivered(self, job: Job) -> None:
        """Best effort: a failing collaborator never rolls back ``completed``."""
        if self.on_delivered is None:
            return
        try:
            await self.on_delivered(job.owner)
        except Exception as exc:
            self.logger.warning("Post-delivery hook failed for owner %s (job %s): %r", job.owner, job.id, exc)
