"""Data models for the outbound mail queue.

This module defines the records persisted by the job store, the versioned
schema of the payload carried by each job and the outcome types reported by
transports.

Models:
    - JobStatus: Lifecycle states of a queued job
    - SendRequest: Fully resolved send request (payload schema version 1)
    - Job: Queued outbound mail job with retry state
    - Label, Template: Plain per-owner records stored next to the jobs
    - Sent, RateLimited, Failed: Transport outcomes
    - StatusTransition: Status update applied by the dispatcher
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

PAYLOAD_VERSION = 1


# Errors -----------------------------------------------------------------------
class QueueError(RuntimeError):
    """Base class for errors raised by the mail queue."""

    code = "queue_error"


class JobValidationError(QueueError, ValueError):
    """Raised when a submitted request is missing required fields."""

    code = "invalid_request"

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class JobNotFoundError(QueueError, LookupError):
    """Raised when a job id does not exist in the store."""

    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' not found")
        self.job_id = job_id


class JobStateError(QueueError):
    """Raised when a job is not in a state allowing the requested operation."""

    code = "invalid_state"


class PayloadDecodeError(QueueError, ValueError):
    """Raised when a stored payload cannot be decoded into a :class:`SendRequest`."""

    code = "payload_decode_error"


class AttachmentStorageError(QueueError):
    """Raised when an attachment cannot be stored, read or addressed."""

    code = "attachment_storage_error"


# Jobs -------------------------------------------------------------------------
class JobStatus(str, Enum):
    """Lifecycle states of a queued job.

    Attributes:
        PENDING: Waiting to be picked up by the scheduler.
        PROCESSING: Claimed by the dispatcher, transport call in flight.
        COMPLETED: Delivered (terminal).
        FAILED: Delivery attempt failed, reason recorded in ``last_error``.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


Recipients = Union[List[str], str]


class SendRequest(BaseModel):
    """Send request stored in the job payload and handed to the transport.

    Attributes:
        from_: Sender address (serialized as ``from``).
        to: One or more recipients, as a list or a comma separated string.
        cc: Optional carbon copy recipients.
        bcc: Optional blind carbon copy recipients.
        reply_to: Optional Reply-To address.
        subject: Message subject.
        text_body: Plain text body.
        html_body: HTML body.
        headers: Additional headers.
        in_reply_to: Message-ID of the message being answered.
    """

    model_config = ConfigDict(populate_by_name=True)

    from_: Annotated[str, Field(alias="from", min_length=1, description="Sender address")]
    to: Annotated[Recipients, Field(description="Recipients")]
    cc: Optional[Recipients] = None
    bcc: Optional[Recipients] = None
    reply_to: Optional[str] = None
    subject: str
    text_body: Optional[str] = None
    html_body: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    in_reply_to: Optional[str] = None

    @field_validator("to")
    @classmethod
    def recipients_not_empty(cls, v: Recipients) -> Recipients:
        """Reject an empty recipient list."""
        if not split_addresses(v):
            raise ValueError("at least one recipient is required")
        return v

    def recipients(self) -> List[str]:
        """Return every envelope recipient (to, cc and bcc)."""
        return split_addresses(self.to) + split_addresses(self.cc) + split_addresses(self.bcc)


def split_addresses(value: Optional[Recipients]) -> List[str]:
    """Normalise a recipient field into a list of trimmed addresses."""
    if not value:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(item).strip() for item in value if item and str(item).strip()]


def encode_payload(request: SendRequest) -> str:
    """Serialize a request into the versioned payload stored with the job."""
    return json.dumps(
        {"version": PAYLOAD_VERSION, "request": request.model_dump(by_alias=True, exclude_none=True)}
    )


def decode_payload(raw: Optional[str]) -> SendRequest:
    """Decode a stored payload, raising :class:`PayloadDecodeError` on any mismatch."""
    if not raw:
        raise PayloadDecodeError("empty payload")
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise PayloadDecodeError(f"invalid payload JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PayloadDecodeError("payload must be a JSON object")
    version = data.get("version")
    if version != PAYLOAD_VERSION:
        raise PayloadDecodeError(f"unsupported payload version {version!r}")
    try:
        return SendRequest.model_validate(data.get("request"))
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "request" for err in exc.errors())
        raise PayloadDecodeError(f"payload does not match send request schema ({fields})") from exc


class Job(BaseModel):
    """Queued outbound mail job as stored by :class:`~async_mail_queue.persistence.Persistence`."""

    id: str
    owner: str
    payload: str
    attachments: Optional[Any] = None
    scheduled_for: Optional[datetime] = None
    status: JobStatus = JobStatus.PENDING
    attempts: Annotated[int, Field(ge=0)] = 0
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None
    inserted_at: datetime
    updated_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_eligible(self, now: datetime, max_attempts: int) -> bool:
        """Return ``True`` when the job may be picked up by a poll cycle at ``now``."""
        return (
            self.status == JobStatus.PENDING
            and self.attempts < max_attempts
            and (self.scheduled_for is None or self.scheduled_for <= now)
        )

    def request(self) -> SendRequest:
        """Decode the stored payload."""
        return decode_payload(self.payload)


# Labels and templates -----------------------------------------------------------
_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


class Label(BaseModel):
    """User defined label."""

    id: Optional[int] = None
    owner: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1, max_length=50)]
    color: str = "#3b82f6"
    created_at: Optional[datetime] = None

    @field_validator("color")
    @classmethod
    def color_is_hex(cls, v: str) -> str:
        if not _COLOR_RE.match(v):
            raise ValueError("color must be a hex value like #aabbcc")
        return v.lower()


class Template(BaseModel):
    """Reusable message template."""

    id: Optional[int] = None
    owner: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1, max_length=100)]
    subject: str = ""
    body: Annotated[str, Field(max_length=50000)] = ""
    created_at: Optional[datetime] = None


# Transport outcomes -------------------------------------------------------------
@dataclass(frozen=True)
class Sent:
    """The transport accepted the message."""

    provider_message_id: Optional[str] = None


@dataclass(frozen=True)
class RateLimited:
    """Transient rate-limit signal; retried without consuming an attempt."""

    retry_after: Optional[float] = None


@dataclass(frozen=True)
class Failed:
    """Permanent failure for this attempt."""

    reason: str


Outcome = Union[Sent, RateLimited, Failed]


@dataclass(frozen=True)
class StatusTransition:
    """Single-row status update applied to a job.

    ``last_error`` and ``provider_message_id`` are left untouched when ``None``.
    """

    status: JobStatus
    increment_attempts: bool = False
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None
