"""Pluggable mail transports.

A transport receives a fully resolved :class:`~async_mail_queue.models.SendRequest`
and reports one of three outcomes: :class:`Sent`, :class:`RateLimited` or
:class:`Failed`. Delivery problems are returned, not raised; the dispatcher
only has to guard against truly unexpected faults.
"""

from __future__ import annotations

import asyncio
import base64
import json
from email.header import Header
from email.message import EmailMessage
from email.utils import formataddr, make_msgid, parseaddr
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import aiosmtplib

from .attachments import AttachmentStorage
from .logger import get_logger
from .models import AttachmentStorageError, Failed, Outcome, RateLimited, SendRequest, Sent, split_addresses
from .rate_limit import RateLimiter
from .smtp_pool import SMTPPool

logger = get_logger("Transport")

DEFAULT_HTTP_TIMEOUT = 60.0
DEFAULT_SMTP_TIMEOUT = 30.0
RATE_LIMIT_PATTERNS = ("rate", "throttl", "too many")


def encode_header_value(value: str) -> str:
    """RFC 2047 encode ``value`` when it holds non-ASCII characters."""
    if not value or value.isascii():
        return value or ""
    return Header(value, "utf-8").encode(maxlinelen=998)


def encode_address(value: str) -> str:
    """Encode the display name of a single address, keeping the mailbox as is."""
    name, addr = parseaddr(value)
    if not name or name.isascii() or not addr:
        return value
    return formataddr((name, addr), charset="utf-8")


class Transport:
    """Interface implemented by concrete transports."""

    async def send(self, owner: str, request: SendRequest, attachments: Any = None) -> Outcome:
        """Deliver ``request`` on behalf of ``owner``."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release resources held by the transport."""
        return None

    async def cleanup(self) -> None:
        """Drop idle resources between poll cycles."""
        return None


async def _load_attachments(storage: AttachmentStorage, attachments: Any) -> List[Tuple[Dict[str, Any], bytes]]:
    if not attachments:
        return []
    if isinstance(attachments, dict):
        attachments = list(attachments.values())
    if not isinstance(attachments, list):
        raise AttachmentStorageError("Invalid storage metadata")
    return await storage.load_all(attachments)


class HttpTransport(Transport):
    """Send mail through a JSON-over-HTTP relay API.

    The relay answers ``200`` with ``{"success": true, "message_id": ...}`` on
    acceptance and ``429`` when the sender is throttled.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        api_path: str = "/api/v1/send",
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        attachment_storage: Optional[AttachmentStorage] = None,
    ):
        self.url = f"{base_url.rstrip('/')}/{api_path.lstrip('/')}"
        self.api_key = api_key
        self.timeout = float(timeout)
        self.attachments = attachment_storage or AttachmentStorage()

    def build_body(self, request: SendRequest, loaded: List[Tuple[Dict[str, Any], bytes]]) -> Dict[str, Any]:
        """Translate the request into the relay JSON body."""
        body: Dict[str, Any] = {
            "from": encode_address(request.from_),
            "to": ", ".join(split_addresses(request.to)),
            "subject": encode_header_value(request.subject),
        }
        if cc := split_addresses(request.cc):
            body["cc"] = ", ".join(cc)
        if bcc := split_addresses(request.bcc):
            body["bcc"] = ", ".join(bcc)
        if request.reply_to:
            body["reply_to"] = request.reply_to
        if request.html_body and request.html_body.strip():
            body["html_body"] = request.html_body
        if request.text_body is not None or "html_body" not in body:
            body["text_body"] = request.text_body or ""
        headers: Dict[str, str] = {"Content-Transfer-Encoding": "8bit"}
        if request.in_reply_to:
            headers["In-Reply-To"] = request.in_reply_to
        headers.update(request.headers or {})
        body["headers"] = headers
        if loaded:
            body["attachments"] = [
                {
                    "filename": meta.get("filename", "attachment"),
                    "content_type": meta.get("content_type", "application/octet-stream"),
                    "encoding": "base64",
                    "data": base64.b64encode(content).decode("ascii"),
                }
                for meta, content in loaded
            ]
        return body

    async def send(self, owner: str, request: SendRequest, attachments: Any = None) -> Outcome:
        try:
            loaded = await _load_attachments(self.attachments, attachments)
        except AttachmentStorageError as exc:
            return Failed(str(exc))

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        body = self.build_body(request, loaded)
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.url, json=body, headers=headers) as resp:
                    status = resp.status
                    text = await resp.text()
                    retry_after = resp.headers.get("Retry-After")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("HTTP request to relay %s failed: %r", self.url, exc)
            return Failed(f"HTTP request to relay failed: {exc!r}")
        return self._interpret(status, text, retry_after)

    @staticmethod
    def _interpret(status: int, text: str, retry_after: Optional[str]) -> Outcome:
        try:
            data = json.loads(text) if text else {}
        except json.JSONDecodeError:
            data = None

        if status == 429:
            try:
                delay = float(retry_after) if retry_after is not None else None
            except ValueError:
                delay = None
            return RateLimited(retry_after=delay)

        if status == 200:
            if not isinstance(data, dict):
                logger.error("Invalid JSON response from relay: %s", text[:200])
                return Failed("Invalid JSON response")
            if data.get("success") is True and data.get("message_id"):
                return Sent(provider_message_id=str(data["message_id"]))
            if data.get("success") is False:
                logger.error("Relay API error: %s", data.get("error"))
                return Failed(str(data.get("error") or "unknown relay error"))
            logger.error("Unexpected relay response: %s", data)
            return Failed("Unexpected response format")

        detail: Any = text
        if isinstance(data, dict):
            detail = data.get("error") or data.get("message") or text
        logger.error("Relay API returned status %s: %s", status, detail)
        return Failed(f"HTTP API returned status {status}: {detail}")


def classify_smtp_error(exc: BaseException) -> Outcome:
    """Map an SMTP exception to an outcome.

    Only throttling replies (421, or a 4xx reply mentioning rate limits) count
    as :class:`RateLimited`; everything else is a :class:`Failed` attempt.
    """
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        smtp_code = exc.code
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return Failed("SMTP send timed out")

    message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    if smtp_code == 421:
        return RateLimited()
    if smtp_code and 400 <= smtp_code < 500 and any(p in message.lower() for p in RATE_LIMIT_PATTERNS):
        return RateLimited()
    return Failed(f"{message} (SMTP {smtp_code})" if smtp_code else message)


class SMTPTransport(Transport):
    """Send mail through an SMTP relay using pooled aiosmtplib connections."""

    def __init__(
        self,
        host: str,
        port: int = 25,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        timeout: float = DEFAULT_SMTP_TIMEOUT,
        pool: Optional[SMTPPool] = None,
        attachment_storage: Optional[AttachmentStorage] = None,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.timeout = float(timeout)
        self.pool = pool or SMTPPool()
        self.attachments = attachment_storage or AttachmentStorage()

    def build_message(self, request: SendRequest, loaded: List[Tuple[Dict[str, Any], bytes]]) -> EmailMessage:
        """Translate the request into an :class:`EmailMessage`."""
        msg = EmailMessage()
        msg["From"] = request.from_
        msg["To"] = ", ".join(split_addresses(request.to))
        msg["Subject"] = request.subject
        if cc := split_addresses(request.cc):
            msg["Cc"] = ", ".join(cc)
        if request.reply_to:
            msg["Reply-To"] = request.reply_to
        if request.in_reply_to:
            msg["In-Reply-To"] = request.in_reply_to
        domain = request.from_.rsplit("@", 1)[-1].strip("> ") if "@" in request.from_ else None
        msg["Message-ID"] = make_msgid(domain=domain)

        if request.html_body and request.text_body:
            msg.set_content(request.text_body)
            msg.add_alternative(request.html_body, subtype="html")
        elif request.html_body:
            msg.set_content(request.html_body, subtype="html")
        else:
            msg.set_content(request.text_body or "")

        for header, value in (request.headers or {}).items():
            if header in msg:
                msg.replace_header(header, value)
            else:
                msg[header] = value

        for meta, content in loaded:
            filename = meta.get("filename", "attachment")
            maintype, subtype = self.attachments.guess_mime(filename)
            msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
        return msg

    async def send(self, owner: str, request: SendRequest, attachments: Any = None) -> Outcome:
        try:
            loaded = await _load_attachments(self.attachments, attachments)
        except AttachmentStorageError as exc:
            return Failed(str(exc))

        msg = self.build_message(request, loaded)
        try:
            smtp = await self.pool.get_connection(self.host, self.port, self.user, self.password, use_tls=self.use_tls)
            async with asyncio.timeout(self.timeout):
                await smtp.send_message(msg, sender=request.from_, recipients=request.recipients())
        except Exception as exc:
            await self.pool.discard(self.host, self.port, self.user, self.password, use_tls=self.use_tls)
            outcome = classify_smtp_error(exc)
            logger.warning("SMTP delivery for %s via %s:%s: %s", owner, self.host, self.port, outcome)
            return outcome
        return Sent(provider_message_id=msg["Message-ID"])

    async def cleanup(self) -> None:
        await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.close_all()


class RateLimitedTransport(Transport):
    """Enforce per-owner send limits in front of another transport."""

    def __init__(self, inner: Transport, limiter: RateLimiter):
        self.inner = inner
        self.limiter = limiter

    async def send(self, owner: str, request: SendRequest, attachments: Any = None) -> Outcome:
        retry_after = await self.limiter.retry_after(owner)
        if retry_after is not None:
            logger.debug("Owner %s over send limit, retry in %ss", owner, retry_after)
            return RateLimited(retry_after=retry_after)
        outcome = await self.inner.send(owner, request, attachments)
        if isinstance(outcome, Sent):
            await self.limiter.log_send(owner)
        return outcome

    async def cleanup(self) -> None:
        await self.inner.cleanup()

    async def close(self) -> None:
        await self.inner.close()
