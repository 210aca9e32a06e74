"""Configuration loader for the mail queue service.

Settings come from an INI file (default: ``config.ini``) with environment
variables prefixed by ``AMQ_`` as fallbacks. The ``build_*`` helpers turn the
resulting dictionary into the runtime collaborators of
:class:`~async_mail_queue.core.AsyncMailQueue`.
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .attachments import AttachmentStorage
from .attachments.s3_backend import S3AttachmentBackend
from .hooks import HttpDeliveryHook
from .logger import get_logger
from .scheduler import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_INTERVAL,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PROCESSING_TIMEOUT,
)
from .transport import DEFAULT_HTTP_TIMEOUT, DEFAULT_SMTP_TIMEOUT, HttpTransport, SMTPTransport, Transport

logger = get_logger("ConfigLoader")

TRANSPORT_KINDS = ("http", "smtp")


def load_settings(config_path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file with environment variables as fallbacks.

    Environment variables (all prefixed with AMQ_):
      AMQ_CONFIG - Path to config.ini file (default: config.ini)
      AMQ_DB_PATH - Database path (default: /data/mail_queue.db)
      AMQ_HOST, AMQ_PORT, AMQ_API_TOKEN - HTTP server binding and token
      AMQ_SCHEDULER_ACTIVE - Start the poll loop on startup (default: True)
      AMQ_INTERVAL_SECONDS, AMQ_BATCH_SIZE, AMQ_MAX_ATTEMPTS,
      AMQ_PROCESSING_TIMEOUT_SECONDS - Poll loop tunables
      AMQ_TRANSPORT - Transport kind, ``http`` or ``smtp`` (default: http)
      AMQ_RELAY_URL, AMQ_RELAY_API_KEY, AMQ_TRANSPORT_TIMEOUT - HTTP relay
      AMQ_SMTP_HOST, AMQ_SMTP_PORT, AMQ_SMTP_USER, AMQ_SMTP_PASSWORD,
      AMQ_SMTP_USE_TLS - SMTP server
      AMQ_LIMIT_PER_MINUTE, AMQ_LIMIT_PER_HOUR, AMQ_LIMIT_PER_DAY - Per-owner limits
      AMQ_DELIVERED_URL, AMQ_DELIVERED_TOKEN, AMQ_DELIVERED_USER,
      AMQ_DELIVERED_PASSWORD - Post-delivery notification
      AMQ_ATTACHMENTS_BUCKET, AMQ_ATTACHMENTS_ENDPOINT_URL, AMQ_ATTACHMENTS_REGION - S3
      AMQ_LOG_DELIVERY_ACTIVITY - Log each delivery attempt (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [scheduler] active, interval_seconds, batch_size, max_attempts, processing_timeout_seconds
      [transport] kind, base_url, api_key, timeout_seconds,
                  smtp_host, smtp_port, smtp_user, smtp_password, smtp_use_tls
      [limits] per_minute, per_hour, per_day
      [hooks] delivered_url, delivered_token, delivered_user, delivered_password
      [attachments] bucket, endpoint_url, region
      [logging] delivery_activity

    A ``processing_timeout_seconds`` of ``0`` or ``none`` disables lease reclaiming.
    """
    path = Path(config_path or os.getenv("AMQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
    else:
        logger.debug("Config file %s not found, using environment only", path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", os.getenv("AMQ_DB_PATH", "/data/mail_queue.db")),
        "http_host": get("server", "host", os.getenv("AMQ_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("AMQ_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("AMQ_API_TOKEN")),
        "scheduler_active": get_bool("scheduler", "active", os.getenv("AMQ_SCHEDULER_ACTIVE"), True),
        "interval": get_float("scheduler", "interval_seconds", os.getenv("AMQ_INTERVAL_SECONDS"), DEFAULT_INTERVAL),
        "batch_size": get_int("scheduler", "batch_size", os.getenv("AMQ_BATCH_SIZE"), DEFAULT_BATCH_SIZE),
        "max_attempts": get_int("scheduler", "max_attempts", os.getenv("AMQ_MAX_ATTEMPTS"), DEFAULT_MAX_ATTEMPTS),
        "processing_timeout": get(
            "scheduler", "processing_timeout_seconds", os.getenv("AMQ_PROCESSING_TIMEOUT_SECONDS")
        ),
        "transport_kind": (get("transport", "kind", os.getenv("AMQ_TRANSPORT", "http")) or "http").strip().lower(),
        "relay_url": get("transport", "base_url", os.getenv("AMQ_RELAY_URL")),
        "relay_api_key": get("transport", "api_key", os.getenv("AMQ_RELAY_API_KEY")),
        "transport_timeout": get_float("transport", "timeout_seconds", os.getenv("AMQ_TRANSPORT_TIMEOUT")),
        "smtp_host": get("transport", "smtp_host", os.getenv("AMQ_SMTP_HOST")),
        "smtp_port": get_int("transport", "smtp_port", os.getenv("AMQ_SMTP_PORT"), default=25),
        "smtp_user": get("transport", "smtp_user", os.getenv("AMQ_SMTP_USER")),
        "smtp_password": get("transport", "smtp_password", os.getenv("AMQ_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("transport", "smtp_use_tls", os.getenv("AMQ_SMTP_USE_TLS")),
        "rate_limits": {
            "per_minute": get_int("limits", "per_minute", os.getenv("AMQ_LIMIT_PER_MINUTE")),
            "per_hour": get_int("limits", "per_hour", os.getenv("AMQ_LIMIT_PER_HOUR")),
            "per_day": get_int("limits", "per_day", os.getenv("AMQ_LIMIT_PER_DAY")),
        },
        "delivered_url": get("hooks", "delivered_url", os.getenv("AMQ_DELIVERED_URL")),
        "delivered_token": get("hooks", "delivered_token", os.getenv("AMQ_DELIVERED_TOKEN")),
        "delivered_user": get("hooks", "delivered_user", os.getenv("AMQ_DELIVERED_USER")),
        "delivered_password": get("hooks", "delivered_password", os.getenv("AMQ_DELIVERED_PASSWORD")),
        "attachments_bucket": get("attachments", "bucket", os.getenv("AMQ_ATTACHMENTS_BUCKET")),
        "attachments_endpoint_url": get("attachments", "endpoint_url", os.getenv("AMQ_ATTACHMENTS_ENDPOINT_URL")),
        "attachments_region": get("attachments", "region", os.getenv("AMQ_ATTACHMENTS_REGION")),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("AMQ_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token

    timeout = settings["processing_timeout"]
    if timeout is None or not str(timeout).strip():
        settings["processing_timeout"] = DEFAULT_PROCESSING_TIMEOUT
    elif str(timeout).strip().lower() == "none" or float(timeout) <= 0:
        settings["processing_timeout"] = None
    else:
        settings["processing_timeout"] = float(timeout)

    if settings["transport_kind"] not in TRANSPORT_KINDS:
        raise ValueError(f"Unknown transport kind: {settings['transport_kind']!r}")
    return settings


def build_attachment_storage(settings: Dict[str, Any]) -> AttachmentStorage:
    """Return the attachment storage, backed by S3 when a bucket is configured."""
    bucket = settings.get("attachments_bucket")
    if not bucket:
        logger.info("No attachments bucket configured, only inline attachments can be read")
        return AttachmentStorage()
    s3 = S3AttachmentBackend(
        bucket,
        endpoint_url=settings.get("attachments_endpoint_url"),
        region_name=settings.get("attachments_region"),
    )
    return AttachmentStorage(s3=s3)


def build_transport(settings: Dict[str, Any], storage: Optional[AttachmentStorage] = None) -> Transport:
    """Instantiate the configured transport."""
    storage = storage or build_attachment_storage(settings)
    kind = settings.get("transport_kind", "http")
    if kind == "smtp":
        host = settings.get("smtp_host")
        if not host:
            raise ValueError("SMTP transport requires [transport] smtp_host")
        return SMTPTransport(
            host,
            int(settings.get("smtp_port") or 25),
            user=settings.get("smtp_user"),
            password=settings.get("smtp_password"),
            use_tls=settings.get("smtp_use_tls"),
            timeout=settings.get("transport_timeout") or DEFAULT_SMTP_TIMEOUT,
            attachment_storage=storage,
        )
    base_url = settings.get("relay_url")
    if not base_url:
        raise ValueError("HTTP transport requires [transport] base_url")
    return HttpTransport(
        base_url,
        api_key=settings.get("relay_api_key"),
        timeout=settings.get("transport_timeout") or DEFAULT_HTTP_TIMEOUT,
        attachment_storage=storage,
    )


def build_delivery_hook(settings: Dict[str, Any]) -> Optional[HttpDeliveryHook]:
    """Return the post-delivery notification hook, if one is configured."""
    url = settings.get("delivered_url")
    if not url:
        return None
    return HttpDeliveryHook(
        url,
        token=settings.get("delivered_token"),
        user=settings.get("delivered_user"),
        password=settings.get("delivered_password"),
    )
