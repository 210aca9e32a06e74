import os

import pytest

from async_mail_queue.attachments import S3AttachmentBackend
from async_mail_queue.config_loader import (
    build_attachment_storage,
    build_delivery_hook,
    build_transport,
    load_settings,
)
from async_mail_queue.hooks import HttpDeliveryHook
from async_mail_queue.transport import HttpTransport, SMTPTransport


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("AMQ_"):
            monkeypatch.delenv(key)


def write_config(tmp_path, text):
    path = tmp_path / "config.ini"
    path.write_text(text)
    return path


def test_defaults_without_config_file(tmp_path):
    settings = load_settings(tmp_path / "missing.ini")

    assert settings["db_path"] == "/data/mail_queue.db"
    assert settings["http_port"] == 8000
    assert settings["scheduler_active"] is True
    assert settings["interval"] == 10.0
    assert settings["batch_size"] == 5
    assert settings["max_attempts"] == 3
    assert settings["processing_timeout"] == 300.0
    assert settings["transport_kind"] == "http"
    assert settings["api_token"] is None
    assert settings["rate_limits"] == {"per_minute": None, "per_hour": None, "per_day": None}
    assert settings["log_delivery_activity"] is False


def test_config_file_values(tmp_path):
    path = write_config(
        tmp_path,
        """
[storage]
db_path = ~/queue.db

[server]
port = 9000
api_token =

[scheduler]
active = no
interval_seconds = 2.5
batch_size = 20
max_attempts = 5
processing_timeout_seconds = 0

[transport]
kind = SMTP
smtp_host = smtp.local
smtp_port = 587
smtp_use_tls = false

[limits]
per_minute = 10

[logging]
delivery_activity = yes
""",
    )
    settings = load_settings(path)

    assert settings["db_path"] == os.path.expanduser("~/queue.db")
    assert settings["http_port"] == 9000
    assert settings["scheduler_active"] is False
    assert settings["interval"] == 2.5
    assert settings["batch_size"] == 20
    assert settings["max_attempts"] == 5
    assert settings["processing_timeout"] is None
    assert settings["transport_kind"] == "smtp"
    assert settings["smtp_port"] == 587
    assert settings["smtp_use_tls"] is False
    assert settings["rate_limits"]["per_minute"] == 10
    assert settings["log_delivery_activity"] is True


def test_environment_fallbacks(tmp_path, monkeypatch):
    monkeypatch.setenv("AMQ_CONFIG", str(tmp_path / "absent.ini"))
    monkeypatch.setenv("AMQ_API_TOKEN", " token ")
    monkeypatch.setenv("AMQ_RELAY_URL", "https://relay.local")
    monkeypatch.setenv("AMQ_LIMIT_PER_DAY", "100")
    monkeypatch.setenv("AMQ_PROCESSING_TIMEOUT_SECONDS", "60")

    settings = load_settings()

    assert settings["api_token"] == "token"
    assert settings["relay_url"] == "https://relay.local"
    assert settings["rate_limits"]["per_day"] == 100
    assert settings["processing_timeout"] == 60.0


def test_config_file_wins_over_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("AMQ_PORT", "7000")
    path = write_config(tmp_path, "[server]\nport = 9100\n")
    assert load_settings(path)["http_port"] == 9100


def test_unknown_transport_kind_is_rejected(tmp_path):
    path = write_config(tmp_path, "[transport]\nkind = pigeon\n")
    with pytest.raises(ValueError):
        load_settings(path)


def test_build_http_transport_and_hook(tmp_path):
    path = write_config(
        tmp_path,
        """
[transport]
base_url = https://relay.local/
api_key = k
timeout_seconds = 15

[hooks]
delivered_url = https://app.local/delivered
delivered_token = t
""",
    )
    settings = load_settings(path)

    transport = build_transport(settings)
    assert isinstance(transport, HttpTransport)
    assert transport.url == "https://relay.local/api/v1/send"
    assert transport.api_key == "k"
    assert transport.timeout == 15.0

    hook = build_delivery_hook(settings)
    assert isinstance(hook, HttpDeliveryHook)
    assert hook.token == "t"


def test_build_smtp_transport(tmp_path):
    path = write_config(tmp_path, "[transport]\nkind = smtp\nsmtp_host = smtp.local\nsmtp_port = 465\n")
    transport = build_transport(load_settings(path))
    assert isinstance(transport, SMTPTransport)
    assert transport.use_tls is True
    assert transport.timeout == 30.0


def test_build_requires_endpoint(tmp_path):
    settings = load_settings(tmp_path / "missing.ini")
    with pytest.raises(ValueError):
        build_transport(settings)
    settings["transport_kind"] = "smtp"
    with pytest.raises(ValueError):
        build_transport(settings)
    assert build_delivery_hook(settings) is None


def test_build_attachment_storage(tmp_path):
    settings = load_settings(tmp_path / "missing.ini")
    assert build_attachment_storage(settings)._s3 is None

    settings.update(attachments_bucket="mail", attachments_endpoint_url="http://minio:9000", attachments_region="auto")
    storage = build_attachment_storage(settings)
    assert isinstance(storage._s3, S3AttachmentBackend)
    assert storage._s3.bucket == "mail"
    assert storage._s3.endpoint_url == "http://minio:9000"
