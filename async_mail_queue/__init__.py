"""Background delivery queue for outbound mail.

This package queues outbound messages in SQLite and delivers them from a
recurring scheduler through a pluggable transport:

- Persistent jobs with a ``pending -> processing -> completed/failed`` lifecycle
- Rate-limit outcomes retried without consuming the attempt budget
- JSON-over-HTTP and SMTP transports, optional per-owner send limits
- Attachments kept in S3-compatible object storage
- Prometheus metrics and a FastAPI control surface

Example:
    Basic usage with the FastAPI application::

        from async_mail_queue.core import AsyncMailQueue
        from async_mail_queue.api import create_app
        from async_mail_queue.transport import HttpTransport

        queue = AsyncMailQueue(db_path="/data/mail_queue.db",
                               transport=HttpTransport("https://relay.local", api_key="k"))
        app = create_app(queue, api_token="secret")
"""
