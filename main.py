import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from async_mail_queue.api import create_app
from async_mail_queue.config_loader import (
    build_attachment_storage,
    build_delivery_hook,
    build_transport,
    load_settings,
)
from async_mail_queue.core import AsyncMailQueue

# Configure logging level from environment
log_level = os.getenv("AMQ_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_queue(settings: dict[str, object]) -> AsyncMailQueue:
    """Assemble the queue and its collaborators from ``settings``."""
    storage = build_attachment_storage(settings)
    return AsyncMailQueue(
        transport=build_transport(settings, storage),
        db_path=settings["db_path"],
        on_delivered=build_delivery_hook(settings),
        interval=settings["interval"],
        batch_size=settings["batch_size"],
        max_attempts=settings["max_attempts"],
        processing_timeout=settings["processing_timeout"],
        start_active=bool(settings.get("scheduler_active")),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
        rate_limits=settings.get("rate_limits"),
    )


if __name__ == "__main__":
    settings = load_settings()
    # Build the queue now but start it inside uvicorn's event loop
    service = build_queue(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
