# /autoreply/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from autoreply.services.db_service import db_service
from autoreply.services.whatsapp_service import whatsapp_service
from autoreply.utils.logging import setup_logging
from autoreply.utils.queue import message_queue

# Startup and shutdown: logging, indexes, queue workers and client cleanup.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    await db_service.create_indexes()
    await message_queue.start_workers()

    logger.info("Application startup complete. Ready to accept requests.")

    yield

    logger.info("Application shutting down...")

    await message_queue.stop_workers()
    await whatsapp_service.close()
    if db_service.client:
        db_service.client.close()
