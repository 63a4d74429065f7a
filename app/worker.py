"""
Dramatiq Worker Entrypoint

Importing app.actors configures the broker and registers the cart statistics
actor, so the dramatiq CLI can discover it from this module.

Usage:
    dramatiq app.worker --processes 1 --threads 2 --queues stats
"""

import structlog

from app.actors import broker
from app.config import settings
from app.database import get_session_factory
from app.services.monitoring import init_sentry, setup_logging

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
    ]
)
logger = structlog.get_logger()

if settings.environment != "testing":
    setup_logging()
init_sentry()

logger.info(
    "worker_ready",
    broker=type(broker).__name__,
    database="configured" if get_session_factory() is not None else "not_configured",
)
