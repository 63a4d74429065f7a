"""
Structured JSON Logging with Correlation ID
Every stdlib log line carries the request's correlation id, so a checkout can be
followed from the HTTP request through the Shopify calls it made.
"""

import logging
import sys
from pythonjsonlogger import jsonlogger
from asgi_correlation_id.context import correlation_id

from app.config import settings

SERVICE_NAME = "routine-checkout"


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """
    python-json-logger formatter that stamps correlation_id, service and
    environment on each record.

    Outside a request (worker, scheduler) correlation_id is 'none'.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['correlation_id'] = correlation_id.get() or 'none'
        log_record['service'] = SERVICE_NAME
        log_record['environment'] = settings.environment


def setup_logging(level: int = logging.INFO) -> logging.Handler:
    """
    Route the root logger to stdout as JSON.

    Returns:
        logging.Handler: The installed handler
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CorrelationJsonFormatter(
        '%(asctime)s %(levelname)s %(name)s %(message)s',
        rename_fields={'asctime': 'timestamp', 'levelname': 'level'}
    ))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    return handler
