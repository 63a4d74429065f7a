"""
Dramatiq Actors - Fire-and-forget Side Work

Checkout requests enqueue cart statistics here and never wait on the result.

Broker selection:
- RedisBroker when REDIS_URL is set
- StubBroker otherwise (tests, local development); messages are accepted and
  simply never consumed

Usage:
    from app.actors import increment_routine_cart
    increment_routine_cart.send(routine_id, creator_id, variant)
"""

import dramatiq
import structlog

from app.config import settings

logger = structlog.get_logger()


def setup_broker() -> dramatiq.Broker:
    """
    Build the broker for this process and make it the dramatiq default.

    Returns:
        RedisBroker or StubBroker
    """
    if settings.redis_url:
        from dramatiq.brokers.redis import RedisBroker

        broker = RedisBroker(
            url=settings.redis_url,
            namespace="routine_checkout",
            max_connections=10,
            socket_timeout=5,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
            heartbeat_timeout=30000,
            dead_message_ttl=86400000
        )
    else:
        from dramatiq.brokers.stub import StubBroker

        broker = StubBroker()

    dramatiq.set_broker(broker)
    logger.info("broker_configured", type=type(broker).__name__)
    return broker


broker = setup_broker()

# Actors bind to the broker set above, so import them after it
from app.actors.cart_stats import increment_routine_cart  # noqa: E402,F401

__all__ = ["broker", "setup_broker", "increment_routine_cart"]
