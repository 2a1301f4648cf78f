"""
Fire-and-forget checkout events for inventory displays and buyer notifications.

Publishing never raises into the caller: a conversion that already committed
must not be undone because the bus is down.
"""

import json
import logging
from datetime import datetime, timezone
import redis

from checkout_service.config import settings

logger = logging.getLogger(__name__)

CHANNEL = "checkout_events"

CHECKOUT_CONVERTED = "checkout.converted"
CHECKOUT_SOLD_OUT = "checkout.sold_out"
COMPENSATION_REQUIRED = "checkout.compensation_required"


class LoggingEventPublisher:
    def publish(self, event_type: str, data: dict) -> None:
        logger.info(f"[{event_type}] {json.dumps(data, default=str)}")


class RedisEventPublisher:
    def __init__(self, redis_url: str, channel: str = CHANNEL, timeout: float = None):
        timeout = settings.event_publish_timeout_seconds if timeout is None else timeout
        # A slow bus must not hold up the request that just committed
        self.redis = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        self.channel = channel

    def publish(self, event_type: str, data: dict) -> None:
        self.redis.publish(
            self.channel,
            json.dumps(
                {
                    "event_type": event_type,
                    "data": data,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
                default=str,
            ),
        )


def publish_safely(publisher, event_type: str, data: dict) -> bool:
    if publisher is None:
        return False
    try:
        publisher.publish(event_type, data)
        return True
    except Exception as e:
        logger.warning(f"Failed to publish {event_type}: {e}")
        return False


def default_publisher():
    if settings.redis_url:
        return RedisEventPublisher(settings.redis_url)
    return LoggingEventPublisher()
