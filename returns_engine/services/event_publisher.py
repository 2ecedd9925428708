import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import aio_pika
from aio_pika.exceptions import AMQPException

from returns_engine.config import settings

logger = logging.getLogger(__name__)


class EventPublisher:
    """
    Publishes committed return events to a RabbitMQ topic exchange.

    Optional: when no broker URL is configured publishing is skipped.
    Failures are logged and never undo the committed transition.
    """

    def __init__(self, rabbit_url: Optional[str] = None, exchange_name: Optional[str] = None):
        self.rabbit_url = rabbit_url if rabbit_url is not None else settings.RABBIT_URL
        self.exchange_name = exchange_name or settings.EVENTS_EXCHANGE

    @property
    def enabled(self) -> bool:
        return bool(self.rabbit_url)

    async def publish(self, routing_key: str, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            logger.debug(f"RABBIT_URL not set, skipping publish of {routing_key}")
            return False

        try:
            conn = await aio_pika.connect_robust(self.rabbit_url)
            async with conn:
                ch = await conn.channel()
                ex = await ch.declare_exchange(self.exchange_name, aio_pika.ExchangeType.TOPIC)
                msg = aio_pika.Message(
                    body=json.dumps(payload, default=str).encode(),
                    content_type="application/json",
                )
                await ex.publish(msg, routing_key=routing_key)
        except (AMQPException, OSError) as e:
            logger.error(f"Failed to publish {routing_key}: {e}")
            return False
        return True

    async def publish_return_event(self, request, event) -> bool:
        payload = {
            "return_id": str(request.id),
            "return_number": request.return_number,
            "order_id": str(request.order_id),
            "user_id": str(request.user_id),
            "event_type": event.event_type,
            "previous_status": event.previous_status,
            "new_status": event.new_status,
            "actor_type": event.actor_type,
            "actor_id": event.actor_id,
            "refund_id": request.refund_id,
            "replacement_order_id": request.replacement_order_id,
            "occurred_at": (event.created_at or datetime.now(timezone.utc)).isoformat(),
        }
        return await self.publish(f"return.{event.event_type}", payload)
