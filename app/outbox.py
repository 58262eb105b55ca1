import logging

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

OUTBOX_STREAM = "notification_outbox"


class NotificationOutbox:
    """Redis stream of orders whose ticket email still has to go out."""

    def __init__(self, redis: Redis, stream: str = OUTBOX_STREAM):
        self.redis = redis
        self.stream = stream

    async def enqueue(self, order_id: str, reason: str, attempts: int = 0) -> str | None:
        try:
            msg_id = await self.redis.xadd(
                self.stream,
                {"order_id": order_id, "reason": reason[:200], "attempts": str(attempts)},
            )
        except Exception:
            # the order's tickets are valid either way; support can resend by hand
            logger.exception("could not enqueue resend for order %s", order_id)
            return None
        logger.info("queued ticket email resend for order %s (attempt %d)", order_id, attempts + 1)
        return msg_id
