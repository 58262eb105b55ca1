import asyncio
import logging

from redis.asyncio import Redis

from . import config
from .db import init_db
from .deps import build_pipeline
from .errors import ReferenceNotFound
from .fulfillment import FulfillmentPipeline
from .outbox import OUTBOX_STREAM, NotificationOutbox

logger = logging.getLogger(__name__)

LAST_ID_KEY = "worker:outbox_last_id"


async def process_one(pipeline: FulfillmentPipeline, outbox: NotificationOutbox, data: dict) -> bool:
    """Resend one queued ticket email. Re-queues on failure until the attempt budget is spent."""
    order_id = data["order_id"]
    attempts = int(data.get("attempts", "0")) + 1
    logger.info("resending tickets for order %s (attempt %d)", order_id, attempts)
    try:
        await pipeline.resend(order_id)
        return True
    except ReferenceNotFound as e:
        logger.error("dropping resend: %s", e)
        return False
    except Exception as e:
        if attempts >= config.OUTBOX_MAX_ATTEMPTS:
            logger.error("dropping resend for order %s after %d attempts: %s", order_id, attempts, e)
        else:
            logger.warning("resend for order %s failed: %s", order_id, e)
            await outbox.enqueue(order_id, reason=str(e) or type(e).__name__, attempts=attempts)
        return False


async def drain(redis: Redis, pipeline: FulfillmentPipeline, last_id: str, block: int | None = None, count: int = 50) -> str:
    """Process one batch from the outbox stream and return the new stream position."""
    outbox = NotificationOutbox(redis)
    resp = await redis.xread({OUTBOX_STREAM: last_id}, block=block, count=count)
    if not resp:
        return last_id

    _, messages = resp[0]
    for msg_id, data in messages:
        last_id = msg_id
        await process_one(pipeline, outbox, data)
        await redis.xdel(OUTBOX_STREAM, msg_id)
        # persist progress
        await redis.set(LAST_ID_KEY, last_id)
    return last_id


async def main():
    config.setup_logging()
    init_db()
    redis = Redis.from_url(config.REDIS_URL, decode_responses=True)
    pipeline = build_pipeline(redis)

    # resume where we left off
    last_id = await redis.get(LAST_ID_KEY) or "0-0"
    logger.info("outbox worker started at %s", last_id)
    try:
        while True:
            try:
                last_id = await drain(redis, pipeline, last_id, block=5000)
            except Exception:
                logger.exception("outbox worker loop failed, retrying")
                await asyncio.sleep(1.0)
    finally:
        await redis.aclose()


if __name__ == "__main__":
    asyncio.run(main())
