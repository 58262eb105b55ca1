"""FastAPI dependency providers (overridden in tests)."""
from fastapi import Depends, Header, HTTPException
from redis.asyncio import Redis

from . import config
from .db import SessionLocal
from .fulfillment import FulfillmentPipeline
from .notify import HttpMailDispatcher, LogDispatcher, NotificationDispatcher
from .outbox import NotificationOutbox
from .processor import HttpProcessor, PaymentProcessor
from .security import ct_equal

# rate_limit / idempotency / outbox all expect decoded str responses
redis = Redis.from_url(config.REDIS_URL, decode_responses=True)


def get_redis() -> Redis:
    return redis


def build_notifier() -> NotificationDispatcher:
    if config.MAIL_API_URL:
        return HttpMailDispatcher(config.MAIL_API_URL, config.MAIL_API_KEY, config.MAIL_FROM)
    return LogDispatcher()


def build_pipeline(r: Redis) -> FulfillmentPipeline:
    return FulfillmentPipeline(SessionLocal, notifier=build_notifier(), outbox=NotificationOutbox(r))


def get_pipeline(r: Redis = Depends(get_redis)) -> FulfillmentPipeline:
    return build_pipeline(r)


def get_processor() -> PaymentProcessor:
    return HttpProcessor(config.PROCESSOR_API_URL, config.PROCESSOR_API_KEY, config.PUBLIC_BASE_URL)


def require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")) -> None:
    if not x_admin_token or not ct_equal(x_admin_token, config.ADMIN_TOKEN):
        raise HTTPException(status_code=401, detail="admin token required")
