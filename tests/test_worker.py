import pytest

from app import config
from app.outbox import OUTBOX_STREAM, NotificationOutbox
from app.worker import LAST_ID_KEY, drain
from tests.helpers import confirmation

pytestmark = pytest.mark.asyncio


async def test_failed_email_is_resent_by_worker(catalogue, pipeline, notifier, redis):
    notifier.fail = True
    result = await pipeline.fulfill(confirmation("pay_1", quantity=2))
    assert await redis.xlen(OUTBOX_STREAM) == 1

    notifier.fail = False
    last_id = await drain(redis, pipeline, "0-0")

    assert last_id != "0-0"
    assert await redis.get(LAST_ID_KEY) == last_id
    assert await redis.xlen(OUTBOX_STREAM) == 0
    [mail] = notifier.sent
    assert mail["recipient"] == "a@b.com"
    assert len(mail["attachments"]) == 2
    assert result.delivery_id is None


async def test_failed_resend_is_requeued_with_attempt_count(catalogue, pipeline, notifier, redis):
    notifier.fail = True
    result = await pipeline.fulfill(confirmation("pay_1", quantity=1))

    last_id = await drain(redis, pipeline, "0-0")

    entries = await redis.xrange(OUTBOX_STREAM)
    assert len(entries) == 1
    _, data = entries[0]
    assert data["order_id"] == result.order_id
    assert data["attempts"] == "1"

    # the requeued entry is picked up from the saved position
    notifier.fail = False
    await drain(redis, pipeline, last_id)
    assert await redis.xlen(OUTBOX_STREAM) == 0
    assert len(notifier.sent) == 1


async def test_resend_dropped_after_max_attempts(catalogue, pipeline, notifier, redis, monkeypatch):
    monkeypatch.setattr(config, "OUTBOX_MAX_ATTEMPTS", 2)
    notifier.fail = True
    await pipeline.fulfill(confirmation("pay_1", quantity=1))

    last_id = await drain(redis, pipeline, "0-0")
    assert await redis.xlen(OUTBOX_STREAM) == 1
    await drain(redis, pipeline, last_id)

    assert await redis.xlen(OUTBOX_STREAM) == 0
    assert notifier.sent == []


async def test_unknown_order_in_outbox_is_dropped_without_retry(pipeline, notifier, redis):
    await NotificationOutbox(redis).enqueue("ord_missing", reason="manual")

    await drain(redis, pipeline, "0-0")

    assert await redis.xlen(OUTBOX_STREAM) == 0
    assert notifier.sent == []


async def test_empty_outbox_keeps_position(pipeline, redis):
    assert await drain(redis, pipeline, "0-0") == "0-0"
    assert await redis.get(LAST_ID_KEY) is None
