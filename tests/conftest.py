import os
import tempfile

# Configure before anything imports app.config
_tmpdir = tempfile.mkdtemp(prefix="ticketing-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'test.db')}"
os.environ["PROCESSOR_WEBHOOK_SECRET"] = "test_webhook_secret"
os.environ["ADMIN_TOKEN"] = "test_admin_token"
os.environ["MAIL_API_URL"] = ""

import fakeredis  # noqa: E402
import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from app.db import Base, SessionLocal, engine, init_db  # noqa: E402
from app.deps import get_pipeline, get_processor, get_redis  # noqa: E402
from app.fulfillment import FulfillmentPipeline  # noqa: E402
from app.main import app  # noqa: E402
from app.outbox import NotificationOutbox  # noqa: E402
from tests.helpers import FakeNotifier, FakeProcessor, seed_catalogue  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture
def catalogue():
    seed_catalogue()


@pytest_asyncio.fixture(scope="function")
async def redis():
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    await r.flushall()
    try:
        yield r
    finally:
        await r.aclose()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def pipeline(redis, notifier):
    return FulfillmentPipeline(SessionLocal, notifier=notifier, outbox=NotificationOutbox(redis), retry_delay=0)


@pytest_asyncio.fixture(scope="function")
async def client(redis, pipeline, processor):
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_processor] = lambda: processor
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=10.0) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
