"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any chatsync import, so
the cached settings are built from them.
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="chatsync-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/test.db"
os.environ["LOG_LEVEL"] = "INFO"
os.environ["GATEWAY_BASE_URL"] = "http://gateway.test"
os.environ["GATEWAY_API_KEY"] = "test-api-key"
os.environ["MEDIA_ROOT"] = os.path.join(_TEST_DIR, "media")
os.environ["MEDIA_SIGNING_SECRET"] = "test-signing-secret"
os.environ["SYNC_CHAT_BATCH_DELAY"] = "0"
os.environ["SYNC_PER_CHAT_DELAY"] = "0"
os.environ["SYNC_MESSAGE_BATCH_DELAY"] = "0"
os.environ["SYNC_MEDIA_FETCH_DELAY"] = "0"
os.environ.pop("WEBHOOK_SECRET", None)

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from chatsync.config import settings  # noqa: E402
from chatsync import models  # noqa: E402,F401
from chatsync.gateway import GatewayClient, build_http_client  # noqa: E402
from chatsync.models import ChannelSession  # noqa: E402
from chatsync.storage import Base, SessionLocal, engine  # noqa: E402
from tests.helpers import FakeGateway  # noqa: E402


@pytest.fixture(scope="function")
def db():
    """Fresh tables and an open DB session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def channel_session(db) -> ChannelSession:
    """A connected channel session named ``sales-line``."""
    session = ChannelSession(session_name="sales-line", phone_number="5511900000000", status="CONNECTED")
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def gateway_client(fake_gateway):
    """GatewayClient talking to the fake gateway through httpx.MockTransport."""
    http = build_http_client(settings, transport=httpx.MockTransport(fake_gateway.handler))
    yield GatewayClient(http)
    await http.aclose()


@pytest.fixture(scope="function")
def client(db, fake_gateway):
    """Test client with the app's services wired to the fake gateway."""
    from chatsync.main import app

    app.state.gateway_transport = httpx.MockTransport(fake_gateway.handler)

    with TestClient(app) as test_client:
        yield test_client
