"""
Pytest configuration and shared fixtures.

Test env vars are set here before any inbox_gateway import so the cached
settings and the engine pick them up.
"""

import hashlib
import hmac
import json
import os

import pytest

os.environ["DATABASE_URL"] = "sqlite:///./test_inbox.db"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["LOG_LEVEL"] = "WARNING"
for _name in (
    "META_TOKEN",
    "META_PHONE_NUMBER_ID",
    "META_VERIFY_TOKEN",
    "META_APP_SECRET",
    "PUBLIC_BASE_URL",
):
    os.environ.pop(_name, None)

# Clear settings cache before any app imports to ensure test env vars are used
from inbox_gateway.config import get_settings  # noqa: E402
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402
from starlette.websockets import WebSocketState  # noqa: E402

from inbox_gateway.broadcast import broadcaster  # noqa: E402
from inbox_gateway.main import app  # noqa: E402
from inbox_gateway.runtime_config import webhook_path_config  # noqa: E402
from inbox_gateway.storage import Base, engine  # noqa: E402
from inbox_gateway.utils import DEFAULT_WEBHOOK_PATH  # noqa: E402


ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    webhook_path_config.update(DEFAULT_WEBHOOK_PATH)
    broadcaster._connections.clear()

    with TestClient(app) as test_client:
        yield test_client

    broadcaster._connections.clear()
    webhook_path_config.update(DEFAULT_WEBHOOK_PATH)
    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def admin_headers() -> dict:
    return dict(ADMIN_HEADERS)


@pytest.fixture
def settings():
    """
    The cached Settings object. Change fields with monkeypatch.setattr so
    they are restored after the test.
    """
    return get_settings()


def compute_signature(body: bytes, secret: str) -> str:
    """Compute the X-Hub-Signature-256 header value for a raw body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_meta_payload(*messages, contacts=None) -> dict:
    """Wrap provider messages in the entry/changes/value envelope."""
    value = {"messaging_product": "whatsapp", "messages": list(messages)}
    if contacts:
        value["contacts"] = contacts
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "entry-1", "changes": [{"field": "messages", "value": value}]}],
    }


def text_message(sender: str, body: str, message_id: str = "wamid.1") -> dict:
    return {"from": sender, "id": message_id, "type": "text", "text": {"body": body}}


def encode_payload(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


class FakeConnection:
    """Stand-in for an accepted WebSocket that records what it is sent."""

    def __init__(self, fail: bool = False, state: WebSocketState = WebSocketState.CONNECTED):
        self.client_state = state
        self.application_state = state
        self.fail = fail
        self.sent = []

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(json.loads(text))


@pytest.fixture
def fake_connection():
    """A registered fake realtime client."""
    connection = FakeConnection()
    broadcaster.register(connection)
    yield connection
    broadcaster.unregister(connection)


@pytest.fixture
def helpers():
    """Payload and signature builders shared by the test modules."""
    class Helpers:
        sign = staticmethod(compute_signature)
        payload = staticmethod(build_meta_payload)
        text = staticmethod(text_message)
        encode = staticmethod(encode_payload)
        Connection = FakeConnection

    return Helpers
