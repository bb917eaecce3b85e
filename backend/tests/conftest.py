"""Shared test fixtures and helpers for backend tests."""
import pytest
from fastapi.testclient import TestClient

from chatline.auth.schemas import Principal
from chatline.auth.service import TokenVerifier
from chatline.config import AppConfig, JWTSecrets, Secrets, StorageSettings, UploadSettings
from chatline.main import create_app

TEST_SECRET = "test-secret-key-for-chatline-suite-0001"

# Small ceiling so oversize uploads stay cheap in tests
TEST_MAX_UPLOAD_BYTES = 64 * 1024


@pytest.fixture
def config(tmp_path):
    """AppConfig writing every store under a per-test directory."""
    return AppConfig(
        storage=StorageSettings(data_dir=str(tmp_path)),
        uploads=UploadSettings(max_file_size_bytes=TEST_MAX_UPLOAD_BYTES),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


@pytest.fixture
def client(config):
    """TestClient with the lifespan running (services live on app.state)."""
    with TestClient(create_app(config)) as test_client:
        yield test_client


@pytest.fixture
def verifier():
    return TokenVerifier(TEST_SECRET)


@pytest.fixture
def make_token(verifier):
    """Return a factory: make_token("alice") -> signed token for alice."""
    def _make(user_id: str, name: str = None, email: str = None, expires_in: int = None) -> str:
        principal = Principal(
            id=user_id,
            displayName=name or user_id.capitalize(),
            email=email if email is not None else f"{user_id}@example.com",
        )
        return verifier.issue(principal, expires_in=expires_in)
    return _make


def ws_connect(client, token):
    """Open a realtime session with the token in the query string."""
    return client.websocket_connect(f"/ws?token={token}")


def expect(ws, event_type):
    """Receive the next frame and assert its type."""
    frame = ws.receive_json()
    assert frame["type"] == event_type, frame
    return frame


def receive_connected(ws):
    """Consume the connected frame and the presence snapshot that follows."""
    connected = expect(ws, "connected")
    online = expect(ws, "users:online")
    return connected, online


def online_ids(frame):
    return sorted(user["id"] for user in frame["users"])


def sync(ws, room="__sync__"):
    """Round-trip a history request so every earlier frame from *ws* has been handled.

    Also proves nothing else was queued for *ws* ahead of the reply.
    """
    ws.send_json({"type": "history:room", "room": room, "limit": 1})
    return expect(ws, "history:room")


def join(ws, room):
    ws.send_json({"type": "chat:join", "room": room})
    sync(ws)


class FakeWebSocket:
    """Records frames sent by a Session; set fail=True to simulate a dead peer."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, payload):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(payload)

    def types(self):
        return [frame["type"] for frame in self.sent]


def make_principal(user_id: str) -> Principal:
    return Principal(id=user_id, displayName=user_id.capitalize(), email=f"{user_id}@example.com")
