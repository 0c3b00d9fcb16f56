import asyncio
import json
import string

import pytest
from starlette.websockets import WebSocketState

from lifecycle import LifecycleManager
from message_router import MessageRouter
from registry import RoomRegistry


class FakeWebSocket:
    """Stands in for a Starlette WebSocket; records what the server sent."""

    def __init__(self, fail_sends: bool = False):
        self.sent = []
        self.fail_sends = fail_sends
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED

    async def send_text(self, data: str):
        if self.fail_sends:
            raise RuntimeError("transport went away")
        self.sent.append(json.loads(data))

    def disconnect(self):
        self.client_state = WebSocketState.DISCONNECTED

    def events(self):
        return [message["event"] for message in self.sent]


class StalledWebSocket(FakeWebSocket):
    """A peer that stopped reading: every write hangs forever."""

    def __init__(self):
        super().__init__()
        self.attempts = 0
        self._never = asyncio.Event()

    async def send_text(self, data: str):
        self.attempts += 1
        await self._never.wait()


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def lifecycle(registry):
    # Connections get ids A, B, C, ... in the order they are opened
    return LifecycleManager(registry, id_factory=iter(string.ascii_uppercase).__next__)


@pytest.fixture
def router(lifecycle):
    return MessageRouter(lifecycle)


@pytest.fixture
def connect(lifecycle):
    def _connect(**kwargs):
        websocket = FakeWebSocket(**kwargs)
        return lifecycle.open(websocket), websocket
    return _connect


def join_frame(room):
    return json.dumps({"event": "join_room", "payload": {"room": room}})


def signal_frame(event, target, **body):
    return json.dumps({"event": event, "payload": {"target": target, **body}})
