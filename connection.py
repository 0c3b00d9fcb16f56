import asyncio
import enum
import json
from dataclasses import dataclass
from typing import Iterable, Optional

from starlette.websockets import WebSocketState

from constants import OUTBOUND_QUEUE_SIZE
from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionHandle:
    """One live WebSocket plus the identity it was assigned at accept time.

    Outbound messages go through a bounded queue drained by a writer task owned
    by this handle, so `send` never waits on the transport. A slow or stalled
    peer only fills its own queue; once full, further messages to it are dropped.
    """

    def __init__(self, connection_id: str, websocket, queue_size: int = OUTBOUND_QUEUE_SIZE):
        self._id = connection_id
        self._websocket = websocket
        self._closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None

    @property
    def id(self) -> str:
        return self._id

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        )

    def send(self, message: dict) -> bool:
        """Queue a message for delivery. Returns False when it is dropped instead."""
        if not self.is_open:
            logger.debug(f"Dropping {message.get('event')} for closed connection {self._id}")
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full for connection {self._id}, dropping {message.get('event')}")
            return False
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(self._write_loop())
        return True

    async def flush(self):
        """Wait until everything queued so far has been written or dropped."""
        if self._writer is None or self._writer.done():
            return
        await self._queue.join()

    def close(self):
        """Stop writing. Anything still queued is discarded."""
        self._closed = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
        self._discard_queued()

    async def _write_loop(self):
        while True:
            message = await self._queue.get()
            try:
                await self._websocket.send_text(json.dumps(message))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"Send of {message.get('event')} to connection {self._id} failed: {e}")
                self._closed = True
            finally:
                self._queue.task_done()
            if self._closed:
                self._discard_queued()
                return

    def _discard_queued(self):
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    def __repr__(self):
        return f"ConnectionHandle({self._id!r})"


class ConnectionPhase(enum.Enum):
    UNATTACHED = "unattached"
    IN_ROOM = "in_room"
    CLOSED = "closed"


@dataclass
class ConnectionState:
    """Per-connection bookkeeping owned by the LifecycleManager."""

    handle: ConnectionHandle
    phase: ConnectionPhase = ConnectionPhase.UNATTACHED
    room: Optional[str] = None

    @property
    def id(self) -> str:
        return self.handle.id


def broadcast(handles: Iterable[ConnectionHandle], message: dict) -> int:
    """Queue `message` on every handle. Returns how many accepted it."""
    handles = list(handles)
    queued = sum(1 for handle in handles if handle.send(message))
    logger.debug(f"Broadcast {message.get('event')} queued for {queued}/{len(handles)} connections")
    return queued
