import asyncio
import uuid
from typing import Callable, Dict, List, Optional, Set

from connection import ConnectionHandle, ConnectionPhase, ConnectionState, broadcast
from constants import OUTBOUND_QUEUE_SIZE
from logging_config import get_logger
from registry import RoomRegistry, room_registry
from schemas.messages import peer_left

logger = get_logger(__name__)


def generate_connection_id() -> str:
    return str(uuid.uuid4())


class LifecycleManager:
    """Owns the per-connection state records and reacts to connections closing."""

    def __init__(
        self,
        registry: RoomRegistry,
        id_factory: Callable[[], str] = generate_connection_id,
        queue_size: int = OUTBOUND_QUEUE_SIZE,
    ):
        self.registry = registry
        self._id_factory = id_factory
        self._queue_size = queue_size
        # Format: {connection_id: state}
        self._connections: Dict[str, ConnectionState] = {}
        # Room cleanups started by close() that have not finished yet
        self._cleanups: Set[asyncio.Task] = set()

    def open(self, websocket) -> ConnectionState:
        """Register a freshly accepted transport."""
        handle = ConnectionHandle(self._id_factory(), websocket, queue_size=self._queue_size)
        state = ConnectionState(handle=handle)
        self._connections[handle.id] = state
        logger.info(f"Connection {handle.id} opened ({len(self._connections)} live)")
        return state

    def lookup(self, connection_id: str) -> Optional[ConnectionHandle]:
        """The handle for `connection_id` if that connection is still open."""
        state = self._connections.get(connection_id)
        if state is None or state.phase is ConnectionPhase.CLOSED:
            return None
        if not state.handle.is_open:
            return None
        return state.handle

    def connection_count(self) -> int:
        return len(self._connections)

    async def enter_room(self, state: ConnectionState, room_id: str) -> List[str]:
        """Join `room_id` and return the members that were already there."""
        existing = await self.registry.join(room_id, state.id, state.handle)
        state.room = room_id
        state.phase = ConnectionPhase.IN_ROOM
        return existing

    async def vacate(self, state: ConnectionState):
        """Take the connection out of its room and tell whoever is left."""
        room_id = state.room
        if room_id is None:
            return
        remaining = await self.registry.leave(room_id, state.id)
        # Cleared only after the registry leave completes
        state.room = None
        if not remaining:
            logger.debug(f"Connection {state.id} was the last member of room {room_id}")
            return
        handles = await self.registry.handles(room_id, remaining)
        broadcast(handles, peer_left(state.id))
        logger.debug(f"Notified {len(handles)} members of room {room_id} that {state.id} left")

    async def close(self, state: ConnectionState):
        """Mark the connection closed and release its room.

        The room cleanup runs in its own task and is shielded: cancelling the
        caller (e.g. the connection's handler being torn down) does not stop it.
        """
        if state.phase is ConnectionPhase.CLOSED:
            return
        state.phase = ConnectionPhase.CLOSED
        state.handle.close()
        self._connections.pop(state.id, None)

        cleanup = asyncio.ensure_future(self._release(state))
        self._cleanups.add(cleanup)
        cleanup.add_done_callback(self._cleanups.discard)
        await asyncio.shield(cleanup)

    async def _release(self, state: ConnectionState):
        room_id = state.room
        try:
            await self.vacate(state)
        except Exception as e:
            logger.error(f"Error releasing connection {state.id} from room {room_id}: {e}", exc_info=True)
            return
        logger.info(f"Connection {state.id} closed (room: {room_id}, {len(self._connections)} live)")

    async def drain(self):
        """Wait for in-flight close cleanups to finish."""
        while self._cleanups:
            await asyncio.gather(*list(self._cleanups), return_exceptions=True)

    async def flush(self):
        """Wait until every live connection has written what is queued for it."""
        await asyncio.gather(*(state.handle.flush() for state in list(self._connections.values())))


lifecycle_manager = LifecycleManager(room_registry)
