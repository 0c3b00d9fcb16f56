import asyncio
from typing import Dict, Iterable, List, Optional

from connection import ConnectionHandle
from errors import DuplicateMemberError
from logging_config import get_logger

logger = get_logger(__name__)


class RoomRegistry:
    """In-memory room membership.

    A room exists only while it has at least one member: it is created by the
    first join and deleted by the leave that empties it. Member dicts keep
    insertion order, which is the join order.

    Every operation runs under a single lock, so each one is observed as an
    atomic step relative to the others.
    """

    def __init__(self):
        # Format: {room_id: {connection_id: handle}}
        self._rooms: Dict[str, Dict[str, ConnectionHandle]] = {}
        self._lock = asyncio.Lock()

    async def join(self, room_id: str, connection_id: str, handle: ConnectionHandle) -> List[str]:
        """Add a connection to a room and return the members that were there before it, in join order."""
        async with self._lock:
            members = self._rooms.get(room_id)
            if members is None:
                members = self._rooms[room_id] = {}
                logger.info(f"Room {room_id} created")
            elif connection_id in members:
                raise DuplicateMemberError(room_id, connection_id)
            existing = list(members)
            members[connection_id] = handle
            logger.debug(f"Connection {connection_id} joined room {room_id} ({len(members)} members)")
            return existing

    async def leave(self, room_id: str, connection_id: str) -> List[str]:
        """Remove a connection from a room. Unknown rooms or members are a no-op."""
        async with self._lock:
            members = self._rooms.get(room_id)
            if members is None:
                logger.debug(f"Leave for unknown room {room_id} by {connection_id}, nothing to do")
                return []
            if members.pop(connection_id, None) is None:
                logger.debug(f"Connection {connection_id} not in room {room_id}, nothing to do")
            if not members:
                del self._rooms[room_id]
                logger.info(f"Room {room_id} is empty, deleted")
                return []
            return list(members)

    async def members(self, room_id: str) -> List[str]:
        async with self._lock:
            return list(self._rooms.get(room_id, {}))

    async def handles(self, room_id: str, connection_ids: Optional[Iterable[str]] = None) -> List[ConnectionHandle]:
        """Snapshot of a room's handles, optionally restricted to `connection_ids`."""
        async with self._lock:
            members = self._rooms.get(room_id, {})
            if connection_ids is None:
                return list(members.values())
            return [members[conn_id] for conn_id in connection_ids if conn_id in members]

    async def snapshot_all(self) -> Dict[str, int]:
        async with self._lock:
            return {room_id: len(members) for room_id, members in self._rooms.items()}


room_registry = RoomRegistry()
