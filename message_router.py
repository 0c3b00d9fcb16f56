from typing import Union

from connection import ConnectionPhase, ConnectionState, broadcast
from errors import DuplicateMemberError
from lifecycle import LifecycleManager, lifecycle_manager
from logging_config import get_logger
from schemas.messages import (
    JoinRoom,
    Malformed,
    Signal,
    UnknownEvent,
    decode_envelope,
    existing_peers,
    peer_joined,
    relayed_signal,
)

logger = get_logger(__name__)


class MessageRouter:
    """Turns inbound frames into registry changes and outbound sends."""

    def __init__(self, lifecycle: LifecycleManager):
        self.lifecycle = lifecycle
        self.registry = lifecycle.registry

    async def dispatch(self, state: ConnectionState, raw: Union[str, bytes]):
        """Handle one frame from `state`'s connection. Bad frames are logged and dropped."""
        if state.phase is ConnectionPhase.CLOSED:
            logger.debug(f"Ignoring frame from closed connection {state.id}")
            return

        message = decode_envelope(raw)

        if isinstance(message, Malformed):
            logger.warning(f"Dropping malformed message from {state.id} (event: {message.event}): {message.reason}")
        elif isinstance(message, UnknownEvent):
            logger.debug(f"Ignoring unknown event '{message.event}' from {state.id}")
        elif isinstance(message, JoinRoom):
            await self.handle_join(state, message.payload.room)
        elif isinstance(message, Signal):
            await self.handle_signal(state, message)

    async def handle_join(self, state: ConnectionState, room_id: str):
        if state.room == room_id:
            logger.warning(f"Connection {state.id} is already in room {room_id}, ignoring join")
            return
        if state.room is not None:
            logger.info(f"Connection {state.id} switching from room {state.room} to {room_id}")
            await self.lifecycle.vacate(state)

        try:
            existing = await self.lifecycle.enter_room(state, room_id)
        except DuplicateMemberError as e:
            logger.warning(str(e))
            return
        logger.info(f"Connection {state.id} joined room {room_id} with {len(existing)} existing peers")

        state.handle.send(existing_peers(existing))

        # Only the members the newcomer was told about hear about the newcomer
        others = await self.registry.handles(room_id, existing)
        broadcast(others, peer_joined(state.id))

    async def handle_signal(self, state: ConnectionState, signal: Signal):
        target_id = signal.payload.target
        target = self.lifecycle.lookup(target_id)
        if target is None:
            logger.warning(f"Dropping {signal.event} from {state.id}: target {target_id} is not connected")
            return

        queued = target.send(relayed_signal(signal, state.id))
        if queued:
            logger.debug(f"Queued {signal.event} from {state.id} to {target_id}")
        else:
            logger.warning(f"Dropping {signal.event} from {state.id}: not accepted by {target_id}")


message_router = MessageRouter(lifecycle_manager)
