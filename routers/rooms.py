from typing import Dict

from fastapi import APIRouter, Request

from lifecycle import lifecycle_manager
from logging_config import get_logger
from registry import room_registry
from schemas.rooms import HealthResponse, RoomStatus

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/rooms", response_model=Dict[str, RoomStatus])
async def list_rooms(request: Request):
    """
    Snapshot of every room that currently has members.

    Returns a mapping of room id to:
    - id: Room identifier
    - clientCount: Number of connections currently in the room
    """
    client_host = request.client.host if request.client else "unknown"
    snapshot = await room_registry.snapshot_all()
    logger.debug(f"Room list requested from {client_host}: {len(snapshot)} rooms")
    return {
        room_id: RoomStatus(id=room_id, client_count=count)
        for room_id, count in snapshot.items()
    }


@rooms_router.get("/health", response_model=HealthResponse)
async def health():
    snapshot = await room_registry.snapshot_all()
    return HealthResponse(
        status="ok",
        connections=lifecycle_manager.connection_count(),
        rooms=len(snapshot),
    )
