import json
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

JOIN_ROOM = "join_room"
OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"
EXISTING_PEERS = "existing_peers"
PEER_JOINED = "peer_joined"
PEER_LEFT = "peer_left"

SIGNAL_EVENTS = (OFFER, ANSWER, CANDIDATE)
INBOUND_EVENTS = (JOIN_ROOM,) + SIGNAL_EVENTS


# Inbound: {"event": ..., "payload": {...}}

class JoinRoomPayload(BaseModel):
    room: str


class SignalPayload(BaseModel):
    # Everything besides `target` (sdp, candidate, ...) is opaque and relayed as-is
    model_config = ConfigDict(extra="allow")

    target: str


class JoinRoom(BaseModel):
    event: Literal["join_room"]
    payload: JoinRoomPayload


class Signal(BaseModel):
    event: Literal["offer", "answer", "candidate"]
    payload: SignalPayload


class UnknownEvent(BaseModel):
    event: str


class Malformed(BaseModel):
    reason: str
    event: Optional[str] = None


InboundEvent = Annotated[Union[JoinRoom, Signal], Field(discriminator="event")]
InboundMessage = Union[JoinRoom, Signal, UnknownEvent, Malformed]

inbound_adapter = TypeAdapter(InboundEvent)


def decode_envelope(raw: Union[str, bytes]) -> InboundMessage:
    """Decode one frame. Never raises: bad input comes back as `Malformed`."""
    try:
        data = json.loads(raw)
    except (ValueError, TypeError) as e:
        return Malformed(reason=f"invalid JSON: {e}")

    if not isinstance(data, dict) or not isinstance(data.get("event"), str):
        return Malformed(reason="envelope must be an object with a string 'event'")

    event = data["event"]
    if event not in INBOUND_EVENTS:
        return UnknownEvent(event=event)

    try:
        return inbound_adapter.validate_python(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in e.errors())
        return Malformed(reason=f"invalid fields: {fields}", event=event)


# Outbound

def envelope(event: str, payload: dict) -> dict:
    return {"event": event, "payload": payload}


def existing_peers(peers: List[str]) -> dict:
    return envelope(EXISTING_PEERS, {"peers": list(peers)})


def peer_joined(peer_id: str) -> dict:
    return envelope(PEER_JOINED, {"peerId": peer_id})


def peer_left(peer_id: str) -> dict:
    return envelope(PEER_LEFT, {"peerId": peer_id})


def relayed_signal(signal: Signal, source: str) -> dict:
    payload: dict[str, Any] = signal.payload.model_dump()
    payload["source"] = source
    return envelope(signal.event, payload)
