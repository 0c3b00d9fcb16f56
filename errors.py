class SignalingError(Exception):
    """Base class for errors raised by the signaling core."""


class DuplicateMemberError(SignalingError):
    """A connection tried to join a room it is already a member of."""

    def __init__(self, room_id: str, connection_id: str):
        super().__init__(f"Connection {connection_id} is already a member of room {room_id}")
        self.room_id = room_id
        self.connection_id = connection_id
