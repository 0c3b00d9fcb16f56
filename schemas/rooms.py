from pydantic import BaseModel, ConfigDict, Field


class RoomStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    client_count: int = Field(alias="clientCount")


class HealthResponse(BaseModel):
    status: str
    connections: int
    rooms: int
