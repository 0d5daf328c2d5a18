"""API request/response schemas for trip endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from errandpay.common.state_machine import TripStatus


class TripCreateRequest(BaseModel):
    traveler_id: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    capacity: int = Field(ge=1, le=50)
    departure_at: datetime | None = None


class TripStatusUpdate(BaseModel):
    status: TripStatus


class TripResponse(BaseModel):
    """Trip as exposed to clients, including remaining capacity."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    traveler_id: str
    destination: str
    departure_at: datetime | None = None
    capacity: int
    available_capacity: int
    status: str
