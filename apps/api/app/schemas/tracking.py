import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from app.models.tracking import TrackingStatus, VehicleType


class GeoPoint(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class DeliveryDestination(GeoPoint):
    address: str = Field(min_length=1, max_length=512)

    @field_validator("address")
    @classmethod
    def strip_address(cls, value: str) -> str:
        return value.strip()


class RiderAssignment(BaseModel):
    rider_id: str = Field(min_length=1, max_length=64)
    name: str = Field(default="Delivery Partner", max_length=255)
    phone: str = Field(default="", max_length=50)
    avatar: str = Field(default="", max_length=1024)
    vehicle_type: VehicleType = VehicleType.BIKE
    vehicle_number: str = Field(default="", max_length=32)


class TrackingCreateRequest(BaseModel):
    order_id: uuid.UUID
    customer_id: str = Field(min_length=1, max_length=64)
    delivery_address: DeliveryDestination
    estimated_delivery_time: datetime


class StatusUpdateRequest(BaseModel):
    status: TrackingStatus
    location: GeoPoint | None = None
    message: str | None = Field(default=None, max_length=1000)
    rider: RiderAssignment | None = None


class LocationUpdateRequest(GeoPoint):
    heading: float = Field(default=0, ge=0, lt=360)
    speed: float = Field(default=0, ge=0)


class HistoryEntryResponse(BaseModel):
    status: TrackingStatus
    timestamp: datetime
    location: GeoPoint
    message: str


class RiderInfoResponse(BaseModel):
    name: str
    phone: str
    avatar: str
    vehicle_type: VehicleType
    vehicle_number: str


class TrackingResponse(BaseModel):
    id: uuid.UUID
    order_id: uuid.UUID
    customer_id: str
    rider_id: str | None
    rider_info: RiderInfoResponse | None
    status: TrackingStatus
    current_location: GeoPoint
    delivery_address: DeliveryDestination
    restaurant_location: DeliveryDestination
    estimated_delivery_time: datetime
    actual_delivery_time: datetime | None
    is_active: bool
    progress_percentage: int
    estimated_time_remaining_s: int
    history: list[HistoryEntryResponse]
    created_at: datetime
    updated_at: datetime


class TrackingListResponse(BaseModel):
    items: list[TrackingResponse]
    count: int


class TrackingHistoryResponse(BaseModel):
    history: list[HistoryEntryResponse]
    current_status: TrackingStatus
    progress_percentage: int
    estimated_time_remaining_s: int
    actual_delivery_time: datetime | None


class NearbyTrackingResponse(BaseModel):
    distance_m: float
    tracking: TrackingResponse


class NearbyTrackingListResponse(BaseModel):
    items: list[NearbyTrackingResponse]
    count: int


class LocationUpdateResponse(BaseModel):
    order_id: uuid.UUID
    current_location: GeoPoint
    estimated_time_remaining_s: int


class SimulationResponse(BaseModel):
    order_id: uuid.UUID
    steps: int
    message: str = "Rider simulation started"
