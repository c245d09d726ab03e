from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Dimensions(BaseModel):
    length_cm: float = Field(gt=0)
    width_cm: float = Field(gt=0)
    height_cm: float = Field(gt=0)


class BookingRequest(BaseModel):
    booking_reference_id: str = Field(min_length=1, max_length=64)
    recipient_name: str = Field(min_length=1, max_length=200)
    recipient_phone: str = Field(pattern=r"^\+?[1-9]\d{6,14}$")
    recipient_email: Optional[str] = Field(default=None, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    origin_address: str = Field(min_length=1, max_length=500)
    destination_address: str = Field(min_length=1, max_length=500)
    destination_country: str = Field(min_length=2, max_length=100)
    weight_kg: float = Field(gt=0, le=30)
    dimensions: Optional[Dimensions] = None
    declared_value: float = Field(ge=0)
    shipment_type: Literal["medicine", "document", "gift"]
    # start at DRAFT and wait for an explicit confirm
    draft: bool = False
    # demo shipment advanced by the simulation worker instead of the carrier
    simulated: bool = False


class AdminActionRequest(BaseModel):
    shipment_id: UUID
    action: Literal["receive", "quality_check", "package", "approve_dispatch", "cancel"]
    expected_version: int = Field(gt=0)


class DispatchRequest(BaseModel):
    shipment_id: UUID
    expected_version: int = Field(gt=0)


class ConfirmRequest(BaseModel):
    expected_version: int = Field(gt=0)


class ShipmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    booking_reference_id: str
    status: str
    current_leg: str
    version: int
    domestic_awb: Optional[str] = None
    international_awb: Optional[str] = None
    is_simulated: bool
    recipient_name: str
    recipient_phone: str
    recipient_email: Optional[str] = None
    origin_address: str
    destination_address: str
    destination_country: str
    weight_kg: float
    declared_value: float
    shipment_type: str
    created_at: datetime
    updated_at: datetime


class TimelineEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    shipment_id: str
    status: str
    leg: str
    source: str
    version: int
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("details", "metadata"))
    created_at: datetime


class AlertRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    shipment_id: str
    kind: str
    shipment_version: int
    stuck_hours: int
    threshold_hours: int
    created_at: datetime


class ShipmentEnvelope(BaseModel):
    success: bool = True
    shipment: ShipmentRead


class TimelineEnvelope(BaseModel):
    success: bool = True
    shipment_id: str
    entries: List[TimelineEntryRead]
