from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from uuid import UUID

from models.orders import ShipmentStatus
from schemas.orders import CartItemInput


class AddressInput(BaseModel):
    """Destination address in the carrier's shape.

    Fields are optional here so a missing one is reported by name by the
    shipment service instead of as a generic schema error.
    """
    name: Optional[str] = None
    company: Optional[str] = None
    street1: Optional[str] = None
    street2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class ParcelInput(BaseModel):
    length: Decimal = Field(..., gt=0)
    width: Decimal = Field(..., gt=0)
    height: Decimal = Field(..., gt=0)
    distance_unit: str = "in"
    weight: Decimal = Field(..., gt=0)
    mass_unit: str = "lb"


class RatesRequest(BaseModel):
    address: AddressInput
    parcels: List[ParcelInput] = Field(..., min_length=1)


class CheckoutRatesRequest(BaseModel):
    shipping_address: AddressInput
    items: List[CartItemInput] = Field(default_factory=list)


class SelectedRate(BaseModel):
    """What the client saw when picking a rate; used for carrier/service/cost"""
    carrier: Optional[str] = None
    service_name: Optional[str] = None
    amount: Optional[Decimal] = None


class CreateShipmentRequest(BaseModel):
    order_id: UUID
    address: AddressInput
    parcels: List[ParcelInput] = Field(..., min_length=1)
    selected_rate_id: str = Field(..., min_length=1)
    rate_data: Optional[SelectedRate] = None
    # An order that already has a tracking number is only re-shipped on request
    reship: bool = False


class ShipmentStatusUpdate(BaseModel):
    status: ShipmentStatus
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class ShippoWebhookData(BaseModel):
    object_id: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url_provider: Optional[str] = None
    label_url: Optional[str] = None
    status: Optional[str] = None
    rate: Optional[Any] = None
    tracking_status: Optional[Dict[str, Any]] = None

    model_config = {"extra": "allow"}


class ShippoWebhookEvent(BaseModel):
    event: str = Field(..., min_length=1)
    data: ShippoWebhookData
