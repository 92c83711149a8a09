from pydantic import BaseModel, EmailStr, Field, model_validator
from typing import List, Optional

from models.orders import OrderStatus, PaymentStatus


class CartItemInput(BaseModel):
    """Guest cart line as submitted by the client; price is never trusted"""
    product_id: Optional[str] = None
    quantity: int = Field(1, ge=1)


class ShippingAddressInput(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip: str = Field(..., min_length=1)
    country: str = Field("US", min_length=2, max_length=2)
    phone: Optional[str] = None


class OrderCreate(BaseModel):
    # Guest checkout only; an authenticated user's persisted cart is used instead
    items: Optional[List[CartItemInput]] = None
    guest_email: Optional[EmailStr] = None
    shipping_address: Optional[ShippingAddressInput] = None
    payment_method: Optional[str] = "card"
    notes: Optional[str] = Field(None, max_length=2000)


class OrderStatusUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None

    @model_validator(mode="after")
    def at_least_one(self):
        if self.status is None and self.payment_status is None:
            raise ValueError("status or payment_status is required")
        return self
