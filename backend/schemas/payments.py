from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional
from uuid import UUID


class CreatePaymentIntentRequest(BaseModel):
    order_id: UUID
    # Defaults to the order total; when sent it has to match it
    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)
    order_id: UUID


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)
