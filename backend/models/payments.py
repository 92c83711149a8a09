"""
Payment record: one per order, tracking the Stripe payment intent
"""
from sqlalchemy import Column, String, ForeignKey, Numeric, Text, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship
from core.database import BaseModel, GUID
from typing import Dict, Any

from models.orders import PaymentStatus


class Payment(BaseModel):
    """Payment attempt for an order, backed by a Stripe payment intent"""
    __tablename__ = "payments"
    __table_args__ = {'extend_existing': True}

    # At most one payment per order
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, unique=True)
    payment_intent_id = Column(String(255), nullable=False, unique=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    provider = Column(String(50), nullable=False, default="stripe")
    payment_metadata = Column(JSON, default=dict)
    failure_reason = Column(Text, nullable=True)

    order = relationship("Order", back_populates="payment")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "order_id": str(self.order_id),
            "payment_intent_id": self.payment_intent_id,
            "amount": float(self.amount),
            "currency": self.currency,
            "status": self.status.value if self.status else None,
            "provider": self.provider,
            "payment_metadata": self.payment_metadata,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
