"""
Consolidated order models
Includes: Order, OrderItem, ShipmentEvent

Shipment tracking lives on the order row itself; ShipmentEvent keeps the
append-only history of every write that touched it.
"""
from enum import Enum

from sqlalchemy import (
    Column, String, ForeignKey, Text, Integer, Numeric, DateTime, JSON,
    CheckConstraint, Index, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from core.database import BaseModel, CHAR_LENGTH, GUID


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


TERMINAL_ORDER_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class ShipmentStatus(str, Enum):
    PENDING = "PENDING"
    PREPARING = "PREPARING"
    SHIPPED = "SHIPPED"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    EXCEPTION = "EXCEPTION"
    RETURNED = "RETURNED"


class ShipmentEventSource(str, Enum):
    SYNC = "sync"
    WEBHOOK = "webhook"
    ADMIN = "admin"


class Order(BaseModel):
    """Order with payment linkage and carrier tracking fields"""
    __tablename__ = "orders"
    __table_args__ = (
        # Exactly one owner: a user or a guest email
        CheckConstraint(
            "(user_id IS NULL) <> (guest_email IS NULL)",
            name="ck_orders_single_owner",
        ),
        Index('idx_orders_user_id', 'user_id'),
        Index('idx_orders_status', 'status'),
        Index('idx_orders_shipment_id', 'shipment_id'),
        Index('idx_orders_tracking_number', 'tracking_number'),
        {'extend_existing': True}
    )

    order_number = Column(String(64), unique=True, nullable=False)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=True)
    guest_email = Column(String(CHAR_LENGTH), nullable=True)

    total_amount = Column(Numeric(10, 2), nullable=False)
    shipping_amount = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=0)

    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    payment_method = Column(String(50), nullable=True)
    payment_id = Column(String(CHAR_LENGTH), nullable=True)

    # Carrier tracking
    shipment_id = Column(String(CHAR_LENGTH), nullable=True)
    tracking_number = Column(String(CHAR_LENGTH), nullable=True)
    tracking_url = Column(String(1024), nullable=True)
    shipping_label_url = Column(String(1024), nullable=True)
    shipping_carrier = Column(String(100), nullable=True)
    shipping_service = Column(String(CHAR_LENGTH), nullable=True)
    shipping_cost = Column(Numeric(10, 2), nullable=True)
    shipment_status = Column(SQLEnum(ShipmentStatus), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)

    # Shipping address snapshot
    shipping_first_name = Column(String(100), nullable=True)
    shipping_last_name = Column(String(100), nullable=True)
    shipping_street = Column(String(CHAR_LENGTH), nullable=True)
    shipping_city = Column(String(100), nullable=True)
    shipping_state = Column(String(100), nullable=True)
    shipping_zip = Column(String(20), nullable=True)
    shipping_country = Column(String(2), nullable=True, default="US")
    shipping_phone = Column(String(30), nullable=True)

    notes = Column(Text, nullable=True)

    user = relationship("User", back_populates="orders", lazy="selectin")
    items = relationship("OrderItem", back_populates="order",
                         cascade="all, delete-orphan", lazy="selectin")
    shipment_events = relationship(
        "ShipmentEvent", back_populates="order", cascade="all, delete-orphan",
        order_by="ShipmentEvent.created_at", lazy="select")
    payment = relationship("Payment", back_populates="order", uselist=False, lazy="select")

    @property
    def subtotal(self):
        return sum((item.price * item.quantity for item in self.items), start=0)

    @property
    def owner_email(self):
        if self.guest_email:
            return self.guest_email
        return self.user.email if self.user else None

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "user_id": str(self.user_id) if self.user_id else None,
            "guest_email": self.guest_email,
            "subtotal": float(self.subtotal),
            "total_amount": float(self.total_amount),
            "shipping_amount": float(self.shipping_amount),
            "tax_amount": float(self.tax_amount),
            "status": self.status.value if self.status else None,
            "payment_status": self.payment_status.value if self.payment_status else None,
            "payment_method": self.payment_method,
            "payment_id": self.payment_id,
            "shipment_id": self.shipment_id,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "shipping_label_url": self.shipping_label_url,
            "shipping_carrier": self.shipping_carrier,
            "shipping_service": self.shipping_service,
            "shipping_cost": float(self.shipping_cost) if self.shipping_cost is not None else None,
            "shipment_status": self.shipment_status.value if self.shipment_status else None,
            "shipped_at": self.shipped_at.isoformat() if self.shipped_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "shipping_address": {
                "first_name": self.shipping_first_name,
                "last_name": self.shipping_last_name,
                "street": self.shipping_street,
                "city": self.shipping_city,
                "state": self.shipping_state,
                "zip": self.shipping_zip,
                "country": self.shipping_country,
                "phone": self.shipping_phone,
            },
            "notes": self.notes,
            "items": [item.to_dict() for item in self.items],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class OrderItem(BaseModel):
    """Line item; price is the unit price at checkout and never changes"""
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {'extend_existing': True}
    )

    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(GUID(), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "product_id": str(self.product_id),
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "price": float(self.price),
        }


class ShipmentEvent(BaseModel):
    """Append-only history of tracking writes (sync label purchase, webhooks, admin)"""
    __tablename__ = "shipment_events"
    __table_args__ = {'extend_existing': True}

    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    source = Column(SQLEnum(ShipmentEventSource), nullable=False)
    event_type = Column(String(100), nullable=False)
    status = Column(String(50), nullable=True)
    shipment_id = Column(String(CHAR_LENGTH), nullable=True)
    tracking_number = Column(String(CHAR_LENGTH), nullable=True)
    payload = Column(JSON, nullable=True)

    order = relationship("Order", back_populates="shipment_events")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "order_id": str(self.order_id),
            "source": self.source.value if self.source else None,
            "event_type": self.event_type,
            "status": self.status,
            "shipment_id": self.shipment_id,
            "tracking_number": self.tracking_number,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
