# Models package - importing it registers every table on Base.metadata
from .user import User, UserRole
from .product import Product
from .cart import CartItem
from .orders import (
    Order,
    OrderItem,
    ShipmentEvent,
    OrderStatus,
    PaymentStatus,
    ShipmentStatus,
    ShipmentEventSource,
    TERMINAL_ORDER_STATUSES,
)
from .payments import Payment
from .notifications import Notification, NotificationType
from .activity_log import ActivityLog

__all__ = [
    "User",
    "UserRole",
    "Product",
    "CartItem",
    "Order",
    "OrderItem",
    "ShipmentEvent",
    "OrderStatus",
    "PaymentStatus",
    "ShipmentStatus",
    "ShipmentEventSource",
    "TERMINAL_ORDER_STATUSES",
    "Payment",
    "Notification",
    "NotificationType",
    "ActivityLog",
]
