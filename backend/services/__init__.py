# Services package - Consolidated imports only

# Provider clients
from .stripe_gateway import StripeGateway
from .shippo import ShippoClient, ShippingProviderError

# Side-channel services
from .notifications import NotificationService
from .email import EmailService

# Order lifecycle
from .orders import OrderService
from .payments import PaymentService
from .shipping import ShipmentService
from .webhooks import ShippingWebhookService

__all__ = [
    # Provider clients
    "StripeGateway",
    "ShippoClient",
    "ShippingProviderError",

    # Side-channel services
    "NotificationService",
    "EmailService",

    # Order lifecycle
    "OrderService",
    "PaymentService",
    "ShipmentService",
    "ShippingWebhookService",
]
