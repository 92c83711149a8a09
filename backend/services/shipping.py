"""
Shipment coordinator: address validation, rate quotes, label purchase and
carrier status updates for orders.

Tracking data lives on the order row. Every write to it goes through
merge_tracking_fields so neither this module nor the webhook reconciler can
blank out or replace a tracking number that is already set.
"""
import logging
import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, settings as default_settings
from core.exceptions import (
    BadRequestException,
    CheckoutException,
    ConflictException,
    DatabaseException,
    NotFoundException,
    ShipmentException,
)
from core.logging import structured_logger
from core.utils.polling import BoundedPoller
from models.notifications import NotificationType
from models.orders import (
    Order,
    OrderStatus,
    ShipmentEvent,
    ShipmentEventSource,
    ShipmentStatus,
    TERMINAL_ORDER_STATUSES,
)
from models.product import Product
from schemas.orders import CartItemInput
from schemas.shipping import AddressInput, CreateShipmentRequest, ParcelInput
from services.shippo import ShippingProviderError, ShippoClient

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ("name", "street1", "city", "state", "zip", "country")

TRACKING_URL_TEMPLATES = {
    "usps": "https://tools.usps.com/go/TrackConfirmAction?qtc_tLabels1={tracking_number}",
    "ups": "https://www.ups.com/track?track=yes&trackNums={tracking_number}",
    "fedex": "https://www.fedex.com/fedextrack/?trknbr={tracking_number}",
}
FALLBACK_TRACKING_URL = "https://goshippo.com/track/{tracking_number}"

# Fields that identify the shipment; once set they only change on an explicit re-ship
IDENTITY_FIELDS = ("shipment_id", "tracking_number")

STATUS_NOTIFICATIONS = {
    ShipmentStatus.SHIPPED: ("Order Shipped", "Your order has been shipped and is on its way!"),
    ShipmentStatus.IN_TRANSIT: ("Order In Transit", "Your order is currently in transit to your location."),
    ShipmentStatus.OUT_FOR_DELIVERY: ("Out for Delivery", "Your order is out for delivery and will arrive today!"),
    ShipmentStatus.DELIVERED: ("Order Delivered", "Your order has been delivered successfully!"),
    ShipmentStatus.EXCEPTION: ("Delivery Exception", "There was an issue with your delivery. Please contact support."),
}
DEFAULT_STATUS_NOTIFICATION = ("Shipment Update", "Your shipment status has been updated.")

PENDING_TRANSACTION_STATUSES = ("QUEUED", "WAITING")

CHECKOUT_WEIGHT_PER_UNIT_LB = Decimal("0.5")


def build_tracking_url(
    tracking_number: Optional[str],
    carrier: Optional[str] = None,
    provider_url: Optional[str] = None,
) -> Optional[str]:
    """Provider URL if there is one, else a carrier template, else the Shippo tracking page."""
    if provider_url:
        return provider_url
    if not tracking_number:
        return None
    template = TRACKING_URL_TEMPLATES.get((carrier or "").strip().lower(), FALLBACK_TRACKING_URL)
    return template.format(tracking_number=tracking_number)


def status_notification(status: ShipmentStatus):
    return STATUS_NOTIFICATIONS.get(status, DEFAULT_STATUS_NOTIFICATION)


def merge_tracking_fields(order: Order, allow_overwrite: bool = False, **fields) -> Dict[str, Any]:
    """Apply non-empty values to the order and return what changed.

    Empty values never clear a field. A shipment id or tracking number that
    is already set is kept unless ``allow_overwrite`` is given.
    """
    changed = {}
    for name, value in fields.items():
        if value is None or value == "":
            continue
        current = getattr(order, name)
        if current == value:
            continue
        if current not in (None, "") and name in IDENTITY_FIELDS and not allow_overwrite:
            structured_logger.warning(
                message="Refusing to overwrite shipment identity",
                metadata={"order_id": str(order.id), "field": name, "current": current, "incoming": value},
            )
            continue
        setattr(order, name, value)
        changed[name] = value
    return changed


def address_payload(address: AddressInput) -> Dict[str, Any]:
    return {
        "name": address.name,
        "company": address.company or "",
        "street1": address.street1,
        "street2": address.street2 or "",
        "city": address.city,
        "state": address.state,
        "zip": address.zip,
        "country": address.country,
        "email": address.email,
        "phone": address.phone or "",
    }


def parcel_payload(parcel: ParcelInput) -> Dict[str, Any]:
    return {
        "length": str(parcel.length),
        "width": str(parcel.width),
        "height": str(parcel.height),
        "distance_unit": parcel.distance_unit,
        "weight": str(parcel.weight),
        "mass_unit": parcel.mass_unit,
    }


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def format_rate(rate: Dict[str, Any]) -> Dict[str, Any]:
    servicelevel = rate.get("servicelevel") or {}
    return {
        "object_id": rate.get("object_id"),
        "carrier": rate.get("provider") or "USPS",
        "service_name": servicelevel.get("name") or "Standard Shipping",
        "service_token": servicelevel.get("token") or "",
        "amount": _to_decimal(rate.get("amount")) or Decimal("0"),
        "currency": rate.get("currency") or "USD",
        "estimated_days": rate.get("estimated_days") or 3,
        "duration_terms": rate.get("duration_terms") or "",
    }


class ShipmentService:
    def __init__(
        self,
        db: AsyncSession,
        shippo: ShippoClient,
        notifications=None,
        poller: Optional[BoundedPoller] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.shippo = shippo
        self.notifications = notifications
        self.settings = settings or default_settings
        self.poller = poller or BoundedPoller(
            max_attempts=self.settings.SHIPPO_QUEUED_MAX_ATTEMPTS,
            delay=self.settings.SHIPPO_QUEUED_RETRY_DELAY_SECONDS,
        )

    @staticmethod
    def missing_address_fields(address: AddressInput) -> List[str]:
        return [field for field in REQUIRED_ADDRESS_FIELDS if not getattr(address, field)]

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def validate_address(self, address: AddressInput) -> Dict[str, Any]:
        missing = self.missing_address_fields(address)
        if missing:
            raise BadRequestException(
                message=f"Missing required address fields: {', '.join(missing)}",
                error_code="INVALID_ADDRESS",
            )

        payload = address_payload(address)
        try:
            result = await self.shippo.create_address(payload, validate=True)
        except ShippingProviderError as e:
            # Provider unreachable: all required fields are present, so accept the address as entered
            logger.warning(f"Address validation unavailable, accepting address as entered: {e.provider_message}")
            return {"is_valid": True, "validated_address": payload, "messages": []}

        validation = result.get("validation_results") or {}
        has_required = all(result.get(field) for field in REQUIRED_ADDRESS_FIELDS)
        is_valid = validation.get("is_valid")
        if is_valid is None:
            is_valid = has_required or bool(result.get("is_complete"))
        return {
            "is_valid": bool(is_valid),
            "validated_address": {key: result.get(key) for key in payload},
            "messages": [m.get("text") for m in validation.get("messages") or [] if m.get("text")],
        }

    async def get_rates(self, address: AddressInput, parcels: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        try:
            shipment = await self.shippo.create_shipment(
                self.settings.sender_address,
                address_payload(address),
                parcels,
            )
        except ShippingProviderError as e:
            raise ShipmentException(message="Failed to get shipping rates", provider_message=e.provider_message) from e

        rates = shipment.get("rates") or []
        logger.info(f"Shippo shipment {shipment.get('object_id')} returned {len(rates)} rates")
        return [format_rate(rate) for rate in rates]

    async def calculate_checkout_rates(self, address: AddressInput, items: List[CartItemInput]) -> Dict[str, Any]:
        """Rates for a cart before payment, from a parcel estimated at half a pound per unit."""
        valid = [item for item in items if (item.product_id or "").strip()]
        if not valid:
            raise CheckoutException(
                "No valid items found in order. Please refresh your cart.",
                CheckoutException.INVALID_CART_ITEMS,
            )

        ids = set()
        for item in valid:
            try:
                ids.add(UUID(item.product_id.strip()))
            except ValueError:
                logger.warning(f"Skipping item with malformed product id: {item.product_id}")
        existing = set()
        if ids:
            result = await self.db.execute(select(Product.id).where(Product.id.in_(ids)))
            existing = {str(product_id) for product_id in result.scalars().all()}

        total_items = 0
        for item in valid:
            if item.product_id.strip() not in existing:
                logger.warning(f"Product not found for checkout rates: {item.product_id}")
                continue
            total_items += item.quantity

        if total_items == 0:
            raise BadRequestException(
                message="No valid products found. Please refresh your cart.",
                error_code="NO_VALID_PRODUCTS",
            )

        weight = total_items * CHECKOUT_WEIGHT_PER_UNIT_LB
        parcel = {
            "length": str(math.ceil(total_items / 3) * 4 + 2),
            "width": "8",
            "height": "6",
            "distance_unit": "in",
            "weight": str(weight or 1),
            "mass_unit": "lb",
        }
        rates = await self.get_rates(address, [parcel])
        return {"rates": rates, "parcels": [parcel]}

    # ------------------------------------------------------------------
    # Label purchase
    # ------------------------------------------------------------------

    async def _get_order(self, order_id: UUID, lock: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if lock:
            query = query.with_for_update()
        order = await self.db.scalar(query)
        if not order:
            raise NotFoundException(message="Order not found", resource="order")
        return order

    async def _settle_transaction(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """Give a QUEUED label a bounded chance to finish."""
        transaction_id = transaction.get("object_id")
        if transaction.get("status") not in PENDING_TRANSACTION_STATUSES or not transaction_id:
            return transaction

        logger.info(f"Shippo transaction {transaction_id} is {transaction.get('status')}; re-fetching")
        return await self.poller.poll(
            transaction,
            lambda: self.shippo.get_transaction(transaction_id),
            lambda t: t.get("status") not in PENDING_TRANSACTION_STATUSES,
        )

    async def create_shipment(self, request: CreateShipmentRequest) -> Dict[str, Any]:
        missing = self.missing_address_fields(request.address)
        if missing:
            raise BadRequestException(
                message=f"Invalid address data: Missing required fields: {', '.join(missing)}",
                error_code="INVALID_ADDRESS",
            )

        order = await self._get_order(request.order_id)
        if order.status not in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING):
            raise BadRequestException(message="Order is not ready for shipment", error_code="ORDER_NOT_READY")
        if order.tracking_number and not request.reship:
            raise ConflictException(message="Order already has a shipment", error_code="SHIPMENT_EXISTS")
        order_number = order.order_number
        # Release the read transaction before the slow provider calls
        await self.db.rollback()

        metadata = f"Order {order_number}"
        try:
            shipment = await self.shippo.create_shipment(
                self.settings.sender_address,
                {**address_payload(request.address), "is_residential": True},
                [parcel_payload(parcel) for parcel in request.parcels],
                metadata=metadata,
                extra={"bypass_address_validation": True},
            )
            transaction = await self.shippo.create_transaction(request.selected_rate_id, metadata=metadata)
            transaction = await self._settle_transaction(transaction)
        except ShippingProviderError as e:
            structured_logger.error(
                message="Label purchase failed",
                metadata={"order_id": str(request.order_id), "rate_id": request.selected_rate_id,
                          "provider_message": e.provider_message},
            )
            raise ShipmentException(provider_message=e.provider_message) from e

        status = transaction.get("status")
        if status == "ERROR":
            messages = "; ".join(
                f"{m.get('source')}: {m.get('text')}" for m in transaction.get("messages") or []
            ) or "Unknown error"
            structured_logger.error(
                message="Shippo transaction failed",
                metadata={"order_id": str(request.order_id), "transaction_id": transaction.get("object_id"),
                          "messages": messages},
            )
            raise ShipmentException(provider_message=f"Shippo transaction failed: {messages}")

        rate = self._selected_rate(shipment, transaction, request.selected_rate_id)
        rate_data = request.rate_data
        carrier = (rate_data.carrier if rate_data and rate_data.carrier else None) or rate.get("provider") or "Unknown"
        service = (rate_data.service_name if rate_data and rate_data.service_name else None) \
            or (rate.get("servicelevel") or {}).get("name") or "Standard"
        cost = (rate_data.amount if rate_data and rate_data.amount is not None else None) \
            or _to_decimal(rate.get("amount")) or Decimal("0")

        transaction_id = transaction.get("object_id")
        tracking_number = transaction.get("tracking_number") or None
        tracking_url = build_tracking_url(tracking_number, carrier, transaction.get("tracking_url_provider"))
        label_url = transaction.get("label_url") or None
        complete = status == "SUCCESS" and bool(tracking_number)

        if not complete:
            structured_logger.warning(
                message="Label not finished after bounded wait; returning partial data",
                metadata={"order_id": str(request.order_id), "transaction_id": transaction_id, "status": status},
            )

        try:
            order = await self._get_order(request.order_id, lock=True)
            changed = merge_tracking_fields(
                order,
                allow_overwrite=request.reship,
                shipment_id=transaction_id,
                tracking_number=tracking_number,
                tracking_url=tracking_url,
                shipping_label_url=label_url,
                shipping_carrier=carrier,
                shipping_service=service,
                shipping_cost=cost,
            )
            if order.status == OrderStatus.CONFIRMED:
                order.status = OrderStatus.PROCESSING
            if order.shipment_status is None or request.reship:
                order.shipment_status = ShipmentStatus.PREPARING

            self.db.add(ShipmentEvent(
                order_id=order.id,
                source=ShipmentEventSource.SYNC,
                event_type="label_created" if complete else "label_pending",
                status=status,
                shipment_id=transaction_id,
                tracking_number=tracking_number,
                payload={"rate_id": request.selected_rate_id, "changed": sorted(changed), "reship": request.reship},
            ))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            # The label is paid for at this point; keep enough context to reconcile by hand
            structured_logger.critical(
                message="Label purchased but order update failed",
                metadata={"order_id": str(request.order_id), "transaction_id": transaction_id,
                          "tracking_number": tracking_number, "label_url": label_url},
                exception=e,
            )
            raise DatabaseException(message="Failed to record shipment")

        logger.info(f"Shipment {transaction_id} recorded for order {order_number} ({status})")
        return {
            "shipment_id": order.shipment_id,
            "tracking_number": order.tracking_number,
            "tracking_url": order.tracking_url,
            "label_url": order.shipping_label_url,
            "status": "label_created" if complete else "label_pending",
        }

    @staticmethod
    def _selected_rate(shipment: Dict[str, Any], transaction: Dict[str, Any], rate_id: str) -> Dict[str, Any]:
        if isinstance(transaction.get("rate"), dict):
            return transaction["rate"]
        for rate in shipment.get("rates") or []:
            if rate.get("object_id") == rate_id:
                return rate
        return {}

    async def get_shipment_status(self, shipment_id: str) -> Dict[str, Any]:
        """Live transaction status from the provider."""
        try:
            transaction = await self.shippo.get_transaction(shipment_id)
        except ShippingProviderError as e:
            raise ShipmentException(message="Failed to get shipment status", provider_message=e.provider_message) from e

        rate = transaction.get("rate") if isinstance(transaction.get("rate"), dict) else {}
        return {
            "status": transaction.get("status"),
            "tracking_number": transaction.get("tracking_number"),
            "tracking_url": transaction.get("tracking_url_provider"),
            "label_url": transaction.get("label_url"),
            "carrier": rate.get("provider") or "",
            "service": (rate.get("servicelevel") or {}).get("name") or "",
        }

    # ------------------------------------------------------------------
    # Carrier status
    # ------------------------------------------------------------------

    async def apply_shipment_status(
        self,
        order: Order,
        status: ShipmentStatus,
        source: ShipmentEventSource,
        tracking_number: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a carrier status on a locked order without committing."""
        now = datetime.now(timezone.utc)
        previous = order.status

        order.shipment_status = status
        merge_tracking_fields(order, tracking_number=tracking_number)
        if estimated_delivery:
            order.estimated_delivery = estimated_delivery

        if status in (ShipmentStatus.SHIPPED, ShipmentStatus.IN_TRANSIT):
            if order.status in (OrderStatus.CONFIRMED, OrderStatus.PROCESSING):
                order.status = OrderStatus.SHIPPED
            if order.shipped_at is None:
                order.shipped_at = now
        elif status == ShipmentStatus.DELIVERED:
            if order.status not in TERMINAL_ORDER_STATUSES:
                order.status = OrderStatus.DELIVERED
            if order.delivered_at is None:
                order.delivered_at = now
            if order.shipped_at is None:
                order.shipped_at = now

        self.db.add(ShipmentEvent(
            order_id=order.id,
            source=source,
            event_type="status_update",
            status=status.value,
            shipment_id=order.shipment_id,
            tracking_number=order.tracking_number,
            payload=payload,
        ))

        if previous != order.status:
            logger.info(f"Order {order.order_number}: {previous.value} -> {order.status.value} ({status.value})")

    def notify_status(self, order: Order, status: ShipmentStatus) -> None:
        if self.notifications is None:
            return
        title, message = status_notification(status)
        self.notifications.notify_user(order.user_id, title, message, NotificationType.SHIPMENT, str(order.id))

    async def update_shipment_status(
        self,
        order_id: UUID,
        status: ShipmentStatus,
        tracking_number: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
    ) -> Order:
        order = await self._get_order(order_id, lock=True)
        await self.apply_shipment_status(
            order,
            status,
            ShipmentEventSource.ADMIN,
            tracking_number=tracking_number,
            estimated_delivery=estimated_delivery,
        )
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to update shipment status for order {order_id}: {e}")
            raise DatabaseException(message="Failed to update shipment status")

        self.notify_status(order, status)
        return order

    async def track(self, tracking_number: str) -> Dict[str, Any]:
        order = await self.db.scalar(
            select(Order).where(Order.tracking_number == tracking_number)
            .execution_options(populate_existing=True)
        )
        if not order:
            raise NotFoundException(message="Shipment not found", resource="shipment")

        result = await self.db.execute(
            select(ShipmentEvent)
            .where(ShipmentEvent.order_id == order.id)
            .order_by(ShipmentEvent.created_at)
        )
        return {
            "order_number": order.order_number,
            "order_status": order.status.value,
            "shipment_status": order.shipment_status.value if order.shipment_status else None,
            "tracking_number": order.tracking_number,
            "tracking_url": order.tracking_url,
            "carrier": order.shipping_carrier,
            "service": order.shipping_service,
            "shipped_at": order.shipped_at,
            "delivered_at": order.delivered_at,
            "estimated_delivery": order.estimated_delivery,
            "events": [event.to_dict() for event in result.scalars().all()],
        }
