"""
Shippo webhook reconciler.

Events may arrive in any order, more than once, and before or after the
synchronous label purchase has written the same data. Every handler is a
merge: it fills in what is missing, never clears a field, and never
replaces a shipment id or tracking number that is already set.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging import structured_logger
from models.orders import Order, ShipmentEvent, ShipmentEventSource, ShipmentStatus
from schemas.shipping import ShippoWebhookData, ShippoWebhookEvent
from services.shipping import ShipmentService, build_tracking_url, merge_tracking_fields

logger = logging.getLogger(__name__)

# Shippo tracking_status.status -> carrier status we store
TRACKING_STATUS_MAP = {
    "PRE_TRANSIT": ShipmentStatus.PREPARING,
    "TRANSIT": ShipmentStatus.IN_TRANSIT,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "RETURNED": ShipmentStatus.RETURNED,
    "FAILURE": ShipmentStatus.EXCEPTION,
}

METADATA_PREFIX = "Order "


def normalize_event_name(name: str) -> str:
    return name.strip().lower().replace(".", "_")


def rate_object_id(rate: Any) -> Optional[str]:
    if isinstance(rate, dict):
        return rate.get("object_id")
    if isinstance(rate, str) and rate:
        return rate
    return None


def rate_provider(rate: Any) -> Optional[str]:
    if isinstance(rate, dict):
        return rate.get("provider")
    return None


class ShippingWebhookService:
    def __init__(self, db: AsyncSession, shipments: ShipmentService):
        self.db = db
        self.shipments = shipments

    async def handle_event(self, event: ShippoWebhookEvent) -> Dict[str, Any]:
        name = normalize_event_name(event.event)
        handlers = {
            "transaction_created": self._on_transaction_created,
            "transaction_updated": self._on_transaction_updated,
            "track_updated": self._on_track_updated,
        }
        handler = handlers.get(name)
        if handler is None:
            logger.info(f"Ignoring unhandled Shippo event: {event.event}")
            return {"event": name, "handled": False}

        try:
            result = await handler(event.data)
        except Exception as e:
            await self.db.rollback()
            structured_logger.error(
                message="Shippo webhook handling failed",
                metadata={
                    "event": name,
                    "object_id": event.data.object_id,
                    "tracking_number": event.data.tracking_number,
                },
                exception=e,
            )
            raise
        return {"event": name, "handled": True, **result}

    def _record(self, order: Order, event_type: str, data: ShippoWebhookData, changed: Dict[str, Any]):
        self.db.add(ShipmentEvent(
            order_id=order.id,
            source=ShipmentEventSource.WEBHOOK,
            event_type=event_type,
            status=data.status or (data.tracking_status or {}).get("status"),
            shipment_id=data.object_id,
            tracking_number=data.tracking_number,
            payload={"changed": sorted(changed)},
        ))

    def _tracking_fields(self, order: Order, data: ShippoWebhookData) -> Dict[str, Any]:
        carrier = rate_provider(data.rate) or order.shipping_carrier
        tracking_url = data.tracking_url_provider
        if not tracking_url and not order.tracking_url:
            # A synthesized carrier URL never replaces one already stored
            tracking_url = build_tracking_url(data.tracking_number, carrier)
        return {
            "tracking_number": data.tracking_number,
            "tracking_url": tracking_url,
            "shipping_label_url": data.label_url,
        }

    async def _find_by_metadata(self, data: ShippoWebhookData) -> Optional[Order]:
        """Fallback for a label whose synchronous write never landed."""
        metadata = (data.model_extra or {}).get("metadata")
        if not isinstance(metadata, str) or not metadata.startswith(METADATA_PREFIX):
            return None
        order_number = metadata[len(METADATA_PREFIX):].strip()
        return await self.db.scalar(
            select(Order)
            .where(and_(Order.order_number == order_number, Order.shipment_id.is_(None)))
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    async def _on_transaction_created(self, data: ShippoWebhookData) -> Dict[str, Any]:
        if data.object_id and data.tracking_number:
            already = await self.db.scalar(
                select(Order.id).where(and_(
                    Order.shipment_id == data.object_id,
                    Order.tracking_number == data.tracking_number,
                ))
            )
            if already:
                logger.info(f"Shipment {data.object_id} already reconciled on order {already}")
                return {"action": "noop", "order_id": str(already)}

        candidates = [value for value in (data.object_id, rate_object_id(data.rate)) if value]
        order = None
        if candidates:
            order = await self.db.scalar(
                select(Order)
                .where(Order.shipment_id.in_(candidates))
                .order_by(Order.created_at)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        if order is None:
            order = await self._find_by_metadata(data)
        if order is None:
            structured_logger.info(
                message="No order matches Shippo transaction; dropping event",
                metadata={"object_id": data.object_id, "rate": rate_object_id(data.rate),
                          "tracking_number": data.tracking_number},
            )
            return {"action": "dropped"}

        order_id = str(order.id)
        changed = {}
        rate_id = rate_object_id(data.rate)
        if data.object_id and rate_id and order.shipment_id == rate_id != data.object_id:
            # A rate id only holds the place until the transaction exists
            order.shipment_id = data.object_id
            changed["shipment_id"] = data.object_id
        changed.update(merge_tracking_fields(order, shipment_id=data.object_id, **self._tracking_fields(order, data)))
        if not changed:
            await self.db.rollback()
            return {"action": "noop", "order_id": order_id}

        self._record(order, "transaction_created", data, changed)
        await self.db.commit()
        logger.info(f"Order {order.order_number} updated from transaction_created: {sorted(changed)}")
        return {"action": "updated", "order_id": order_id, "changed": sorted(changed)}

    async def _on_transaction_updated(self, data: ShippoWebhookData) -> Dict[str, Any]:
        if not data.object_id:
            logger.info("transaction_updated without object_id; nothing to match")
            return {"action": "dropped"}

        result = await self.db.execute(
            select(Order)
            .where(Order.shipment_id == data.object_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        updated = []
        for order in result.scalars().all():
            changed = merge_tracking_fields(order, **self._tracking_fields(order, data))
            if changed:
                self._record(order, "transaction_updated", data, changed)
                updated.append(str(order.id))

        if not updated:
            await self.db.rollback()
            logger.info(f"transaction_updated for {data.object_id} changed no orders")
            return {"action": "noop", "updated": []}

        await self.db.commit()
        return {"action": "updated", "updated": updated}

    async def _on_track_updated(self, data: ShippoWebhookData) -> Dict[str, Any]:
        if not data.tracking_number:
            logger.info("track_updated without tracking_number; nothing to match")
            return {"action": "dropped"}

        carrier_status = (data.tracking_status or {}).get("status")
        mapped = TRACKING_STATUS_MAP.get(str(carrier_status or "").upper())

        result = await self.db.execute(
            select(Order)
            .where(Order.tracking_number == data.tracking_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        updated: List[str] = []
        transitioned: List[Order] = []
        for order in result.scalars().all():
            changed = merge_tracking_fields(order, tracking_url=data.tracking_url_provider)
            if mapped is not None and order.shipment_status != mapped:
                await self.shipments.apply_shipment_status(
                    order,
                    mapped,
                    ShipmentEventSource.WEBHOOK,
                    payload={"carrier_status": carrier_status, "changed": sorted(changed)},
                )
                transitioned.append(order)
            elif changed:
                self._record(order, "track_updated", data, changed)
            else:
                continue
            updated.append(str(order.id))

        if not updated:
            await self.db.rollback()
            return {"action": "noop", "updated": []}

        await self.db.commit()
        for order in transitioned:
            self.shipments.notify_status(order, mapped)
        return {"action": "updated", "updated": updated, "status": mapped.value if mapped else None}


