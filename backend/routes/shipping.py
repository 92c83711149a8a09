from uuid import UUID
from fastapi import APIRouter, Depends, Request

from core.dependencies import get_shipment_service, get_shipping_webhook_service, require_admin
from core.exceptions import ShipmentException, with_provider_detail
from core.utils.response import Response
from core.utils.validation import Invalid, validate_payload
from models.user import User
from schemas.shipping import (
    AddressInput,
    CheckoutRatesRequest,
    CreateShipmentRequest,
    RatesRequest,
    ShipmentStatusUpdate,
    ShippoWebhookEvent,
)
from services.shipping import ShipmentService, parcel_payload
from services.webhooks import ShippingWebhookService

router = APIRouter(prefix="/shipment", tags=["Shipping"])


@router.post("/validate-address")
async def validate_address(
    request: AddressInput,
    shipment_service: ShipmentService = Depends(get_shipment_service)
):
    result = await shipment_service.validate_address(request)
    message = "Address is valid" if result["is_valid"] else "Address could not be validated"
    return Response(data=result, message=message)


@router.post("/rates")
async def get_shipping_rates(
    request: RatesRequest,
    shipment_service: ShipmentService = Depends(get_shipment_service)
):
    rates = await shipment_service.get_rates(request.address, [parcel_payload(p) for p in request.parcels])
    return Response(data={"rates": rates}, message="Shipping rates retrieved")


@router.post("/checkout-rates")
async def get_checkout_rates(
    request: CheckoutRatesRequest,
    shipment_service: ShipmentService = Depends(get_shipment_service)
):
    """Rates for the items in a cart, before an order exists."""
    result = await shipment_service.calculate_checkout_rates(request.shipping_address, request.items)
    return Response(data=result, message="Shipping rates retrieved")


@router.post("/create")
async def create_shipment(
    request: CreateShipmentRequest,
    admin: User = Depends(require_admin),
    shipment_service: ShipmentService = Depends(get_shipment_service)
):
    """Buy a label for a confirmed order (admin)."""
    try:
        result = await shipment_service.create_shipment(request)
    except ShipmentException as e:
        raise with_provider_detail(e)
    return Response(data=result, message="Shipment created successfully")


@router.put("/{order_id}/status")
async def update_shipment_status(
    order_id: UUID,
    request: ShipmentStatusUpdate,
    admin: User = Depends(require_admin),
    shipment_service: ShipmentService = Depends(get_shipment_service)
):
    order = await shipment_service.update_shipment_status(
        order_id,
        request.status,
        tracking_number=request.tracking_number,
        estimated_delivery=request.estimated_delivery,
    )
    return Response(data=order.to_dict(), message="Shipment status updated")


@router.get("/track/{tracking_number}")
async def track_shipment(
    tracking_number: str,
    shipment_service: ShipmentService = Depends(get_shipment_service)
):
    result = await shipment_service.track(tracking_number)
    return Response(data=result, message="Tracking information retrieved")


@router.get("/status/{shipment_id}")
async def get_shipment_status(
    shipment_id: str,
    admin: User = Depends(require_admin),
    shipment_service: ShipmentService = Depends(get_shipment_service)
):
    """Live label status from Shippo (admin)."""
    try:
        result = await shipment_service.get_shipment_status(shipment_id)
    except ShipmentException as e:
        raise with_provider_detail(e)
    return Response(data=result, message="Shipment status retrieved")


@router.post("/webhook")
async def shippo_webhook(
    request: Request,
    webhook_service: ShippingWebhookService = Depends(get_shipping_webhook_service)
):
    result = validate_payload(ShippoWebhookEvent, await request.body())
    if isinstance(result, Invalid):
        result.raise_for_errors("Invalid webhook payload")
    outcome = await webhook_service.handle_event(result.value)
    return Response(data=outcome, message="Webhook processed")
