from uuid import UUID
from fastapi import APIRouter, Depends, Header, Request
from typing import Optional

from core.dependencies import get_optional_user, get_payment_service, require_admin
from core.exceptions import PaymentException, with_provider_detail
from core.utils.response import Response
from models.user import User
from schemas.payments import ConfirmPaymentRequest, CreatePaymentIntentRequest, RefundRequest
from services.payments import PaymentService

router = APIRouter(prefix="/payment", tags=["Payments"])


@router.post("/create-intent")
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    intent = await payment_service.create_intent(
        request.order_id,
        amount=request.amount,
        currency=request.currency,
        user=current_user,
    )
    return Response(data=intent, message="Payment intent created")


@router.post("/confirm")
async def confirm_payment(
    request: ConfirmPaymentRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    try:
        result = await payment_service.confirm(request.payment_intent_id, request.order_id)
    except PaymentException as e:
        if current_user is not None and current_user.is_admin:
            raise with_provider_detail(e)
        raise
    return Response(data=result, message="Payment confirmed successfully")


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Stripe events; the signature is checked against the raw body."""
    payload = await request.body()
    event = request.app.state.stripe_gateway.construct_event(payload, stripe_signature)
    result = await payment_service.handle_webhook(event)
    return Response(data=result, message="Webhook received")


@router.post("/refund/{order_id}")
async def refund_payment(
    order_id: UUID,
    request: Optional[RefundRequest] = None,
    admin: User = Depends(require_admin),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """Full or partial refund (admin)."""
    request = request or RefundRequest()
    try:
        result = await payment_service.refund(order_id, amount=request.amount, reason=request.reason)
    except PaymentException as e:
        raise with_provider_detail(e)
    return Response(data=result, message="Refund processed successfully")
