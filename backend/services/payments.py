# Payment lifecycle for orders: intent creation, confirmation, Stripe webhooks and refunds.
# Confirmation can arrive twice (client confirm call and payment_intent.succeeded);
# both go through the same conditional update so only the first one transitions.

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import (
    APIException,
    AuthorizationException,
    BadRequestException,
    ConflictException,
    DatabaseException,
    NotFoundException,
    PaymentException,
)
from core.logging import structured_logger
from models.activity_log import ActivityLog
from models.notifications import NotificationType
from models.orders import Order, OrderStatus, PaymentStatus
from models.payments import Payment
from models.user import User
from services.stripe_gateway import StripeGateway, from_cents, to_cents

logger = logging.getLogger(__name__)

# Statuses a successful confirmation may move a payment out of
CONFIRMABLE = (PaymentStatus.PENDING, PaymentStatus.FAILED)
SETTLED = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED)


class PaymentService:
    """Stripe-backed payments, one per order"""

    def __init__(self, db: AsyncSession, gateway: StripeGateway, notifications=None):
        self.db = db
        self.gateway = gateway
        self.notifications = notifications

    async def _get_order(self, order_id: UUID) -> Order:
        order = await self.db.scalar(
            select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        )
        if not order:
            raise NotFoundException(message="Order not found", resource="order")
        return order

    async def _get_payment(self, **criteria) -> Optional[Payment]:
        query = select(Payment).execution_options(populate_existing=True)
        for column, value in criteria.items():
            query = query.where(getattr(Payment, column) == value)
        return await self.db.scalar(query)

    def _notify_owner(self, order: Order, title: str, message: str) -> None:
        if self.notifications is None:
            return
        self.notifications.notify_user(order.user_id, title, message, NotificationType.PAYMENT, str(order.id))

    async def _commit(self, operation: str, **context) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            structured_logger.error(
                message=f"Payment {operation} failed to persist",
                metadata={k: str(v) for k, v in context.items()},
                exception=e,
            )
            raise DatabaseException(message="Failed to save payment")

    # ------------------------------------------------------------------
    # Intent
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        order_id: UUID,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        user: Optional[User] = None,
    ) -> Dict[str, Any]:
        order = await self._get_order(order_id)

        if order.user_id is not None and not (user and (user.is_admin or user.id == order.user_id)):
            raise AuthorizationException(message="Access denied")

        if await self._get_payment(order_id=order.id):
            raise ConflictException(message="Payment already exists for this order", error_code="PAYMENT_EXISTS")

        if order.status != OrderStatus.PENDING:
            raise BadRequestException(message=f"Order is {order.status.value.lower()}", error_code="ORDER_NOT_PAYABLE")

        if amount is not None and to_cents(amount) != to_cents(order.total_amount):
            raise BadRequestException(message="Amount does not match order total", error_code="AMOUNT_MISMATCH")
        amount = order.total_amount
        currency = (currency or self.gateway.currency).lower()

        intent = await self.gateway.create_intent(
            amount,
            currency,
            metadata={"order_id": str(order.id), "order_number": order.order_number},
        )

        payment = Payment(
            order_id=order.id,
            payment_intent_id=intent["id"],
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            payment_metadata={"stripe_status": intent.get("status")},
        )
        self.db.add(payment)
        order.payment_method = "stripe"
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            # Lost a race with another create for the same order; that one wins
            logger.warning(f"Duplicate payment for order {order_id}; intent {intent['id']} left unused")
            raise ConflictException(message="Payment already exists for this order", error_code="PAYMENT_EXISTS")

        logger.info(f"Payment intent {intent['id']} created for order {order.order_number}")
        return {
            "client_secret": intent.get("client_secret"),
            "payment_intent_id": intent["id"],
            "payment_id": str(payment.id),
            "amount": amount,
            "currency": currency,
        }

    # ------------------------------------------------------------------
    # Confirmation (client call or webhook)
    # ------------------------------------------------------------------

    async def _complete(self, payment: Payment, source: str) -> bool:
        """Move PENDING/FAILED -> COMPLETED and the order to CONFIRMED. False if already done."""
        metadata = dict(payment.payment_metadata or {})
        metadata.update({"stripe_status": "succeeded", "confirmed_via": source})

        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(CONFIRMABLE))
            .values(status=PaymentStatus.COMPLETED, failure_reason=None, payment_metadata=metadata)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        await self.db.execute(
            update(Order)
            .where(Order.id == payment.order_id)
            .values(payment_status=PaymentStatus.COMPLETED, payment_id=payment.payment_intent_id)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(Order)
            .where(Order.id == payment.order_id, Order.status == OrderStatus.PENDING)
            .values(status=OrderStatus.CONFIRMED)
            .execution_options(synchronize_session=False)
        )
        return True

    async def _fail(self, payment: Payment, reason: str, source: str) -> bool:
        metadata = dict(payment.payment_metadata or {})
        metadata.update({"failed_via": source})

        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.notin_(SETTLED))
            .values(status=PaymentStatus.FAILED, failure_reason=reason, payment_metadata=metadata)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        await self.db.execute(
            update(Order)
            .where(Order.id == payment.order_id, Order.payment_status == PaymentStatus.PENDING)
            .values(payment_status=PaymentStatus.FAILED)
            .execution_options(synchronize_session=False)
        )
        return True

    async def confirm(self, payment_intent_id: str, order_id: UUID) -> Dict[str, Any]:
        payment = await self._get_payment(payment_intent_id=payment_intent_id, order_id=order_id)
        if not payment:
            raise NotFoundException(message="Payment not found", resource="payment")

        intent = await self.gateway.retrieve_intent(payment_intent_id)
        status = intent.get("status")

        if status != "succeeded":
            error = intent.get("last_payment_error") or {}
            reason = error.get("message") or f"Payment intent status: {status}"
            await self._fail(payment, reason, "confirm")
            await self._commit("failure", payment_intent_id=payment_intent_id)
            structured_logger.warning(
                message="Payment confirmation failed",
                metadata={"payment_intent_id": payment_intent_id, "order_id": str(order_id), "status": status},
            )
            raise PaymentException(provider_message=reason)

        transitioned = await self._complete(payment, "confirm")
        await self._commit("confirmation", payment_intent_id=payment_intent_id)

        order = await self._get_order(order_id)
        payment = await self._get_payment(id=payment.id)
        if transitioned:
            logger.info(f"Payment {payment_intent_id} confirmed for order {order.order_number}")
            self._notify_owner(
                order,
                "Payment Successful",
                f"Your payment of ${payment.amount:.2f} for order {order.order_number} was successful.",
            )
        else:
            logger.info(f"Payment {payment_intent_id} already confirmed; nothing to do")

        return {"payment": payment.to_dict(), "order": order.to_dict()}

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    async def handle_webhook(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_type = event.get("type")
        data_object = (event.get("data") or {}).get("object") or {}

        handlers = {
            "payment_intent.succeeded": self._on_intent_succeeded,
            "payment_intent.payment_failed": self._on_intent_failed,
            "charge.dispute.created": self._on_dispute_created,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled Stripe event type: {event_type}")
            return {"received": True, "handled": False}

        try:
            await handler(data_object)
        except APIException:
            await self.db.rollback()
            raise
        except Exception as e:
            await self.db.rollback()
            structured_logger.error(
                message="Stripe webhook processing failed",
                metadata={"event_id": event.get("id"), "event_type": event_type},
                exception=e,
            )
            raise
        return {"received": True, "handled": True}

    async def _on_intent_succeeded(self, intent: Dict[str, Any]) -> None:
        payment = await self._get_payment(payment_intent_id=intent.get("id"))
        if not payment:
            logger.info(f"No payment recorded for intent {intent.get('id')}; ignoring succeeded event")
            return

        transitioned = await self._complete(payment, "webhook")
        await self._commit("confirmation", payment_intent_id=payment.payment_intent_id)
        if not transitioned:
            logger.info(f"Payment {payment.payment_intent_id} already settled; duplicate succeeded event")
            return

        order = await self._get_order(payment.order_id)
        self._notify_owner(
            order,
            "Payment Successful",
            f"Your payment of ${payment.amount:.2f} for order {order.order_number} was successful.",
        )

    async def _on_intent_failed(self, intent: Dict[str, Any]) -> None:
        payment = await self._get_payment(payment_intent_id=intent.get("id"))
        if not payment:
            logger.info(f"No payment recorded for intent {intent.get('id')}; ignoring failed event")
            return

        error = intent.get("last_payment_error") or {}
        reason = error.get("message") or "Payment failed"
        changed = await self._fail(payment, reason, "webhook")
        await self._commit("failure", payment_intent_id=payment.payment_intent_id)
        if not changed:
            logger.info(f"Payment {payment.payment_intent_id} already settled; ignoring failed event")
            return

        order = await self._get_order(payment.order_id)
        logger.warning(f"Payment failed for order {order.order_number}: {reason}")
        self._notify_owner(
            order,
            "Payment Failed",
            f"Your payment for order {order.order_number} failed. Please try again or use a different payment method.",
        )

    async def _on_dispute_created(self, dispute: Dict[str, Any]) -> None:
        payment_intent_id = dispute.get("payment_intent")
        payment = await self._get_payment(payment_intent_id=payment_intent_id) if payment_intent_id else None
        order = await self._get_order(payment.order_id) if payment else None

        self.db.add(ActivityLog(
            user_id=order.user_id if order else None,
            action_type="payment_dispute",
            entity="payment",
            entity_id=payment_intent_id or dispute.get("charge"),
            description=f"Dispute opened for order {order.order_number}" if order else "Dispute opened for unknown payment",
            meta_data={
                "dispute_id": dispute.get("id"),
                "charge": dispute.get("charge"),
                "amount": dispute.get("amount"),
                "reason": dispute.get("reason"),
                "status": dispute.get("status"),
                "order_id": str(order.id) if order else None,
            },
        ))
        await self._commit("dispute", dispute_id=dispute.get("id"))
        structured_logger.warning(
            message="Payment dispute opened; manual review required",
            metadata={"dispute_id": dispute.get("id"), "payment_intent_id": payment_intent_id},
        )

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund(
        self,
        order_id: UUID,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        payment = await self.db.scalar(
            select(Payment).where(Payment.order_id == order_id).with_for_update()
            .execution_options(populate_existing=True)
        )
        if not payment:
            raise NotFoundException(message="Payment not found", resource="payment")
        if payment.status != PaymentStatus.COMPLETED:
            raise BadRequestException(
                message="Only completed payments can be refunded", error_code="PAYMENT_NOT_REFUNDABLE"
            )

        order = await self._get_order(order_id)
        if amount is not None and to_cents(amount) > to_cents(order.total_amount):
            raise BadRequestException(message="Refund amount exceeds order total", error_code="REFUND_TOO_LARGE")

        refund = await self.gateway.create_refund(
            payment.payment_intent_id,
            amount,
            metadata={"order_id": str(order.id), "reason": reason or ""},
        )
        refunded_cents = refund.get("amount")
        if refunded_cents is None:
            refunded_cents = to_cents(amount if amount is not None else order.total_amount)
        refunded = from_cents(refunded_cents)

        payment.status = (
            PaymentStatus.REFUNDED
            if refunded_cents == to_cents(order.total_amount)
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        payment.payment_metadata = {
            **(payment.payment_metadata or {}),
            "refund_id": refund.get("id"),
            "refund_amount": str(refunded),
            "refund_reason": reason,
            "refunded_at": datetime.now(timezone.utc).isoformat(),
        }
        # A partial refund still closes the order
        order.status = OrderStatus.REFUNDED
        order.payment_status = payment.status
        await self._commit("refund", order_id=order_id, refund_id=refund.get("id"))

        logger.info(f"Refund {refund.get('id')} of {refunded} for order {order.order_number} ({payment.status.value})")
        self._notify_owner(
            order,
            "Refund Processed",
            f"A refund of ${refunded:.2f} has been processed for order {order.order_number}.",
        )
        return {
            "refund_id": refund.get("id"),
            "amount": refunded,
            "payment_status": payment.status.value,
            "order_status": order.status.value,
        }
