"""
Payment lifecycle: intents, confirmation (client and webhook), failures, disputes and refunds.
"""
from decimal import Decimal

import pytest

from core.exceptions import (
    AuthorizationException,
    BadRequestException,
    ConflictException,
    NotFoundException,
    PaymentException,
)
from models.activity_log import ActivityLog
from models.notifications import NotificationType
from models.orders import Order, OrderStatus, PaymentStatus
from models.payments import Payment
from services.payments import PaymentService


@pytest.fixture
def payment_service(db_session, fake_stripe, notifications):
    return PaymentService(db_session, fake_stripe, notifications=notifications)


def succeeded_event(payment_intent_id):
    return {"id": "evt_1", "type": "payment_intent.succeeded",
            "data": {"object": {"id": payment_intent_id, "status": "succeeded"}}}


def failed_event(payment_intent_id, message="Your card was declined."):
    return {"id": "evt_2", "type": "payment_intent.payment_failed",
            "data": {"object": {"id": payment_intent_id, "last_payment_error": {"message": message}}}}


class TestCreateIntent:

    @pytest.mark.asyncio
    async def test_persists_pending_payment_for_order_total(self, payment_service, fake_stripe, customer, make_order, fetch):
        order = await make_order(user=customer, total="41.63", status=OrderStatus.PENDING)

        result = await payment_service.create_intent(order.id, user=customer)

        intent = fake_stripe.intents[result["payment_intent_id"]]
        assert intent["amount"] == 4163
        assert intent["metadata"]["order_number"] == order.order_number
        assert result["client_secret"] == intent["client_secret"]
        [payment] = await fetch(Payment, order_id=order.id)
        assert payment.status == PaymentStatus.PENDING
        assert payment.amount == Decimal("41.63")
        assert payment.payment_intent_id == result["payment_intent_id"]

    @pytest.mark.asyncio
    async def test_second_intent_for_same_order_is_rejected(self, payment_service, fake_stripe, make_order, fetch):
        order = await make_order(status=OrderStatus.PENDING)
        first = await payment_service.create_intent(order.id)

        with pytest.raises(ConflictException) as exc_info:
            await payment_service.create_intent(order.id)

        assert exc_info.value.error_code == "PAYMENT_EXISTS"
        [payment] = await fetch(Payment, order_id=order.id)
        assert payment.payment_intent_id == first["payment_intent_id"]
        assert payment.status == PaymentStatus.PENDING
        assert len(fake_stripe.intents) == 1

    @pytest.mark.asyncio
    async def test_amount_must_match_order_total(self, payment_service, make_order):
        order = await make_order(total="25.00", status=OrderStatus.PENDING)
        with pytest.raises(BadRequestException) as exc_info:
            await payment_service.create_intent(order.id, amount=Decimal("1.00"))
        assert exc_info.value.error_code == "AMOUNT_MISMATCH"

    @pytest.mark.asyncio
    async def test_only_pending_orders_are_payable(self, payment_service, make_order):
        order = await make_order(status=OrderStatus.CANCELLED)
        with pytest.raises(BadRequestException) as exc_info:
            await payment_service.create_intent(order.id)
        assert exc_info.value.error_code == "ORDER_NOT_PAYABLE"

    @pytest.mark.asyncio
    async def test_other_users_order_is_denied(self, payment_service, customer, make_user, make_order):
        stranger = await make_user()
        order = await make_order(user=customer, status=OrderStatus.PENDING)
        with pytest.raises(AuthorizationException):
            await payment_service.create_intent(order.id, user=stranger)

    @pytest.mark.asyncio
    async def test_unknown_order(self, payment_service):
        from uuid import uuid4
        with pytest.raises(NotFoundException):
            await payment_service.create_intent(uuid4())


class TestConfirmation:

    @pytest.mark.asyncio
    async def test_confirm_completes_payment_and_order(
        self, payment_service, fake_stripe, dispatcher, customer, make_order, notifications_for, fetch
    ):
        order = await make_order(user=customer, status=OrderStatus.PENDING)
        intent = await payment_service.create_intent(order.id, user=customer)
        fake_stripe.set_status(intent["payment_intent_id"], "succeeded")

        result = await payment_service.confirm(intent["payment_intent_id"], order.id)

        assert result["payment"]["status"] == "COMPLETED"
        assert result["order"]["status"] == "CONFIRMED"
        assert result["order"]["payment_status"] == "COMPLETED"
        [row] = await fetch(Order, id=order.id)
        assert row.payment_id == intent["payment_intent_id"]

        await dispatcher.drain()
        [notification] = await notifications_for(customer)
        assert notification.type == NotificationType.PAYMENT
        assert notification.title == "Payment Successful"

    @pytest.mark.asyncio
    async def test_confirm_then_webhook_transitions_once(
        self, payment_service, fake_stripe, dispatcher, customer, make_order, notifications_for
    ):
        order = await make_order(user=customer, status=OrderStatus.PENDING)
        intent = await payment_service.create_intent(order.id, user=customer)
        fake_stripe.set_status(intent["payment_intent_id"], "succeeded")

        await payment_service.confirm(intent["payment_intent_id"], order.id)
        result = await payment_service.handle_webhook(succeeded_event(intent["payment_intent_id"]))

        assert result == {"received": True, "handled": True}
        await dispatcher.drain()
        assert len(await notifications_for(customer)) == 1

    @pytest.mark.asyncio
    async def test_webhook_then_confirm_transitions_once(
        self, payment_service, fake_stripe, dispatcher, customer, make_order, notifications_for
    ):
        order = await make_order(user=customer, status=OrderStatus.PENDING)
        intent = await payment_service.create_intent(order.id, user=customer)
        fake_stripe.set_status(intent["payment_intent_id"], "succeeded")

        await payment_service.handle_webhook(succeeded_event(intent["payment_intent_id"]))
        result = await payment_service.confirm(intent["payment_intent_id"], order.id)

        assert result["order"]["status"] == "CONFIRMED"
        await dispatcher.drain()
        assert len(await notifications_for(customer)) == 1

    @pytest.mark.asyncio
    async def test_unsuccessful_intent_marks_payment_failed(self, payment_service, fake_stripe, make_order, fetch):
        order = await make_order(status=OrderStatus.PENDING)
        intent = await payment_service.create_intent(order.id)
        fake_stripe.set_status(intent["payment_intent_id"], "requires_payment_method", "Your card was declined.")

        with pytest.raises(PaymentException) as exc_info:
            await payment_service.confirm(intent["payment_intent_id"], order.id)

        assert exc_info.value.message == "Payment failed"
        assert exc_info.value.provider_message == "Your card was declined."
        [payment] = await fetch(Payment, order_id=order.id)
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "Your card was declined."
        [row] = await fetch(Order, id=order.id)
        assert row.status == OrderStatus.PENDING
        assert row.payment_status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_confirm_unknown_payment(self, payment_service, make_order):
        order = await make_order(status=OrderStatus.PENDING)
        with pytest.raises(NotFoundException):
            await payment_service.confirm("pi_missing", order.id)


class TestWebhooks:

    @pytest.mark.asyncio
    async def test_payment_failed_keeps_order_status_and_notifies(
        self, payment_service, dispatcher, customer, make_order, make_payment, notifications_for, fetch
    ):
        order = await make_order(user=customer, status=OrderStatus.PENDING)
        payment = await make_payment(order)

        await payment_service.handle_webhook(failed_event(payment.payment_intent_id, "Insufficient funds"))

        [row] = await fetch(Payment, id=payment.id)
        assert row.status == PaymentStatus.FAILED
        assert row.failure_reason == "Insufficient funds"
        [order_row] = await fetch(Order, id=order.id)
        assert order_row.status == OrderStatus.PENDING
        await dispatcher.drain()
        [notification] = await notifications_for(customer)
        assert notification.title == "Payment Failed"

    @pytest.mark.asyncio
    async def test_failure_after_completion_is_ignored(self, payment_service, make_order, make_payment, fetch):
        order = await make_order(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED)
        payment = await make_payment(order, status=PaymentStatus.COMPLETED)

        await payment_service.handle_webhook(failed_event(payment.payment_intent_id))

        [row] = await fetch(Payment, id=payment.id)
        assert row.status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_dispute_is_audited_without_state_change(self, payment_service, make_order, make_payment, fetch):
        order = await make_order(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED)
        payment = await make_payment(order, status=PaymentStatus.COMPLETED)

        await payment_service.handle_webhook({
            "id": "evt_3",
            "type": "charge.dispute.created",
            "data": {"object": {"id": "dp_1", "charge": "ch_1", "payment_intent": payment.payment_intent_id,
                                "amount": 2500, "reason": "fraudulent", "status": "needs_response"}},
        })

        [entry] = await fetch(ActivityLog, action_type="payment_dispute")
        assert entry.meta_data["dispute_id"] == "dp_1"
        assert entry.meta_data["order_id"] == str(order.id)
        [row] = await fetch(Payment, id=payment.id)
        assert row.status == PaymentStatus.COMPLETED
        [order_row] = await fetch(Order, id=order.id)
        assert order_row.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_unhandled_event_is_acknowledged(self, payment_service):
        result = await payment_service.handle_webhook({"type": "customer.created", "data": {"object": {}}})
        assert result == {"received": True, "handled": False}

    @pytest.mark.asyncio
    async def test_event_for_unknown_intent_is_ignored(self, payment_service):
        result = await payment_service.handle_webhook(succeeded_event("pi_unknown"))
        assert result["handled"] is True


class TestRefund:

    @pytest.mark.asyncio
    async def test_full_refund(self, payment_service, fake_stripe, dispatcher, customer, make_order, make_payment, notifications_for, fetch):
        order = await make_order(user=customer, total="25.00", status=OrderStatus.CONFIRMED,
                                 payment_status=PaymentStatus.COMPLETED)
        payment = await make_payment(order, status=PaymentStatus.COMPLETED)

        result = await payment_service.refund(order.id, amount=Decimal("25.00"), reason="damaged")

        assert result["payment_status"] == "REFUNDED"
        assert result["order_status"] == "REFUNDED"
        assert result["amount"] == Decimal("25.00")
        assert fake_stripe.refunds[0]["amount"] == 2500
        [row] = await fetch(Payment, id=payment.id)
        assert row.status == PaymentStatus.REFUNDED
        assert row.payment_metadata["refund_reason"] == "damaged"
        await dispatcher.drain()
        [notification] = await notifications_for(customer)
        assert notification.title == "Refund Processed"

    @pytest.mark.asyncio
    async def test_refund_without_amount_refunds_total(self, payment_service, make_order, make_payment):
        order = await make_order(total="25.00", status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED)
        await make_payment(order, status=PaymentStatus.COMPLETED)

        result = await payment_service.refund(order.id)

        assert result["payment_status"] == "REFUNDED"
        assert result["amount"] == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_partial_refund_still_marks_order_refunded(self, payment_service, make_order, make_payment, fetch):
        order = await make_order(total="25.00", status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED)
        payment = await make_payment(order, status=PaymentStatus.COMPLETED)

        result = await payment_service.refund(order.id, amount=Decimal("10.00"))

        assert result["payment_status"] == "PARTIALLY_REFUNDED"
        [row] = await fetch(Payment, id=payment.id)
        assert row.status == PaymentStatus.PARTIALLY_REFUNDED
        [order_row] = await fetch(Order, id=order.id)
        assert order_row.status == OrderStatus.REFUNDED
        assert order_row.payment_status == PaymentStatus.PARTIALLY_REFUNDED

    @pytest.mark.asyncio
    async def test_only_completed_payments_are_refundable(self, payment_service, make_order, make_payment):
        order = await make_order(status=OrderStatus.PENDING)
        await make_payment(order, status=PaymentStatus.PENDING)
        with pytest.raises(BadRequestException) as exc_info:
            await payment_service.refund(order.id)
        assert exc_info.value.error_code == "PAYMENT_NOT_REFUNDABLE"

    @pytest.mark.asyncio
    async def test_refund_larger_than_total(self, payment_service, make_order, make_payment):
        order = await make_order(total="25.00", status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED)
        await make_payment(order, status=PaymentStatus.COMPLETED)
        with pytest.raises(BadRequestException) as exc_info:
            await payment_service.refund(order.id, amount=Decimal("30.00"))
        assert exc_info.value.error_code == "REFUND_TOO_LARGE"

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_payment_completed(self, payment_service, fake_stripe, make_order, make_payment, fetch):
        order = await make_order(total="25.00", status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.COMPLETED)
        payment = await make_payment(order, status=PaymentStatus.COMPLETED)
        fake_stripe.refund_error = "Charge has already been refunded."

        with pytest.raises(PaymentException):
            await payment_service.refund(order.id)

        [row] = await fetch(Payment, id=payment.id)
        assert row.status == PaymentStatus.COMPLETED
