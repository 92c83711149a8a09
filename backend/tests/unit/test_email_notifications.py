"""
Unit tests for the order confirmation email and Mailgun delivery
"""
from urllib.parse import parse_qs

import httpx
import pytest

from core.exceptions import ExternalServiceException
from core.utils.messages.email import render_email, send_email_mailgun


def order_context(**overrides):
    context = {
        "subject": "Order Confirmation - LR-1-ABC",
        "customer_name": "Ada",
        "order_number": "LR-1-ABC",
        "order_date": "October 19, 2026",
        "order_items": [{"name": "Sweet Tea Syrup", "quantity": 2, "price": "20.00"}],
        "subtotal": "20.00",
        "shipping_amount": "5.99",
        "tax_amount": "1.60",
        "order_total": "27.59",
        "shipping_address": None,
        "order_tracking_url": "http://localhost:5173/orders/1",
        "company_name": "Southern Sweet and Sour",
        "text_body": "Thank you for your order LR-1-ABC. Total: $27.59",
    }
    context.update(overrides)
    return context


@pytest.mark.unit
class TestOrderConfirmationTemplate:

    def test_renders_items_and_totals(self):
        html = render_email("purchase/order_confirmation.html", order_context())

        assert "LR-1-ABC" in html
        assert "Sweet Tea Syrup" in html
        assert "27.59" in html

    def test_escapes_customer_input(self):
        html = render_email("purchase/order_confirmation.html", order_context(customer_name="<script>x</script>"))

        assert "<script>x</script>" not in html
        assert "&lt;script&gt;" in html


@pytest.mark.unit
class TestMailgunDelivery:

    @pytest.mark.asyncio
    async def test_unconfigured_mailgun_skips_delivery(self, test_settings):
        assert await send_email_mailgun("ada@example.com", "order_confirmation", order_context(),
                                        settings=test_settings) is False

    @pytest.mark.asyncio
    async def test_posts_message(self, test_settings):
        test_settings.MAILGUN_API_KEY = "key-test"
        test_settings.MAILGUN_DOMAIN = "mg.example.com"
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "<msg@mg.example.com>"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sent = await send_email_mailgun("ada@example.com", "order_confirmation", order_context(),
                                            settings=test_settings, client=client)

        assert sent is True
        [request] = requests
        assert request.url == "https://api.mailgun.net/v3/mg.example.com/messages"
        form = parse_qs(request.content.decode())
        assert form["to"] == ["ada@example.com"]
        assert form["subject"] == ["Order Confirmation - LR-1-ABC"]

    @pytest.mark.asyncio
    async def test_mailgun_rejection_raises(self, test_settings):
        test_settings.MAILGUN_API_KEY = "key-test"
        test_settings.MAILGUN_DOMAIN = "mg.example.com"

        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(401, text="Forbidden"))) as client:
            with pytest.raises(ExternalServiceException) as exc_info:
                await send_email_mailgun("ada@example.com", "order_confirmation", order_context(),
                                         settings=test_settings, client=client)

        assert "401" in exc_info.value.provider_message

    @pytest.mark.asyncio
    async def test_unknown_mail_type(self, test_settings):
        with pytest.raises(ValueError):
            await send_email_mailgun("ada@example.com", "newsletter", {}, settings=test_settings)
