import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from core.background import SideEffectDispatcher
from core.config import Settings
from core.utils.messages.email import send_email_mailgun
from models.orders import Order, OrderItem

logger = logging.getLogger(__name__)

Sender = Callable[..., Awaitable[Any]]


class EmailService:
    """Transactional emails, sent on the side-effect dispatcher"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: SideEffectDispatcher,
        settings: Settings,
        sender: Optional[Sender] = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.settings = settings
        self.sender = sender or send_email_mailgun

    def send_order_confirmation(self, order_id: UUID) -> None:
        self.dispatcher.dispatch("email:order_confirmation", self._send_order_confirmation, order_id)

    async def _send_order_confirmation(self, order_id: UUID) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order)
                .where(Order.id == order_id)
                .options(selectinload(Order.items).selectinload(OrderItem.product), selectinload(Order.user))
            )
            order = result.scalar_one_or_none()
            if not order:
                logger.warning(f"Order {order_id} vanished before its confirmation email was sent")
                return
            recipient = order.owner_email
            context = self._order_context(order)

        if not recipient:
            logger.warning(f"Order {order_id} has no email address; confirmation not sent")
            return

        await self.sender(recipient, "order_confirmation", context, settings=self.settings)

    def _order_context(self, order: Order) -> Dict[str, Any]:
        name = " ".join(filter(None, [order.shipping_first_name, order.shipping_last_name]))
        return {
            "subject": f"Order Confirmation - {order.order_number}",
            "customer_name": order.user.firstname if order.user else order.shipping_first_name,
            "order_number": order.order_number,
            "order_date": order.created_at.strftime("%B %d, %Y") if order.created_at else "",
            "order_items": [
                {
                    "name": item.product.name if item.product else "Item",
                    "quantity": item.quantity,
                    "price": f"{item.price * item.quantity:.2f}",
                }
                for item in order.items
            ],
            "subtotal": f"{order.subtotal:.2f}",
            "shipping_amount": f"{order.shipping_amount:.2f}",
            "tax_amount": f"{order.tax_amount:.2f}",
            "order_total": f"{order.total_amount:.2f}",
            "shipping_address": {
                "name": name,
                "street": order.shipping_street,
                "city": order.shipping_city,
                "state": order.shipping_state,
                "zip": order.shipping_zip,
                "country": order.shipping_country,
            } if order.shipping_street else None,
            "order_tracking_url": f"{self.settings.FRONTEND_URL}/orders/{order.id}",
            "company_name": self.settings.SENDER_COMPANY,
            "text_body": f"Thank you for your order {order.order_number}. Total: ${order.total_amount:.2f}",
        }
