"""
Checkout and order reads.

Checkout turns a persisted cart (authenticated) or a submitted item list
(guest) into an order with line items, decrementing stock and clearing the
cart in one transaction.
"""
import asyncio
import logging
import secrets
import string
import time
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update, delete, func, desc
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.config import Settings, settings as default_settings
from core.exceptions import (
    APIException,
    AuthenticationException,
    AuthorizationException,
    CheckoutException,
    DatabaseException,
    NotFoundException,
)
from core.logging import structured_logger
from core.utils.response import paginate
from models.activity_log import ActivityLog
from models.cart import CartItem
from models.orders import Order, OrderItem, OrderStatus
from models.product import Product
from models.user import User
from schemas.orders import OrderCreate, OrderStatusUpdate, CartItemInput

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ORDER_NUMBER_ATTEMPTS = 3
_BASE36 = string.digits + string.ascii_uppercase


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    shipping_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


def calculate_order_totals(subtotal: Decimal, settings: Optional[Settings] = None) -> OrderTotals:
    """Flat shipping below the free-shipping threshold plus a flat tax rate."""
    settings = settings or default_settings
    subtotal = Decimal(subtotal).quantize(CENT, rounding=ROUND_HALF_UP)
    shipping = Decimal("0.00") if subtotal > settings.FREE_SHIPPING_THRESHOLD else settings.FLAT_SHIPPING_RATE
    shipping = Decimal(shipping).quantize(CENT, rounding=ROUND_HALF_UP)
    tax = (subtotal * settings.TAX_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
    return OrderTotals(
        subtotal=subtotal,
        shipping_amount=shipping,
        tax_amount=tax,
        total_amount=subtotal + shipping + tax,
    )


def generate_order_number() -> str:
    """LR-<epoch ms>-<9 random base36 chars>; uniqueness is enforced by the database."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"LR-{int(time.time() * 1000)}-{suffix}"


def merge_guest_items(items: List[CartItemInput]) -> "OrderedDict[str, int]":
    """Drop items without a product id and merge repeated products into one line."""
    merged: "OrderedDict[str, int]" = OrderedDict()
    for item in items:
        product_id = (item.product_id or "").strip()
        if not product_id:
            continue
        merged[product_id] = merged.get(product_id, 0) + item.quantity
    return merged


class OrderService:
    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        emails=None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.emails = emails

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_order(self, payload: OrderCreate, user: Optional[User] = None) -> Order:
        # A rollback expires loaded instances, so retries work from the plain id
        user_id = user.id if user is not None else None
        if user_id is not None:
            lines = await self._cart_lines(user_id)
        else:
            lines = self._guest_lines(payload)

        attempts = max(1, self.settings.CHECKOUT_MAX_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                order = await self._place_order(payload, user_id, lines)
                await self.db.commit()
                break
            except APIException:
                await self.db.rollback()
                raise
            except OperationalError as e:
                # Lock conflict with a concurrent checkout; the next attempt re-reads stock
                await self.db.rollback()
                if attempt == attempts:
                    self._log_checkout_failure(e, payload, user_id, lines)
                    raise DatabaseException(message="Failed to create order")
                logger.warning(f"Checkout lock conflict on attempt {attempt}, retrying: {e}")
                await asyncio.sleep(self.settings.CHECKOUT_RETRY_DELAY_SECONDS * attempt)
            except SQLAlchemyError as e:
                await self.db.rollback()
                self._log_checkout_failure(e, payload, user_id, lines)
                raise DatabaseException(message="Failed to create order")

        logger.info(f"Order {order.order_number} created ({'user ' + str(user_id) if user_id else 'guest'})")

        if self.emails is not None:
            self.emails.send_order_confirmation(order.id)

        return await self.get_order_by_id(order.id)

    @staticmethod
    def _log_checkout_failure(error: Exception, payload: OrderCreate, user_id: Optional[UUID], lines) -> None:
        structured_logger.error(
            message="Checkout transaction failed",
            user_id=str(user_id) if user_id else None,
            metadata={"guest_email": payload.guest_email, "lines": len(lines)},
            exception=error,
        )

    async def _cart_lines(self, user_id: UUID) -> "OrderedDict[UUID, int]":
        result = await self.db.execute(
            select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.created_at)
        )
        cart_items = result.scalars().all()
        if not cart_items:
            raise CheckoutException("Cart is empty", CheckoutException.EMPTY_CART)

        lines: "OrderedDict[UUID, int]" = OrderedDict()
        for item in cart_items:
            lines[item.product_id] = lines.get(item.product_id, 0) + item.quantity
        return lines

    def _guest_lines(self, payload: OrderCreate) -> "OrderedDict[str, int]":
        if not payload.items:
            raise CheckoutException("Cart is empty", CheckoutException.EMPTY_CART)
        if not payload.guest_email:
            raise CheckoutException("Email is required for guest checkout", CheckoutException.GUEST_EMAIL_REQUIRED)

        lines = merge_guest_items(payload.items)
        if not lines:
            raise CheckoutException("No valid items in cart", CheckoutException.INVALID_CART_ITEMS)
        return lines

    async def _load_products(self, product_ids) -> Dict[str, Product]:
        ids = []
        for product_id in product_ids:
            try:
                ids.append(product_id if isinstance(product_id, UUID) else UUID(str(product_id)))
            except ValueError:
                continue
        if not ids:
            return {}
        result = await self.db.execute(
            select(Product)
            .where(Product.id.in_(ids))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return {str(product.id): product for product in result.scalars().all()}

    async def _place_order(self, payload: OrderCreate, user_id: Optional[UUID], lines) -> Order:
        products = await self._load_products(lines.keys())

        # Validate every line against current catalog data before writing anything
        priced: List[Tuple[Product, int]] = []
        for product_id, quantity in lines.items():
            product = products.get(str(product_id))
            if product is None or not product.is_active:
                name = product.name if product is not None else str(product_id)
                raise CheckoutException(
                    f'Product "{name}" is no longer available',
                    CheckoutException.PRODUCT_UNAVAILABLE,
                    product_id=str(product_id),
                )
            if quantity > product.stock:
                raise CheckoutException(
                    f'Insufficient stock for "{product.name}". Available: {product.stock}',
                    CheckoutException.INSUFFICIENT_STOCK,
                    product_id=str(product.id),
                    available=product.stock,
                )
            priced.append((product, quantity))

        subtotal = sum((product.price * quantity for product, quantity in priced), Decimal("0"))
        totals = calculate_order_totals(subtotal, self.settings)

        order = await self._insert_order(payload, user_id, totals)

        for product, quantity in priced:
            self.db.add(OrderItem(
                order_id=order.id,
                product_id=product.id,
                quantity=quantity,
                price=product.price,
            ))

            # Conditional decrement; a concurrent checkout may have taken the stock since we read it
            result = await self.db.execute(
                update(Product)
                .where(
                    Product.id == product.id,
                    Product.is_active.is_(True),
                    Product.stock >= quantity,
                )
                .values(stock=Product.stock - quantity, sales=Product.sales + quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await self.db.scalar(
                    select(Product.stock).where(Product.id == product.id)
                )
                raise CheckoutException(
                    f'Insufficient stock for "{product.name}". Available: {current or 0}',
                    CheckoutException.INSUFFICIENT_STOCK,
                    product_id=str(product.id),
                    available=current or 0,
                )

        if user_id is not None:
            await self.db.execute(delete(CartItem).where(CartItem.user_id == user_id))

        await self.db.flush()
        return order

    async def _insert_order(self, payload: OrderCreate, user_id: Optional[UUID], totals: OrderTotals) -> Order:
        address = payload.shipping_address
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order = Order(
                order_number=generate_order_number(),
                user_id=user_id,
                guest_email=None if user_id else payload.guest_email,
                total_amount=totals.total_amount,
                shipping_amount=totals.shipping_amount,
                tax_amount=totals.tax_amount,
                status=OrderStatus.PENDING,
                payment_method=payload.payment_method,
                shipping_first_name=address.first_name if address else None,
                shipping_last_name=address.last_name if address else None,
                shipping_street=address.street if address else None,
                shipping_city=address.city if address else None,
                shipping_state=address.state if address else None,
                shipping_zip=address.zip if address else None,
                shipping_country=address.country if address else None,
                shipping_phone=address.phone if address else None,
                notes=payload.notes,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(order)
                    await self.db.flush()
                return order
            except IntegrityError as e:
                logger.warning(f"Order number collision on attempt {attempt}: {order.order_number}")
                if attempt == ORDER_NUMBER_ATTEMPTS:
                    raise DatabaseException(message="Could not allocate an order number") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _order_query(self):
        return select(Order).options(
            selectinload(Order.items).selectinload(OrderItem.product),
            selectinload(Order.user),
        )

    async def get_order_by_id(self, order_id: UUID) -> Order:
        result = await self.db.execute(
            self._order_query()
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundException(message="Order not found", resource="order")
        return order

    async def get_order(self, order_id: UUID, user: Optional[User] = None) -> Order:
        """Owner or admin; anonymous callers can only read guest orders."""
        order = await self.get_order_by_id(order_id)

        if user is not None and user.is_admin:
            return order

        if order.user_id is not None:
            if user is None:
                raise AuthenticationException(message="Authentication required to view this order")
            if order.user_id != user.id:
                raise AuthorizationException(message="Access denied")
            return order

        if user is not None and user.email.lower() != (order.guest_email or "").lower():
            raise AuthorizationException(message="Access denied")
        return order

    async def _paginated(self, query, count_query, page: int, limit: int):
        total = await self.db.scalar(count_query) or 0
        result = await self.db.execute(
            query.order_by(desc(Order.created_at)).offset((page - 1) * limit).limit(limit)
        )
        return result.scalars().all(), paginate(page, limit, total)

    async def get_user_orders(
        self,
        user_id: UUID,
        page: int = 1,
        limit: int = 10,
        status_filter: Optional[OrderStatus] = None,
    ):
        query = self._order_query().where(Order.user_id == user_id)
        count_query = select(func.count(Order.id)).where(Order.user_id == user_id)
        if status_filter:
            query = query.where(Order.status == status_filter)
            count_query = count_query.where(Order.status == status_filter)
        return await self._paginated(query, count_query, page, limit)

    async def get_orders(self, page: int = 1, limit: int = 20, status_filter: Optional[OrderStatus] = None):
        query = self._order_query()
        count_query = select(func.count(Order.id))
        if status_filter:
            query = query.where(Order.status == status_filter)
            count_query = count_query.where(Order.status == status_filter)
        return await self._paginated(query, count_query, page, limit)

    # ------------------------------------------------------------------
    # Admin override
    # ------------------------------------------------------------------

    async def update_order_status(self, order_id: UUID, payload: OrderStatusUpdate, admin: User) -> Order:
        result = await self.db.execute(select(Order).where(Order.id == order_id).with_for_update())
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundException(message="Order not found", resource="order")

        changes = {}
        if payload.status is not None and payload.status != order.status:
            changes["status"] = [order.status.value, payload.status.value]
            order.status = payload.status
        if payload.payment_status is not None and payload.payment_status != order.payment_status:
            changes["payment_status"] = [order.payment_status.value, payload.payment_status.value]
            order.payment_status = payload.payment_status

        if changes:
            self.db.add(ActivityLog(
                user_id=admin.id,
                action_type="order_status_override",
                entity="order",
                entity_id=str(order.id),
                description=f"Order {order.order_number} updated by admin",
                meta_data=changes,
            ))

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to update order {order_id}: {e}")
            raise DatabaseException(message="Failed to update order")

        logger.info(f"Order {order.order_number} status override by {admin.id}: {changes}")
        return await self.get_order_by_id(order.id)
