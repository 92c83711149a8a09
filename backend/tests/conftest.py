import sys
import os
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest

# Add the backend directory to the Python path
# This is necessary for pytest to find the 'main' module and other packages
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)

from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine

from core.background import SideEffectDispatcher
from core.config import Settings
from core.database import DatabaseManager
from core.exceptions import PaymentException
from core.utils.auth.jwt_auth import JWTManager
from core.utils.polling import BoundedPoller
from models.notifications import Notification
from models.orders import Order, OrderItem, OrderStatus, PaymentStatus
from models.payments import Payment
from models.product import Product
from models.user import User, UserRole
from services.notifications import NotificationService
from services.shippo import ShippingProviderError
from services.stripe_gateway import StripeGateway, to_cents

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class DeferredDispatcher(SideEffectDispatcher):
    """Queues side effects and runs them one at a time on drain()."""

    def __init__(self):
        super().__init__()
        self.queued: List[tuple] = []

    @property
    def pending(self) -> int:
        return len(self.queued)

    @property
    def names(self) -> List[str]:
        return [name for name, *_ in self.queued]

    def dispatch(self, name, func, *args, **kwargs):
        self.queued.append((name, func, args, kwargs))

    async def drain(self) -> None:
        while self.queued:
            name, func, args, kwargs = self.queued.pop(0)
            await self._run(name, func, *args, **kwargs)


class FakeStripeGateway(StripeGateway):
    """In-memory payment intents and refunds; webhook verification is the real one."""

    def __init__(self):
        super().__init__("sk_test_fake", webhook_secret=STRIPE_WEBHOOK_SECRET, currency="usd")
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.refund_error: Optional[str] = None

    async def create_intent(self, amount, currency, metadata):
        intent_id = f"pi_{uuid4().hex[:16]}"
        self.intents[intent_id] = {
            "id": intent_id,
            "client_secret": f"{intent_id}_secret_test",
            "status": "requires_payment_method",
            "amount": to_cents(amount),
            "currency": currency,
            "metadata": metadata,
        }
        return dict(self.intents[intent_id])

    def set_status(self, payment_intent_id: str, status: str, error_message: Optional[str] = None):
        intent = self.intents.setdefault(payment_intent_id, {"id": payment_intent_id})
        intent["status"] = status
        intent["last_payment_error"] = {"message": error_message} if error_message else None

    async def retrieve_intent(self, payment_intent_id):
        if payment_intent_id not in self.intents:
            raise PaymentException(provider_message=f"No such payment_intent: '{payment_intent_id}'")
        return dict(self.intents[payment_intent_id])

    async def create_refund(self, payment_intent_id, amount=None, metadata=None):
        if self.refund_error:
            raise PaymentException(provider_message=self.refund_error)
        refund = {
            "id": f"re_{uuid4().hex[:12]}",
            "payment_intent": payment_intent_id,
            "amount": to_cents(amount) if amount is not None else None,
            "status": "succeeded",
            "metadata": metadata or {},
        }
        self.refunds.append(refund)
        return dict(refund)


DEFAULT_RATES = [
    {
        "object_id": "rate_usps_priority",
        "provider": "USPS",
        "servicelevel": {"name": "Priority Mail", "token": "usps_priority"},
        "amount": "7.58",
        "currency": "USD",
        "estimated_days": 2,
        "duration_terms": "Delivery in 1 to 3 business days.",
    },
    {
        "object_id": "rate_ups_ground",
        "provider": "UPS",
        "servicelevel": {"name": "Ground", "token": "ups_ground"},
        "amount": "11.20",
        "currency": "USD",
        "estimated_days": 5,
        "duration_terms": "",
    },
]


def shippo_transaction(**overrides) -> Dict[str, Any]:
    transaction = {
        "object_id": "txn_0001",
        "status": "SUCCESS",
        "tracking_number": "9400111899223100000001",
        "tracking_url_provider": "https://tools.usps.com/go/TrackConfirmAction?qtc_tLabels1=9400111899223100000001",
        "label_url": "https://shippo-delivery.s3.amazonaws.com/label_0001.pdf",
        "rate": "rate_usps_priority",
        "messages": [],
    }
    transaction.update(overrides)
    return transaction


class FakeShippoClient:
    """Scripted Shippo responses; records every call."""

    configured = True

    def __init__(self):
        self.calls: List[tuple] = []
        self.errors: Dict[str, ShippingProviderError] = {}
        self.address_result: Optional[Dict[str, Any]] = None
        self.rates: List[Dict[str, Any]] = [dict(rate) for rate in DEFAULT_RATES]
        self.transaction: Dict[str, Any] = shippo_transaction()
        # Successive get_transaction results; falls back to self.transaction
        self.refetch: List[Dict[str, Any]] = []
        self.closed = False

    def fail(self, operation: str, message: str = "Shippo is down"):
        self.errors[operation] = ShippingProviderError(operation, message, status_code=503)

    def _check(self, operation: str):
        if operation in self.errors:
            raise self.errors[operation]

    async def close(self):
        self.closed = True

    async def create_address(self, address, validate=True):
        self.calls.append(("create_address", address))
        self._check("create_address")
        if self.address_result is not None:
            return dict(self.address_result)
        return {**address, "object_id": "adr_1", "is_complete": True,
                "validation_results": {"is_valid": True, "messages": []}}

    async def create_shipment(self, address_from, address_to, parcels, metadata=None, extra=None):
        self.calls.append(("create_shipment", address_to, parcels, metadata))
        self._check("create_shipment")
        return {"object_id": "shp_0001", "status": "SUCCESS", "rates": [dict(rate) for rate in self.rates]}

    async def create_transaction(self, rate_id, metadata=None):
        self.calls.append(("create_transaction", rate_id, metadata))
        self._check("create_transaction")
        return dict(self.transaction)

    async def get_transaction(self, transaction_id):
        self.calls.append(("get_transaction", transaction_id))
        self._check("get_transaction")
        if self.refetch:
            return dict(self.refetch.pop(0))
        return dict(self.transaction)

    def called(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]


class FakeSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, data_object: Dict[str, Any]) -> bytes:
    return json.dumps({
        "id": f"evt_{uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }).encode()


# ---------------------------------------------------------------------------
# Infrastructure fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings():
    settings = Settings()
    settings.ENVIRONMENT = "test"
    settings.SECRET_KEY = "test-secret-key"
    settings.ALGORITHM = "HS256"
    settings.STRIPE_SECRET_KEY = "sk_test_fake"
    settings.STRIPE_WEBHOOK_SECRET = STRIPE_WEBHOOK_SECRET
    settings.SHIPPO_API_TOKEN = "shippo_test_token"
    settings.MAILGUN_API_KEY = ""
    settings.DB_CREATE_ALL = False
    settings.FREE_SHIPPING_THRESHOLD = Decimal("50")
    settings.FLAT_SHIPPING_RATE = Decimal("5.99")
    settings.TAX_RATE = Decimal("0.08")
    settings.SHIPPO_QUEUED_MAX_ATTEMPTS = 1
    settings.SHIPPO_QUEUED_RETRY_DELAY_SECONDS = 3.0
    return settings


@pytest.fixture
async def db_manager(tmp_path):
    """File-backed SQLite so side effects can open their own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")

    # pysqlite's implicit transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    manager = DatabaseManager(engine=engine)
    await manager.create_all()
    yield manager
    await manager.dispose()


@pytest.fixture
async def db_session(db_manager):
    async with db_manager.session() as session:
        yield session


@pytest.fixture
def dispatcher():
    return DeferredDispatcher()


@pytest.fixture
def notifications(db_manager, dispatcher):
    return NotificationService(db_manager.session_factory, dispatcher)


@pytest.fixture
def fake_stripe():
    return FakeStripeGateway()


@pytest.fixture
def fake_shippo():
    return FakeShippoClient()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def poller(fake_sleep):
    return BoundedPoller(max_attempts=1, delay=3.0, sleep=fake_sleep)


@pytest.fixture
def app(test_settings, db_manager, fake_stripe, fake_shippo, dispatcher, poller):
    from main import create_app

    return create_app(
        settings=test_settings,
        db_manager=db_manager,
        stripe_gateway=fake_stripe,
        shippo_client=fake_shippo,
        dispatcher=dispatcher,
        poller=poller,
    )


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers(test_settings):
    def _headers(user: User) -> Dict[str, str]:
        token = JWTManager(test_settings).create_access_token({"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}"}
    return _headers


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_manager):
    async def _make(email: Optional[str] = None, role: UserRole = UserRole.CUSTOMER, **fields) -> User:
        async with db_manager.session() as db:
            user = User(
                email=email or f"user-{uuid4().hex[:8]}@example.com",
                firstname=fields.pop("firstname", "Ada"),
                lastname=fields.pop("lastname", "Lovelace"),
                role=role,
                **fields,
            )
            db.add(user)
            await db.commit()
            return user
    return _make


@pytest.fixture
async def customer(make_user):
    return await make_user(email="customer@example.com")


@pytest.fixture
async def admin(make_user):
    return await make_user(email="admin@example.com", role=UserRole.ADMIN)


@pytest.fixture
def make_product(db_manager):
    async def _make(name: str = "Sweet Tea Syrup", price: str = "10.00", stock: int = 10, **fields) -> Product:
        async with db_manager.session() as db:
            product = Product(name=name, price=Decimal(price), stock=stock, sales=0, **fields)
            db.add(product)
            await db.commit()
            return product
    return _make


@pytest.fixture
def make_order(db_manager):
    async def _make(
        user: Optional[User] = None,
        guest_email: Optional[str] = None,
        total: str = "25.00",
        status: OrderStatus = OrderStatus.CONFIRMED,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        product: Optional[Product] = None,
        quantity: int = 1,
        **fields,
    ) -> Order:
        if user is None and guest_email is None:
            guest_email = "guest@example.com"
        async with db_manager.session() as db:
            order = Order(
                order_number=f"LR-{int(time.time() * 1000)}-{uuid4().hex[:9].upper()}",
                user_id=user.id if user else None,
                guest_email=guest_email,
                total_amount=Decimal(total),
                shipping_amount=Decimal("0"),
                tax_amount=Decimal("0"),
                status=status,
                payment_status=payment_status,
                **fields,
            )
            db.add(order)
            await db.flush()
            if product is not None:
                db.add(OrderItem(order_id=order.id, product_id=product.id, quantity=quantity, price=product.price))
            await db.commit()
            return order
    return _make


@pytest.fixture
def make_payment(db_manager):
    async def _make(order: Order, status: PaymentStatus = PaymentStatus.PENDING,
                    payment_intent_id: Optional[str] = None, amount: Optional[Decimal] = None) -> Payment:
        async with db_manager.session() as db:
            payment = Payment(
                order_id=order.id,
                payment_intent_id=payment_intent_id or f"pi_{uuid4().hex[:16]}",
                amount=amount if amount is not None else order.total_amount,
                currency="usd",
                status=status,
                payment_metadata={},
            )
            db.add(payment)
            await db.commit()
            return payment
    return _make


@pytest.fixture
def fetch(db_manager):
    """Read a row through a fresh session so committed writes from other sessions are visible."""
    async def _fetch(model, **criteria):
        async with db_manager.session() as db:
            query = select(model)
            for column, value in criteria.items():
                query = query.where(getattr(model, column) == value)
            return (await db.execute(query)).scalars().all()
    return _fetch


@pytest.fixture
def notifications_for(fetch):
    async def _notifications(user: User) -> List[Notification]:
        return await fetch(Notification, user_id=user.id)
    return _notifications
