"""
FastAPI dependencies.

Process-wide collaborators (database manager, side-effect dispatcher,
provider clients) are built once by ``create_app`` and kept on
``app.state``; the factories here hand them to each service explicitly.
"""
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from core.exceptions import AuthenticationException, AuthorizationException
from core.utils.auth.jwt_auth import JWTManager
from models.user import User
from services.email import EmailService
from services.notifications import NotificationService
from services.orders import OrderService
from services.payments import PaymentService
from services.shipping import ShipmentService
from services.webhooks import ShippingWebhookService

bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.db_manager.session() as session:
        yield session


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    """The caller's user, or None for guests. A bad token is an error, not a guest."""
    if credentials is None:
        return None

    user_id = JWTManager(get_settings(request)).get_user_id_from_token(credentials.credentials)
    if not user_id:
        raise AuthenticationException(message="Invalid authentication credentials")
    try:
        user_uuid = UUID(str(user_id))
    except ValueError:
        raise AuthenticationException(message="Invalid authentication credentials")

    user = await db.scalar(select(User).where(User.id == user_uuid))
    if not user:
        raise AuthenticationException(message="Could not validate credentials")
    if not user.active:
        raise AuthorizationException(message="Account is not active")
    return user


async def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
    if user is None:
        raise AuthenticationException(message="Not authenticated")
    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Require admin role"""
    if not current_user.is_admin:
        raise AuthorizationException(message="Admin access required")
    return current_user


def get_notification_service(request: Request) -> NotificationService:
    state = request.app.state
    return NotificationService(state.db_manager.session_factory, state.dispatcher)


def get_email_service(request: Request) -> EmailService:
    state = request.app.state
    return EmailService(state.db_manager.session_factory, state.dispatcher, state.settings)


def get_order_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    emails: EmailService = Depends(get_email_service),
) -> OrderService:
    return OrderService(db, settings=request.app.state.settings, emails=emails)


def get_payment_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
) -> PaymentService:
    return PaymentService(db, request.app.state.stripe_gateway, notifications=notifications)


def get_shipment_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
) -> ShipmentService:
    state = request.app.state
    return ShipmentService(
        db,
        state.shippo_client,
        notifications=notifications,
        poller=state.poller,
        settings=state.settings,
    )


def get_shipping_webhook_service(
    db: AsyncSession = Depends(get_db),
    shipments: ShipmentService = Depends(get_shipment_service),
) -> ShippingWebhookService:
    return ShippingWebhookService(db, shipments)
