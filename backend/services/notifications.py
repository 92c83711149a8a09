# In-app notifications for order owners.
# Writes go through the side-effect dispatcher on their own session, so a
# failed insert never reaches the operation that triggered it.

import logging
from typing import Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.background import SideEffectDispatcher
from models.notifications import Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationService:
    """Creates in-app notifications, best effort"""

    def __init__(self, session_factory: async_sessionmaker, dispatcher: SideEffectDispatcher):
        self.session_factory = session_factory
        self.dispatcher = dispatcher

    def notify_user(
        self,
        user_id: Optional[Union[UUID, str]],
        title: str,
        message: str,
        type: NotificationType,
        related_id: Optional[str] = None,
    ) -> None:
        """Queue a notification. Guest orders have no user and are skipped."""
        if not user_id:
            logger.debug(f"No user to notify for {type.value} notification on {related_id}")
            return
        self.dispatcher.dispatch(
            f"notification:{type.value.lower()}",
            self.create_notification,
            user_id,
            title,
            message,
            type,
            related_id,
        )

    async def create_notification(
        self,
        user_id: Union[UUID, str],
        title: str,
        message: str,
        type: NotificationType,
        related_id: Optional[str] = None,
    ) -> Notification:
        async with self.session_factory() as db:  # type: AsyncSession
            notification = Notification(
                user_id=UUID(str(user_id)),
                title=title,
                message=message,
                type=type,
                related_id=related_id,
            )
            db.add(notification)
            await db.commit()
            await db.refresh(notification)

        logger.info(f"Notification {notification.id} ({type.value}) created for user {user_id}")
        return notification
