"""
In-app notifications shown to a customer
"""
from sqlalchemy import Column, String, Boolean, ForeignKey, Text, Index, Enum as SQLEnum
from sqlalchemy.orm import relationship
from core.database import BaseModel, CHAR_LENGTH, GUID
from enum import Enum


class NotificationType(str, Enum):
    """What the notification is about"""
    PAYMENT = "PAYMENT"
    SHIPMENT = "SHIPMENT"
    ORDER = "ORDER"


class Notification(BaseModel):
    __tablename__ = "notifications"
    __table_args__ = (
        Index('idx_notifications_user_id', 'user_id'),
        Index('idx_notifications_user_read', 'user_id', 'read'),
        Index('idx_notifications_related_id', 'related_id'),
        {'extend_existing': True}
    )

    user_id = Column(GUID(), ForeignKey("users.id"), nullable=False)
    title = Column(String(CHAR_LENGTH), nullable=False)
    message = Column(Text, nullable=False)
    read = Column(Boolean, default=False)
    type = Column(SQLEnum(NotificationType), nullable=False)
    # e.g. order_id
    related_id = Column(String(CHAR_LENGTH), nullable=True)

    user = relationship("User", back_populates="notifications")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "type": self.type.value if self.type else None,
            "related_id": self.related_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
