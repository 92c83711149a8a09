from sqlalchemy import Column, String, ForeignKey, JSON
from core.database import BaseModel, CHAR_LENGTH, GUID


class ActivityLog(BaseModel):
    """Audit trail for events that need a human (disputes, manual overrides)"""
    __tablename__ = "activity_logs"
    __table_args__ = {'extend_existing': True}

    user_id = Column(GUID(), ForeignKey("users.id"), nullable=True)
    action_type = Column(String(100), nullable=False)  # payment_dispute, order_status_override
    entity = Column(String(50), nullable=True)  # order, payment
    entity_id = Column(String(CHAR_LENGTH), nullable=True)
    description = Column(String(CHAR_LENGTH), nullable=False)
    meta_data = Column(JSON, nullable=True)  # Renamed from metadata to avoid SQLAlchemy reserved name

    def to_dict(self) -> dict:
        """Convert activity log to dictionary for API responses"""
        return {
            "id": str(self.id),
            "user_id": str(self.user_id) if self.user_id else None,
            "action_type": self.action_type,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "description": self.description,
            "metadata": self.meta_data,  # Return as metadata in API
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
