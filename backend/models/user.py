from enum import Enum

from sqlalchemy import Column, String, Boolean, Enum as SQLEnum
from sqlalchemy.orm import relationship
from core.database import BaseModel, CHAR_LENGTH


class UserRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"


class User(BaseModel):
    __tablename__ = "users"
    __table_args__ = {'extend_existing': True}

    email = Column(String(CHAR_LENGTH), unique=True,
                   index=True, nullable=False)
    firstname = Column(String(CHAR_LENGTH), nullable=False)
    lastname = Column(String(CHAR_LENGTH), nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.CUSTOMER, nullable=False)
    active = Column(Boolean, default=True)

    orders = relationship("Order", back_populates="user", lazy="select")
    cart_items = relationship(
        "CartItem", back_populates="user", cascade="all, delete-orphan", lazy="select")
    notifications = relationship(
        "Notification", back_populates="user", lazy="select")

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def full_name(self) -> str:
        return f"{self.firstname} {self.lastname}".strip()

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "email": self.email,
            "firstname": self.firstname,
            "lastname": self.lastname,
            "role": self.role.value if self.role else None,
            "active": self.active,
        }
