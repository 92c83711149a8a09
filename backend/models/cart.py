from sqlalchemy import Column, ForeignKey, Integer, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from core.database import BaseModel, GUID


class CartItem(BaseModel):
    """A persisted cart line; one row per user and product"""
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_items_user_product"),
        CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
        {'extend_existing': True}
    )

    user_id = Column(GUID(), ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(GUID(), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    user = relationship("User", back_populates="cart_items")
    product = relationship("Product", lazy="selectin")
