from sqlalchemy import Column, String, Boolean, Integer, Numeric, Text, CheckConstraint
from core.database import BaseModel, CHAR_LENGTH


class Product(BaseModel):
    """Catalog entry; only the fields checkout needs live here"""
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint("sales >= 0", name="ck_products_sales_non_negative"),
        {'extend_existing': True}
    )

    name = Column(String(CHAR_LENGTH), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    sales = Column(Integer, nullable=False, default=0)
    # Soft delete; inactive products can't be bought
    is_active = Column(Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "price": float(self.price) if self.price is not None else None,
            "stock": self.stock,
            "sales": self.sales,
            "is_active": self.is_active,
        }
