"""Product Variant model."""
from sqlalchemy import Column, BigInteger, String, Boolean, Numeric, ForeignKey, JSON
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


class ProductVariant(Base):
    """Variant of a product (size, colour...) with its own SKU and stock."""

    __tablename__ = 'product_variant'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_id = Column(BigInteger, ForeignKey('product.id', ondelete='CASCADE'), nullable=False)
    name = Column(String, nullable=False)
    sku = Column(String(64), nullable=False, unique=True)
    regular_price = Column(Numeric(10, 2), nullable=False)
    sale_price = Column(Numeric(10, 2), nullable=True)
    attributes = Column(JSON, nullable=False, default=list)
    active = Column(Boolean, nullable=False, default=True)

    # Relationships
    product = relationship('Product', back_populates='variants')

    @property
    def price(self):
        if self.sale_price is not None and self.sale_price > 0:
            return self.sale_price
        return self.regular_price

    def __repr__(self):
        return f"<ProductVariant(id={self.id}, sku='{self.sku}')>"
