"""Product model."""
from sqlalchemy import Column, BigInteger, String, Boolean, Numeric, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class Product(Base):
    """Sellable catalog product."""

    __tablename__ = 'product'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    sku = Column(String(64), nullable=False, unique=True)
    name = Column(String, nullable=False)
    category_id = Column(BigInteger, ForeignKey('category.id'), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    regular_price = Column(Numeric(10, 2), nullable=False)
    sale_price = Column(Numeric(10, 2), nullable=True)
    gst_percentage = Column(Integer, nullable=False, default=18)
    image_url = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    category = relationship('Category', foreign_keys=[category_id])
    variants = relationship('ProductVariant', back_populates='product', cascade='all, delete-orphan')
    stock = relationship(
        'ProductStock',
        primaryjoin='and_(ProductStock.product_id == Product.id, ProductStock.variant_id.is_(None))',
        uselist=False,
        viewonly=True
    )

    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}', sku='{self.sku}')>"

    @property
    def price(self):
        """Effective selling price: sale price when set, else regular price."""
        if self.sale_price is not None and self.sale_price > 0:
            return self.sale_price
        return self.regular_price
