"""Product Stock model."""
from sqlalchemy import Column, BigInteger, Integer, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class ProductStock(Base):
    """Inventory counters for a product, or for one of its variants."""

    __tablename__ = 'product_stock'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    product_id = Column(BigInteger, ForeignKey('product.id', ondelete='CASCADE'), nullable=False)
    variant_id = Column(BigInteger, ForeignKey('product_variant.id', ondelete='CASCADE'), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=5)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    product = relationship('Product')
    variant = relationship('ProductVariant')

    __table_args__ = (
        UniqueConstraint('product_id', 'variant_id', name='uq_product_stock_product_variant'),
        CheckConstraint('quantity >= 0', name='check_stock_quantity'),
        CheckConstraint('reserved >= 0', name='check_stock_reserved'),
    )

    @property
    def available(self):
        """Units that can still be sold."""
        return (self.quantity or 0) - (self.reserved or 0)

    @property
    def is_low(self):
        return self.available <= self.low_stock_threshold

    def __repr__(self):
        return (
            f"<ProductStock(product_id={self.product_id}, variant_id={self.variant_id}, "
            f"quantity={self.quantity}, reserved={self.reserved})>"
        )
