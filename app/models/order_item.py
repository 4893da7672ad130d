"""Order Item model."""
from sqlalchemy import Column, BigInteger, String, Integer, Numeric, ForeignKey, JSON
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


class OrderItem(Base):
    """Order line snapshot; never re-read from the catalog after creation."""

    __tablename__ = 'order_item'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(BigInteger, ForeignKey('product.id', ondelete='SET NULL'), nullable=True)
    variant_id = Column(BigInteger, ForeignKey('product_variant.id', ondelete='SET NULL'), nullable=True)
    variant_sku = Column(String(64), nullable=True)
    variant_name = Column(String, nullable=True)
    attributes = Column(JSON, nullable=False, default=list)
    name = Column(String, nullable=False)
    sku = Column(String(64), nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    gst_percentage = Column(Integer, nullable=False)
    gst_amount = Column(Numeric(10, 2), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    image_url = Column(String(255), nullable=True)

    # Relationships
    order = relationship('Order', back_populates='items')

    def to_dict(self):
        return {
            'id': self.id,
            'product_id': self.product_id,
            'variant': {
                'id': self.variant_id,
                'sku': self.variant_sku,
                'name': self.variant_name,
                'attributes': self.attributes or [],
            } if self.variant_id else None,
            'name': self.name,
            'sku': self.sku,
            'price': float(self.price),
            'quantity': self.quantity,
            'gst_percentage': self.gst_percentage,
            'gst_amount': float(self.gst_amount),
            'subtotal': float(self.subtotal),
            'total': float(self.total),
            'image_url': self.image_url,
        }

    def __repr__(self):
        return f"<OrderItem(id={self.id}, sku='{self.sku}', quantity={self.quantity})>"
