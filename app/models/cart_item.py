"""Cart Item model."""
from decimal import Decimal
from sqlalchemy import Column, BigInteger, String, Integer, Numeric, ForeignKey, JSON, CheckConstraint
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


class CartItem(Base):
    """Cart line with a unit price snapshot taken when the item was added."""

    __tablename__ = 'cart_item'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    cart_id = Column(BigInteger, ForeignKey('cart.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id = Column(BigInteger, ForeignKey('product.id', ondelete='CASCADE'), nullable=False)
    variant_id = Column(BigInteger, ForeignKey('product_variant.id', ondelete='CASCADE'), nullable=True)
    name = Column(String, nullable=False)
    sku = Column(String(64), nullable=True)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    attributes = Column(JSON, nullable=False, default=list)
    gst_percentage = Column(Integer, nullable=False, default=18)
    image_url = Column(String(255), nullable=True)

    # Relationships
    cart = relationship('Cart', back_populates='items')
    product = relationship('Product')
    variant = relationship('ProductVariant')

    __table_args__ = (
        CheckConstraint('quantity >= 1', name='check_cart_item_quantity'),
    )

    @property
    def line_subtotal(self):
        return Decimal(str(self.unit_price)) * self.quantity

    def to_dict(self):
        return {
            'id': self.id,
            'product_id': self.product_id,
            'variant_id': self.variant_id,
            'name': self.name,
            'sku': self.sku,
            'unit_price': float(self.unit_price),
            'quantity': self.quantity,
            'attributes': self.attributes or [],
            'gst_percentage': self.gst_percentage,
            'image_url': self.image_url,
            'subtotal': float(self.line_subtotal),
        }

    def __repr__(self):
        return f"<CartItem(id={self.id}, product_id={self.product_id}, quantity={self.quantity})>"
