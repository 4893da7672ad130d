"""Cart model."""
from sqlalchemy import Column, BigInteger, String, Numeric, Text, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class Cart(Base):
    """
    Shopping cart owned by a user or by a guest cookie.

    Totals are derived from the items on every read (see cart_service.calculate_totals).
    """

    __tablename__ = 'cart'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, ForeignKey('app_user.id', ondelete='CASCADE'), nullable=True, unique=True)
    guest_id = Column(String(64), nullable=True, unique=True)
    coupon_code = Column(String(50), nullable=True)
    shipping_method = Column(String(30), nullable=True)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship('AppUser', back_populates='cart')
    items = relationship(
        'CartItem',
        back_populates='cart',
        cascade='all, delete-orphan',
        order_by='CartItem.id'
    )

    __table_args__ = (
        CheckConstraint('user_id IS NOT NULL OR guest_id IS NOT NULL', name='check_cart_owner'),
    )

    @property
    def item_count(self):
        return sum(item.quantity for item in self.items)

    def find_item(self, product_id, variant_id=None):
        """Line for the same product+variant, if present."""
        for item in self.items:
            if item.product_id == product_id and item.variant_id == variant_id:
                return item
        return None

    def __repr__(self):
        owner = f"user_id={self.user_id}" if self.user_id else f"guest_id='{self.guest_id}'"
        return f"<Cart(id={self.id}, {owner}, items={len(self.items)})>"
