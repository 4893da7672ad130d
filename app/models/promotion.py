"""Promotion model."""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, BigInteger, String, Text, Boolean, Integer, Numeric, DateTime, JSON, CheckConstraint
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class PromotionType(str, enum.Enum):
    """Discount kinds understood by the promotion evaluator."""
    PERCENTAGE = 'percentage'
    FIXED = 'fixed'
    SHIPPING = 'shipping'
    BUY_X_GET_Y = 'buy_x_get_y'
    PRODUCT_PERCENTAGE = 'product_percentage'
    PRODUCT_FIXED = 'product_fixed'
    CATEGORY_PERCENTAGE = 'category_percentage'
    CATEGORY_FIXED = 'category_fixed'


class CustomerType(str, enum.Enum):
    ALL = 'all'
    NEW = 'new'
    EXISTING = 'existing'


class Promotion(Base):
    """Discount rule, reached by code or applied automatically when code is NULL."""

    __tablename__ = 'promotion'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    code = Column(String(50), nullable=True, unique=True)
    type = Column(String(30), nullable=False)
    value = Column(Numeric(10, 2), nullable=False, default=0)
    max_discount = Column(Numeric(10, 2), nullable=True)
    min_order_value = Column(Numeric(10, 2), nullable=False, default=0)
    minimum_items = Column(Integer, nullable=False, default=0)
    applicable_products = Column(JSON, nullable=False, default=list)
    applicable_categories = Column(JSON, nullable=False, default=list)

    # buy_x_get_y configuration
    buy_quantity = Column(Integer, nullable=True)
    get_quantity = Column(Integer, nullable=True)
    discount_percent = Column(Integer, nullable=False, default=100)

    is_active = Column(Boolean, nullable=False, default=True)
    usage_limit = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    usage_count = Column(Integer, nullable=False, default=0)
    user_usage_limit = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    valid_from = Column(DateTime, nullable=False, default=datetime.utcnow)
    valid_until = Column(DateTime, nullable=True)
    customer_type = Column(String(10), nullable=False, default=CustomerType.ALL.value)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    usages = relationship('PromotionUsage', back_populates='promotion', cascade='all, delete-orphan')

    __table_args__ = (
        CheckConstraint(
            "type IN ('percentage', 'fixed', 'shipping', 'buy_x_get_y', 'product_percentage', "
            "'product_fixed', 'category_percentage', 'category_fixed')",
            name='check_promotion_type'
        ),
        CheckConstraint("customer_type IN ('all', 'new', 'existing')", name='check_promotion_customer_type'),
        CheckConstraint('valid_until IS NULL OR valid_until > valid_from', name='check_promotion_window'),
        CheckConstraint('discount_percent BETWEEN 1 AND 100', name='check_promotion_discount_percent'),
    )

    @validates('code')
    def normalize_code(self, key, code):
        """Codes are stored upper-cased; blank means automatic."""
        if code is None:
            return None
        code = code.strip().upper()
        return code or None

    @property
    def is_automatic(self):
        return self.code is None

    def is_within_window(self, now=None):
        now = now or datetime.utcnow()
        if self.valid_from and now < self.valid_from:
            return False
        if self.valid_until and now > self.valid_until:
            return False
        return True

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'code': self.code,
            'type': self.type,
            'value': float(self.value or 0),
            'max_discount': float(self.max_discount) if self.max_discount is not None else None,
            'min_order_value': float(self.min_order_value or 0),
            'minimum_items': self.minimum_items,
            'applicable_products': self.applicable_products or [],
            'applicable_categories': self.applicable_categories or [],
            'buy_x_get_y': {
                'buy_quantity': self.buy_quantity,
                'get_quantity': self.get_quantity,
                'discount_percent': self.discount_percent,
            } if self.type == PromotionType.BUY_X_GET_Y.value else None,
            'is_active': self.is_active,
            'usage_limit': self.usage_limit,
            'usage_count': self.usage_count,
            'user_usage_limit': self.user_usage_limit,
            'valid_from': self.valid_from.isoformat() if self.valid_from else None,
            'valid_until': self.valid_until.isoformat() if self.valid_until else None,
            'customer_type': self.customer_type,
        }

    def __repr__(self):
        return f"<Promotion(id={self.id}, code='{self.code}', type='{self.type}')>"
