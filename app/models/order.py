"""Order model."""
import enum
from sqlalchemy import (
    Column, BigInteger, String, Text, Numeric, DateTime, ForeignKey, JSON, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class OrderStatus(str, enum.Enum):
    """Order lifecycle status."""
    PENDING = 'pending'
    PROCESSING = 'processing'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'


class OrderPaymentStatus(str, enum.Enum):
    """Payment status as seen from the order."""
    PENDING = 'pending'
    PAID = 'paid'
    FAILED = 'failed'
    REFUNDED = 'refunded'


class PaymentMethod(str, enum.Enum):
    RAZORPAY = 'razorpay'
    COD = 'cod'


# Forward-only state machine; cancelled and refunded are terminal
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING.value: {OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PROCESSING.value: {
        OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value
    },
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value, OrderStatus.REFUNDED.value},
    OrderStatus.DELIVERED.value: {OrderStatus.REFUNDED.value},
    OrderStatus.CANCELLED.value: set(),
    OrderStatus.REFUNDED.value: set(),
}


class Order(Base):
    """Immutable purchase snapshot with its own status lifecycle."""

    __tablename__ = 'orders'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_number = Column(String(20), nullable=False, unique=True, index=True)
    user_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=False, index=True)

    # Addresses captured at checkout
    billing_address = Column(JSON, nullable=False)
    billing_email = Column(String(255), nullable=True)
    shipping_address = Column(JSON, nullable=False)

    # Shipping
    shipping_method = Column(String(30), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    carrier = Column(String(100), nullable=True)
    estimated_delivery = Column(DateTime, nullable=True)

    # Pricing summary
    subtotal = Column(Numeric(10, 2), nullable=False)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)

    # Promotion applied at checkout
    coupon_code = Column(String(50), nullable=True)
    promotion_id = Column(BigInteger, ForeignKey('promotion.id', ondelete='SET NULL'), nullable=True)

    # Payment sub-record
    payment_method = Column(String(20), nullable=False, default=PaymentMethod.RAZORPAY.value)
    payment_status = Column(String(20), nullable=False, default=OrderPaymentStatus.PENDING.value)
    transaction_id = Column(String(100), nullable=True)
    gateway_order_id = Column(String(100), nullable=True, index=True)
    paid_at = Column(DateTime, nullable=True)

    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    inventory_state = Column(String(10), nullable=False, default='reserved')  # reserved | committed | released | restocked

    invoice_url = Column(String(255), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=False, default=0)
    refunded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship('AppUser', back_populates='orders')
    items = relationship('OrderItem', back_populates='order', cascade='all, delete-orphan', order_by='OrderItem.id')
    status_history = relationship(
        'OrderStatusHistory',
        back_populates='order',
        cascade='all, delete-orphan',
        order_by='OrderStatusHistory.id'
    )
    notes = relationship('OrderNote', back_populates='order', cascade='all, delete-orphan', order_by='OrderNote.id')
    payments = relationship('Payment', back_populates='order')

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'shipped', 'delivered', 'cancelled', 'refunded')",
            name='check_order_status'
        ),
        CheckConstraint(
            "payment_status IN ('pending', 'paid', 'failed', 'refunded')",
            name='check_order_payment_status'
        ),
        CheckConstraint("payment_method IN ('razorpay', 'cod')", name='check_order_payment_method'),
    )

    def can_transition_to(self, new_status):
        return new_status in ALLOWED_TRANSITIONS.get(self.status, set())

    @property
    def is_paid(self):
        return self.payment_status == OrderPaymentStatus.PAID.value

    def to_dict(self, include_internal=False):
        """Serialize; internal notes are only exposed to staff."""
        notes = [n for n in self.notes if include_internal or n.is_public]
        return {
            'id': self.id,
            'order_number': self.order_number,
            'user_id': self.user_id,
            'status': self.status,
            'items': [item.to_dict() for item in self.items],
            'billing': {'address': self.billing_address, 'email': self.billing_email},
            'shipping': {
                'address': self.shipping_address,
                'method': self.shipping_method,
                'cost': float(self.shipping_cost or 0),
                'tracking_number': self.tracking_number,
                'carrier': self.carrier,
                'estimated_delivery': self.estimated_delivery.isoformat() if self.estimated_delivery else None,
            },
            'pricing': {
                'subtotal': float(self.subtotal),
                'tax': float(self.tax),
                'shipping': float(self.shipping_cost),
                'discount': float(self.discount),
                'total': float(self.total),
            },
            'coupon_applied': {'code': self.coupon_code, 'discount': float(self.discount)} if self.coupon_code else None,
            'payment': {
                'method': self.payment_method,
                'status': self.payment_status,
                'transaction_id': self.transaction_id,
                'gateway_order_id': self.gateway_order_id,
                'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            },
            'status_history': [h.to_dict() for h in self.status_history],
            'notes': [n.to_dict() for n in notes],
            'invoice_url': self.invoice_url,
            'cancel_reason': self.cancel_reason,
            'refund_amount': float(self.refund_amount or 0),
            'refunded_at': self.refunded_at.isoformat() if self.refunded_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Order(id={self.id}, number='{self.order_number}', status='{self.status}', total={self.total})>"
