"""Payment model - local record of a Razorpay order/payment."""
import enum
from decimal import Decimal
from sqlalchemy import (
    Column, BigInteger, String, Text, Boolean, Numeric, DateTime, ForeignKey, JSON, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class PaymentStatus(str, enum.Enum):
    """Gateway payment status."""
    CREATED = 'created'
    AUTHORIZED = 'authorized'
    CAPTURED = 'captured'
    FAILED = 'failed'
    REFUNDED = 'refunded'
    PARTIALLY_REFUNDED = 'partially_refunded'
    DISPUTED = 'disputed'
    EXPIRED = 'expired'


# Statuses in which an intent may still be completed by the shopper
OPEN_STATUSES = (PaymentStatus.CREATED.value, PaymentStatus.AUTHORIZED.value)

# Statuses in which money has been taken
SETTLED_STATUSES = (
    PaymentStatus.CAPTURED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.REFUNDED.value,
    PaymentStatus.DISPUTED.value,
)


class Payment(Base):
    """Payment intent linked to a cart at checkout time or to an order."""

    __tablename__ = 'payment'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    gateway_order_id = Column(String(100), nullable=False, unique=True, index=True)
    gateway_payment_id = Column(String(100), nullable=True, index=True)
    order_id = Column(BigInteger, ForeignKey('orders.id'), nullable=True, index=True)
    cart_id = Column(BigInteger, ForeignKey('cart.id', ondelete='SET NULL'), nullable=True, index=True)
    user_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=True)
    guest_id = Column(String(64), nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default='INR')
    receipt = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.CREATED.value, index=True)
    payment_method = Column(String(30), nullable=True)
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=0)

    notes = Column(JSON, nullable=False, default=dict)
    metadata_json = Column(JSON, nullable=False, default=dict)
    signature_verified = Column(Boolean, nullable=False, default=False)
    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    order = relationship('Order', back_populates='payments')
    refunds = relationship('PaymentRefund', back_populates='payment', cascade='all, delete-orphan', order_by='PaymentRefund.id')

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'authorized', 'captured', 'failed', 'refunded', "
            "'partially_refunded', 'disputed', 'expired')",
            name='check_payment_status'
        ),
        CheckConstraint('refunded_amount <= amount', name='check_payment_refund_cap'),
    )

    @property
    def refundable_amount(self):
        """Captured amount not yet refunded."""
        return Decimal(str(self.amount)) - Decimal(str(self.refunded_amount or 0))

    @property
    def is_open(self):
        return self.status in OPEN_STATUSES

    def to_dict(self):
        return {
            'id': self.id,
            'gateway_order_id': self.gateway_order_id,
            'gateway_payment_id': self.gateway_payment_id,
            'order_id': self.order_id,
            'cart_id': self.cart_id,
            'amount': float(self.amount),
            'currency': self.currency,
            'status': self.status,
            'payment_method': self.payment_method,
            'refunded_amount': float(self.refunded_amount or 0),
            'signature_verified': self.signature_verified,
            'error_code': self.error_code,
            'error_message': self.error_message,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'refunds': [r.to_dict() for r in self.refunds],
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Payment(id={self.id}, gateway_order_id='{self.gateway_order_id}', status='{self.status}')>"
