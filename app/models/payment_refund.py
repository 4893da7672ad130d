"""Payment Refund model."""
from sqlalchemy import Column, BigInteger, String, Text, Numeric, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class PaymentRefund(Base):
    """Refund issued against a captured payment."""

    __tablename__ = 'payment_refund'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id = Column(BigInteger, ForeignKey('payment.id', ondelete='CASCADE'), nullable=False, index=True)
    gateway_refund_id = Column(String(100), nullable=True, unique=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default='pending')
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    payment = relationship('Payment', back_populates='refunds')

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'processed', 'failed')", name='check_refund_status'),
        CheckConstraint('amount > 0', name='check_refund_amount'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'gateway_refund_id': self.gateway_refund_id,
            'amount': float(self.amount),
            'status': self.status,
            'reason': self.reason,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<PaymentRefund(id={self.id}, amount={self.amount}, status='{self.status}')>"
