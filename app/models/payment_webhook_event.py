"""Razorpay Webhook Event model for idempotency."""
from sqlalchemy import Column, BigInteger, String, DateTime, Text, ForeignKey, JSON
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class PaymentWebhookEvent(Base):
    """Log of received Razorpay webhook events, deduplicated by event id."""
    __tablename__ = 'payment_webhook_event'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False, index=True)
    dedupe_key = Column(String(100), nullable=False, unique=True)
    payment_id = Column(BigInteger, ForeignKey('payment.id', ondelete='SET NULL'), nullable=True, index=True)
    payload_json = Column(JSON, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    processed_at = Column(DateTime(timezone=True))
    status = Column(String(20), nullable=False, default='RECEIVED', index=True)
    error_message = Column(Text, nullable=True)

    def __repr__(self):
        return f"<PaymentWebhookEvent(event_type='{self.event_type}', status='{self.status}')>"

    def to_dict(self):
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'event_type': self.event_type,
            'dedupe_key': self.dedupe_key,
            'payment_id': self.payment_id,
            'received_at': self.received_at.isoformat() if self.received_at else None,
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
            'status': self.status
        }

    @property
    def is_processed(self):
        """Check if event has been processed."""
        return self.status == 'PROCESSED'
