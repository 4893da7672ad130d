"""Order Status History model."""
from datetime import datetime
from sqlalchemy import Column, BigInteger, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


class OrderStatusHistory(Base):
    """Append-only status log entry."""

    __tablename__ = 'order_status_history'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    note = Column(Text, nullable=True)
    actor_id = Column(BigInteger, ForeignKey('app_user.id'), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    order = relationship('Order', back_populates='status_history')

    def to_dict(self):
        return {
            'status': self.status,
            'note': self.note,
            'actor_id': self.actor_id,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
        }
