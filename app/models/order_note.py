"""Order Note model."""
from datetime import datetime
from sqlalchemy import Column, BigInteger, Boolean, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


class OrderNote(Base):
    """Append-only order note, public (customer visible) or internal."""

    __tablename__ = 'order_note'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    text = Column(Text, nullable=False)
    is_public = Column(Boolean, nullable=False, default=False)
    created_by = Column(BigInteger, ForeignKey('app_user.id'), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    order = relationship('Order', back_populates='notes')

    def to_dict(self):
        return {
            'id': self.id,
            'text': self.text,
            'is_public': self.is_public,
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
