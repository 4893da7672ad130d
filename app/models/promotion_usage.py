"""Promotion Usage model."""
from datetime import datetime
from sqlalchemy import Column, BigInteger, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from app.database import Base, BigIntPK


class PromotionUsage(Base):
    """Per-user redemption counter for a promotion."""

    __tablename__ = 'promotion_usage'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    promotion_id = Column(BigInteger, ForeignKey('promotion.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(BigInteger, ForeignKey('app_user.id', ondelete='CASCADE'), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    last_used = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    promotion = relationship('Promotion', back_populates='usages')

    __table_args__ = (
        UniqueConstraint('promotion_id', 'user_id', name='uq_promotion_usage_user'),
    )

    def __repr__(self):
        return f"<PromotionUsage(promotion_id={self.promotion_id}, user_id={self.user_id}, count={self.count})>"
