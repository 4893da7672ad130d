"""Inventory Movement model."""
import enum
from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class MovementReason(str, enum.Enum):
    """Why a stock counter changed."""
    RESERVE = 'reserve'
    COMMIT = 'commit'
    RELEASE = 'release'
    ADJUST = 'adjust'
    RESTOCK = 'restock'


class InventoryMovement(Base):
    """Append-only log of stock counter changes."""

    __tablename__ = 'inventory_movement'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    stock_id = Column(BigInteger, ForeignKey('product_stock.id', ondelete='CASCADE'), nullable=False, index=True)
    reason = Column(String(20), nullable=False)
    change = Column(Integer, nullable=False)
    reference = Column(String(100), nullable=True, index=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    stock = relationship('ProductStock')

    def __repr__(self):
        return f"<InventoryMovement(stock_id={self.stock_id}, reason='{self.reason}', change={self.change})>"
