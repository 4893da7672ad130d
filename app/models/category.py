"""Category model."""
from sqlalchemy import Column, BigInteger, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base, BigIntPK


class Category(Base):
    """Product Category."""

    __tablename__ = 'category'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    slug = Column(String(120), nullable=False, unique=True)
    parent_id = Column(BigInteger, ForeignKey('category.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    parent = relationship('Category', remote_side=[id])

    def __repr__(self):
        return f"<Category(id={self.id}, name='{self.name}')>"
