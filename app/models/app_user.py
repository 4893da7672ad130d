"""AppUser model - shoppers and back-office staff with email/password authentication."""
import enum
from datetime import datetime, timedelta, timezone
from sqlalchemy import Column, String, Boolean, DateTime, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from werkzeug.security import generate_password_hash, check_password_hash
from app.database import Base, BigIntPK


class UserRole(str, enum.Enum):
    """Roles consulted by the capability table."""
    CUSTOMER = 'customer'
    STAFF = 'staff'
    MANAGER = 'manager'
    ADMIN = 'admin'


class AppUser(Base):
    """AppUser model - platform users with local authentication."""

    __tablename__ = 'app_user'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=True)
    full_name = Column(String(200), nullable=True)
    phone = Column(String(30), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.CUSTOMER.value)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    cart = relationship('Cart', back_populates='user', uselist=False)
    orders = relationship('Order', back_populates='user')

    __table_args__ = (
        CheckConstraint("role IN ('customer', 'staff', 'manager', 'admin')", name='check_app_user_role'),
    )

    def set_password(self, password):
        """Set password hash."""
        self.password_hash = generate_password_hash(password, method='scrypt')

    def check_password(self, password):
        """Check password against hash."""
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def is_new_customer(self, days=30, now=None):
        """True when the account was registered within the last `days` days."""
        if self.created_at is None:
            return True
        created = self.created_at
        if created.tzinfo is not None:
            created = created.astimezone(timezone.utc).replace(tzinfo=None)
        now = now or datetime.utcnow()
        return created >= now - timedelta(days=days)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'full_name': self.full_name,
            'phone': self.phone,
            'role': self.role,
        }

    def __repr__(self):
        return f"<AppUser(id={self.id}, email='{self.email}', role='{self.role}')>"
