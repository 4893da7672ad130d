"""Models package - exports all SQLAlchemy models."""
# Accounts
from app.models.app_user import AppUser, UserRole

# Catalog
from app.models.category import Category
from app.models.product import Product
from app.models.product_variant import ProductVariant
from app.models.product_stock import ProductStock
from app.models.inventory_movement import InventoryMovement, MovementReason

# Cart & promotions
from app.models.cart import Cart
from app.models.cart_item import CartItem
from app.models.promotion import Promotion, PromotionType, CustomerType
from app.models.promotion_usage import PromotionUsage

# Orders
from app.models.order import Order, OrderStatus, OrderPaymentStatus, PaymentMethod, ALLOWED_TRANSITIONS
from app.models.order_item import OrderItem
from app.models.order_status_history import OrderStatusHistory
from app.models.order_note import OrderNote

# Payments
from app.models.payment import Payment, PaymentStatus, OPEN_STATUSES, SETTLED_STATUSES
from app.models.payment_refund import PaymentRefund
from app.models.payment_webhook_event import PaymentWebhookEvent

__all__ = [
    # Accounts
    'AppUser', 'UserRole',
    # Catalog
    'Category', 'Product', 'ProductVariant', 'ProductStock', 'InventoryMovement', 'MovementReason',
    # Cart & promotions
    'Cart', 'CartItem', 'Promotion', 'PromotionType', 'CustomerType', 'PromotionUsage',
    # Orders
    'Order', 'OrderStatus', 'OrderPaymentStatus', 'PaymentMethod', 'ALLOWED_TRANSITIONS',
    'OrderItem', 'OrderStatusHistory', 'OrderNote',
    # Payments
    'Payment', 'PaymentStatus', 'OPEN_STATUSES', 'SETTLED_STATUSES', 'PaymentRefund', 'PaymentWebhookEvent',
]
