import hashlib
import hmac
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock
import itertools

from app import create_app
from app.database import Base, create_all, get_session
from app.middleware import issue_token
from app.services import cart_service, order_service
from app.services.payment_service import PaymentService
from app.models import (
    AppUser, Category, Product, ProductVariant, ProductStock, Promotion
)

_gateway_ids = itertools.count(1)


@pytest.fixture(scope='session')
def app():
    """Create application instance for testing (in-memory SQLite)."""
    app = create_app('config.TestingConfig')
    ctx = app.app_context()
    ctx.push()
    create_all()
    yield app
    ctx.pop()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def session(app):
    """Database session; every table is emptied after the test."""
    session = get_session()
    yield session
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.expunge_all()


@pytest.fixture(autouse=True)
def _clean_database(session):
    """Make sure every test starts and ends with empty tables."""
    yield


@pytest.fixture(scope='function')
def gateway(monkeypatch):
    """Razorpay client double; every created order gets a fresh id."""
    client = MagicMock()

    def create_order(amount, currency, receipt, notes=None):
        return {
            'id': f'order_test{next(_gateway_ids):06d}',
            'entity': 'order',
            'amount': amount,
            'currency': currency,
            'receipt': receipt,
            'status': 'created',
        }

    def refund_payment(payment_id, amount, notes=None):
        return {
            'id': f'rfnd_test{next(_gateway_ids):06d}',
            'payment_id': payment_id,
            'amount': amount,
            'status': 'processed',
        }

    client.create_order.side_effect = create_order
    client.refund_payment.side_effect = refund_payment
    monkeypatch.setattr('app.services.payment_service.RazorpayClient', lambda: client)
    return client


def make_user(session, email, role='customer', created_at=None):
    user = AppUser(email=email, full_name=email.split('@')[0].title(), role=role, active=True)
    user.set_password('password123')
    if created_at is not None:
        user.created_at = created_at
    session.add(user)
    session.commit()
    return user


def make_product(session, sku, name, price, stock=10, category=None, gst=18, threshold=2):
    product = Product(
        sku=sku,
        name=name,
        regular_price=Decimal(str(price)),
        gst_percentage=gst,
        category_id=category.id if category else None,
        active=True
    )
    session.add(product)
    session.flush()
    session.add(ProductStock(product_id=product.id, quantity=stock, reserved=0, low_stock_threshold=threshold))
    session.commit()
    return product


@pytest.fixture
def customer(session):
    """Registered customer, older than the new-customer window."""
    return make_user(session, 'customer@test.com', created_at=datetime.utcnow() - timedelta(days=90))


@pytest.fixture
def other_customer(session):
    return make_user(session, 'other@test.com', created_at=datetime.utcnow() - timedelta(days=90))


@pytest.fixture
def admin(session):
    return make_user(session, 'admin@test.com', role='admin')


@pytest.fixture
def staff(session):
    return make_user(session, 'staff@test.com', role='staff')


@pytest.fixture
def category(session):
    category = Category(name='Apparel', slug='apparel')
    session.add(category)
    session.commit()
    return category


@pytest.fixture
def shirt(session, category):
    """Rs 500 product, 18% GST, 10 in stock."""
    return make_product(session, 'SHIRT-001', 'Shirt', '500.00', stock=10, category=category)


@pytest.fixture
def mug(session):
    """Rs 200 product, 18% GST, 10 in stock, no category."""
    return make_product(session, 'MUG-001', 'Mug', '200.00', stock=10)


@pytest.fixture
def shirt_variant(session, shirt):
    variant = ProductVariant(
        product_id=shirt.id,
        name='Large',
        sku='SHIRT-001-L',
        regular_price=Decimal('550.00'),
        attributes=[{'name': 'size', 'value': 'L'}],
        active=True
    )
    session.add(variant)
    session.flush()
    session.add(ProductStock(product_id=shirt.id, variant_id=variant.id, quantity=3, reserved=0, low_stock_threshold=1))
    session.commit()
    return variant


@pytest.fixture
def save10(session):
    """10% off everything."""
    promotion = Promotion(
        name='Save 10',
        code='SAVE10',
        type='percentage',
        value=Decimal('10'),
        min_order_value=Decimal('0'),
        valid_from=datetime.utcnow() - timedelta(days=1),
        valid_until=datetime.utcnow() + timedelta(days=30),
        is_active=True
    )
    session.add(promotion)
    session.commit()
    return promotion


def auth_headers_for(user):
    return {'Authorization': f'Bearer {issue_token(user)}'}


@pytest.fixture
def auth_headers(customer):
    return auth_headers_for(customer)


@pytest.fixture
def admin_headers(admin):
    return auth_headers_for(admin)


@pytest.fixture
def address():
    return {
        'name': 'Asha Rao',
        'street': '12 MG Road',
        'city': 'Bengaluru',
        'state': 'Karnataka',
        'postalCode': '560001',
        'phone': '+91 98450 00000',
    }


@pytest.fixture
def headers_for():
    """Bearer headers for any user."""
    return auth_headers_for


@pytest.fixture
def product_factory(session):
    """Create extra products: product_factory(sku, name, price, stock=10, ...)."""
    def factory(sku, name, price, **kwargs):
        return make_product(session, sku, name, price, **kwargs)
    return factory


@pytest.fixture
def user_factory(session):
    def factory(email, role='customer', created_at=None):
        return make_user(session, email, role=role, created_at=created_at)
    return factory


def checkout_signature(gateway_order_id, gateway_payment_id, secret='test_key_secret'):
    """Signature Razorpay Checkout returns for a successful payment."""
    message = f'{gateway_order_id}|{gateway_payment_id}'.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def webhook_signature(body, secret='test_webhook_secret'):
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def sign():
    return checkout_signature


@pytest.fixture
def sign_webhook():
    return webhook_signature


@pytest.fixture
def place_order(session, customer, shirt, address):
    """Checkout a fresh cart: place_order(quantity=1, payment_method='cod', ...)."""
    def factory(quantity=1, payment_method='cod', user=None, coupon=None, lines=None):
        owner = user or customer
        cart = cart_service.get_or_create(session, user_id=owner.id)
        for product, product_quantity in (lines or [(shirt, quantity)]):
            cart_service.add_item(session, cart, product.id, product_quantity)
        if coupon:
            cart_service.apply_coupon(session, cart, coupon)
        return order_service.create_from_cart(session, cart, owner, address, payment_method=payment_method)
    return factory


@pytest.fixture
def pay_order(session, gateway):
    """Create a Razorpay intent for an order and confirm it with a valid signature."""
    def pay(order, gateway_payment_id=None):
        service = PaymentService(session)
        payment = service.create_intent_for_order(order)['payment']
        gateway_payment_id = gateway_payment_id or f'pay_{payment.gateway_order_id[-6:]}'
        service.verify_confirmation(
            payment.gateway_order_id,
            gateway_payment_id,
            checkout_signature(payment.gateway_order_id, gateway_payment_id)
        )
        return payment
    return pay
