"""Configuration module for Flask application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Base configuration class."""

    # Flask
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = os.getenv('FLASK_DEBUG', '1') == '1'
    ENV = os.getenv('FLASK_ENV', 'development')

    # Session Configuration (Production-safe defaults)
    SESSION_COOKIE_SECURE = os.getenv('SESSION_COOKIE_SECURE', 'false').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv('SESSION_COOKIE_SAMESITE', 'Lax')
    PERMANENT_SESSION_LIFETIME = 86400  # 24 hours

    # Preferred URL scheme (for url_for with _external=True)
    PREFERRED_URL_SCHEME = os.getenv('PREFERRED_URL_SCHEME', 'http')

    # Authentication (bearer tokens + guest carts)
    JWT_EXPIRATION_HOURS = int(os.getenv('JWT_EXPIRATION_HOURS', '24'))
    GUEST_COOKIE_NAME = os.getenv('GUEST_COOKIE_NAME', 'guest_id')
    GUEST_COOKIE_MAX_AGE = 60 * 60 * 24 * 30  # 30 days

    # Error responses carry detail only in development
    EXPOSE_ERROR_DETAILS = os.getenv(
        'EXPOSE_ERROR_DETAILS',
        'true' if ENV == 'development' else 'false'
    ).lower() == 'true'

    # Database - Support multiple environment variable naming conventions
    # Priority: DATABASE_URL > DB_* > POSTGRES_*
    DATABASE_URL = os.getenv('DATABASE_URL')

    if not DATABASE_URL:
        # Try DB_* variables (Docker style)
        DB_HOST = os.getenv('DB_HOST') or os.getenv('POSTGRES_HOST', 'localhost')
        DB_PORT = os.getenv('DB_PORT') or os.getenv('POSTGRES_PORT', '5432')
        DB_NAME = os.getenv('DB_NAME') or os.getenv('POSTGRES_DB', 'store')
        DB_USER = os.getenv('DB_USER') or os.getenv('POSTGRES_USER', 'store')
        DB_PASSWORD = os.getenv('DB_PASSWORD') or os.getenv('POSTGRES_PASSWORD', 'store')

        DATABASE_URL = (
            f"postgresql://{DB_USER}:{DB_PASSWORD}"
            f"@{DB_HOST}:{DB_PORT}/{DB_NAME}"
        )

    # SQLAlchemy
    SQLALCHEMY_DATABASE_URI = DATABASE_URL
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = os.getenv('SQLALCHEMY_ECHO', 'false').lower() == 'true'

    # Store rules
    DEFAULT_GST_PERCENTAGE = int(os.getenv('DEFAULT_GST_PERCENTAGE', '18'))
    LOW_STOCK_THRESHOLD = int(os.getenv('LOW_STOCK_THRESHOLD', '5'))
    NEW_CUSTOMER_DAYS = int(os.getenv('NEW_CUSTOMER_DAYS', '30'))
    ORDERS_PER_PAGE = int(os.getenv('ORDERS_PER_PAGE', '10'))
    MAX_PAGE_SIZE = 100

    # Shipping methods offered at checkout: code -> (label, cost, free above subtotal)
    SHIPPING_METHODS = {
        'standard': {'name': 'Standard Delivery', 'cost': '99.00', 'free_above': '999.00', 'days': 5},
        'express': {'name': 'Express Delivery', 'cost': '199.00', 'free_above': None, 'days': 2},
        'same_day': {'name': 'Same Day Delivery', 'cost': '349.00', 'free_above': None, 'days': 0},
    }
    DEFAULT_SHIPPING_METHOD = os.getenv('DEFAULT_SHIPPING_METHOD', 'standard')

    # Business Information (for invoices)
    BUSINESS_NAME = os.getenv('BUSINESS_NAME', 'My Store')
    BUSINESS_ADDRESS = os.getenv('BUSINESS_ADDRESS', '')
    BUSINESS_PHONE = os.getenv('BUSINESS_PHONE', '')
    BUSINESS_EMAIL = os.getenv('BUSINESS_EMAIL', '')
    BUSINESS_GSTIN = os.getenv('BUSINESS_GSTIN', '')

    # Razorpay
    RAZORPAY_KEY_ID = os.getenv('RAZORPAY_KEY_ID', '')
    RAZORPAY_KEY_SECRET = os.getenv('RAZORPAY_KEY_SECRET', '')
    RAZORPAY_WEBHOOK_SECRET = os.getenv('RAZORPAY_WEBHOOK_SECRET', '')
    RAZORPAY_BASE_URL = os.getenv('RAZORPAY_BASE_URL', 'https://api.razorpay.com/v1')
    RAZORPAY_TIMEOUT = int(os.getenv('RAZORPAY_TIMEOUT', '10'))  # seconds
    PAYMENT_CURRENCY = os.getenv('PAYMENT_CURRENCY', 'INR')
    PAYMENT_EXPIRY_MINUTES = int(os.getenv('PAYMENT_EXPIRY_MINUTES', '30'))

    # Redis Cache Configuration
    REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
    CACHE_ENABLED = os.getenv('CACHE_ENABLED', 'true').lower() == 'true'
    CACHE_DEFAULT_TTL = int(os.getenv('CACHE_DEFAULT_TTL', '60'))  # seconds
    CACHE_PROMOTIONS_TTL = int(os.getenv('CACHE_PROMOTIONS_TTL', '300'))
    CACHE_STATS_TTL = int(os.getenv('CACHE_STATS_TTL', '30'))
    CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'store')


class TestingConfig(Config):
    """Configuration used by the test suite."""

    TESTING = True
    DEBUG = False
    ENV = 'testing'
    EXPOSE_ERROR_DETAILS = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ECHO = False
    CACHE_ENABLED = False
    RAZORPAY_KEY_ID = 'rzp_test_key'
    RAZORPAY_KEY_SECRET = 'test_key_secret'
    RAZORPAY_WEBHOOK_SECRET = 'test_webhook_secret'
