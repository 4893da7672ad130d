"""Flask application factory."""
from flask import Flask, request
from werkzeug.exceptions import HTTPException
from app.database import init_db, get_session
from app.utils.responses import error_response
import os


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Sentry error tracking in production
    if os.getenv('SENTRY_DSN') and (app.config.get('ENV') == 'production' or os.getenv('FLASK_ENV') == 'production'):
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=os.getenv('SENTRY_DSN'),
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
            profiles_sample_rate=0.1,  # 10% for profiling
            environment=os.getenv('FLASK_ENV', 'production'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    # Redis cache
    from app.services.cache_service import init_cache
    init_cache(app)

    # Prometheus metrics instrumentation
    from app.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Production: Enable ProxyFix for HTTPS behind Nginx reverse proxy
    if app.config.get('ENV') == 'production' or app.config.get('FLASK_ENV') == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=1,      # Trust X-Forwarded-For with 1 proxy
            x_proto=1,    # Trust X-Forwarded-Proto
            x_host=1,     # Trust X-Forwarded-Host
            x_port=1,     # Trust X-Forwarded-Port
            x_prefix=0    # No prefix (not behind a URL prefix)
        )

    # Initialize database
    init_db(app)

    # Shopper context: user from bearer token or session, guest id from header or cookie
    from app.middleware import load_request_context, persist_guest_cookie

    @app.before_request
    def before_request_handler():
        """Load user, role and guest id for each request."""
        load_request_context()

    app.after_request(persist_guest_cookie)

    # Low stock alerts
    from app.services import inventory_service
    from app.blueprints.metrics import low_stock_alerts_total

    @inventory_service.on_low_stock
    def log_low_stock(stock):
        low_stock_alerts_total.inc()
        app.logger.warning(
            f"[INVENTORY] Low stock for product {stock.product_id} (variant {stock.variant_id}): "
            f"{stock.available} available, threshold {stock.low_stock_threshold}"
        )

    # Error Handlers
    from app.exceptions import ApiError

    @app.errorhandler(ApiError)
    def handle_api_error(error):
        """Render typed application errors as the JSON envelope."""
        get_session().rollback()
        if error.status_code >= 500:
            app.logger.error(f"ApiError [{error.status_code}]: {error.message}")
        else:
            app.logger.info(f"ApiError [{error.status_code}] {request.method} {request.path}: {error.message}")
        body = error.to_dict(include_details=app.config.get('EXPOSE_ERROR_DETAILS', False))
        return error_response(body['message'], error.status_code, body.get('error'))

    @app.errorhandler(HTTPException)
    def http_error(error):
        """Routing and protocol errors (404, 405, 413...) in the same envelope."""
        return error_response(error.name, error.code or 500)

    @app.errorhandler(500)
    @app.errorhandler(Exception)
    def internal_error(error):
        import traceback
        get_session().rollback()
        app.logger.error(f"Unhandled Exception: {error}")
        app.logger.error(f"Traceback: {traceback.format_exc()}")

        detail = str(error) if app.config.get('EXPOSE_ERROR_DETAILS') else None
        return error_response('Internal Server Error', 500, detail)

    # Register blueprints
    from app.blueprints.auth import auth_bp
    from app.blueprints.main import main_bp
    from app.blueprints.cart import cart_bp
    from app.blueprints.orders import orders_bp
    from app.blueprints.payments import payments_bp
    from app.blueprints.promotions import promotions_bp
    from app.blueprints.metrics import metrics_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(main_bp)
    app.register_blueprint(cart_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(promotions_bp)
    app.register_blueprint(metrics_bp)

    # Register CLI commands
    from app.cli_commands import init_cli_commands
    init_cli_commands(app)

    return app
