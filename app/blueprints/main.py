"""Main blueprint with health check endpoints."""
from flask import Blueprint, current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from app.database import get_session
from app.utils.responses import success_response, error_response

main_bp = Blueprint('main', __name__)


@main_bp.route('/health')
def health():
    """
    Health check endpoint that validates database connection.

    Returns:
        200: Healthy (DB connected)
        500: Unhealthy (DB error)
    """
    try:
        session = get_session()
        row = session.execute(text("SELECT 1 as health_check")).fetchone()

        if row and row[0] == 1:
            return success_response('Database connection successful', {
                'status': 'healthy',
                'database': 'connected',
            })
        return error_response('Unexpected query result', 500, {'status': 'unhealthy', 'database': 'error'})

    except SQLAlchemyError as e:
        current_app.logger.error(f"[HEALTH] Database check failed: {e}")
        return error_response(
            'Failed to connect to database', 500,
            {'status': 'unhealthy', 'database': 'disconnected'}
        )


@main_bp.route('/health/cache')
def health_cache():
    """
    Cache health check endpoint.

    Returns:
        200: Cache OK or Degraded (app continues without cache)

    Note:
        This endpoint NEVER returns 500, as cache is optional.
        If Redis is down, status is "degraded" but app continues.
    """
    from app.services.cache_service import get_cache
    cache = get_cache()

    if not cache.is_available():
        return success_response('Cache disabled or Redis unavailable (app continues without cache)', {
            'status': 'degraded',
            'cache': 'unavailable',
            'redis': 'disconnected',
        })

    cache.set('system', 'health_check', {'test': 'ok'}, ttl=10)
    result = cache.get('system', 'health_check')
    if result and result.get('test') == 'ok':
        return success_response('Cache is working correctly', {
            'status': 'ok',
            'cache': 'connected',
            'redis': 'healthy',
        })
    return success_response('Redis connected but operations failing', {
        'status': 'degraded',
        'cache': 'error',
        'redis': 'connected_but_failing',
    })
