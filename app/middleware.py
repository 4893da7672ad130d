"""Middleware for authentication and shopper context."""
import uuid
from datetime import datetime, timedelta
from functools import wraps

import jwt
from flask import session, g, request, current_app

from app.database import get_session
from app.exceptions import UnauthorizedError
from app.models import AppUser

GUEST_HEADER = 'X-Guest-Id'


def issue_token(user):
    """Signed bearer token for a user (HS256, `sub` = user id)."""
    hours = current_app.config.get('JWT_EXPIRATION_HOURS', 24)
    payload = {
        'sub': str(user.id),
        'role': user.role,
        'iat': datetime.utcnow(),
        'exp': datetime.utcnow() + timedelta(hours=hours),
    }
    return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm='HS256')


def _user_id_from_bearer():
    header = request.headers.get('Authorization', '')
    if not header.lower().startswith('bearer '):
        return None
    token = header.split(' ', 1)[1].strip()
    try:
        payload = jwt.decode(token, current_app.config['SECRET_KEY'], algorithms=['HS256'])
    except jwt.ExpiredSignatureError:
        current_app.logger.info("[AUTH] Expired bearer token")
        return None
    except jwt.InvalidTokenError:
        current_app.logger.info("[AUTH] Invalid bearer token")
        return None
    try:
        return int(payload.get('sub'))
    except (TypeError, ValueError):
        return None


def _valid_guest_id(value):
    if not value:
        return None
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


def load_request_context():
    """
    Load current user, role and guest id into g.

    Called before each request. The user comes from a bearer JWT or the Flask
    session; the guest id from the X-Guest-Id header or the guest cookie.
    """
    g.user = None
    g.user_id = None
    g.user_role = None
    g.new_guest_id = None

    user_id = _user_id_from_bearer() or session.get('user_id')
    if user_id:
        user = get_session().query(AppUser).filter_by(id=user_id, active=True).first()
        if user:
            g.user = user
            g.user_id = user.id
            g.user_role = user.role

    cookie_name = current_app.config.get('GUEST_COOKIE_NAME', 'guest_id')
    g.guest_id = _valid_guest_id(request.headers.get(GUEST_HEADER)) or _valid_guest_id(request.cookies.get(cookie_name))


def ensure_guest_id():
    """Guest id for the current request, minting one (stored as a cookie) when absent."""
    if not g.get('guest_id'):
        g.guest_id = str(uuid.uuid4())
        g.new_guest_id = g.guest_id
    return g.guest_id


def persist_guest_cookie(response):
    """after_request hook: store a freshly minted guest id."""
    if g.get('new_guest_id'):
        response.set_cookie(
            current_app.config.get('GUEST_COOKIE_NAME', 'guest_id'),
            g.new_guest_id,
            max_age=current_app.config.get('GUEST_COOKIE_MAX_AGE'),
            httponly=True,
            secure=current_app.config.get('SESSION_COOKIE_SECURE', False),
            samesite='Lax'
        )
    return response


def require_login(f):
    """
    Decorator: Require an authenticated user.

    Raises UnauthorizedError, rendered as a 401 envelope.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if g.get('user') is None:
            raise UnauthorizedError()
        return f(*args, **kwargs)
    return decorated_function
