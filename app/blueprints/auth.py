"""
Authentication blueprint.
Handles registration, login (session + bearer token), logout and whoami.
"""

import re
import logging
from flask import Blueprint, session, g
from sqlalchemy.exc import IntegrityError

from app.database import get_session
from app.models import AppUser, UserRole
from app.exceptions import ValidationError, UnauthorizedError, ConflictError
from app.middleware import issue_token, require_login
from app.services import cart_service
from app.utils.responses import success_response
from app.utils.validators import get_json_body, pick

logger = logging.getLogger(__name__)


auth_bp = Blueprint('auth', __name__, url_prefix='/auth')


def is_valid_email(email: str) -> bool:
    """Validate email format."""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def _start_session(user: AppUser):
    """Log the user in and fold any guest cart into theirs."""
    session.clear()
    session['user_id'] = user.id
    session.permanent = True

    if g.get('guest_id'):
        cart_service.merge_guest_cart(get_session(), g.guest_id, user.id)

    return {'token': issue_token(user), 'user': user.to_dict()}


@auth_bp.route('/register', methods=['POST'])
def register():
    """Create a customer account. Body: email, password, fullName?, phone?"""
    data = get_json_body()
    email = str(pick(data, 'email', default='')).strip().lower()
    password = str(pick(data, 'password', default=''))

    if not email or not is_valid_email(email):
        raise ValidationError('A valid email is required', payload={'field': 'email'})
    if len(password) < 8:
        raise ValidationError('Password must be at least 8 characters', payload={'field': 'password'})

    db = get_session()
    if db.query(AppUser).filter_by(email=email).first():
        raise ConflictError('An account with this email already exists')

    user = AppUser(
        email=email,
        full_name=pick(data, 'fullName', 'full_name'),
        phone=pick(data, 'phone'),
        role=UserRole.CUSTOMER.value,
        active=True
    )
    user.set_password(password)
    try:
        db.add(user)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError('An account with this email already exists')

    logger.info(f"[AUTH] Registered user {user.id}")
    return success_response('Account created', _start_session(user), 201)


@auth_bp.route('/login', methods=['POST'])
def login():
    """Validate email + password; returns a bearer token and sets the session."""
    data = get_json_body()
    email = str(pick(data, 'email', default='')).strip().lower()
    password = str(pick(data, 'password', default=''))

    if not email or not password:
        raise ValidationError('Email and password are required')

    user = get_session().query(AppUser).filter_by(email=email).first()
    if not user or not user.active or not user.check_password(password):
        logger.info(f"[AUTH] Failed login for {email}")
        raise UnauthorizedError('Invalid email or password')

    logger.info(f"[AUTH] User {user.id} logged in")
    return success_response('Logged in', _start_session(user))


@auth_bp.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return success_response('Logged out')


@auth_bp.route('/me')
@require_login
def me():
    return success_response('Current user', g.user.to_dict())
