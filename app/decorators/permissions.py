"""
Permission decorators for role-based access control.
Capabilities are looked up in a declarative role table.
"""

from functools import wraps
from flask import g

from app.exceptions import UnauthorizedError, ForbiddenError


# Capability map by role; 'all' grants everything
ROLE_CAPABILITIES = {
    'admin': 'all',
    'manager': [
        'view_any_order', 'manage_orders', 'refund_orders',
        'view_payments', 'refund_payments',
        'manage_promotions',
    ],
    'staff': [
        'view_any_order', 'manage_orders',
        'view_payments',
    ],
    'customer': [],
}


def has_capability(role, capability):
    """Check whether a role grants a capability."""
    capabilities = ROLE_CAPABILITIES.get(role or '', [])
    if capabilities == 'all':
        return True
    return capability in capabilities


def require_capability(capability):
    """
    Decorator to check for a specific capability.

    Usage:
        @require_capability('manage_orders')
        @require_capability('refund_payments')

    Args:
        capability: Name of the required capability

    Returns:
        Decorator function
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Must be logged in
            if not g.get('user'):
                raise UnauthorizedError()

            if not has_capability(g.get('user_role'), capability):
                raise ForbiddenError(f'Missing permission: {capability}')

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def admin_only(f):
    """
    Shortcut decorator for admin-only routes.

    Usage:
        @admin_only
        def refund_payment():
            ...
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not g.get('user'):
            raise UnauthorizedError()
        if g.get('user_role') != 'admin':
            raise ForbiddenError('Administrator access required.')
        return f(*args, **kwargs)
    return decorated_function
