"""Custom exceptions for the storefront API."""


class ApiError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self, include_details=False):
        rv = {'success': False, 'message': self.message}
        if include_details and self.payload:
            rv['error'] = dict(self.payload)
        return rv


class ValidationError(ApiError):
    """Malformed or out-of-range input."""
    def __init__(self, message="Validation failed", payload=None):
        super().__init__(message, 400, payload)


class InvalidSignatureError(ApiError):
    """Payment or webhook signature mismatch."""
    def __init__(self, message="Invalid payment signature", payload=None):
        super().__init__(message, 400, payload)


class UnauthorizedError(ApiError):
    """Raised when the request carries no valid identity."""
    def __init__(self, message="Authentication required. Please log in."):
        super().__init__(message, 401)


class ForbiddenError(ApiError):
    """Raised when a user lacks permission for an action."""
    def __init__(self, message="You do not have permission to perform this action."):
        super().__init__(message, 403)


class NotFoundError(ApiError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class ConflictError(ApiError):
    """State-machine violation or duplicate operation."""
    def __init__(self, message="Resource conflict", payload=None):
        super().__init__(message, 409, payload)


class ExternalServiceError(ApiError):
    """Raised when the payment gateway fails or times out."""
    def __init__(self, message="Payment gateway unavailable", payload=None, status_code=502):
        super().__init__(message, status_code, payload)


class OutOfStockError(ConflictError):
    """Raised when an operation fails due to lack of stock."""
    def __init__(self, product_name, requested, available):
        message = (
            f"Not enough inventory for {product_name}: "
            f"requested {requested}, available {available}"
        )
        super().__init__(message, payload={
            'product': product_name,
            'requested': requested,
            'available': available
        })
        self.requested = requested
        self.available = available


class InvalidTransitionError(ConflictError):
    """Order status change not allowed from the current status."""
    def __init__(self, current, target):
        super().__init__(
            f"Cannot change order status from '{current}' to '{target}'",
            payload={'from': current, 'to': target}
        )


class EmptyCartError(ValidationError):
    """Checkout attempted with no items."""
    def __init__(self, message="Cart is empty"):
        super().__init__(message)


class InvalidPromotionError(ValidationError):
    """A coupon was rejected; `reason` is one of PromotionRejection."""

    MESSAGES = {
        'NOT_FOUND': 'Invalid coupon code',
        'EXPIRED': 'Coupon has expired',
        'NOT_YET_ACTIVE': 'Coupon is not active yet',
        'MIN_ORDER_NOT_MET': 'Minimum order value not met for this coupon',
        'MIN_ITEMS_NOT_MET': 'Minimum number of items not met for this coupon',
        'USAGE_LIMIT_REACHED': 'Coupon usage limit reached',
        'USER_LIMIT_REACHED': 'You have already used this coupon the maximum number of times',
        'CUSTOMER_TYPE_MISMATCH': 'Coupon is not available for your account',
        'ALREADY_APPLIED': 'Coupon is already applied',
    }

    def __init__(self, reason, message=None, payload=None):
        details = dict(payload or {})
        details['reason'] = reason
        super().__init__(message or self.MESSAGES.get(reason, 'Invalid coupon'), details)
        self.reason = reason
        if reason == 'ALREADY_APPLIED':
            self.status_code = 409
