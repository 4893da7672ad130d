"""Request-shape validation helpers used by the blueprints before calling services."""
from typing import Any, Dict, Optional, Tuple

from flask import request, current_app

from app.exceptions import ValidationError
from app.utils.money import parse_amount

ADDRESS_FIELDS = ('name', 'street', 'city', 'state', 'postal_code', 'phone')


def get_json_body() -> Dict[str, Any]:
    """Return the JSON object body, or an empty dict when no body was sent."""
    if not request.data:
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def pick(data: Dict[str, Any], *names, default=None):
    """First present key among camelCase/snake_case aliases."""
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return default


def parse_int(value, field: str, minimum: Optional[int] = None, required: bool = True) -> Optional[int]:
    """Parse an integer field, rejecting bools and floats with fractions."""
    if value is None or value == '':
        if required:
            raise ValidationError(f'{field} is required', payload={'field': field})
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer', payload={'field': field})
    try:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(value)
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer', payload={'field': field})
    if minimum is not None and number < minimum:
        raise ValidationError(f'{field} must be at least {minimum}', payload={'field': field})
    return number


def parse_money(value, field: str, allow_zero: bool = False):
    """Parse a monetary amount into a 2-place Decimal."""
    try:
        return parse_amount(value, field=field, allow_zero=allow_zero)
    except ValueError as e:
        raise ValidationError(str(e), payload={'field': field})


def parse_address(data: Optional[Dict[str, Any]], field: str) -> Dict[str, str]:
    """
    Normalize a postal address.

    Accepts `postalCode` or `postal_code`; country defaults to India.
    """
    if not isinstance(data, dict):
        raise ValidationError(f'{field} is required', payload={'field': field})

    address = {
        'name': pick(data, 'name'),
        'street': pick(data, 'street'),
        'city': pick(data, 'city'),
        'state': pick(data, 'state'),
        'postal_code': pick(data, 'postalCode', 'postal_code'),
        'country': pick(data, 'country', default='India'),
        'phone': pick(data, 'phone'),
    }
    missing = [name for name in ADDRESS_FIELDS if not str(address[name] or '').strip()]
    if missing:
        raise ValidationError(
            f'{field} is missing: {", ".join(missing)}',
            payload={'field': field, 'missing': missing}
        )
    return {key: str(value).strip() for key, value in address.items()}


def get_pagination() -> Tuple[int, int]:
    """Read page/limit query args, clamped to the configured maximum."""
    page = parse_int(request.args.get('page'), 'page', minimum=1, required=False) or 1
    default_limit = current_app.config.get('ORDERS_PER_PAGE', 10)
    limit = parse_int(request.args.get('limit'), 'limit', minimum=1, required=False) or default_limit
    return page, min(limit, current_app.config.get('MAX_PAGE_SIZE', 100))
