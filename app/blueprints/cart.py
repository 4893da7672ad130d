"""
Cart blueprint.
Works for logged-in users and for guests identified by the guest id cookie/header.
"""
import logging
from flask import Blueprint, g

from app.database import get_session
from app.exceptions import ValidationError
from app.middleware import ensure_guest_id, require_login
from app.services import cart_service
from app.utils.responses import success_response
from app.utils.validators import get_json_body, pick, parse_int

logger = logging.getLogger(__name__)

cart_bp = Blueprint('cart', __name__, url_prefix='/cart')


def _current_cart():
    """Cart of the logged-in user, or of the guest (minting a guest id if needed)."""
    db = get_session()
    if g.get('user'):
        return cart_service.get_or_create(db, user_id=g.user.id)
    return cart_service.get_or_create(db, guest_id=ensure_guest_id())


def _cart_payload(cart):
    data = cart_service.serialize_cart(get_session(), cart)
    if not g.get('user'):
        data['guest_id'] = g.guest_id
    return data


@cart_bp.route('', methods=['GET'])
@cart_bp.route('/', methods=['GET'])
def get_cart():
    """Current cart with computed totals."""
    return success_response('Cart retrieved', _cart_payload(_current_cart()))


@cart_bp.route('/items', methods=['POST'])
def add_item():
    """Body: productId, quantity (default 1), variantId?, attributes?"""
    data = get_json_body()
    product_id = parse_int(pick(data, 'productId', 'product_id'), 'productId', minimum=1)
    quantity = parse_int(pick(data, 'quantity', default=1), 'quantity', minimum=1)
    variant_id = parse_int(pick(data, 'variantId', 'variant_id'), 'variantId', minimum=1, required=False)
    attributes = pick(data, 'attributes')
    if attributes is not None and not isinstance(attributes, list):
        raise ValidationError('attributes must be a list', payload={'field': 'attributes'})

    cart = cart_service.add_item(get_session(), _current_cart(), product_id, quantity, variant_id, attributes)
    return success_response('Item added to cart', _cart_payload(cart))


@cart_bp.route('/items/<int:item_id>', methods=['PUT'])
def update_item(item_id):
    """Body: quantity (0 removes the line)."""
    data = get_json_body()
    quantity = parse_int(pick(data, 'quantity'), 'quantity')
    if quantity < 0:
        raise ValidationError('Quantity cannot be negative', payload={'field': 'quantity'})

    cart = cart_service.update_item(get_session(), _current_cart(), item_id, quantity)
    return success_response('Cart updated', _cart_payload(cart))


@cart_bp.route('/items/<int:item_id>', methods=['DELETE'])
def remove_item(item_id):
    cart = cart_service.remove_item(get_session(), _current_cart(), item_id)
    return success_response('Item removed from cart', _cart_payload(cart))


@cart_bp.route('', methods=['DELETE'])
@cart_bp.route('/', methods=['DELETE'])
def clear_cart():
    cart = cart_service.clear(get_session(), _current_cart())
    return success_response('Cart cleared', _cart_payload(cart))


@cart_bp.route('/coupon', methods=['POST'])
def apply_coupon():
    """Body: code"""
    data = get_json_body()
    code = str(pick(data, 'code', 'couponCode', default='')).strip()
    if not code:
        raise ValidationError('Coupon code is required', payload={'field': 'code'})

    cart = _current_cart()
    result = cart_service.apply_coupon(get_session(), cart, code)
    return success_response(f"Coupon {result.promotion.code} applied", _cart_payload(cart))


@cart_bp.route('/coupon', methods=['DELETE'])
def remove_coupon():
    cart = cart_service.remove_coupon(get_session(), _current_cart())
    return success_response('Coupon removed', _cart_payload(cart))


@cart_bp.route('/shipping', methods=['POST'])
def set_shipping():
    """Body: method (standard | express | same_day)"""
    data = get_json_body()
    method = pick(data, 'method', 'shippingMethod', 'shipping_method')
    if not method:
        raise ValidationError('Shipping method is required', payload={'field': 'method'})

    cart = cart_service.set_shipping_method(get_session(), _current_cart(), str(method))
    return success_response('Shipping method updated', _cart_payload(cart))


@cart_bp.route('/notes', methods=['POST'])
def set_notes():
    data = get_json_body()
    notes = pick(data, 'notes')
    if notes is not None and not isinstance(notes, str):
        raise ValidationError('notes must be a string', payload={'field': 'notes'})

    cart = cart_service.set_notes(get_session(), _current_cart(), notes)
    return success_response('Cart notes updated', _cart_payload(cart))


@cart_bp.route('/merge', methods=['POST'])
@require_login
def merge_cart():
    """Merge the guest cart (body guestId or the guest cookie) into the user's cart."""
    data = get_json_body()
    guest_id = pick(data, 'guestId', 'guest_id') or g.get('guest_id')
    if not guest_id:
        raise ValidationError('guestId is required', payload={'field': 'guestId'})

    cart = cart_service.merge_guest_cart(get_session(), str(guest_id), g.user.id)
    return success_response('Cart merged', _cart_payload(cart))
