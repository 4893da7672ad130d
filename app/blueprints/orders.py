"""
Orders blueprint.
Checkout from the cart, order history, cancellation and back-office order management.
"""
import logging
from datetime import datetime
from flask import Blueprint, g, request, send_file

from app.database import get_session
from app.decorators.permissions import require_capability, has_capability
from app.exceptions import ValidationError
from app.middleware import require_login
from app.models import PaymentMethod
from app.services import cart_service, order_service
from app.utils.responses import success_response
from app.utils.validators import (
    get_json_body, pick, parse_address, parse_money, get_pagination
)

logger = logging.getLogger(__name__)

orders_bp = Blueprint('orders', __name__, url_prefix='/orders')


def _serialize(order):
    return order.to_dict(include_internal=has_capability(g.get('user_role'), 'view_any_order'))


def _page_payload(result):
    payload = {
        'orders': [_serialize(order) for order in result['orders']],
        'pagination': result['pagination'],
    }
    if 'counts' in result:
        payload['counts'] = result['counts']
    return payload


@orders_bp.route('', methods=['POST'])
@require_login
def create_order():
    """
    Create an order from the current user's cart.

    Body: shippingAddress, billingAddress?, paymentMethod (razorpay | cod),
    shippingMethod?, razorpayOrderId?, notes?
    """
    data = get_json_body()
    shipping_address = parse_address(pick(data, 'shippingAddress', 'shipping_address'), 'shippingAddress')
    billing_raw = pick(data, 'billingAddress', 'billing_address')
    billing_address = parse_address(billing_raw, 'billingAddress') if billing_raw else None

    payment_method = str(pick(data, 'paymentMethod', 'payment_method', default=PaymentMethod.RAZORPAY.value))
    if payment_method not in {m.value for m in PaymentMethod}:
        raise ValidationError('paymentMethod must be razorpay or cod', payload={'field': 'paymentMethod'})

    notes = pick(data, 'notes')
    if notes is not None and not isinstance(notes, str):
        raise ValidationError('notes must be a string', payload={'field': 'notes'})

    db = get_session()
    cart = cart_service.get_or_create(db, user_id=g.user.id)
    order = order_service.create_from_cart(
        db,
        cart,
        g.user,
        shipping_address,
        billing_address=billing_address,
        payment_method=payment_method,
        shipping_method=pick(data, 'shippingMethod', 'shipping_method'),
        gateway_order_id=pick(data, 'razorpayOrderId', 'razorpay_order_id'),
        notes=notes,
        billing_email=pick(data, 'billingEmail', 'billing_email')
    )
    return success_response('Order created', _serialize(order), 201)


@orders_bp.route('', methods=['GET'])
@require_login
def list_orders():
    """Own orders, newest first. Query: page, limit, status"""
    page, limit = get_pagination()
    result = order_service.list_user_orders(
        get_session(), g.user.id, page, limit, status=request.args.get('status')
    )
    return success_response('Orders retrieved', _page_payload(result))


@orders_bp.route('/<int:order_id>', methods=['GET'])
@require_login
def get_order(order_id):
    order = order_service.get_order(get_session(), order_id, g.user)
    return success_response('Order retrieved', _serialize(order))


@orders_bp.route('/<int:order_id>/cancel', methods=['PUT'])
@require_login
def cancel_order(order_id):
    """Body: reason?"""
    data = get_json_body()
    order = order_service.cancel(get_session(), order_id, g.user, reason=pick(data, 'reason'))
    return success_response('Order cancelled', _serialize(order))


@orders_bp.route('/<int:order_id>/invoice', methods=['GET'])
@require_login
def download_invoice(order_id):
    db = get_session()
    pdf = order_service.generate_invoice(db, order_id, g.user)
    order = order_service.get_order(db, order_id)
    return send_file(
        pdf,
        mimetype='application/pdf',
        as_attachment=True,
        download_name=f"{order.order_number}.pdf"
    )


@orders_bp.route('/status/<status>', methods=['GET'])
@require_capability('view_any_order')
def list_by_status(status):
    """Orders in a status (or 'all') with per-status counts."""
    page, limit = get_pagination()
    result = order_service.list_by_status(get_session(), status, page, limit)
    return success_response('Orders retrieved', _page_payload(result))


@orders_bp.route('/stats', methods=['GET'])
@require_capability('view_any_order')
def order_stats():
    return success_response('Order statistics', order_service.get_stats(get_session()))


@orders_bp.route('/<int:order_id>/status', methods=['PUT'])
@require_capability('manage_orders')
def update_status(order_id):
    """Body: status, note?"""
    data = get_json_body()
    status = pick(data, 'status')
    if not status:
        raise ValidationError('status is required', payload={'field': 'status'})

    order = order_service.update_status(get_session(), order_id, str(status), g.user, note=pick(data, 'note'))
    return success_response(f"Order status updated to {order.status}", _serialize(order))


@orders_bp.route('/<int:order_id>/notes', methods=['POST'])
@require_capability('manage_orders')
def add_note(order_id):
    """Body: text, isPublic?"""
    data = get_json_body()
    note = order_service.add_note(
        get_session(), order_id, g.user,
        str(pick(data, 'text', 'note', default='')),
        is_public=bool(pick(data, 'isPublic', 'is_public', default=False))
    )
    return success_response('Note added', note.to_dict(), 201)


@orders_bp.route('/<int:order_id>/shipping', methods=['PUT'])
@require_capability('manage_orders')
def update_shipping(order_id):
    """Body: trackingNumber?, carrier?, estimatedDelivery? (ISO date), cost?"""
    data = get_json_body()

    estimated = pick(data, 'estimatedDelivery', 'estimated_delivery')
    if estimated is not None:
        try:
            estimated = datetime.fromisoformat(str(estimated))
        except ValueError:
            raise ValidationError('estimatedDelivery must be an ISO-8601 date', payload={'field': 'estimatedDelivery'})
        if estimated.tzinfo is not None:
            estimated = estimated.replace(tzinfo=None) - estimated.utcoffset()

    cost = pick(data, 'cost', 'shippingCost')
    if cost is not None:
        cost = parse_money(cost, 'cost', allow_zero=True)

    tracking = pick(data, 'trackingNumber', 'tracking_number')
    carrier = pick(data, 'carrier')
    order = order_service.update_shipping_info(
        get_session(), order_id, g.user,
        tracking_number=str(tracking) if tracking is not None else None,
        carrier=str(carrier) if carrier is not None else None,
        estimated_delivery=estimated,
        cost=cost
    )
    return success_response('Shipping information updated', _serialize(order))


@orders_bp.route('/<int:order_id>/refund', methods=['POST'])
@require_capability('refund_orders')
def refund_order(order_id):
    """Body: amount? (full refund when omitted), reason?"""
    data = get_json_body()
    amount = pick(data, 'amount')
    if amount is not None:
        amount = parse_money(amount, 'amount')

    order = order_service.process_refund(get_session(), order_id, g.user, amount=amount, reason=pick(data, 'reason'))
    return success_response('Refund processed', _serialize(order))
