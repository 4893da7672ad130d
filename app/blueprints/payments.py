"""
Payments blueprint for Razorpay.
Creates payment intents, verifies checkout signatures and receives gateway webhooks.
"""

import logging
from flask import Blueprint, request, g

from app.database import get_session
from app.decorators.permissions import require_capability, admin_only
from app.exceptions import ApiError, InvalidSignatureError, ValidationError
from app.middleware import ensure_guest_id, require_login
from app.services import cart_service, order_service
from app.services.payment_service import PaymentService
from app.utils.responses import success_response, error_response
from app.utils.money import to_paise
from app.utils.validators import get_json_body, pick, parse_money, get_pagination

logger = logging.getLogger(__name__)

payments_bp = Blueprint('payments', __name__, url_prefix='/payments')


def _intent_payload(intent):
    payment = intent['payment']
    return {
        'payment_id': payment.id,
        'razorpay_order_id': payment.gateway_order_id,
        'amount': to_paise(payment.amount),
        'currency': payment.currency,
        'receipt': payment.receipt,
        'status': payment.status,
        'key_id': intent['key_id'],
    }


@payments_bp.route('/razorpay/order', methods=['POST'])
def create_cart_intent():
    """Create (or reuse) a Razorpay order for the current cart total."""
    db = get_session()
    if g.get('user'):
        cart = cart_service.get_or_create(db, user_id=g.user.id)
        user_id, guest_id = g.user.id, None
    else:
        guest_id = ensure_guest_id()
        cart = cart_service.get_or_create(db, guest_id=guest_id)
        user_id = None

    intent = PaymentService(db).create_intent_for_cart(cart, user_id=user_id, guest_id=guest_id)
    return success_response('Payment order created', _intent_payload(intent), 201)


@payments_bp.route('/razorpay/order/<int:order_id>', methods=['POST'])
@require_login
def create_order_intent(order_id):
    """Create (or reuse) a Razorpay order for an existing unpaid order."""
    db = get_session()
    order = order_service.get_order(db, order_id, g.user)
    intent = PaymentService(db).create_intent_for_order(order)
    return success_response('Payment order created', _intent_payload(intent), 201)


@payments_bp.route('/razorpay/verify', methods=['POST'])
def verify_payment():
    """Body: razorpay_order_id, razorpay_payment_id, razorpay_signature"""
    data = get_json_body()
    gateway_order_id = pick(data, 'razorpay_order_id', 'razorpayOrderId')
    gateway_payment_id = pick(data, 'razorpay_payment_id', 'razorpayPaymentId')
    signature = pick(data, 'razorpay_signature', 'razorpaySignature')
    if not gateway_order_id or not gateway_payment_id or not signature:
        raise ValidationError('razorpay_order_id, razorpay_payment_id and razorpay_signature are required')

    payment = PaymentService(get_session()).verify_confirmation(
        str(gateway_order_id), str(gateway_payment_id), str(signature)
    )
    return success_response('Payment verified', payment.to_dict())


@payments_bp.route('/razorpay/webhook', methods=['POST'])
def razorpay_webhook():
    """
    Handle Razorpay webhook notifications.

    Returns 200 for every request carrying a signature header; rejected or failed
    events have success=false. A missing header is a 400.
    """
    signature = request.headers.get('X-Razorpay-Signature')
    if not signature:
        logger.warning("[WEBHOOK] Missing X-Razorpay-Signature header")
        return error_response('Missing signature header', 400)

    raw_body = request.get_data()
    try:
        processed = PaymentService(get_session()).handle_webhook(
            raw_body, signature, request.headers.get('X-Razorpay-Event-Id')
        )
    except InvalidSignatureError:
        return error_response('Invalid signature', 200)
    except ApiError as e:
        logger.warning(f"[WEBHOOK] Rejected event: {e.message}")
        return error_response(e.message, 200)
    except Exception as e:
        logger.exception(f"[WEBHOOK] Error processing webhook: {e}")
        return error_response('Webhook processing failed', 200)

    if not processed:
        return success_response('Event already processed', {'duplicate': True})
    return success_response('Event processed', {'duplicate': False})


@payments_bp.route('/<int:payment_id>/refund', methods=['POST'])
@admin_only
def refund_payment(payment_id):
    """Body: amount? (full refund when omitted), reason?"""
    data = get_json_body()
    amount = pick(data, 'amount')
    if amount is not None:
        amount = parse_money(amount, 'amount')

    service = PaymentService(get_session())
    refund = service.process_refund(payment_id, amount, reason=pick(data, 'reason'), actor_id=g.user.id)
    return success_response('Refund processed', {
        'refund': refund.to_dict(),
        'payment': service.get_payment(payment_id).to_dict(),
    })


@payments_bp.route('', methods=['GET'])
@require_capability('view_payments')
def list_payments():
    """Query: page, limit, status"""
    page, limit = get_pagination()
    result = PaymentService(get_session()).list_payments(page, limit, status=request.args.get('status'))
    return success_response('Payments retrieved', result)


@payments_bp.route('/<int:payment_id>', methods=['GET'])
@require_capability('view_payments')
def get_payment(payment_id):
    payment = PaymentService(get_session()).get_payment(payment_id)
    return success_response('Payment retrieved', payment.to_dict())
