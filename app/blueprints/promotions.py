"""
Promotions blueprint.
Public listing of active promotions, coupon dry-runs and back-office management.
"""
import logging
from flask import Blueprint, g, request

from app.database import get_session
from app.decorators.permissions import require_capability
from app.exceptions import ValidationError
from app.middleware import ensure_guest_id
from app.services import cart_service, promotion_service
from app.services.cache_service import cached_response
from app.utils.responses import success_response
from app.utils.validators import get_json_body, pick, get_pagination

logger = logging.getLogger(__name__)

promotions_bp = Blueprint('promotions', __name__, url_prefix='/promotions')


@promotions_bp.route('/active', methods=['GET'])
@cached_response(promotion_service.PROMOTIONS_CACHE_NAMESPACE, 'CACHE_PROMOTIONS_TTL')
def active_promotions():
    promotions = promotion_service.get_active_promotions(get_session())
    return success_response('Active promotions', promotions)


@promotions_bp.route('/validate', methods=['POST'])
def validate_code():
    """
    Dry-run a code against the current cart without applying it.

    Body: code
    """
    data = get_json_body()
    code = str(pick(data, 'code', 'couponCode', default='')).strip()
    if not code:
        raise ValidationError('Coupon code is required', payload={'field': 'code'})

    db = get_session()
    if g.get('user'):
        cart = cart_service.get_or_create(db, user_id=g.user.id)
    else:
        cart = cart_service.get_or_create(db, guest_id=ensure_guest_id())

    totals = cart_service.calculate_totals(db, cart)
    result = promotion_service.validate(
        db,
        code,
        cart.items,
        totals['subtotal'],
        tax=totals['tax'],
        shipping_cost=totals['shipping'],
        user=g.get('user')
    )
    return success_response('Coupon is valid', result.to_dict())


@promotions_bp.route('', methods=['GET'])
@require_capability('manage_promotions')
def list_promotions():
    """Query: page, limit, active (true | false)"""
    page, limit = get_pagination()
    active = request.args.get('active')
    active_filter = None if active is None else active.lower() == 'true'
    return success_response(
        'Promotions retrieved',
        promotion_service.list_promotions(get_session(), page, limit, active=active_filter)
    )


@promotions_bp.route('', methods=['POST'])
@require_capability('manage_promotions')
def create_promotion():
    promotion = promotion_service.create_promotion(get_session(), get_json_body())
    return success_response('Promotion created', promotion.to_dict(), 201)


@promotions_bp.route('/<int:promotion_id>', methods=['GET'])
@require_capability('manage_promotions')
def get_promotion(promotion_id):
    promotion = promotion_service.get_promotion(get_session(), promotion_id)
    return success_response('Promotion retrieved', promotion.to_dict())


@promotions_bp.route('/<int:promotion_id>', methods=['PUT'])
@require_capability('manage_promotions')
def update_promotion(promotion_id):
    promotion = promotion_service.update_promotion(get_session(), promotion_id, get_json_body())
    return success_response('Promotion updated', promotion.to_dict())


@promotions_bp.route('/<int:promotion_id>', methods=['DELETE'])
@require_capability('manage_promotions')
def deactivate_promotion(promotion_id):
    promotion = promotion_service.deactivate_promotion(get_session(), promotion_id)
    return success_response('Promotion deactivated', promotion.to_dict())
