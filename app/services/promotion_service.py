"""
Promotion service.
Evaluates coupon eligibility and discount amounts, records redemptions and manages promotions.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy.orm import Session

from app.models import Promotion, PromotionType, CustomerType, PromotionUsage, AppUser
from app.exceptions import InvalidPromotionError, ValidationError, NotFoundError, ConflictError
from app.utils.money import ZERO, to_decimal, quantize_money

logger = logging.getLogger(__name__)

PERCENT_TYPES = {
    PromotionType.PERCENTAGE.value,
    PromotionType.PRODUCT_PERCENTAGE.value,
    PromotionType.CATEGORY_PERCENTAGE.value,
    PromotionType.SHIPPING.value,
}
PRODUCT_SCOPED = {PromotionType.PRODUCT_PERCENTAGE.value, PromotionType.PRODUCT_FIXED.value}
CATEGORY_SCOPED = {PromotionType.CATEGORY_PERCENTAGE.value, PromotionType.CATEGORY_FIXED.value}

PROMOTIONS_CACHE_NAMESPACE = 'promotions'


@dataclass
class DiscountResult:
    """Outcome of a successful validation."""
    promotion: Promotion
    discount: Decimal
    breakdown: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self):
        return {
            'code': self.promotion.code,
            'name': self.promotion.name,
            'type': self.promotion.type,
            'discount': float(self.discount),
            'breakdown': self.breakdown,
        }


def normalize_code(code: Optional[str]) -> str:
    return (code or '').strip().upper()


def _line_category(item) -> Optional[int]:
    product = getattr(item, 'product', None)
    return product.category_id if product is not None else None


def _id_set(values) -> set:
    return {int(v) for v in (values or [])}


def _matching_items(promotion: Promotion, items: List[Any]) -> List[Any]:
    """Lines a scoped promotion applies to."""
    product_ids = _id_set(promotion.applicable_products)
    category_ids = _id_set(promotion.applicable_categories)

    if promotion.type in PRODUCT_SCOPED:
        return [item for item in items if item.product_id in product_ids]
    if promotion.type in CATEGORY_SCOPED:
        return [item for item in items if _line_category(item) in category_ids]

    # buy_x_get_y: restricted when either list is set, otherwise every line
    if not product_ids and not category_ids:
        return list(items)
    return [
        item for item in items
        if item.product_id in product_ids or _line_category(item) in category_ids
    ]


def _cap(amount: Decimal, max_discount) -> Decimal:
    if max_discount is not None and to_decimal(max_discount) > 0:
        return min(amount, to_decimal(max_discount))
    return amount


def compute_discount(promotion: Promotion, items: List[Any], subtotal: Decimal,
                     shipping_cost: Decimal = ZERO) -> DiscountResult:
    """
    Discount a promotion grants on the given lines, before the non-negative total cap.

    Items need `product_id`, `quantity`, `unit_price` and optionally `product.category_id`.
    """
    value = to_decimal(promotion.value)
    subtotal = to_decimal(subtotal)
    shipping_cost = to_decimal(shipping_cost)
    kind = promotion.type
    breakdown: Dict[str, Any] = {'type': kind}

    if kind == PromotionType.PERCENTAGE.value:
        discount = _cap(subtotal * value / 100, promotion.max_discount)

    elif kind == PromotionType.FIXED.value:
        discount = min(value, subtotal)

    elif kind == PromotionType.SHIPPING.value:
        if value >= 100:
            discount = shipping_cost
            breakdown['free_shipping'] = True
        else:
            discount = shipping_cost * value / 100

    elif kind in (PromotionType.PRODUCT_PERCENTAGE.value, PromotionType.CATEGORY_PERCENTAGE.value):
        matching = _matching_items(promotion, items)
        eligible = sum((to_decimal(i.unit_price) * i.quantity for i in matching), ZERO)
        discount = _cap(eligible * value / 100, promotion.max_discount)
        breakdown['eligible_subtotal'] = float(quantize_money(eligible))
        breakdown['eligible_items'] = [i.product_id for i in matching]

    elif kind in (PromotionType.PRODUCT_FIXED.value, PromotionType.CATEGORY_FIXED.value):
        matching = _matching_items(promotion, items)
        eligible = sum((to_decimal(i.unit_price) * i.quantity for i in matching), ZERO)
        units = sum(i.quantity for i in matching)
        discount = min(value * units, eligible)
        breakdown['eligible_subtotal'] = float(quantize_money(eligible))
        breakdown['eligible_items'] = [i.product_id for i in matching]

    elif kind == PromotionType.BUY_X_GET_Y.value:
        buy = promotion.buy_quantity or 0
        get = promotion.get_quantity or 0
        percent = to_decimal(promotion.discount_percent or 100)
        matching = _matching_items(promotion, items)
        # One entry per unit, cheapest first
        unit_prices = sorted(
            to_decimal(i.unit_price) for i in matching for _ in range(i.quantity)
        )
        group_size = buy + get
        groups = len(unit_prices) // group_size if group_size > 0 else 0
        free_units = groups * get
        discount = sum(unit_prices[:free_units], ZERO) * percent / 100
        breakdown.update({
            'eligible_units': len(unit_prices),
            'complete_groups': groups,
            'discounted_units': free_units,
            'discount_percent': float(percent),
        })

    else:
        raise ValidationError(f"Unknown promotion type '{kind}'")

    discount = quantize_money(max(discount, ZERO))
    return DiscountResult(promotion=promotion, discount=discount, breakdown=breakdown)


def _user_usage(session: Session, promotion: Promotion, user_id: int) -> Optional[PromotionUsage]:
    return session.query(PromotionUsage).filter(
        PromotionUsage.promotion_id == promotion.id,
        PromotionUsage.user_id == user_id
    ).first()


def check_eligibility(session: Session, promotion: Promotion, items: List[Any], subtotal: Decimal,
                      user: Optional[AppUser] = None, now: Optional[datetime] = None) -> None:
    """Raise InvalidPromotionError with the first failing rule, in a fixed order."""
    now = now or datetime.utcnow()

    if promotion.valid_from and now < promotion.valid_from:
        raise InvalidPromotionError('NOT_YET_ACTIVE')
    if promotion.valid_until and now > promotion.valid_until:
        raise InvalidPromotionError('EXPIRED')

    if promotion.usage_limit and promotion.usage_count >= promotion.usage_limit:
        raise InvalidPromotionError('USAGE_LIMIT_REACHED')

    if user is not None and promotion.user_usage_limit:
        usage = _user_usage(session, promotion, user.id)
        if usage and usage.count >= promotion.user_usage_limit:
            raise InvalidPromotionError('USER_LIMIT_REACHED')

    if promotion.customer_type != CustomerType.ALL.value:
        if user is None:
            raise InvalidPromotionError('CUSTOMER_TYPE_MISMATCH')
        days = current_app.config.get('NEW_CUSTOMER_DAYS', 30)
        is_new = user.is_new_customer(days=days, now=now)
        if (promotion.customer_type == CustomerType.NEW.value) != is_new:
            raise InvalidPromotionError('CUSTOMER_TYPE_MISMATCH')

    if subtotal < to_decimal(promotion.min_order_value):
        raise InvalidPromotionError(
            'MIN_ORDER_NOT_MET',
            payload={'min_order_value': float(promotion.min_order_value)}
        )

    item_count = sum(item.quantity for item in items)
    if promotion.minimum_items and item_count < promotion.minimum_items:
        raise InvalidPromotionError(
            'MIN_ITEMS_NOT_MET',
            payload={'minimum_items': promotion.minimum_items}
        )


def validate(session: Session, code: str, items: List[Any], subtotal: Decimal,
             tax: Decimal = ZERO, shipping_cost: Decimal = ZERO,
             user: Optional[AppUser] = None, applied_code: Optional[str] = None,
             now: Optional[datetime] = None) -> DiscountResult:
    """
    Validate a code against cart contents and compute its discount.

    `applied_code` is the code already on the cart; passing the same code again is
    rejected as ALREADY_APPLIED. The discount is capped so the cart total never goes
    below zero.

    Raises:
        InvalidPromotionError: with one of the rejection reasons
    """
    code = normalize_code(code)
    if not code:
        raise ValidationError('Coupon code is required')
    if applied_code and normalize_code(applied_code) == code:
        raise InvalidPromotionError('ALREADY_APPLIED')

    promotion = session.query(Promotion).filter(Promotion.code == code).first()
    if not promotion or not promotion.is_active:
        raise InvalidPromotionError('NOT_FOUND')

    subtotal = to_decimal(subtotal)
    check_eligibility(session, promotion, items, subtotal, user=user, now=now)
    return _capped_discount(promotion, items, subtotal, tax, shipping_cost)


def _capped_discount(promotion: Promotion, items: List[Any], subtotal: Decimal,
                     tax: Decimal, shipping_cost: Decimal) -> DiscountResult:
    result = compute_discount(promotion, items, subtotal, shipping_cost)
    ceiling = quantize_money(subtotal + to_decimal(tax) + to_decimal(shipping_cost))
    if result.discount > ceiling:
        result.discount = ceiling
        result.breakdown['capped_at_total'] = True
    return result


def best_automatic(session: Session, items: List[Any], subtotal: Decimal,
                   tax: Decimal = ZERO, shipping_cost: Decimal = ZERO,
                   user: Optional[AppUser] = None, now: Optional[datetime] = None) -> Optional[DiscountResult]:
    """
    Largest discount among active promotions without a code, or None.

    Ties go to the oldest promotion. Ineligible promotions are skipped.
    """
    subtotal = to_decimal(subtotal)
    best = None
    candidates = session.query(Promotion).filter(
        Promotion.code.is_(None),
        Promotion.is_active.is_(True)
    ).order_by(Promotion.id).all()
    for promotion in candidates:
        try:
            check_eligibility(session, promotion, items, subtotal, user=user, now=now)
        except InvalidPromotionError:
            continue
        result = _capped_discount(promotion, items, subtotal, tax, shipping_cost)
        if result.discount > 0 and (best is None or result.discount > best.discount):
            best = result
    return best


def record_usage(session: Session, promotion_id: int, user_id: Optional[int]) -> Promotion:
    """
    Count one redemption globally and for the user. Does not commit.

    The promotion row is locked so concurrent checkouts cannot exceed `usage_limit`.
    """
    promotion = session.query(Promotion).filter(Promotion.id == promotion_id).with_for_update().first()
    if not promotion:
        raise NotFoundError('Promotion not found')
    if promotion.usage_limit and promotion.usage_count >= promotion.usage_limit:
        raise InvalidPromotionError('USAGE_LIMIT_REACHED')

    promotion.usage_count = (promotion.usage_count or 0) + 1

    if user_id is not None:
        usage = _user_usage(session, promotion, user_id)
        if usage is None:
            usage = PromotionUsage(promotion_id=promotion.id, user_id=user_id, count=0)
            session.add(usage)
        usage.count = (usage.count or 0) + 1
        usage.last_used = datetime.utcnow()

    session.flush()
    logger.info(f"[PROMO] Usage recorded for {promotion.code or promotion.id} (count={promotion.usage_count})")
    return promotion


# ---------------------------------------------------------------------------
# Management
# ---------------------------------------------------------------------------

def _parse_datetime(value, field_name):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'{field_name} must be an ISO-8601 date', payload={'field': field_name})
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed


def _optional_int(value, field_name, minimum=0):
    if value is None or value == '':
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field_name} must be an integer', payload={'field': field_name})
    if number < minimum:
        raise ValidationError(f'{field_name} must be at least {minimum}', payload={'field': field_name})
    return number


def _optional_decimal(value, field_name):
    if value is None or value == '':
        return None
    try:
        number = to_decimal(value)
    except Exception:
        raise ValidationError(f'{field_name} must be a number', payload={'field': field_name})
    if number < 0:
        raise ValidationError(f'{field_name} cannot be negative', payload={'field': field_name})
    return quantize_money(number)


FIELD_ALIASES = {
    'name': ('name',),
    'description': ('description',),
    'code': ('code',),
    'type': ('type',),
    'value': ('value',),
    'max_discount': ('maxDiscount', 'max_discount'),
    'min_order_value': ('minOrderValue', 'min_order_value'),
    'minimum_items': ('minimumItems', 'minimum_items'),
    'applicable_products': ('applicableProducts', 'applicable_products'),
    'applicable_categories': ('applicableCategories', 'applicable_categories'),
    'is_active': ('isActive', 'is_active'),
    'usage_limit': ('usageLimit', 'usage_limit'),
    'user_usage_limit': ('userUsageLimit', 'user_usage_limit'),
    'valid_from': ('validFrom', 'valid_from'),
    'valid_until': ('validUntil', 'valid_until'),
    'customer_type': ('customerType', 'customer_type'),
    'buy_x_get_y': ('buyXGetYConfig', 'buy_x_get_y'),
}


def _extract(data: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for name, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            if alias in data:
                values[name] = data[alias]
                break
    return values


def _apply_fields(promotion: Promotion, data: Dict[str, Any]) -> None:
    values = _extract(data)

    if 'name' in values:
        promotion.name = (values['name'] or '').strip()
    if 'description' in values:
        promotion.description = values['description']
    if 'code' in values:
        promotion.code = values['code']
    if 'type' in values:
        promotion.type = values['type']
    if 'value' in values:
        promotion.value = _optional_decimal(values['value'], 'value') or ZERO
    if 'max_discount' in values:
        promotion.max_discount = _optional_decimal(values['max_discount'], 'max_discount')
    if 'min_order_value' in values:
        promotion.min_order_value = _optional_decimal(values['min_order_value'], 'min_order_value') or ZERO
    if 'minimum_items' in values:
        promotion.minimum_items = _optional_int(values['minimum_items'], 'minimum_items') or 0
    if 'usage_limit' in values:
        promotion.usage_limit = _optional_int(values['usage_limit'], 'usage_limit') or 0
    if 'user_usage_limit' in values:
        promotion.user_usage_limit = _optional_int(values['user_usage_limit'], 'user_usage_limit') or 0
    if 'is_active' in values:
        promotion.is_active = bool(values['is_active'])
    if 'customer_type' in values:
        promotion.customer_type = values['customer_type'] or CustomerType.ALL.value
    if 'valid_from' in values:
        promotion.valid_from = _parse_datetime(values['valid_from'], 'valid_from') or datetime.utcnow()
    if 'valid_until' in values:
        promotion.valid_until = _parse_datetime(values['valid_until'], 'valid_until')
    for list_field in ('applicable_products', 'applicable_categories'):
        if list_field in values:
            raw = values[list_field] or []
            if not isinstance(raw, list):
                raise ValidationError(f'{list_field} must be a list of ids', payload={'field': list_field})
            promotion.__setattr__(list_field, [_optional_int(v, list_field, minimum=1) for v in raw])
    if 'buy_x_get_y' in values:
        config = values['buy_x_get_y'] or {}
        if not isinstance(config, dict):
            raise ValidationError('buyXGetYConfig must be an object', payload={'field': 'buy_x_get_y'})
        promotion.buy_quantity = _optional_int(config.get('buyQuantity', config.get('buy_quantity')), 'buy_quantity', 1)
        promotion.get_quantity = _optional_int(config.get('getQuantity', config.get('get_quantity')), 'get_quantity', 1)
        percent = config.get('discountPercent', config.get('discount_percent'))
        promotion.discount_percent = _optional_int(percent, 'discount_percent', 1) or 100


def check_invariants(promotion: Promotion) -> None:
    """Reject promotions the evaluator cannot apply consistently."""
    if not promotion.name:
        raise ValidationError('name is required', payload={'field': 'name'})
    if promotion.type not in {t.value for t in PromotionType}:
        raise ValidationError(f"type must be one of {', '.join(t.value for t in PromotionType)}", payload={'field': 'type'})
    if promotion.customer_type not in {c.value for c in CustomerType}:
        raise ValidationError('customer_type must be all, new or existing', payload={'field': 'customer_type'})
    if promotion.type in PERCENT_TYPES and to_decimal(promotion.value) > 100:
        raise ValidationError('Percentage value cannot exceed 100', payload={'field': 'value'})
    if promotion.type != PromotionType.BUY_X_GET_Y.value and to_decimal(promotion.value) <= 0:
        raise ValidationError('value must be greater than 0', payload={'field': 'value'})
    if promotion.type == PromotionType.BUY_X_GET_Y.value:
        if not promotion.buy_quantity or not promotion.get_quantity:
            raise ValidationError(
                'buy_x_get_y promotions require buyQuantity and getQuantity',
                payload={'field': 'buy_x_get_y'}
            )
        if not 1 <= (promotion.discount_percent or 0) <= 100:
            raise ValidationError('discount_percent must be between 1 and 100', payload={'field': 'discount_percent'})
    if promotion.type in PRODUCT_SCOPED and not promotion.applicable_products:
        raise ValidationError('applicableProducts is required for product promotions', payload={'field': 'applicable_products'})
    if promotion.type in CATEGORY_SCOPED and not promotion.applicable_categories:
        raise ValidationError('applicableCategories is required for category promotions', payload={'field': 'applicable_categories'})
    if promotion.valid_until and promotion.valid_from and promotion.valid_until <= promotion.valid_from:
        raise ValidationError('validUntil must be after validFrom', payload={'field': 'valid_until'})


def _invalidate_promotions_cache() -> None:
    """Drop cached promotion listings after a write."""
    try:
        from app.services.cache_service import get_cache
        get_cache().invalidate(PROMOTIONS_CACHE_NAMESPACE)
    except RuntimeError:
        # Cache not initialized (e.g. CLI context)
        pass


def _ensure_code_free(session: Session, promotion: Promotion) -> None:
    if not promotion.code:
        return
    clash = session.query(Promotion).filter(
        Promotion.code == promotion.code,
        Promotion.id != promotion.id if promotion.id else True
    ).first()
    if clash:
        raise ConflictError(f"Promotion code '{promotion.code}' already exists")


def create_promotion(session: Session, data: Dict[str, Any]) -> Promotion:
    """Create a promotion from request data (camelCase or snake_case keys)."""
    promotion = Promotion(
        value=ZERO, min_order_value=ZERO, minimum_items=0, usage_limit=0, usage_count=0,
        user_usage_limit=0, discount_percent=100, is_active=True,
        customer_type=CustomerType.ALL.value, applicable_products=[], applicable_categories=[],
        valid_from=datetime.utcnow()
    )
    _apply_fields(promotion, data)
    check_invariants(promotion)
    _ensure_code_free(session, promotion)

    session.add(promotion)
    session.commit()
    _invalidate_promotions_cache()
    logger.info(f"[PROMO] Created promotion {promotion.id} ({promotion.code or 'automatic'})")
    return promotion


def get_promotion(session: Session, promotion_id: int) -> Promotion:
    promotion = session.get(Promotion, promotion_id)
    if not promotion:
        raise NotFoundError('Promotion not found')
    return promotion


def update_promotion(session: Session, promotion_id: int, data: Dict[str, Any]) -> Promotion:
    """Apply a partial update; invariants are checked on the merged result."""
    promotion = get_promotion(session, promotion_id)
    try:
        _apply_fields(promotion, data)
        check_invariants(promotion)
        _ensure_code_free(session, promotion)
    except Exception:
        session.rollback()
        raise
    session.commit()
    _invalidate_promotions_cache()
    logger.info(f"[PROMO] Updated promotion {promotion.id}")
    return promotion


def deactivate_promotion(session: Session, promotion_id: int) -> Promotion:
    """Promotions are never deleted; redemptions keep referring to them."""
    promotion = get_promotion(session, promotion_id)
    promotion.is_active = False
    session.commit()
    _invalidate_promotions_cache()
    logger.info(f"[PROMO] Deactivated promotion {promotion.id}")
    return promotion


def list_promotions(session: Session, page: int = 1, limit: int = 20,
                    active: Optional[bool] = None) -> Dict[str, Any]:
    query = session.query(Promotion)
    if active is not None:
        query = query.filter(Promotion.is_active == active)
    total = query.count()
    rows = query.order_by(Promotion.created_at.desc(), Promotion.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        'promotions': [p.to_dict() for p in rows],
        'pagination': {'page': page, 'limit': limit, 'total': total, 'pages': (total + limit - 1) // limit},
    }


def get_active_promotions(session: Session, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Currently redeemable promotions, as shown on the storefront."""
    now = now or datetime.utcnow()
    rows = session.query(Promotion).filter(
        Promotion.is_active.is_(True),
        Promotion.valid_from <= now,
        (Promotion.valid_until.is_(None)) | (Promotion.valid_until >= now)
    ).order_by(Promotion.valid_until.is_(None), Promotion.valid_until).all()

    return [
        {
            'code': p.code,
            'name': p.name,
            'description': p.description,
            'type': p.type,
            'value': float(p.value or 0),
            'max_discount': float(p.max_discount) if p.max_discount is not None else None,
            'min_order_value': float(p.min_order_value or 0),
            'valid_until': p.valid_until.isoformat() if p.valid_until else None,
        }
        for p in rows
        if not (p.usage_limit and p.usage_count >= p.usage_limit)
    ]
