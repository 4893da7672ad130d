"""
Unit tests for the promotion evaluator and promotion management.
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

from app.exceptions import InvalidPromotionError, ValidationError, ConflictError
from app.models import Promotion, PromotionUsage
from app.services import promotion_service


def line(product_id, price, quantity, category_id=None):
    """Cart-line stand-in with the attributes the evaluator reads."""
    return SimpleNamespace(
        product_id=product_id,
        unit_price=Decimal(str(price)),
        quantity=quantity,
        product=SimpleNamespace(category_id=category_id)
    )


def promo(kind, value=0, **kwargs):
    fields = dict(
        name=f'{kind} promo',
        type=kind,
        value=Decimal(str(value)),
        max_discount=None,
        applicable_products=[],
        applicable_categories=[],
        discount_percent=100,
    )
    fields.update(kwargs)
    return Promotion(**fields)


@pytest.fixture
def make_promotion(session):
    """Persist a coded promotion valid from yesterday for thirty days."""
    def factory(code, kind='percentage', value=10, **kwargs):
        fields = dict(
            name=f'Promo {code}',
            code=code,
            type=kind,
            value=Decimal(str(value)),
            min_order_value=Decimal('0'),
            valid_from=datetime.utcnow() - timedelta(days=1),
            valid_until=datetime.utcnow() + timedelta(days=30),
            is_active=True,
        )
        fields.update(kwargs)
        promotion = Promotion(**fields)
        session.add(promotion)
        session.commit()
        return promotion
    return factory


class TestComputeDiscount:
    """Discount arithmetic per promotion kind."""

    def test_percentage(self):
        """10% of 2000 is 200."""
        result = promotion_service.compute_discount(
            promo('percentage', 10), [line(1, '1000', 2)], Decimal('2000')
        )
        assert result.discount == Decimal('200.00')

    def test_percentage_respects_max_discount(self):
        result = promotion_service.compute_discount(
            promo('percentage', 50, max_discount=Decimal('300')), [line(1, '1000', 2)], Decimal('2000')
        )
        assert result.discount == Decimal('300.00')

    def test_fixed_never_exceeds_subtotal(self):
        result = promotion_service.compute_discount(
            promo('fixed', 500), [line(1, '120', 1)], Decimal('120')
        )
        assert result.discount == Decimal('120.00')

    def test_free_shipping(self):
        result = promotion_service.compute_discount(
            promo('shipping', 100), [line(1, '500', 1)], Decimal('500'), Decimal('99')
        )
        assert result.discount == Decimal('99.00')
        assert result.breakdown['free_shipping'] is True

    def test_partial_shipping_discount(self):
        result = promotion_service.compute_discount(
            promo('shipping', 50), [line(1, '500', 1)], Decimal('500'), Decimal('199')
        )
        assert result.discount == Decimal('99.50')

    def test_product_percentage_only_discounts_listed_products(self):
        items = [line(1, '1000', 1), line(2, '200', 2)]
        result = promotion_service.compute_discount(
            promo('product_percentage', 25, applicable_products=[2]), items, Decimal('1400')
        )
        assert result.discount == Decimal('100.00')
        assert result.breakdown['eligible_items'] == [2]

    def test_product_fixed_is_per_unit(self):
        items = [line(1, '1000', 1), line(2, '200', 3)]
        result = promotion_service.compute_discount(
            promo('product_fixed', 50, applicable_products=[2]), items, Decimal('1600')
        )
        assert result.discount == Decimal('150.00')

    def test_category_percentage(self):
        items = [line(1, '1000', 1, category_id=7), line(2, '200', 1, category_id=8)]
        result = promotion_service.compute_discount(
            promo('category_percentage', 10, applicable_categories=[7]), items, Decimal('1200')
        )
        assert result.discount == Decimal('100.00')

    def test_category_fixed_capped_at_eligible_amount(self):
        items = [line(1, '40', 2, category_id=7)]
        result = promotion_service.compute_discount(
            promo('category_fixed', 100, applicable_categories=[7]), items, Decimal('80')
        )
        assert result.discount == Decimal('80.00')


class TestBuyXGetY:
    """Grouping of eligible units for buy-X-get-Y."""

    def test_buy_two_get_one_with_three_units(self):
        """A complete group of three discounts one unit."""
        promotion = promo('buy_x_get_y', buy_quantity=2, get_quantity=1)
        result = promotion_service.compute_discount(promotion, [line(1, '300', 3)], Decimal('900'))

        assert result.discount == Decimal('300.00')
        assert result.breakdown['discounted_units'] == 1
        assert result.breakdown['complete_groups'] == 1

    def test_buy_two_get_one_with_two_units(self):
        """An incomplete group gets nothing."""
        promotion = promo('buy_x_get_y', buy_quantity=2, get_quantity=1)
        result = promotion_service.compute_discount(promotion, [line(1, '300', 2)], Decimal('600'))

        assert result.discount == Decimal('0.00')
        assert result.breakdown['discounted_units'] == 0

    def test_cheapest_units_are_discounted_at_configured_percent(self):
        promotion = promo('buy_x_get_y', buy_quantity=2, get_quantity=1, discount_percent=50)
        items = [line(1, '100', 3), line(2, '400', 3)]
        result = promotion_service.compute_discount(promotion, items, Decimal('1500'))

        # two groups -> the two cheapest units at half price
        assert result.discount == Decimal('100.00')

    def test_restricted_to_applicable_products(self):
        promotion = promo('buy_x_get_y', buy_quantity=1, get_quantity=1, applicable_products=[2])
        items = [line(1, '100', 4), line(2, '250', 2)]
        result = promotion_service.compute_discount(promotion, items, Decimal('900'))

        assert result.discount == Decimal('250.00')
        assert result.breakdown['eligible_units'] == 2


class TestValidate:
    """Eligibility checks and rejection reasons."""

    def test_valid_code_is_case_insensitive(self, session, make_promotion):
        make_promotion('SAVE10')
        result = promotion_service.validate(session, ' save10 ', [line(1, '1000', 2)], Decimal('2000'))

        assert result.discount == Decimal('200.00')
        assert result.promotion.code == 'SAVE10'

    def test_unknown_code(self, session):
        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'NOPE', [line(1, '100', 1)], Decimal('100'))
        assert exc.value.reason == 'NOT_FOUND'
        assert exc.value.status_code == 400

    def test_inactive_code_is_not_found(self, session, make_promotion):
        make_promotion('OFF', is_active=False)
        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'OFF', [line(1, '100', 1)], Decimal('100'))
        assert exc.value.reason == 'NOT_FOUND'

    def test_expired(self, session, make_promotion):
        make_promotion(
            'OLD',
            valid_from=datetime.utcnow() - timedelta(days=10),
            valid_until=datetime.utcnow() - timedelta(days=1)
        )
        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'OLD', [line(1, '100', 1)], Decimal('100'))
        assert exc.value.reason == 'EXPIRED'

    def test_not_yet_active(self, session, make_promotion):
        make_promotion(
            'SOON',
            valid_from=datetime.utcnow() + timedelta(days=1),
            valid_until=datetime.utcnow() + timedelta(days=5)
        )
        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'SOON', [line(1, '100', 1)], Decimal('100'))
        assert exc.value.reason == 'NOT_YET_ACTIVE'

    def test_min_order_not_met(self, session, make_promotion):
        make_promotion('BIG', min_order_value=Decimal('1000'))
        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'BIG', [line(1, '999', 1)], Decimal('999'))
        assert exc.value.reason == 'MIN_ORDER_NOT_MET'
        assert exc.value.payload['min_order_value'] == 1000.0

    def test_min_items_not_met(self, session, make_promotion):
        make_promotion('MANY', minimum_items=3)
        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'MANY', [line(1, '100', 2)], Decimal('200'))
        assert exc.value.reason == 'MIN_ITEMS_NOT_MET'

    def test_usage_limit_reached(self, session, make_promotion):
        make_promotion('LIMITED', usage_limit=5, usage_count=5)
        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'LIMITED', [line(1, '100', 1)], Decimal('100'))
        assert exc.value.reason == 'USAGE_LIMIT_REACHED'

    def test_user_limit_reached(self, session, make_promotion, customer):
        promotion = make_promotion('ONCE', user_usage_limit=1)
        session.add(PromotionUsage(promotion_id=promotion.id, user_id=customer.id, count=1))
        session.commit()

        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'ONCE', [line(1, '100', 1)], Decimal('100'), user=customer)
        assert exc.value.reason == 'USER_LIMIT_REACHED'

    def test_new_customer_only(self, session, make_promotion, customer, user_factory):
        make_promotion('WELCOME', customer_type='new')
        newcomer = user_factory('new@test.com', created_at=datetime.utcnow() - timedelta(days=2))

        result = promotion_service.validate(session, 'WELCOME', [line(1, '100', 1)], Decimal('100'), user=newcomer)
        assert result.discount == Decimal('10.00')

        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'WELCOME', [line(1, '100', 1)], Decimal('100'), user=customer)
        assert exc.value.reason == 'CUSTOMER_TYPE_MISMATCH'

    def test_customer_type_rejects_guests(self, session, make_promotion):
        make_promotion('LOYAL', customer_type='existing')
        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(session, 'LOYAL', [line(1, '100', 1)], Decimal('100'), user=None)
        assert exc.value.reason == 'CUSTOMER_TYPE_MISMATCH'

    def test_already_applied_is_conflict(self, session, make_promotion):
        make_promotion('SAVE10')
        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.validate(
                session, 'SAVE10', [line(1, '100', 1)], Decimal('100'), applied_code='save10'
            )
        assert exc.value.reason == 'ALREADY_APPLIED'
        assert exc.value.status_code == 409

    def test_blank_code(self, session):
        with pytest.raises(ValidationError):
            promotion_service.validate(session, '  ', [line(1, '100', 1)], Decimal('100'))

    def test_discount_never_exceeds_cart_total(self, session, make_promotion):
        """A misconfigured rule is capped at subtotal + tax + shipping."""
        make_promotion('HUGE', value=150)
        result = promotion_service.validate(
            session, 'HUGE', [line(1, '100', 1)], Decimal('100'),
            tax=Decimal('18'), shipping_cost=Decimal('10')
        )
        assert result.discount == Decimal('128.00')
        assert result.breakdown['capped_at_total'] is True


class TestAutomaticPromotions:
    """Promotions without a code apply when eligible."""

    def test_best_discount_wins(self, session, make_promotion):
        make_promotion(None, value=5)
        best = make_promotion(None, value=10)
        make_promotion('CODED', value=50)

        result = promotion_service.best_automatic(session, [line(1, '500', 2)], Decimal('1000'))

        assert result.promotion.id == best.id
        assert result.discount == Decimal('100.00')

    def test_ineligible_rules_are_skipped(self, session, make_promotion):
        make_promotion(None, value=20, min_order_value=Decimal('5000'))
        make_promotion(None, value=10, is_active=False)
        make_promotion(None, kind='fixed', value=30)

        result = promotion_service.best_automatic(session, [line(1, '500', 2)], Decimal('1000'))

        assert result.discount == Decimal('30.00')

    def test_none_when_nothing_applies(self, session, make_promotion):
        make_promotion(None, value=10, valid_until=datetime.utcnow() - timedelta(hours=1),
                       valid_from=datetime.utcnow() - timedelta(days=2))
        assert promotion_service.best_automatic(session, [line(1, '500', 1)], Decimal('500')) is None


class TestRecordUsage:
    """Redemption counters."""

    def test_counts_global_and_per_user(self, session, make_promotion, customer):
        promotion = make_promotion('SAVE10')

        promotion_service.record_usage(session, promotion.id, customer.id)
        promotion_service.record_usage(session, promotion.id, customer.id)
        session.commit()

        usage = session.query(PromotionUsage).filter_by(promotion_id=promotion.id, user_id=customer.id).one()
        assert promotion.usage_count == 2
        assert usage.count == 2
        assert usage.last_used is not None

    def test_rejects_past_limit(self, session, make_promotion):
        promotion = make_promotion('LIMITED', usage_limit=1)
        promotion_service.record_usage(session, promotion.id, None)

        with pytest.raises(InvalidPromotionError) as exc:
            promotion_service.record_usage(session, promotion.id, None)
        assert exc.value.reason == 'USAGE_LIMIT_REACHED'


class TestPromotionManagement:
    """Create/update/deactivate with invariant checks."""

    def test_create_from_camel_case(self, session):
        promotion = promotion_service.create_promotion(session, {
            'name': 'Weekend',
            'code': 'weekend',
            'type': 'percentage',
            'value': 15,
            'maxDiscount': '250',
            'minOrderValue': 500,
            'validUntil': (datetime.utcnow() + timedelta(days=2)).isoformat(),
        })

        assert promotion.id is not None
        assert promotion.code == 'WEEKEND'
        assert promotion.max_discount == Decimal('250.00')
        assert promotion.min_order_value == Decimal('500.00')

    def test_create_buy_x_get_y_requires_config(self, session):
        with pytest.raises(ValidationError):
            promotion_service.create_promotion(session, {'name': 'B2G1', 'code': 'B2G1', 'type': 'buy_x_get_y'})

    def test_create_buy_x_get_y(self, session):
        promotion = promotion_service.create_promotion(session, {
            'name': 'B2G1',
            'code': 'B2G1',
            'type': 'buy_x_get_y',
            'buyXGetYConfig': {'buyQuantity': 2, 'getQuantity': 1},
        })
        assert promotion.buy_quantity == 2
        assert promotion.get_quantity == 1
        assert promotion.discount_percent == 100

    def test_window_must_be_ordered(self, session):
        now = datetime.utcnow()
        with pytest.raises(ValidationError):
            promotion_service.create_promotion(session, {
                'name': 'Backwards',
                'code': 'BACK',
                'type': 'fixed',
                'value': 50,
                'validFrom': now.isoformat(),
                'validUntil': (now - timedelta(days=1)).isoformat(),
            })

    def test_percentage_above_hundred_rejected(self, session):
        with pytest.raises(ValidationError):
            promotion_service.create_promotion(session, {'name': 'Too much', 'type': 'percentage', 'value': 120})

    def test_duplicate_code_conflicts(self, session, make_promotion):
        make_promotion('SAVE10')
        with pytest.raises(ConflictError):
            promotion_service.create_promotion(session, {
                'name': 'Again', 'code': 'save10', 'type': 'fixed', 'value': 10
            })

    def test_update_checks_merged_result(self, session, make_promotion):
        promotion = make_promotion('SAVE10')
        with pytest.raises(ValidationError):
            promotion_service.update_promotion(session, promotion.id, {'value': 101})

        session.refresh(promotion)
        assert promotion.value == Decimal('10.00')

    def test_deactivate_hides_from_active_listing(self, session, make_promotion):
        kept = make_promotion('KEEP')
        dropped = make_promotion('DROP')
        make_promotion('USEDUP', usage_limit=1, usage_count=1)

        promotion_service.deactivate_promotion(session, dropped.id)
        codes = [p['code'] for p in promotion_service.get_active_promotions(session)]

        assert codes == [kept.code]
