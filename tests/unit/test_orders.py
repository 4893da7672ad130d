"""
Unit tests for the order service and its state machine.
"""

import re
import pytest
import requests
from decimal import Decimal

from app.exceptions import (
    ConflictError, EmptyCartError, ForbiddenError, InvalidPromotionError,
    InvalidTransitionError, OutOfStockError, ValidationError
)
from app.models import (
    ALLOWED_TRANSITIONS, Order, OrderStatus, Payment, Promotion, PromotionUsage
)
from app.services import cart_service, inventory_service, order_service
from app.services.inventory_service import StockRequest
from app.services.payment_service import PaymentService


def stock_counters(session, product):
    stock = inventory_service.get_stock(session, product.id)
    session.refresh(stock)
    return stock.quantity, stock.reserved


def advance(session, order, actor, *statuses):
    for status in statuses:
        order_service.update_status(session, order.id, status, actor)
    return order_service.get_order(session, order.id)


class TestOrderStateMachine:
    """Transition table."""

    @pytest.mark.parametrize('current,target', [
        ('pending', 'processing'),
        ('pending', 'cancelled'),
        ('processing', 'shipped'),
        ('processing', 'cancelled'),
        ('processing', 'refunded'),
        ('shipped', 'delivered'),
        ('shipped', 'refunded'),
        ('delivered', 'refunded'),
    ])
    def test_allowed(self, current, target):
        assert Order(status=current).can_transition_to(target)

    @pytest.mark.parametrize('current,target', [
        ('pending', 'shipped'),
        ('pending', 'delivered'),
        ('pending', 'refunded'),
        ('shipped', 'cancelled'),
        ('delivered', 'cancelled'),
        ('delivered', 'shipped'),
        ('cancelled', 'pending'),
        ('refunded', 'processing'),
    ])
    def test_forbidden(self, current, target):
        assert not Order(status=current).can_transition_to(target)

    def test_terminal_states(self):
        assert ALLOWED_TRANSITIONS['cancelled'] == set()
        assert ALLOWED_TRANSITIONS['refunded'] == set()


class TestCreateFromCart:
    """Checkout."""

    def test_create_snapshots_and_reserves(self, session, place_order, customer, shirt, mug):
        order = place_order(lines=[(shirt, 1), (mug, 2)])

        assert re.match(r'^ORD-\d{6}-\d{4}$', order.order_number)
        assert order.status == OrderStatus.PENDING.value
        assert order.payment_status == 'pending'
        assert order.subtotal == Decimal('900.00')
        assert order.tax == Decimal('162.00')
        assert order.shipping_cost == Decimal('99.00')
        assert order.total == Decimal('1161.00')
        assert order.total == order.subtotal + order.tax + order.shipping_cost - order.discount
        assert [h.status for h in order.status_history] == ['pending']
        assert order.inventory_state == 'reserved'

        assert stock_counters(session, shirt) == (10, 1)
        assert stock_counters(session, mug) == (10, 2)

        cart = cart_service.get_cart(session, user_id=customer.id)
        assert cart.items == []

    def test_create_with_coupon_records_usage(self, session, place_order, customer, save10):
        order = place_order(quantity=2, coupon='SAVE10')

        assert order.discount == Decimal('100.00')
        assert order.shipping_cost == Decimal('0.00')
        assert order.total == Decimal('1080.00')
        assert order.coupon_code == 'SAVE10'

        session.refresh(save10)
        assert save10.usage_count == 1
        assert session.query(PromotionUsage).filter_by(user_id=customer.id).one().count == 1

    def test_order_total_matches_cart_total(self, session, customer, product_factory, address):
        """Checkout charges exactly what the cart showed."""
        pen = product_factory('PEN-001', 'Pen', '10.25')
        pencil = product_factory('PENCIL-001', 'Pencil', '10.25')
        cart = cart_service.get_or_create(session, user_id=customer.id)
        cart_service.add_item(session, cart, pen.id, 1)
        cart_service.add_item(session, cart, pencil.id, 1)
        totals = cart_service.calculate_totals(session, cart)

        order = order_service.create_from_cart(session, cart, customer, address, payment_method='cod')

        assert order.tax == totals['tax'] == Decimal('3.69')
        assert order.shipping_method == 'standard'
        assert order.shipping_cost == totals['shipping']
        assert order.total == totals['total']

    def test_automatic_promotion_applied_and_counted(self, session, place_order):
        festive = Promotion(name='Festive 10', code=None, type='percentage', value=Decimal('10'), is_active=True)
        session.add(festive)
        session.commit()

        order = place_order(quantity=2)

        assert order.discount == Decimal('100.00')
        assert order.coupon_code is None
        assert order.promotion_id == festive.id
        assert order.total == Decimal('1080.00')
        session.refresh(festive)
        assert festive.usage_count == 1

    def test_variant_snapshot(self, session, customer, shirt, shirt_variant, address):
        cart = cart_service.get_or_create(session, user_id=customer.id)
        cart_service.add_item(session, cart, shirt.id, 2, variant_id=shirt_variant.id)

        order = order_service.create_from_cart(session, cart, customer, address, payment_method='cod')

        item = order.items[0]
        assert item.variant_sku == 'SHIRT-001-L'
        assert item.variant_name == 'Large'
        assert item.price == Decimal('550.00')

    def test_empty_cart(self, session, customer, address):
        cart = cart_service.get_or_create(session, user_id=customer.id)
        with pytest.raises(EmptyCartError):
            order_service.create_from_cart(session, cart, customer, address)

    def test_out_of_stock_creates_nothing(self, session, customer, shirt, address):
        cart = cart_service.get_or_create(session, user_id=customer.id)
        cart_service.add_item(session, cart, shirt.id, 5)
        inventory_service.reserve(session, [StockRequest(shirt.id, None, 6)])
        session.commit()

        with pytest.raises(OutOfStockError):
            order_service.create_from_cart(session, cart, customer, address, payment_method='cod')

        assert session.query(Order).count() == 0
        assert stock_counters(session, shirt) == (10, 6)
        assert cart.items[0].quantity == 5

    def test_coupon_invalid_at_checkout(self, session, customer, shirt, save10, address):
        cart = cart_service.get_or_create(session, user_id=customer.id)
        cart_service.add_item(session, cart, shirt.id, 1)
        cart_service.apply_coupon(session, cart, 'SAVE10')
        save10.is_active = False
        session.commit()

        with pytest.raises(InvalidPromotionError):
            order_service.create_from_cart(session, cart, customer, address, payment_method='cod')

        assert session.query(Order).count() == 0
        assert stock_counters(session, shirt) == (10, 0)

    def test_unknown_payment_method(self, session, customer, shirt, address):
        cart = cart_service.get_or_create(session, user_id=customer.id)
        cart_service.add_item(session, cart, shirt.id, 1)
        with pytest.raises(ValidationError):
            order_service.create_from_cart(session, cart, customer, address, payment_method='cheque')

    def test_snapshot_survives_product_changes(self, session, place_order, shirt):
        """Order lines keep their checkout values after the product is edited and deleted."""
        order = place_order(quantity=2)
        order_id = order.id

        shirt.name = 'Renamed Shirt'
        shirt.regular_price = Decimal('999.00')
        session.commit()
        session.expire_all()
        item = order_service.get_order(session, order_id).items[0]
        assert item.name == 'Shirt'
        assert item.price == Decimal('500.00')

        session.delete(shirt)
        session.commit()
        session.expire_all()
        item = order_service.get_order(session, order_id).items[0]
        assert item.name == 'Shirt'
        assert item.sku == 'SHIRT-001'
        assert item.quantity == 2
        assert item.subtotal == Decimal('1000.00')


class TestStatusTransitions:
    """Status changes with their inventory side effects."""

    def test_confirmation_commits_stock(self, session, place_order, admin, shirt):
        order = place_order(quantity=2)

        order = advance(session, order, admin, 'processing')

        assert order.inventory_state == 'committed'
        assert order.payment_status == 'pending'
        assert stock_counters(session, shirt) == (8, 0)

    def test_delivery_marks_cod_paid(self, session, place_order, admin, shirt):
        order = place_order(quantity=2)

        order = advance(session, order, admin, 'processing', 'shipped', 'delivered')

        assert order.status == 'delivered'
        assert order.inventory_state == 'committed'
        assert order.payment_status == 'paid'
        assert stock_counters(session, shirt) == (8, 0)
        assert [h.status for h in order.status_history] == ['pending', 'processing', 'shipped', 'delivered']

    def test_illegal_transition_changes_nothing(self, session, place_order, admin):
        order = place_order()

        with pytest.raises(InvalidTransitionError):
            order_service.update_status(session, order.id, 'delivered', admin)

        order = order_service.get_order(session, order.id)
        assert order.status == 'pending'
        assert len(order.status_history) == 1

    def test_unknown_status(self, session, place_order, admin):
        order = place_order()
        with pytest.raises(ValidationError):
            order_service.update_status(session, order.id, 'lost', admin)

    def test_history_records_actor_and_note(self, session, place_order, staff):
        order = place_order()
        order_service.update_status(session, order.id, 'processing', staff, note='Packed')

        entry = order_service.get_order(session, order.id).status_history[-1]
        assert entry.status == 'processing'
        assert entry.note == 'Packed'
        assert entry.actor_id == staff.id


class TestCancel:
    """Cancellation rules."""

    def test_cancel_pending_releases_stock(self, session, place_order, customer, shirt):
        order = place_order(quantity=3)

        order = order_service.cancel(session, order.id, customer, reason='Changed my mind')

        assert order.status == 'cancelled'
        assert order.cancel_reason == 'Changed my mind'
        assert order.inventory_state == 'released'
        assert stock_counters(session, shirt) == (10, 0)

    def test_cancel_processing_restocks(self, session, place_order, admin, customer, shirt):
        order = place_order(quantity=2)
        advance(session, order, admin, 'processing')

        order = order_service.cancel(session, order.id, customer)

        assert order.inventory_state == 'restocked'
        assert stock_counters(session, shirt) == (10, 0)

    def test_cancel_shipped_is_conflict(self, session, place_order, admin, customer):
        """Shipped orders cannot be cancelled; status and history stay as they were."""
        order = place_order()
        advance(session, order, admin, 'processing', 'shipped')

        with pytest.raises(ConflictError):
            order_service.cancel(session, order.id, customer)

        order = order_service.get_order(session, order.id)
        assert order.status == 'shipped'
        assert [h.status for h in order.status_history] == ['pending', 'processing', 'shipped']

    def test_cancel_other_users_order_forbidden(self, session, place_order, other_customer):
        order = place_order()
        with pytest.raises(ForbiddenError):
            order_service.cancel(session, order.id, other_customer)

    def test_cancel_paid_order_refunds(self, session, place_order, pay_order, customer, gateway):
        order = place_order(payment_method='razorpay')
        payment = pay_order(order)

        order = order_service.cancel(session, order.id, customer)

        assert order.status == 'cancelled'
        assert order.payment_status == 'refunded'
        assert order.refund_amount == order.total
        gateway.refund_payment.assert_called_once()
        assert session.get(Payment, payment.id).status == 'refunded'

    def test_failed_auto_refund_leaves_note(self, session, place_order, pay_order, customer, gateway):
        order = place_order(payment_method='razorpay')
        pay_order(order)
        gateway.refund_payment.side_effect = requests.ConnectionError('gateway down')

        order = order_service.cancel(session, order.id, customer)

        assert order.status == 'cancelled'
        assert order.payment_status == 'paid'
        assert order.status_history[-1].note == order_service.AUTO_REFUND_FAILED_NOTE


class TestPayments:
    """Order side of payment capture."""

    def test_paid_order_moves_to_processing(self, session, place_order, pay_order):
        order = place_order(payment_method='razorpay')
        payment = pay_order(order, gateway_payment_id='pay_ABC123')

        order = order_service.get_order(session, order.id)
        assert order.payment_status == 'paid'
        assert order.status == 'processing'
        assert order.transaction_id == 'pay_ABC123'
        assert order.gateway_order_id == payment.gateway_order_id
        assert order.status_history[-1].note == 'Payment received'

    def test_payment_commits_stock(self, session, place_order, pay_order, shirt):
        order = place_order(quantity=3, payment_method='razorpay')
        pay_order(order)

        assert order_service.get_order(session, order.id).inventory_state == 'committed'
        assert stock_counters(session, shirt) == (7, 0)

    def test_capture_after_cancel_needs_manual_refund(self, session, place_order, customer, gateway, sign):
        order = place_order(payment_method='razorpay')
        service = PaymentService(session)
        payment = service.create_intent_for_order(order)['payment']
        order_service.cancel(session, order.id, customer)

        service.verify_confirmation(payment.gateway_order_id, 'pay_LATE01', sign(payment.gateway_order_id, 'pay_LATE01'))

        order = order_service.get_order(session, order.id)
        assert order.status == 'cancelled'
        assert order.payment_status == 'pending'
        assert order.status_history[-1].note == order_service.LATE_CAPTURE_NOTE
        assert session.get(Payment, payment.id).status == 'captured'


class TestRefunds:
    """Order refunds."""

    def test_cod_partial_then_full_refund(self, session, place_order, admin):
        order = place_order()
        advance(session, order, admin, 'processing', 'shipped', 'delivered')

        order = order_service.process_refund(session, order.id, admin, amount=Decimal('100'))
        assert order.status == 'delivered'
        assert order.refund_amount == Decimal('100.00')

        order = order_service.process_refund(session, order.id, admin)
        assert order.status == 'refunded'
        assert order.payment_status == 'refunded'
        assert order.refund_amount == order.total

    def test_refund_unpaid_order(self, session, place_order, admin):
        order = place_order()
        with pytest.raises(ConflictError):
            order_service.process_refund(session, order.id, admin)

    def test_refund_more_than_paid(self, session, place_order, admin):
        order = place_order()
        advance(session, order, admin, 'processing', 'shipped', 'delivered')
        with pytest.raises(ValidationError):
            order_service.process_refund(session, order.id, admin, amount=Decimal('5000'))

    def test_status_refunded_goes_through_refund(self, session, place_order, pay_order, admin, gateway):
        order = place_order(payment_method='razorpay')
        pay_order(order)

        order = order_service.update_status(session, order.id, 'refunded', admin)

        assert order.status == 'refunded'
        assert order.inventory_state == 'restocked'
        gateway.refund_payment.assert_called_once()


class TestOrderAccess:
    """Reads, notes and shipping updates."""

    def test_owner_and_staff_can_read(self, session, place_order, customer, staff, other_customer):
        order = place_order()

        assert order_service.get_order(session, order.id, customer).id == order.id
        assert order_service.get_order(session, order.id, staff).id == order.id
        with pytest.raises(ForbiddenError):
            order_service.get_order(session, order.id, other_customer)

    def test_add_note(self, session, place_order, staff):
        order = place_order()
        note = order_service.add_note(session, order.id, staff, 'Call before delivery', is_public=False)

        assert note.id is not None
        order = order_service.get_order(session, order.id)
        assert [n['text'] for n in order.to_dict()['notes']] == []
        assert [n['text'] for n in order.to_dict(include_internal=True)['notes']] == ['Call before delivery']

    def test_shipping_cost_change_recomputes_unpaid_total(self, session, place_order, staff):
        order = place_order()
        order = order_service.update_shipping_info(
            session, order.id, staff, tracking_number='AWB123', carrier='BlueDart', cost=Decimal('0')
        )

        assert order.tracking_number == 'AWB123'
        assert order.total == Decimal('590.00')

    def test_shipping_cost_frozen_after_payment(self, session, place_order, pay_order, staff):
        order = place_order(payment_method='razorpay')
        pay_order(order)

        with pytest.raises(ConflictError):
            order_service.update_shipping_info(session, order.id, staff, cost=Decimal('0'))


class TestReporting:
    """Listings, stats and invoices."""

    def test_list_by_status_with_counts(self, session, place_order, admin):
        first = place_order()
        place_order()
        order_service.update_status(session, first.id, 'processing', admin)

        result = order_service.list_by_status(session, 'pending')
        assert len(result['orders']) == 1
        assert result['counts']['pending'] == 1
        assert result['counts']['processing'] == 1

        assert order_service.list_by_status(session, 'all')['pagination']['total'] == 2

    def test_list_by_unknown_status(self, session):
        with pytest.raises(ValidationError):
            order_service.list_by_status(session, 'lost')

    def test_list_user_orders(self, session, place_order, customer, other_customer):
        place_order()
        place_order(user=other_customer)

        result = order_service.list_user_orders(session, customer.id)
        assert result['pagination']['total'] == 1

    def test_stats(self, session, place_order, admin):
        order = place_order()
        place_order()
        advance(session, order, admin, 'processing', 'shipped', 'delivered')

        stats = order_service.get_stats(session)
        assert stats['total_orders'] == 2
        assert stats['paid_orders'] == 1
        assert stats['gross_revenue'] == float(order.total)
        assert stats['counts']['delivered'] == 1

    def test_invoice_pdf(self, session, place_order, customer):
        order = place_order()

        pdf = order_service.generate_invoice(session, order.id, customer)

        assert pdf.getvalue().startswith(b'%PDF')
        assert order_service.get_order(session, order.id).invoice_url == f'/invoices/{order.order_number}.pdf'
