"""
Order service with transactional logic.
Handles checkout from a cart, status transitions, cancellation, refunds and reporting.
"""
import logging
import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import (
    AppUser, Cart, Order, OrderItem, OrderNote, OrderStatusHistory, OrderStatus,
    OrderPaymentStatus, PaymentMethod, Payment, PaymentStatus, SETTLED_STATUSES
)
from app.exceptions import (
    ApiError, ConflictError, EmptyCartError, ForbiddenError, InvalidTransitionError,
    NotFoundError, ValidationError
)
from app.decorators.permissions import has_capability
from app.services import cart_service, inventory_service, promotion_service
from app.services.cache_service import get_cache
from app.services.inventory_service import StockRequest
from app.utils.money import ZERO, to_decimal, quantize_money
from app.blueprints.metrics import orders_created_total

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)
AUTO_REFUND_FAILED_NOTE = 'Automatic refund failed - manual refund required'
LATE_CAPTURE_NOTE = 'Payment captured after the order was closed - manual refund required'
AMOUNT_MISMATCH_NOTE = 'Captured amount differs from the order total - manual review required'
STATS_CACHE_NAMESPACE = 'order_stats'


def generate_order_number(session: Session, attempts: int = 10) -> str:
    """ORD-YYMMDD-NNNN with a random suffix, retried until unused."""
    prefix = f"ORD-{datetime.utcnow():%y%m%d}"
    for _ in range(attempts):
        candidate = f"{prefix}-{random.randint(0, 9999):04d}"
        exists = session.query(Order.id).filter(Order.order_number == candidate).first()
        if not exists:
            return candidate
    raise ConflictError('Could not allocate an order number, please retry')


def _stock_requests(order: Order) -> List[StockRequest]:
    return [
        StockRequest(item.product_id, item.variant_id, item.quantity, item.name)
        for item in order.items
        if item.product_id is not None
    ]


def _add_history(order: Order, status: str, note: Optional[str], actor_id: Optional[int]) -> None:
    order.status_history.append(OrderStatusHistory(status=status, note=note, actor_id=actor_id))


def _transition(session: Session, order: Order, new_status: str,
                note: Optional[str] = None, actor_id: Optional[int] = None) -> Order:
    """
    Apply one state-machine step with its inventory side effect. Does not commit.

    Raises:
        InvalidTransitionError: the target is not reachable from the current status
    """
    if not order.can_transition_to(new_status):
        raise InvalidTransitionError(order.status, new_status)

    if new_status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
        if order.inventory_state == 'reserved':
            inventory_service.release(session, _stock_requests(order), reference=order.order_number)
            order.inventory_state = 'released'
        elif order.inventory_state == 'committed' and order.status == OrderStatus.PROCESSING.value:
            # Nothing has left the warehouse yet
            inventory_service.restock(session, _stock_requests(order), reference=order.order_number)
            order.inventory_state = 'restocked'
    elif order.inventory_state == 'reserved':
        # Confirmation: the order leaves pending
        inventory_service.commit(session, _stock_requests(order), reference=order.order_number)
        order.inventory_state = 'committed'

    if new_status == OrderStatus.DELIVERED.value and order.payment_method == PaymentMethod.COD.value \
            and order.payment_status == OrderPaymentStatus.PENDING.value:
        order.payment_status = OrderPaymentStatus.PAID.value
        order.paid_at = datetime.utcnow()

    previous = order.status
    order.status = new_status
    _add_history(order, new_status, note, actor_id)
    logger.info(f"[ORDER] {order.order_number}: {previous} -> {new_status}")
    return order


def get_order(session: Session, order_id: int, actor: Optional[AppUser] = None, lock: bool = False) -> Order:
    """
    Load an order and check the actor may act on it.

    Raises:
        NotFoundError: unknown order
        ForbiddenError: actor is neither the owner nor holds view_any_order
    """
    query = session.query(Order).filter(Order.id == order_id)
    if lock:
        query = query.with_for_update()
    order = query.first()
    if not order:
        raise NotFoundError('Order not found')
    if actor is not None and order.user_id != actor.id and not has_capability(actor.role, 'view_any_order'):
        raise ForbiddenError('You do not have access to this order')
    return order


def _snapshot_lines(cart: Cart) -> List[OrderItem]:
    lines = []
    for item in cart.items:
        price = quantize_money(item.unit_price)
        subtotal = quantize_money(price * item.quantity)
        gst_amount = quantize_money(subtotal * Decimal(item.gst_percentage or 0) / 100)
        variant = item.variant
        lines.append(OrderItem(
            product_id=item.product_id,
            variant_id=item.variant_id,
            variant_sku=variant.sku if variant else None,
            variant_name=variant.name if variant else None,
            attributes=item.attributes or [],
            name=item.name,
            sku=item.sku,
            price=price,
            quantity=item.quantity,
            gst_percentage=item.gst_percentage or 0,
            gst_amount=gst_amount,
            subtotal=subtotal,
            total=subtotal + gst_amount,
            image_url=item.image_url
        ))
    return lines


def create_from_cart(
    session: Session,
    cart: Cart,
    user: AppUser,
    shipping_address: Dict[str, str],
    billing_address: Optional[Dict[str, str]] = None,
    payment_method: str = PaymentMethod.RAZORPAY.value,
    shipping_method: Optional[str] = None,
    gateway_order_id: Optional[str] = None,
    notes: Optional[str] = None,
    billing_email: Optional[str] = None
) -> Order:
    """
    Turn a cart into a pending order in one transaction.

    Line snapshots, stock reservation, promotion usage and clearing the cart are
    committed together; any failure rolls all of it back.

    Raises:
        EmptyCartError: cart has no items
        InvalidPromotionError: the applied coupon no longer qualifies
        OutOfStockError: a line cannot be reserved
    """
    if not cart.items:
        raise EmptyCartError()
    if payment_method not in {m.value for m in PaymentMethod}:
        raise ValidationError(f"Unknown payment method '{payment_method}'", payload={'field': 'payment_method'})

    try:
        lines = _snapshot_lines(cart)
        pricing = cart_service.price_cart(session, cart, user=user, shipping_method=shipping_method, strict=True)
        subtotal = pricing['subtotal']
        tax = pricing['tax']
        method = pricing['shipping_method']
        shipping_cost = pricing['shipping']
        discount = pricing['discount']
        total = pricing['total']
        promotion = pricing['promotion'].promotion if pricing['promotion'] else None

        days = (current_app.config.get('SHIPPING_METHODS', {}).get(method) or {}).get('days')

        order = Order(
            order_number=generate_order_number(session),
            user_id=user.id,
            billing_address=billing_address or shipping_address,
            billing_email=billing_email or user.email,
            shipping_address=shipping_address,
            shipping_method=method,
            estimated_delivery=datetime.utcnow() + timedelta(days=days) if days is not None else None,
            subtotal=subtotal,
            tax=tax,
            shipping_cost=shipping_cost,
            discount=discount,
            total=total,
            coupon_code=promotion.code if promotion else None,
            promotion_id=promotion.id if promotion else None,
            payment_method=payment_method,
            payment_status=OrderPaymentStatus.PENDING.value,
            status=OrderStatus.PENDING.value,
            inventory_state='reserved',
            refund_amount=ZERO
        )
        order.items.extend(lines)
        _add_history(order, OrderStatus.PENDING.value, 'Order placed', user.id)
        if notes:
            order.notes.append(OrderNote(text=notes, is_public=True, created_by=user.id))
        session.add(order)
        session.flush()

        inventory_service.reserve(session, _stock_requests(order), reference=order.order_number)

        if promotion:
            promotion_service.record_usage(session, promotion.id, user.id)

        if gateway_order_id:
            _link_payment(session, order, cart, gateway_order_id)

        cart.items.clear()
        cart.coupon_code = None
        cart.shipping_method = None
        cart.shipping_cost = ZERO
        cart.notes = None

        session.commit()
    except Exception:
        session.rollback()
        raise

    orders_created_total.labels(payment_method=payment_method).inc()
    logger.info(f"[ORDER] Created {order.order_number} for user {user.id} (total {order.total})")
    return order


def _link_payment(session: Session, order: Order, cart: Cart, gateway_order_id: str) -> None:
    """
    Attach a cart payment to the new order, finalizing it when already captured.

    Raises:
        NotFoundError: unknown gateway order id
        ForbiddenError: the payment was made for someone else's cart
        ConflictError: already linked, or the amount differs from the order total
    """
    payment = session.query(Payment).filter(Payment.gateway_order_id == gateway_order_id).with_for_update().first()
    if not payment:
        raise NotFoundError('Payment not found for the given gateway order id')
    owned = (payment.cart_id is not None and payment.cart_id == cart.id) or \
        (payment.user_id is not None and payment.user_id == order.user_id)
    if not owned:
        raise ForbiddenError('Payment does not belong to this cart')
    if payment.order_id and payment.order_id != order.id:
        raise ConflictError('Payment is already linked to another order')
    if quantize_money(payment.amount) != quantize_money(order.total):
        raise ConflictError(
            'Payment amount does not match the order total, create a new payment',
            payload={'paid': float(quantize_money(payment.amount)), 'total': float(quantize_money(order.total))}
        )

    payment.order_id = order.id
    order.gateway_order_id = gateway_order_id
    if payment.status in SETTLED_STATUSES:
        finalize_payment(session, order, payment)


def finalize_payment(session: Session, order: Order, payment: Payment) -> Order:
    """
    Mark the order paid from a captured payment and start processing. Does not commit.

    A capture for a cancelled or refunded order, or for a different amount, leaves the
    order unpaid with a history note asking for a manual refund.
    """
    if order.payment_status == OrderPaymentStatus.PAID.value:
        return order
    if order.status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
        _add_history(order, order.status, LATE_CAPTURE_NOTE, None)
        logger.warning(f"[ORDER] {payment.gateway_order_id} captured after {order.order_number} was {order.status}")
        return order
    if quantize_money(payment.amount) != quantize_money(order.total):
        _add_history(order, order.status, AMOUNT_MISMATCH_NOTE, None)
        logger.warning(
            f"[ORDER] Payment {payment.gateway_order_id} amount {payment.amount} "
            f"differs from {order.order_number} total {order.total}"
        )
        return order
    order.payment_status = OrderPaymentStatus.PAID.value
    order.transaction_id = payment.gateway_payment_id
    order.gateway_order_id = payment.gateway_order_id
    order.paid_at = payment.paid_at or datetime.utcnow()
    if order.status == OrderStatus.PENDING.value:
        _transition(session, order, OrderStatus.PROCESSING.value, 'Payment received')
    logger.info(f"[ORDER] {order.order_number} paid via {payment.gateway_order_id}")
    return order


def update_status(session: Session, order_id: int, new_status: str, actor: AppUser,
                  note: Optional[str] = None) -> Order:
    """
    Move an order along the state machine.

    Cancellation and refund go through their own flows so money and stock follow.
    """
    if new_status not in {s.value for s in OrderStatus}:
        raise ValidationError(f"Unknown order status '{new_status}'", payload={'field': 'status'})
    if new_status == OrderStatus.CANCELLED.value:
        return cancel(session, order_id, actor, reason=note)
    if new_status == OrderStatus.REFUNDED.value:
        return process_refund(session, order_id, actor, reason=note)

    order = get_order(session, order_id, actor, lock=True)
    try:
        _transition(session, order, new_status, note, actor.id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return order


def cancel(session: Session, order_id: int, actor: AppUser, reason: Optional[str] = None) -> Order:
    """
    Cancel a pending or processing order, releasing its stock.

    A paid order is refunded in full; when that fails the order stays cancelled and
    gets a history note for a manual refund.
    """
    order = get_order(session, order_id, actor, lock=True)
    if order.status not in CANCELLABLE_STATUSES:
        raise ConflictError(
            f"Order cannot be cancelled in status '{order.status}'",
            payload={'status': order.status}
        )

    try:
        order.cancel_reason = reason
        _transition(session, order, OrderStatus.CANCELLED.value, reason or 'Order cancelled', actor.id)
        if reason:
            order.notes.append(OrderNote(text=f"Cancelled: {reason}", is_public=True, created_by=actor.id))
        session.commit()
    except Exception:
        session.rollback()
        raise

    if order.is_paid:
        payment = _captured_payment(session, order)
        try:
            if payment is None:
                raise ConflictError('No captured payment to refund')
            from app.services.payment_service import PaymentService
            PaymentService(session).process_refund(payment.id, None, reason or 'Order cancelled', actor.id)
        except ApiError as e:
            session.rollback()
            order = get_order(session, order_id)
            _add_history(order, order.status, AUTO_REFUND_FAILED_NOTE, actor.id)
            session.commit()
            logger.error(f"[ORDER] Auto refund failed for {order.order_number}: {e.message}")

    logger.info(f"[ORDER] Cancelled {order.order_number}")
    return order


def _captured_payment(session: Session, order: Order) -> Optional[Payment]:
    return session.query(Payment).filter(
        Payment.order_id == order.id,
        Payment.status.in_((PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value))
    ).order_by(Payment.id.desc()).first()


def record_refund(session: Session, order: Order, amount: Decimal, is_full: bool,
                  reason: Optional[str] = None, actor_id: Optional[int] = None) -> Order:
    """
    Reflect a refund on the order. Does not commit.

    Partial refunds keep status and payment status; a full refund marks both refunded
    when the state machine allows it.
    """
    order.refund_amount = quantize_money(to_decimal(order.refund_amount) + to_decimal(amount))
    order.refunded_at = datetime.utcnow()

    if not is_full:
        _add_history(order, order.status, f"Partial refund of {quantize_money(amount)}", actor_id)
        return order

    order.payment_status = OrderPaymentStatus.REFUNDED.value
    if order.can_transition_to(OrderStatus.REFUNDED.value):
        _transition(session, order, OrderStatus.REFUNDED.value, reason or 'Order refunded', actor_id)
    else:
        if order.inventory_state == 'reserved':
            inventory_service.release(session, _stock_requests(order), reference=order.order_number)
            order.inventory_state = 'released'
        _add_history(order, order.status, f"Refunded {quantize_money(amount)}", actor_id)
    return order


def record_refund_failure(session: Session, order: Order, amount: Decimal) -> Order:
    """
    Give a refund the gateway rejected back to the order balance. Does not commit.

    Status is left alone; a refunded order stays terminal and gets a history note.
    """
    order.refund_amount = quantize_money(max(to_decimal(order.refund_amount) - to_decimal(amount), ZERO))
    if order.payment_status == OrderPaymentStatus.REFUNDED.value and order.status != OrderStatus.REFUNDED.value:
        order.payment_status = OrderPaymentStatus.PAID.value
    _add_history(order, order.status, f"Refund of {quantize_money(amount)} failed at the gateway", None)
    logger.warning(f"[ORDER] Refund of {amount} failed for {order.order_number}")
    return order


def process_refund(session: Session, order_id: int, actor: AppUser, amount=None,
                   reason: Optional[str] = None) -> Order:
    """
    Refund a paid order, fully (amount None) or partially.

    Raises:
        ConflictError: order is not paid
        ValidationError: amount out of range
    """
    order = get_order(session, order_id, actor, lock=True)
    if order.payment_status != OrderPaymentStatus.PAID.value:
        raise ConflictError(
            f"Cannot refund an order with payment status '{order.payment_status}'",
            payload={'payment_status': order.payment_status}
        )

    payment = _captured_payment(session, order)
    if payment is not None:
        from app.services.payment_service import PaymentService
        PaymentService(session).process_refund(payment.id, amount, reason, actor.id)
        return get_order(session, order_id)

    # Cash on delivery: no gateway, the refund is settled outside the system
    refundable = quantize_money(to_decimal(order.total) - to_decimal(order.refund_amount))
    amount = refundable if amount is None else quantize_money(to_decimal(amount))
    if amount <= 0 or amount > refundable:
        raise ValidationError(
            f'Refund amount must be between 0.01 and {refundable}',
            payload={'field': 'amount', 'refundable': float(refundable)}
        )
    try:
        record_refund(session, order, amount, amount == refundable, reason, actor.id)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return order


def add_note(session: Session, order_id: int, actor: AppUser, text: str, is_public: bool = False) -> OrderNote:
    order = get_order(session, order_id, actor)
    text = (text or '').strip()
    if not text:
        raise ValidationError('Note text is required', payload={'field': 'text'})
    note = OrderNote(text=text, is_public=is_public, created_by=actor.id)
    order.notes.append(note)
    session.commit()
    return note


def update_shipping_info(session: Session, order_id: int, actor: AppUser,
                         tracking_number: Optional[str] = None, carrier: Optional[str] = None,
                         estimated_delivery: Optional[datetime] = None, cost=None) -> Order:
    """Set tracking details; a cost change recomputes the total of an unpaid order."""
    order = get_order(session, order_id, actor, lock=True)
    if order.status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
        raise ConflictError(f"Cannot update shipping of a {order.status} order")

    if tracking_number is not None:
        order.tracking_number = tracking_number.strip() or None
    if carrier is not None:
        order.carrier = carrier.strip() or None
    if estimated_delivery is not None:
        order.estimated_delivery = estimated_delivery

    if cost is not None:
        cost = quantize_money(to_decimal(cost))
        if cost != quantize_money(order.shipping_cost):
            if order.is_paid:
                raise ConflictError('Shipping cost cannot change after payment')
            order.shipping_cost = cost
            order.total = quantize_money(max(
                to_decimal(order.subtotal) + to_decimal(order.tax) + cost - to_decimal(order.discount), ZERO
            ))
    session.commit()
    logger.info(f"[ORDER] Shipping info updated for {order.order_number}")
    return order


def _page(query, page: int, limit: int) -> Dict[str, Any]:
    total = query.count()
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        'orders': orders,
        'pagination': {'page': page, 'limit': limit, 'total': total, 'pages': (total + limit - 1) // limit},
    }


def list_user_orders(session: Session, user_id: int, page: int = 1, limit: int = 10,
                     status: Optional[str] = None) -> Dict[str, Any]:
    query = session.query(Order).filter(Order.user_id == user_id)
    if status:
        query = query.filter(Order.status == status)
    return _page(query, page, limit)


def status_counts(session: Session) -> Dict[str, int]:
    rows = session.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
    counts = {status.value: 0 for status in OrderStatus}
    counts.update({status: count for status, count in rows})
    return counts


def list_by_status(session: Session, status: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    if status != 'all' and status not in {s.value for s in OrderStatus}:
        raise ValidationError(f"Unknown order status '{status}'")
    query = session.query(Order)
    if status != 'all':
        query = query.filter(Order.status == status)
    result = _page(query, page, limit)
    result['counts'] = status_counts(session)
    return result


def _compute_stats(session: Session) -> Dict[str, Any]:
    """Dashboard figures: counts per status, revenue and today's orders."""
    paid = session.query(
        func.count(Order.id),
        func.coalesce(func.sum(Order.total), 0),
        func.coalesce(func.sum(Order.refund_amount), 0)
    ).filter(Order.payment_status.in_((OrderPaymentStatus.PAID.value, OrderPaymentStatus.REFUNDED.value))).one()

    today_start = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    today = session.query(func.count(Order.id)).filter(Order.created_at >= today_start).scalar() or 0

    paid_count, gross, refunded = paid
    gross = quantize_money(gross)
    refunded = quantize_money(refunded)
    return {
        'counts': status_counts(session),
        'total_orders': session.query(func.count(Order.id)).scalar() or 0,
        'orders_today': today,
        'paid_orders': paid_count,
        'gross_revenue': float(gross),
        'refunded': float(refunded),
        'net_revenue': float(gross - refunded),
        'average_order_value': float(quantize_money(gross / paid_count)) if paid_count else 0.0,
    }


def get_stats(session: Session) -> Dict[str, Any]:
    """Dashboard figures, cached for CACHE_STATS_TTL seconds."""
    return get_cache().get_or_load(
        STATS_CACHE_NAMESPACE, 'summary', lambda: _compute_stats(session),
        current_app.config.get('CACHE_STATS_TTL')
    )


def generate_invoice(session: Session, order_id: int, actor: AppUser):
    """Render the invoice PDF and remember its public path."""
    from app.services.invoice_service import render_invoice_pdf, invoice_path

    order = get_order(session, order_id, actor)
    if order.status == OrderStatus.CANCELLED.value:
        raise ConflictError('Cancelled orders have no invoice')
    pdf = render_invoice_pdf(order)
    if order.invoice_url != invoice_path(order):
        order.invoice_url = invoice_path(order)
        session.commit()
    return pdf
