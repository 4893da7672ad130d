"""Payment service: Razorpay intents, confirmations, webhooks and refunds."""
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Any, Optional

import requests
from flask import current_app
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from app.models import (
    Payment, PaymentStatus, PaymentRefund, PaymentWebhookEvent, Order, OrderStatus,
    OrderPaymentStatus, Cart, OPEN_STATUSES, SETTLED_STATUSES
)
from app.exceptions import (
    ValidationError, NotFoundError, ConflictError, InvalidSignatureError,
    ExternalServiceError, EmptyCartError
)
from app.services.razorpay_client import RazorpayClient
from app.utils.money import ZERO, to_decimal, quantize_money, to_paise, from_paise
from app.blueprints.metrics import payments_captured_total, webhook_events_total


def _signature_matches(secret: str, message: bytes, signature: str) -> bool:
    expected = hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or '')


class PaymentService:
    """Razorpay payment adapter backed by local Payment records."""

    def __init__(self, db_session: Session, client: Optional[RazorpayClient] = None):
        """
        Initialize payment service.

        Args:
            db_session: SQLAlchemy session
            client: Gateway client; created from app config on first use when omitted
        """
        self.db = db_session
        self._client = client

    @property
    def client(self) -> RazorpayClient:
        if self._client is None:
            self._client = RazorpayClient()
        return self._client

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def create_intent(
        self,
        amount_minor: int,
        receipt: str,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        cart: Optional[Cart] = None,
        order: Optional[Order] = None,
        user_id: Optional[int] = None,
        guest_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a gateway order and persist the matching Payment in `created`.

        Args:
            amount_minor: Amount in paise
            receipt: Merchant receipt (cart_{id}_{ts} or the order number)

        Returns:
            Dict with `payment`, the gateway response and the public `key_id`

        Raises:
            ExternalServiceError: If the gateway fails or times out
        """
        if amount_minor <= 0:
            raise ValidationError('Payment amount must be greater than 0')

        currency = currency or current_app.config.get('PAYMENT_CURRENCY', 'INR')
        notes = {key: str(value) for key, value in (metadata or {}).items()}

        try:
            gateway_order = self.client.create_order(amount_minor, currency, receipt, notes)
        except requests.Timeout:
            raise ExternalServiceError('Payment gateway timed out', status_code=504)
        except requests.RequestException as e:
            raise ExternalServiceError('Could not create payment order', payload={'detail': str(e)})

        payment = Payment(
            gateway_order_id=gateway_order['id'],
            order_id=order.id if order else None,
            cart_id=cart.id if cart else None,
            user_id=user_id,
            guest_id=guest_id,
            amount=from_paise(amount_minor),
            currency=currency,
            receipt=receipt,
            status=PaymentStatus.CREATED.value,
            notes=notes,
            metadata_json={'gateway_order': gateway_order},
            refunded_amount=ZERO
        )
        self.db.add(payment)
        if order is not None:
            order.gateway_order_id = payment.gateway_order_id
        self.db.commit()

        current_app.logger.info(
            f"[PAYMENT] Intent {payment.gateway_order_id} created for {receipt} ({payment.amount} {currency})"
        )
        return self._intent_response(payment, gateway_order)

    def _intent_response(self, payment: Payment, gateway_order: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            'payment': payment,
            'gateway_order': gateway_order or (payment.metadata_json or {}).get('gateway_order', {}),
            'key_id': current_app.config.get('RAZORPAY_KEY_ID'),
        }

    def _reuse_open_intent(self, query, amount: Decimal) -> Optional[Payment]:
        """
        Return an open intent with the same amount; expire open intents with another amount.
        """
        reusable = None
        for payment in query.filter(Payment.status.in_(OPEN_STATUSES)).order_by(Payment.id.desc()).all():
            if reusable is None and to_decimal(payment.amount) == amount:
                reusable = payment
            else:
                payment.status = PaymentStatus.EXPIRED.value
                current_app.logger.info(f"[PAYMENT] Expired stale intent {payment.gateway_order_id}")
        self.db.commit()
        return reusable

    def create_intent_for_cart(self, cart: Cart, user_id: Optional[int] = None,
                               guest_id: Optional[str] = None) -> Dict[str, Any]:
        """Intent for the current cart total, reusing an open one with the same amount."""
        from app.services import cart_service

        if not cart.items:
            raise EmptyCartError()

        totals = cart_service.calculate_totals(self.db, cart)
        amount = quantize_money(totals['total'])
        if amount <= 0:
            raise ValidationError('Cart total must be greater than 0 to pay online')

        existing = self._reuse_open_intent(
            self.db.query(Payment).filter(Payment.cart_id == cart.id, Payment.order_id.is_(None)),
            amount
        )
        if existing:
            current_app.logger.info(f"[PAYMENT] Reusing intent {existing.gateway_order_id} for cart {cart.id}")
            return self._intent_response(existing)

        receipt = f"cart_{cart.id}_{int(datetime.utcnow().timestamp())}"
        return self.create_intent(
            to_paise(amount),
            receipt,
            metadata={'cart_id': cart.id, 'user_id': user_id or '', 'guest_id': guest_id or ''},
            cart=cart,
            user_id=user_id,
            guest_id=guest_id
        )

    def create_intent_for_order(self, order: Order) -> Dict[str, Any]:
        """Intent for an existing unpaid order, receipt = order number."""
        if order.payment_status == OrderPaymentStatus.PAID.value:
            raise ConflictError('Order is already paid')
        if order.status != OrderStatus.PENDING.value:
            raise ConflictError(f"Cannot pay for an order in status '{order.status}'")

        amount = quantize_money(order.total)
        existing = self._reuse_open_intent(
            self.db.query(Payment).filter(Payment.order_id == order.id),
            amount
        )
        if existing:
            current_app.logger.info(f"[PAYMENT] Reusing intent {existing.gateway_order_id} for {order.order_number}")
            return self._intent_response(existing)

        return self.create_intent(
            to_paise(amount),
            order.order_number,
            metadata={'order_id': order.id, 'order_number': order.order_number},
            order=order,
            user_id=order.user_id
        )

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def get_by_gateway_order(self, gateway_order_id: str, lock: bool = False) -> Optional[Payment]:
        query = self.db.query(Payment).filter(Payment.gateway_order_id == gateway_order_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def _mark_captured(self, payment: Payment, gateway_payment_id: Optional[str], source: str,
                       method: Optional[str] = None) -> bool:
        """Capture a payment once; returns False when it was already settled."""
        if payment.status in SETTLED_STATUSES:
            return False
        payment.status = PaymentStatus.CAPTURED.value
        if gateway_payment_id:
            payment.gateway_payment_id = gateway_payment_id
        if method:
            payment.payment_method = method
        payment.paid_at = datetime.utcnow()
        payment.error_code = None
        payment.error_message = None

        if payment.order_id:
            from app.services import order_service
            order_service.finalize_payment(self.db, payment.order, payment)

        payments_captured_total.labels(source=source).inc()
        current_app.logger.info(f"[PAYMENT] Payment {payment.gateway_order_id} captured via {source}")
        return True

    def verify_confirmation(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> Payment:
        """
        Verify the checkout signature HMAC-SHA256(key_secret, "order_id|payment_id").

        A payment that is already captured is returned unchanged.

        Raises:
            NotFoundError: Unknown gateway order id
            InvalidSignatureError: Signature mismatch (the record is untouched)
        """
        if not gateway_order_id or not gateway_payment_id or not signature:
            raise ValidationError('razorpay_order_id, razorpay_payment_id and razorpay_signature are required')

        payment = self.get_by_gateway_order(gateway_order_id, lock=True)
        if not payment:
            raise NotFoundError('Payment not found')

        message = f"{gateway_order_id}|{gateway_payment_id}".encode('utf-8')
        if not _signature_matches(current_app.config['RAZORPAY_KEY_SECRET'], message, signature):
            current_app.logger.warning(f"[PAYMENT] Invalid signature for {gateway_order_id}")
            self.db.rollback()
            raise InvalidSignatureError()

        if payment.status in SETTLED_STATUSES:
            self.db.rollback()
            current_app.logger.info(f"[PAYMENT] {gateway_order_id} already {payment.status}; verify is a no-op")
            return payment

        payment.signature_verified = True
        self._mark_captured(payment, gateway_payment_id, source='verify')
        self.db.commit()
        return payment

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def handle_webhook(self, raw_body: bytes, signature: str, event_id: Optional[str] = None) -> bool:
        """
        Process a Razorpay webhook (idempotent).

        Args:
            raw_body: Exact request body, used for the signature
            signature: X-Razorpay-Signature header
            event_id: X-Razorpay-Event-Id header; the body hash is used when absent

        Returns:
            True if processed, False if it was a duplicate

        Raises:
            InvalidSignatureError: Signature mismatch
            ValidationError: Body is not a JSON event
        """
        secret = current_app.config.get('RAZORPAY_WEBHOOK_SECRET') or ''
        if not secret or not _signature_matches(secret, raw_body, signature):
            current_app.logger.warning("[WEBHOOK] Invalid Razorpay webhook signature")
            webhook_events_total.labels(event='unknown', outcome='invalid_signature').inc()
            raise InvalidSignatureError('Invalid webhook signature')

        try:
            payload = json.loads(raw_body.decode('utf-8'))
        except (UnicodeDecodeError, ValueError):
            raise ValidationError('Webhook body must be JSON')
        if not isinstance(payload, dict):
            raise ValidationError('Webhook body must be a JSON object')

        event_type = str(payload.get('event') or 'unknown')
        dedupe_key = event_id or hashlib.sha256(raw_body).hexdigest()

        existing = self.db.query(PaymentWebhookEvent).filter(
            PaymentWebhookEvent.dedupe_key == dedupe_key
        ).first()
        if existing:
            current_app.logger.info(f"[WEBHOOK] Duplicate event {event_type}: {dedupe_key[:16]}...")
            webhook_events_total.labels(event=event_type, outcome='duplicate').inc()
            return False

        webhook_event = PaymentWebhookEvent(
            event_type=event_type,
            dedupe_key=dedupe_key,
            payload_json=payload,
            status='PROCESSING'
        )
        try:
            self.db.add(webhook_event)
            self.db.commit()
        except IntegrityError:
            # Another worker stored the same event first
            self.db.rollback()
            current_app.logger.warning(f"[WEBHOOK] Dedupe conflict (race): {dedupe_key[:16]}...")
            webhook_events_total.labels(event=event_type, outcome='duplicate').inc()
            return False

        try:
            payment = self._dispatch_event(event_type, payload.get('payload') or {})
            webhook_event.payment_id = payment.id if payment else None
            webhook_event.status = 'PROCESSED'
            webhook_event.processed_at = datetime.utcnow()
            self.db.commit()
            webhook_events_total.labels(event=event_type, outcome='processed').inc()
            return True

        except Exception as e:
            self.db.rollback()
            current_app.logger.error(f"[WEBHOOK] Error processing {event_type}: {e}")
            webhook_event = self.db.query(PaymentWebhookEvent).filter(
                PaymentWebhookEvent.dedupe_key == dedupe_key
            ).first()
            if webhook_event:
                webhook_event.status = 'FAILED'
                webhook_event.error_message = str(e)[:1000]
                self.db.commit()
            webhook_events_total.labels(event=event_type, outcome='failed').inc()
            raise

    def _dispatch_event(self, event_type: str, body: Dict[str, Any]) -> Optional[Payment]:
        payment_entity = (body.get('payment') or {}).get('entity') or {}
        refund_entity = (body.get('refund') or {}).get('entity') or {}
        order_entity = (body.get('order') or {}).get('entity') or {}

        if event_type in ('payment.authorized', 'payment.captured', 'payment.failed', 'order.paid'):
            gateway_order_id = payment_entity.get('order_id') or order_entity.get('id')
            payment = self.get_by_gateway_order(gateway_order_id, lock=True) if gateway_order_id else None
            if not payment:
                current_app.logger.warning(f"[WEBHOOK] {event_type} for unknown order {gateway_order_id}")
                return None

            if event_type == 'payment.authorized':
                if payment.status == PaymentStatus.CREATED.value:
                    payment.status = PaymentStatus.AUTHORIZED.value
                    payment.gateway_payment_id = payment_entity.get('id')
                    payment.payment_method = payment_entity.get('method')
            elif event_type == 'payment.failed':
                self._mark_failed(payment, payment_entity)
            else:
                self._mark_captured(
                    payment, payment_entity.get('id'), source='webhook', method=payment_entity.get('method')
                )
            return payment

        if event_type in ('refund.processed', 'refund.failed'):
            return self._sync_refund_event(event_type, refund_entity)

        if event_type == 'payment.dispute.created':
            dispute_entity = (body.get('dispute') or {}).get('entity') or {}
            gateway_payment_id = payment_entity.get('id') or dispute_entity.get('payment_id')
            payment = self.db.query(Payment).filter(
                Payment.gateway_payment_id == gateway_payment_id
            ).first() if gateway_payment_id else None
            if payment:
                payment.status = PaymentStatus.DISPUTED.value
                current_app.logger.warning(f"[WEBHOOK] Dispute opened on {gateway_payment_id}")
            return payment

        current_app.logger.info(f"[WEBHOOK] Ignoring event {event_type}")
        return None

    def _mark_failed(self, payment: Payment, entity: Dict[str, Any]) -> None:
        if payment.status in SETTLED_STATUSES:
            current_app.logger.warning(f"[WEBHOOK] Ignoring failure for settled payment {payment.gateway_order_id}")
            return
        payment.status = PaymentStatus.FAILED.value
        payment.gateway_payment_id = entity.get('id') or payment.gateway_payment_id
        payment.error_code = entity.get('error_code')
        payment.error_message = entity.get('error_description')
        if payment.order is not None and payment.order.payment_status != OrderPaymentStatus.PAID.value:
            payment.order.payment_status = OrderPaymentStatus.FAILED.value
        current_app.logger.info(f"[WEBHOOK] Payment failed for {payment.gateway_order_id}: {payment.error_code}")

    def _sync_refund_event(self, event_type: str, entity: Dict[str, Any]) -> Optional[Payment]:
        refund = self.db.query(PaymentRefund).filter(
            PaymentRefund.gateway_refund_id == entity.get('id')
        ).first() if entity.get('id') else None
        if not refund:
            current_app.logger.warning(f"[WEBHOOK] {event_type} for unknown refund {entity.get('id')}")
            return None

        if event_type == 'refund.processed':
            refund.status = 'processed'
        elif refund.status != 'failed':
            # Give the amount back to the refundable balance
            refund.status = 'failed'
            payment = refund.payment
            payment.refunded_amount = quantize_money(to_decimal(payment.refunded_amount) - to_decimal(refund.amount))
            payment.status = (
                PaymentStatus.PARTIALLY_REFUNDED.value if payment.refunded_amount > 0
                else PaymentStatus.CAPTURED.value
            )
            if payment.order is not None:
                from app.services import order_service
                order_service.record_refund_failure(self.db, payment.order, refund.amount)
            current_app.logger.warning(f"[WEBHOOK] Refund {refund.gateway_refund_id} failed at the gateway")
        return refund.payment

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def process_refund(self, payment_id: int, amount=None, reason: Optional[str] = None,
                       actor_id: Optional[int] = None) -> PaymentRefund:
        """
        Refund a captured payment fully (amount None) or partially.

        Raises:
            NotFoundError: Unknown payment
            ConflictError: Payment is not captured
            ValidationError: Amount <= 0 or above the refundable balance
            ExternalServiceError: Gateway failure; no refund row is written
        """
        payment = self.db.query(Payment).filter(Payment.id == payment_id).with_for_update().first()
        if not payment:
            raise NotFoundError('Payment not found')
        if payment.status not in (PaymentStatus.CAPTURED.value, PaymentStatus.PARTIALLY_REFUNDED.value):
            raise ConflictError(f"Cannot refund a payment in status '{payment.status}'")

        refundable = quantize_money(payment.refundable_amount)
        amount = refundable if amount is None else quantize_money(to_decimal(amount))
        if amount <= 0:
            raise ValidationError('Refund amount must be greater than 0', payload={'field': 'amount'})
        if amount > refundable:
            raise ValidationError(
                f'Refund amount exceeds refundable balance of {refundable}',
                payload={'field': 'amount', 'refundable': float(refundable)}
            )

        try:
            gateway_refund = self.client.refund_payment(
                payment.gateway_payment_id,
                to_paise(amount),
                notes={'reason': reason or '', 'payment_id': str(payment.id)}
            )
        except requests.Timeout:
            self.db.rollback()
            raise ExternalServiceError('Payment gateway timed out', status_code=504)
        except requests.RequestException as e:
            self.db.rollback()
            current_app.logger.error(f"[PAYMENT] Refund failed for payment {payment.id}: {e}")
            raise ExternalServiceError('Refund failed at the payment gateway', payload={'detail': str(e)})

        refund = PaymentRefund(
            payment_id=payment.id,
            gateway_refund_id=gateway_refund.get('id'),
            amount=amount,
            status='processed' if gateway_refund.get('status') == 'processed' else 'pending',
            reason=reason
        )
        self.db.add(refund)

        payment.refunded_amount = quantize_money(to_decimal(payment.refunded_amount) + amount)
        is_full = payment.refunded_amount >= to_decimal(payment.amount)
        payment.status = PaymentStatus.REFUNDED.value if is_full else PaymentStatus.PARTIALLY_REFUNDED.value

        if payment.order is not None:
            from app.services import order_service
            order_service.record_refund(self.db, payment.order, amount, is_full, reason=reason, actor_id=actor_id)

        self.db.commit()
        current_app.logger.info(
            f"[PAYMENT] Refunded {amount} on payment {payment.id} ({payment.status})"
        )
        return refund

    # ------------------------------------------------------------------
    # Queries & maintenance
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: int) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if not payment:
            raise NotFoundError('Payment not found')
        return payment

    def list_payments(self, page: int = 1, limit: int = 20, status: Optional[str] = None) -> Dict[str, Any]:
        query = self.db.query(Payment)
        if status:
            if status not in {s.value for s in PaymentStatus}:
                raise ValidationError(f"Unknown payment status '{status}'")
            query = query.filter(Payment.status == status)
        total = query.count()
        payments = query.order_by(Payment.id.desc()).offset((page - 1) * limit).limit(limit).all()
        return {
            'payments': [p.to_dict() for p in payments],
            'pagination': {'page': page, 'limit': limit, 'total': total, 'pages': (total + limit - 1) // limit},
        }

    def expire_stale_payments(self, older_than_minutes: Optional[int] = None) -> int:
        """Mark `created` intents older than the cutoff as expired."""
        minutes = older_than_minutes or current_app.config.get('PAYMENT_EXPIRY_MINUTES', 30)
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        stale = self.db.query(Payment).filter(
            Payment.status == PaymentStatus.CREATED.value,
            Payment.created_at < cutoff
        ).all()
        for payment in stale:
            payment.status = PaymentStatus.EXPIRED.value
        self.db.commit()
        current_app.logger.info(f"[PAYMENT] Expired {len(stale)} stale intent(s) older than {minutes} min")
        return len(stale)
