"""
Cart service.
Owns cart lines, the applied coupon, shipping selection and totals. Never touches stock counters.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.orm import Session

from app.models import Cart, CartItem, Product, ProductVariant, AppUser
from app.exceptions import (
    NotFoundError, OutOfStockError, ValidationError, InvalidPromotionError
)
from app.services import inventory_service, promotion_service
from app.utils.money import ZERO, to_decimal, quantize_money

logger = logging.getLogger(__name__)


def get_cart(session: Session, user_id: Optional[int] = None, guest_id: Optional[str] = None) -> Optional[Cart]:
    """Existing cart for the owner, or None."""
    if user_id is not None:
        return session.query(Cart).filter(Cart.user_id == user_id).first()
    if guest_id:
        return session.query(Cart).filter(Cart.guest_id == guest_id).first()
    return None


def get_or_create(session: Session, user_id: Optional[int] = None, guest_id: Optional[str] = None) -> Cart:
    """
    Return the owner's cart, creating an empty one lazily.

    A logged-in user always owns the cart; the guest id is only used without a user.
    """
    if user_id is None and not guest_id:
        raise ValidationError('A user or guest id is required to hold a cart')

    cart = get_cart(session, user_id=user_id, guest_id=guest_id)
    if cart:
        return cart

    cart = Cart(
        user_id=user_id,
        guest_id=None if user_id is not None else guest_id,
        shipping_cost=ZERO
    )
    session.add(cart)
    session.commit()
    logger.info(f"[CART] Created cart {cart.id} for {'user ' + str(user_id) if user_id else 'guest'}")
    return cart


def _cart_user(session: Session, cart: Cart) -> Optional[AppUser]:
    return session.get(AppUser, cart.user_id) if cart.user_id else None


def _resolve_sellable(session: Session, product_id: int, variant_id: Optional[int]):
    product = session.get(Product, product_id)
    if not product or not product.active:
        raise NotFoundError('Product not found')

    variant = None
    if variant_id is not None:
        variant = session.get(ProductVariant, variant_id)
        if not variant or variant.product_id != product.id or not variant.active:
            raise NotFoundError('Product variant not found')
    return product, variant


def _check_stock(session: Session, product: Product, variant: Optional[ProductVariant], wanted: int) -> None:
    available = inventory_service.available_quantity(session, product.id, variant.id if variant else None)
    if wanted > available:
        label = f"{product.name} ({variant.name})" if variant else product.name
        raise OutOfStockError(label, wanted, available)


def shipping_cost_for(method: Optional[str], subtotal: Decimal) -> Decimal:
    """Cost of a configured shipping method; free above its threshold when it has one."""
    if not method:
        return ZERO
    methods = current_app.config.get('SHIPPING_METHODS', {})
    config = methods.get(method)
    if config is None:
        raise ValidationError(
            f"Unknown shipping method '{method}'",
            payload={'field': 'shipping_method', 'allowed': sorted(methods)}
        )
    free_above = config.get('free_above')
    if free_above is not None and subtotal >= to_decimal(free_above):
        return ZERO
    return quantize_money(to_decimal(config['cost']))


def shipping_method_for(cart: Cart, override: Optional[str] = None) -> Optional[str]:
    """Selected method, else the cart's, else DEFAULT_SHIPPING_METHOD."""
    return override or cart.shipping_method or current_app.config.get('DEFAULT_SHIPPING_METHOD')


def _base_totals(cart: Cart, shipping_method: Optional[str] = None) -> Dict[str, Any]:
    subtotal = ZERO
    tax = ZERO
    for item in cart.items:
        line = to_decimal(item.unit_price) * item.quantity
        subtotal += line
        tax += line * Decimal(item.gst_percentage or 0) / 100
    subtotal = quantize_money(subtotal)
    method = shipping_method_for(cart, shipping_method)
    return {
        'subtotal': subtotal,
        'tax': quantize_money(tax),
        'shipping_method': method,
        'shipping': shipping_cost_for(method, subtotal) if cart.items else ZERO,
    }


def _evaluate_coupon(session: Session, cart: Cart, base: Dict[str, Any], user: Optional[AppUser] = None):
    """DiscountResult for the cart's coupon; raises InvalidPromotionError when it no longer applies."""
    return promotion_service.validate(
        session,
        cart.coupon_code,
        cart.items,
        base['subtotal'],
        tax=base['tax'],
        shipping_cost=base['shipping'],
        user=user or _cart_user(session, cart)
    )


def price_cart(session: Session, cart: Cart, user: Optional[AppUser] = None,
               shipping_method: Optional[str] = None, strict: bool = False) -> Dict[str, Any]:
    """
    Price the cart the way checkout charges it.

    The applied coupon wins; without one the best automatic promotion applies.
    With `strict` a coupon that stopped applying raises InvalidPromotionError,
    otherwise it contributes no discount.

    Returns:
        Dict with subtotal, tax, shipping_method, shipping, discount, total and
        `promotion` (the DiscountResult, or None)
    """
    base = _base_totals(cart, shipping_method)
    user = user or _cart_user(session, cart)
    result = None
    if cart.items:
        if cart.coupon_code:
            try:
                result = _evaluate_coupon(session, cart, base, user)
            except InvalidPromotionError as e:
                if strict:
                    raise
                logger.info(f"[CART] Coupon {cart.coupon_code} not applicable to cart {cart.id}: {e.reason}")
        else:
            result = promotion_service.best_automatic(
                session, cart.items, base['subtotal'],
                tax=base['tax'], shipping_cost=base['shipping'], user=user
            )

    discount = result.discount if result else ZERO
    total = base['subtotal'] + base['tax'] + base['shipping'] - discount
    return dict(base, discount=quantize_money(discount), total=quantize_money(max(total, ZERO)), promotion=result)


def calculate_totals(session: Session, cart: Cart) -> Dict[str, Any]:
    """
    Derived totals of a cart.

    total = max(0, subtotal + tax + shipping - discount), rounded half-up to 0.01.
    A coupon that no longer applies contributes no discount.
    """
    pricing = price_cart(session, cart)
    result = pricing['promotion']
    return {
        'subtotal': pricing['subtotal'],
        'tax': pricing['tax'],
        'shipping': pricing['shipping'],
        'discount': pricing['discount'],
        'total': pricing['total'],
        'item_count': cart.item_count,
        'coupon': result.to_dict() if result and cart.coupon_code else None,
        'promotion': result.to_dict() if result else None,
    }


def _revalidate_coupon(session: Session, cart: Cart) -> None:
    """Drop a coupon that stopped applying after a mutation."""
    if not cart.coupon_code:
        return
    if not cart.items:
        logger.info(f"[CART] Dropped coupon {cart.coupon_code} from empty cart {cart.id}")
        cart.coupon_code = None
        return
    try:
        _evaluate_coupon(session, cart, _base_totals(cart))
    except InvalidPromotionError as e:
        logger.info(f"[CART] Dropped coupon {cart.coupon_code} from cart {cart.id}: {e.reason}")
        cart.coupon_code = None


def _refresh(session: Session, cart: Cart) -> Cart:
    """Post-mutation housekeeping; commits."""
    session.flush()
    _revalidate_coupon(session, cart)
    cart.shipping_cost = _base_totals(cart)['shipping']
    session.commit()
    return cart


def add_item(session: Session, cart: Cart, product_id: int, quantity: int,
             variant_id: Optional[int] = None, attributes: Optional[list] = None) -> Cart:
    """
    Add units of a product (or variant) to the cart, merging with an existing line.

    Raises:
        NotFoundError: product or variant missing or inactive
        OutOfStockError: cart quantity would exceed available stock
    """
    if quantity < 1:
        raise ValidationError('Quantity must be at least 1', payload={'field': 'quantity'})

    product, variant = _resolve_sellable(session, product_id, variant_id)
    existing = cart.find_item(product.id, variant.id if variant else None)
    in_cart = existing.quantity if existing else 0
    _check_stock(session, product, variant, in_cart + quantity)

    if existing:
        existing.quantity += quantity
        if attributes:
            existing.attributes = attributes
    else:
        sellable = variant or product
        cart.items.append(CartItem(
            product_id=product.id,
            variant_id=variant.id if variant else None,
            name=f"{product.name} - {variant.name}" if variant else product.name,
            sku=sellable.sku,
            unit_price=quantize_money(to_decimal(sellable.price)),
            quantity=quantity,
            attributes=attributes or (variant.attributes if variant else []) or [],
            gst_percentage=product.gst_percentage,
            image_url=product.image_url
        ))

    logger.info(f"[CART] Added {quantity} x product {product.id} (variant {variant_id}) to cart {cart.id}")
    return _refresh(session, cart)


def _get_item(cart: Cart, item_id: int) -> CartItem:
    for item in cart.items:
        if item.id == item_id:
            return item
    raise NotFoundError('Cart item not found')


def update_item(session: Session, cart: Cart, item_id: int, quantity: int) -> Cart:
    """Set a line's quantity; 0 removes it."""
    if quantity < 0:
        raise ValidationError('Quantity cannot be negative', payload={'field': 'quantity'})

    item = _get_item(cart, item_id)
    if quantity == 0:
        return remove_item(session, cart, item_id)

    if quantity > item.quantity:
        product, variant = _resolve_sellable(session, item.product_id, item.variant_id)
        _check_stock(session, product, variant, quantity)

    item.quantity = quantity
    logger.info(f"[CART] Set item {item_id} quantity to {quantity} in cart {cart.id}")
    return _refresh(session, cart)


def remove_item(session: Session, cart: Cart, item_id: int) -> Cart:
    item = _get_item(cart, item_id)
    cart.items.remove(item)
    logger.info(f"[CART] Removed item {item_id} from cart {cart.id}")
    return _refresh(session, cart)


def clear(session: Session, cart: Cart) -> Cart:
    """Remove items, coupon, shipping selection and notes."""
    cart.items.clear()
    cart.coupon_code = None
    cart.shipping_method = None
    cart.shipping_cost = ZERO
    cart.notes = None
    session.commit()
    logger.info(f"[CART] Cleared cart {cart.id}")
    return cart


def apply_coupon(session: Session, cart: Cart, code: str):
    """
    Apply a coupon code. The cart is unchanged when validation fails.

    Returns:
        DiscountResult for the applied code
    """
    if not cart.items:
        raise ValidationError('Add items to the cart before applying a coupon')

    base = _base_totals(cart)
    result = promotion_service.validate(
        session,
        code,
        cart.items,
        base['subtotal'],
        tax=base['tax'],
        shipping_cost=base['shipping'],
        user=_cart_user(session, cart),
        applied_code=cart.coupon_code
    )
    cart.coupon_code = result.promotion.code
    session.commit()
    logger.info(f"[CART] Applied coupon {cart.coupon_code} to cart {cart.id} (discount {result.discount})")
    return result


def remove_coupon(session: Session, cart: Cart) -> Cart:
    if not cart.coupon_code:
        raise NotFoundError('No coupon applied to this cart')
    logger.info(f"[CART] Removed coupon {cart.coupon_code} from cart {cart.id}")
    cart.coupon_code = None
    session.commit()
    return cart


def set_shipping_method(session: Session, cart: Cart, method: str) -> Cart:
    """Select a shipping method from the configured table."""
    base = _base_totals(cart)
    cost = shipping_cost_for(method, base['subtotal'])
    cart.shipping_method = method
    cart.shipping_cost = cost
    return _refresh(session, cart)


def set_notes(session: Session, cart: Cart, notes: Optional[str]) -> Cart:
    cart.notes = (notes or '').strip() or None
    session.commit()
    return cart


def merge_guest_cart(session: Session, guest_id: str, user_id: int) -> Cart:
    """
    Fold a guest cart into the user's cart after login.

    Quantities for the same product+variant accumulate; the guest coupon carries over
    when the user cart has none. The guest cart is deleted.
    """
    user_cart = get_or_create(session, user_id=user_id)
    guest_cart = get_cart(session, guest_id=guest_id)
    if not guest_cart or guest_cart.id == user_cart.id:
        return user_cart

    for guest_item in list(guest_cart.items):
        existing = user_cart.find_item(guest_item.product_id, guest_item.variant_id)
        if existing:
            existing.quantity += guest_item.quantity
        else:
            user_cart.items.append(CartItem(
                product_id=guest_item.product_id,
                variant_id=guest_item.variant_id,
                name=guest_item.name,
                sku=guest_item.sku,
                unit_price=guest_item.unit_price,
                quantity=guest_item.quantity,
                attributes=guest_item.attributes,
                gst_percentage=guest_item.gst_percentage,
                image_url=guest_item.image_url
            ))

    if not user_cart.coupon_code and guest_cart.coupon_code:
        user_cart.coupon_code = guest_cart.coupon_code
    if not user_cart.shipping_method and guest_cart.shipping_method:
        user_cart.shipping_method = guest_cart.shipping_method

    merged_lines = len(guest_cart.items)
    session.delete(guest_cart)
    logger.info(f"[CART] Merged {merged_lines} guest line(s) into cart {user_cart.id} for user {user_id}")
    return _refresh(session, user_cart)


def serialize_cart(session: Session, cart: Cart) -> Dict[str, Any]:
    """Cart with items and computed totals, ready for the JSON envelope."""
    totals = calculate_totals(session, cart)
    return {
        'id': cart.id,
        'items': [item.to_dict() for item in cart.items],
        'coupon_code': cart.coupon_code,
        'coupon': totals['coupon'],
        'promotion': totals['promotion'],
        'shipping_method': cart.shipping_method,
        'notes': cart.notes,
        'item_count': totals['item_count'],
        'totals': {
            'subtotal': float(totals['subtotal']),
            'tax': float(totals['tax']),
            'shipping': float(totals['shipping']),
            'discount': float(totals['discount']),
            'total': float(totals['total']),
        },
    }
