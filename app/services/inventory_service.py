"""
Inventory reservation service.
Reserves, commits and releases stock counters under row locks and logs every change.

None of these functions commit: callers own the transaction so that a reservation
and the order that needs it are persisted together or not at all.
"""
import logging
from typing import Callable, Iterable, List, NamedTuple, Optional, Tuple

from app.models import ProductStock, InventoryMovement, MovementReason
from app.exceptions import NotFoundError, OutOfStockError, ConflictError, ValidationError

logger = logging.getLogger(__name__)


class StockRequest(NamedTuple):
    """One line of a reserve/commit/release call."""
    product_id: int
    variant_id: Optional[int]
    quantity: int
    name: Optional[str] = None


_low_stock_handlers: List[Callable[[ProductStock], None]] = []


def on_low_stock(handler: Callable[[ProductStock], None]) -> Callable[[ProductStock], None]:
    """Register a callable invoked with the stock row whenever it falls to its threshold."""
    if handler not in _low_stock_handlers:
        _low_stock_handlers.append(handler)
    return handler


def _notify_low_stock(stock: ProductStock) -> None:
    if not stock.is_low:
        return
    for handler in list(_low_stock_handlers):
        try:
            handler(stock)
        except Exception as e:
            # Alert delivery must never undo a stock change
            logger.exception(f"[INVENTORY] Low stock handler failed: {e}")


def _stock_query(session, product_id: int, variant_id: Optional[int]):
    query = session.query(ProductStock).filter(ProductStock.product_id == product_id)
    if variant_id is None:
        return query.filter(ProductStock.variant_id.is_(None))
    return query.filter(ProductStock.variant_id == variant_id)


def get_stock(session, product_id: int, variant_id: Optional[int] = None) -> Optional[ProductStock]:
    """Stock row without locking (read paths such as add-to-cart checks)."""
    return _stock_query(session, product_id, variant_id).first()


def available_quantity(session, product_id: int, variant_id: Optional[int] = None) -> int:
    """quantity - reserved, or 0 when the item has no stock row."""
    stock = get_stock(session, product_id, variant_id)
    return max(stock.available, 0) if stock else 0


def _lock_stock(session, request: StockRequest) -> ProductStock:
    stock = _stock_query(session, request.product_id, request.variant_id).with_for_update().first()
    if not stock:
        label = request.name or f"product {request.product_id}"
        raise NotFoundError(f"No inventory record for {label}")
    return stock


def _record(session, stock: ProductStock, reason: MovementReason, change: int,
            reference: Optional[str], note: Optional[str] = None) -> None:
    session.add(InventoryMovement(
        stock_id=stock.id,
        reason=reason.value,
        change=change,
        reference=reference,
        note=note
    ))


def _compensate(session, applied: List[Tuple[ProductStock, int]], reference: Optional[str]) -> None:
    """Undo reservations taken earlier in a failed reserve() call, newest first."""
    for stock, quantity in reversed(applied):
        stock.reserved -= quantity
        _record(session, stock, MovementReason.RELEASE, quantity, reference, 'Rolled back partial reservation')
    if applied:
        logger.warning(f"[INVENTORY] Rolled back {len(applied)} reservation(s) for {reference}")


def reserve(session, items: Iterable[StockRequest], reference: Optional[str] = None) -> List[ProductStock]:
    """
    Reserve stock for every item, all-or-nothing.

    Each stock row is locked, checked for `quantity - reserved >= requested` and its
    `reserved` counter incremented. When any item fails, the increments already made
    in this call are reversed before the error propagates.

    Raises:
        NotFoundError: an item has no stock row
        OutOfStockError: an item does not have enough available units
    """
    applied: List[Tuple[ProductStock, int]] = []
    try:
        for request in items:
            if request.quantity <= 0:
                raise ValidationError('Quantity must be greater than 0')
            stock = _lock_stock(session, request)
            if stock.available < request.quantity:
                raise OutOfStockError(
                    request.name or f"product {request.product_id}",
                    request.quantity,
                    max(stock.available, 0)
                )
            stock.reserved += request.quantity
            applied.append((stock, request.quantity))
            _record(session, stock, MovementReason.RESERVE, -request.quantity, reference)
    except Exception:
        _compensate(session, applied, reference)
        raise

    session.flush()
    logger.info(f"[INVENTORY] Reserved {len(applied)} line(s) for {reference}")
    for stock, _ in applied:
        _notify_low_stock(stock)
    return [stock for stock, _ in applied]


def commit(session, items: Iterable[StockRequest], reference: Optional[str] = None) -> None:
    """Turn reservations into permanent decrements of `quantity`."""
    for request in items:
        stock = _lock_stock(session, request)
        if stock.reserved < request.quantity:
            raise ConflictError(
                f"Not enough inventory reserved. Only {stock.reserved} units reserved.",
                payload={'product_id': request.product_id, 'variant_id': request.variant_id}
            )
        stock.reserved -= request.quantity
        stock.quantity -= request.quantity
        _record(session, stock, MovementReason.COMMIT, -request.quantity, reference)
        _notify_low_stock(stock)
    session.flush()
    logger.info(f"[INVENTORY] Committed reservation for {reference}")


def release(session, items: Iterable[StockRequest], reference: Optional[str] = None) -> None:
    """Give reserved units back to available stock without touching `quantity`."""
    for request in items:
        stock = _lock_stock(session, request)
        quantity = request.quantity
        if stock.reserved < quantity:
            logger.warning(
                f"[INVENTORY] Releasing more than reserved for product {request.product_id} "
                f"(variant {request.variant_id}); releasing {stock.reserved} instead of {quantity}"
            )
            quantity = stock.reserved
        if quantity <= 0:
            continue
        stock.reserved -= quantity
        _record(session, stock, MovementReason.RELEASE, quantity, reference)
        _notify_low_stock(stock)
    session.flush()
    logger.info(f"[INVENTORY] Released reservation for {reference}")


def restock(session, items: Iterable[StockRequest], reference: Optional[str] = None) -> None:
    """Put committed units back on hand, e.g. when a confirmed order is cancelled before shipping."""
    for request in items:
        stock = _lock_stock(session, request)
        stock.quantity += request.quantity
        _record(session, stock, MovementReason.RESTOCK, request.quantity, reference)
    session.flush()
    logger.info(f"[INVENTORY] Restocked units of {reference}")


def adjust(session, product_id: int, variant_id: Optional[int], delta: int, note: Optional[str] = None) -> ProductStock:
    """
    Manual correction of on-hand quantity (restock, shrinkage).

    Raises:
        ValidationError: the adjustment would leave quantity below zero or below reserved units
    """
    stock = _lock_stock(session, StockRequest(product_id, variant_id, abs(delta)))
    new_quantity = stock.quantity + delta
    if new_quantity < 0:
        raise ValidationError('Adjustment would result in negative inventory')
    if new_quantity < stock.reserved:
        raise ValidationError(f'Adjustment would leave fewer units than the {stock.reserved} reserved')
    stock.quantity = new_quantity
    _record(session, stock, MovementReason.ADJUST, delta, None, note)
    session.flush()
    _notify_low_stock(stock)
    return stock
