# Overview: Service-layer operations for inventory; the stock ledger and its derived values.

"""
Inventory Ledger Invariants (authoritative)

Inventory model:
- Stock is ledger-derived from InventoryTransaction rows; Product has no
  quantity column and nothing ever stores a running counter.
- Current stock = SUM(IN) + SUM(RETURN) - SUM(OUT) + SUM(signed ADJUSTMENT),
  recomputed on every read. movement_delta() is the per-row definition and
  compute_stock() is the pure fold over it.
- The read path applies no floor: negative derived stock is reported as is.

Write rules:
- IN / RETURN / OUT quantities must be > 0.
- OUT is rejected when current stock < quantity. The sufficiency check and
  the append run under keyed_lock("product", id) and a row lock on the
  product, so concurrent stock-outs in one process cannot both pass.
- ADJUSTMENT stores abs(quantity) plus adjustment_sign. A decreasing
  adjustment may not take stock below zero.
- total_cost = unit_cost * quantity, recomputed by a mapper listener on
  every insert/update.

Valuation:
- Inventory value = SUM(unit_cost * quantity) over IN and RETURN only.
  OUT and ADJUSTMENT are excluded; missing unit_cost counts as 0.

Time semantics:
- transaction_date is UTC-naive. Date range filters are inclusive.
"""

from __future__ import annotations

from contextlib import ExitStack
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from flask import current_app

from ..errors import (
    InsufficientStockError,
    InvalidOperationError,
    InvalidQuantityError,
    NotFoundError,
)
from ..extensions import db
from ..models import InventoryTransaction, Product, TRANSACTION_TYPES, movement_delta
from ..money import ZERO, or_zero, to_decimal
from ..time_utils import normalize_datetime, utcnow
from .concurrency import keyed_lock, lock_for_update, run_with_retry

VALUATION_TYPES = ("IN", "RETURN")
TRANSACTION_EDITABLE_FIELDS = {"unit_cost", "notes", "reference_type", "reference_id", "transaction_date"}

REFERENCE_BY_TYPE = {
    "IN": "PURCHASE",
    "OUT": "SALE",
    "ADJUSTMENT": "ADJUSTMENT",
    "RETURN": "RETURN",
}


def compute_stock(movements: Iterable) -> int:
    """
    Fold movements into a stock level.

    Accepts anything with transaction_type and quantity attributes
    (adjustment_sign optional), so it can be exercised without a database.
    """
    return sum(
        movement_delta(m.transaction_type, m.quantity, getattr(m, "adjustment_sign", 1))
        for m in movements
    )


def _signed_quantity_expr():
    tx = InventoryTransaction
    return db.case(
        (tx.transaction_type == "OUT", -tx.quantity),
        (tx.transaction_type == "ADJUSTMENT", tx.adjustment_sign * tx.quantity),
        else_=tx.quantity,
    )


def _require_product(product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def _stock_on_hand(product_id: int) -> int:
    total = (
        db.session.query(db.func.coalesce(db.func.sum(_signed_quantity_expr()), 0))
        .filter(InventoryTransaction.product_id == product_id)
        .scalar()
    )
    return int(total or 0)


def get_current_stock(product_id: int) -> int:
    """Derived stock for one product. Raises NotFoundError for unknown ids."""
    _require_product(product_id)
    return _stock_on_hand(product_id)


def get_stock_levels(product_ids: Iterable[int] | None = None) -> dict[int, int]:
    """Derived stock for many products in one grouped query (missing -> 0)."""
    query = db.session.query(
        InventoryTransaction.product_id,
        db.func.coalesce(db.func.sum(_signed_quantity_expr()), 0),
    ).group_by(InventoryTransaction.product_id)
    if product_ids is not None:
        product_ids = list(product_ids)
        query = query.filter(InventoryTransaction.product_id.in_(product_ids))

    levels = {product_id: int(total or 0) for product_id, total in query.all()}
    if product_ids is not None:
        for product_id in product_ids:
            levels.setdefault(product_id, 0)
    return levels


def has_enough_stock(product_id: int, required_quantity: int) -> bool:
    return get_current_stock(product_id) >= required_quantity


def _append_transaction(
    *,
    product_id: int,
    transaction_type: str,
    quantity: int,
    unit_cost=None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    notes: str | None = None,
    transaction_date=None,
    adjustment_sign: int = 1,
) -> InventoryTransaction:
    """Core append without validation, locking, retry, or commit."""
    tx = InventoryTransaction(
        product_id=product_id,
        transaction_type=transaction_type,
        quantity=quantity,
        adjustment_sign=adjustment_sign,
        unit_cost=to_decimal(unit_cost, field="unit_cost"),
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        notes=notes,
        transaction_date=normalize_datetime(transaction_date) or utcnow(),
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def _require_positive(quantity: int, label: str) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantityError(f"Stock {label} quantity must be positive")


def create_transaction(
    *,
    product_id: int,
    transaction_type: str,
    quantity: int,
    unit_cost=None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    notes: str | None = None,
    transaction_date=None,
) -> InventoryTransaction:
    """
    Append a movement of any type after validating it.

    OUT goes through the same sufficiency check as record_stock_out(); a
    negative ADJUSTMENT quantity is stored as a decreasing adjustment.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise InvalidOperationError(
            f"Invalid transaction type '{transaction_type}'. Must be one of: {', '.join(TRANSACTION_TYPES)}"
        )
    if transaction_type == "ADJUSTMENT":
        return record_stock_adjustment(
            product_id, quantity, unit_cost, notes,
            reference_id=reference_id, transaction_date=transaction_date,
        )
    if transaction_type == "OUT":
        return record_stock_out(
            product_id, quantity, unit_cost, reference_id,
            notes=notes, reference_type=reference_type, transaction_date=transaction_date,
        )
    return _record_inbound(
        transaction_type, product_id, quantity, unit_cost, reference_id,
        notes=notes, reference_type=reference_type, transaction_date=transaction_date,
    )


def _record_inbound(
    transaction_type: str,
    product_id: int,
    quantity: int,
    unit_cost,
    reference: str | None,
    *,
    notes: str | None,
    reference_type: str | None,
    transaction_date,
) -> InventoryTransaction:
    label = "IN" if transaction_type == "IN" else "return"
    current_app.logger.info(
        "Recording stock %s transaction for product ID: %s quantity: %s", label, product_id, quantity
    )
    _require_positive(quantity, label)

    def _op():
        _require_product(product_id)
        tx = _append_transaction(
            product_id=product_id,
            transaction_type=transaction_type,
            quantity=quantity,
            unit_cost=unit_cost,
            reference_type=reference_type or REFERENCE_BY_TYPE[transaction_type],
            reference_id=reference,
            notes=notes if notes is not None else reference,
            transaction_date=transaction_date,
        )
        db.session.commit()
        return tx

    tx = run_with_retry(_op)
    current_app.logger.info("Inventory transaction created successfully with ID: %s", tx.id)
    return tx


def record_stock_in(
    product_id: int,
    quantity: int,
    unit_cost=None,
    reference: str | None = None,
    *,
    notes: str | None = None,
    transaction_date=None,
) -> InventoryTransaction:
    """Receive stock (reference_type PURCHASE)."""
    return _record_inbound(
        "IN", product_id, quantity, unit_cost, reference,
        notes=notes, reference_type=None, transaction_date=transaction_date,
    )


def record_stock_return(
    product_id: int,
    quantity: int,
    unit_cost=None,
    reference: str | None = None,
    *,
    notes: str | None = None,
    reference_type: str | None = None,
    transaction_date=None,
) -> InventoryTransaction:
    """Put returned goods back on hand (reference_type RETURN)."""
    return _record_inbound(
        "RETURN", product_id, quantity, unit_cost, reference,
        notes=notes, reference_type=reference_type, transaction_date=transaction_date,
    )


def record_stock_out(
    product_id: int,
    quantity: int,
    unit_cost=None,
    reference: str | None = None,
    *,
    notes: str | None = None,
    reference_type: str | None = None,
    transaction_date=None,
) -> InventoryTransaction:
    """
    Issue stock (reference_type SALE unless given).

    Raises:
        InvalidQuantityError: quantity <= 0
        NotFoundError: unknown product
        InsufficientStockError: current stock < quantity; nothing is written
    """
    current_app.logger.info(
        "Recording stock OUT transaction for product ID: %s quantity: %s", product_id, quantity
    )
    _require_positive(quantity, "OUT")

    def _op():
        _require_product(product_id, lock=True)

        on_hand = _stock_on_hand(product_id)
        if on_hand < quantity:
            raise InsufficientStockError(
                f"Insufficient stock for product ID: {product_id}",
                details={"product_id": product_id, "requested_quantity": quantity, "on_hand": on_hand},
            )

        tx = _append_transaction(
            product_id=product_id,
            transaction_type="OUT",
            quantity=quantity,
            unit_cost=unit_cost,
            reference_type=reference_type or REFERENCE_BY_TYPE["OUT"],
            reference_id=reference,
            notes=notes if notes is not None else reference,
            transaction_date=transaction_date,
        )
        db.session.commit()
        return tx

    with keyed_lock("product", product_id):
        tx = run_with_retry(_op)
    current_app.logger.info("Inventory transaction created successfully with ID: %s", tx.id)
    return tx


def record_stock_adjustment(
    product_id: int,
    quantity: int,
    unit_cost=None,
    reason: str | None = None,
    *,
    reference_id: str | None = None,
    transaction_date=None,
) -> InventoryTransaction:
    """
    Correct stock by a signed amount (count corrections, shrink, found goods).

    quantity is stored as abs(quantity); its sign goes to adjustment_sign, so
    +5 raises stock by 5 and -5 lowers it by 5.

    Raises:
        InvalidQuantityError: quantity == 0
        InsufficientStockError: a decrease larger than current stock
    """
    current_app.logger.info(
        "Recording stock adjustment transaction for product ID: %s quantity: %s", product_id, quantity
    )
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity == 0:
        raise InvalidQuantityError("Stock adjustment quantity must be a non-zero integer")

    sign = 1 if quantity > 0 else -1

    def _op():
        _require_product(product_id, lock=sign < 0)

        if sign < 0:
            on_hand = _stock_on_hand(product_id)
            if on_hand + quantity < 0:
                raise InsufficientStockError(
                    f"Adjustment would make stock negative for product ID: {product_id}",
                    details={"product_id": product_id, "adjustment": quantity, "on_hand": on_hand},
                )

        tx = _append_transaction(
            product_id=product_id,
            transaction_type="ADJUSTMENT",
            quantity=abs(quantity),
            adjustment_sign=sign,
            unit_cost=unit_cost,
            reference_type=REFERENCE_BY_TYPE["ADJUSTMENT"],
            reference_id=reference_id,
            notes=reason,
            transaction_date=transaction_date,
        )
        db.session.commit()
        return tx

    with keyed_lock("product", product_id):
        tx = run_with_retry(_op)
    current_app.logger.info("Inventory transaction created successfully with ID: %s", tx.id)
    return tx


def post_movements_locked(
    transaction_type: str,
    quantities: dict[int, int],
    *,
    reference_type: str,
    reference_id: str,
    notes: str | None = None,
) -> list[InventoryTransaction]:
    """
    Append one movement per product for a business document (e.g. an order).

    LOCKING CONTRACT:
    - Caller holds keyed_lock("product", id) for every product in quantities
      and owns the DB transaction (no commit, no retry here).
    - For OUT, every product is checked against its aggregate quantity
      before anything is appended, so a short product fails the whole set.
    """
    if transaction_type not in ("OUT", "RETURN"):
        raise InvalidOperationError(f"Cannot post {transaction_type} movements for a document")

    product_ids = sorted(quantities)
    lock_for_update(db.session.query(Product).filter(Product.id.in_(product_ids))).all()

    if transaction_type == "OUT":
        levels = get_stock_levels(product_ids)
        for product_id in product_ids:
            if levels[product_id] < quantities[product_id]:
                raise InsufficientStockError(
                    f"Insufficient stock for product ID: {product_id}",
                    details={
                        "product_id": product_id,
                        "requested_quantity": quantities[product_id],
                        "on_hand": levels[product_id],
                    },
                )

    return [
        _append_transaction(
            product_id=product_id,
            transaction_type=transaction_type,
            quantity=quantities[product_id],
            reference_type=reference_type,
            reference_id=reference_id,
            notes=notes,
        )
        for product_id in product_ids
        if quantities[product_id] > 0
    ]


def update_transaction(transaction_id: int, patch: dict) -> InventoryTransaction:
    """
    Edit descriptive fields of a movement.

    Type and quantity are fixed once recorded; total_cost follows unit_cost.
    """
    locked = {"transaction_type", "quantity", "adjustment_sign", "product_id"} & set(patch)
    if locked:
        raise InvalidOperationError(
            f"Cannot change {', '.join(sorted(locked))} of a recorded inventory transaction"
        )

    def _op():
        tx = db.session.get(InventoryTransaction, transaction_id)
        if tx is None:
            raise NotFoundError("InventoryTransaction", transaction_id)

        changes = {}
        for key, value in patch.items():
            if key not in TRANSACTION_EDITABLE_FIELDS:
                continue
            if key == "unit_cost":
                value = to_decimal(value, field="unit_cost")
            elif key == "transaction_date":
                value = normalize_datetime(value) or tx.transaction_date
            elif key == "reference_id" and value is not None:
                value = str(value)
            changes[key] = value

        for key, value in changes.items():
            setattr(tx, key, value)
        db.session.commit()
        return tx

    return run_with_retry(_op)


def bulk_stock_update(movements: list[dict]) -> list[InventoryTransaction]:
    """
    Append many movements in one commit.

    Every movement is validated first, with OUT and decreasing ADJUSTMENT
    checked against a running per-product balance that includes earlier
    movements of the same batch. Any failure writes nothing.
    """
    current_app.logger.info("Processing bulk stock update for %s transactions", len(movements))

    product_ids = sorted({m.get("product_id") for m in movements if m.get("product_id") is not None})

    def _op():
        balances = get_stock_levels(product_ids)
        known = {
            p.id for p in lock_for_update(db.session.query(Product).filter(Product.id.in_(product_ids))).all()
        }

        prepared = []
        for movement in movements:
            product_id = movement.get("product_id")
            tx_type = movement.get("transaction_type")
            quantity = movement.get("quantity")

            if product_id not in known:
                raise NotFoundError("Product", product_id)
            if tx_type not in TRANSACTION_TYPES:
                raise InvalidOperationError(f"Invalid transaction type '{tx_type}'")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity == 0:
                raise InvalidQuantityError(f"Invalid quantity {quantity!r} for product ID: {product_id}")
            if tx_type != "ADJUSTMENT" and quantity < 0:
                raise InvalidQuantityError(f"Stock {tx_type} quantity must be positive")

            sign = -1 if quantity < 0 else 1
            delta = movement_delta(tx_type, abs(quantity), sign)
            if delta < 0 and balances[product_id] + delta < 0:
                raise InsufficientStockError(
                    f"Insufficient stock for product ID: {product_id}",
                    details={"product_id": product_id, "requested_quantity": -delta, "on_hand": balances[product_id]},
                )
            balances[product_id] += delta
            prepared.append((movement, tx_type, abs(quantity), sign))

        created = []
        for movement, tx_type, magnitude, sign in prepared:
            created.append(
                _append_transaction(
                    product_id=movement["product_id"],
                    transaction_type=tx_type,
                    quantity=magnitude,
                    adjustment_sign=sign,
                    unit_cost=movement.get("unit_cost"),
                    reference_type=movement.get("reference_type") or REFERENCE_BY_TYPE[tx_type],
                    reference_id=movement.get("reference_id"),
                    notes=movement.get("notes"),
                    transaction_date=movement.get("transaction_date"),
                )
            )
        db.session.commit()
        return created

    with ExitStack() as stack:
        for product_id in product_ids:
            stack.enter_context(keyed_lock("product", product_id))
        created = run_with_retry(_op)

    current_app.logger.info("Bulk stock update completed successfully")
    return created


def _valuation(query) -> Decimal:
    total = ZERO
    for unit_cost, quantity in query.filter(
        InventoryTransaction.transaction_type.in_(VALUATION_TYPES)
    ).all():
        total += or_zero(unit_cost) * quantity
    return total


def get_inventory_value(product_id: int) -> Decimal:
    """SUM(unit_cost * quantity) over IN and RETURN movements."""
    _require_product(product_id)
    return _valuation(
        db.session.query(InventoryTransaction.unit_cost, InventoryTransaction.quantity)
        .filter(InventoryTransaction.product_id == product_id)
    )


def get_total_inventory_value() -> Decimal:
    """Inventory value summed over every product."""
    return _valuation(db.session.query(InventoryTransaction.unit_cost, InventoryTransaction.quantity))


def get_low_stock_product_ids() -> list[int]:
    """
    Products whose min_stock_level >= derived stock.

    Evaluated fresh on every call; a product with no movements has stock 0.
    """
    levels = get_stock_levels()
    return [
        product.id
        for product in db.session.query(Product).order_by(Product.id.asc()).all()
        if product.min_stock_level >= levels.get(product.id, 0)
    ]


def get_inventory_summary(product_id: int) -> dict:
    product = _require_product(product_id)
    stock = _stock_on_hand(product_id)
    return {
        "product_id": product_id,
        "sku": product.sku,
        "current_stock": stock,
        "inventory_value": str(get_inventory_value(product_id)),
        "min_stock_level": product.min_stock_level,
        "max_stock_level": product.max_stock_level,
        "is_low_stock": product.min_stock_level >= stock,
    }


def get_product_transactions(product_id: int) -> list[InventoryTransaction]:
    _require_product(product_id)
    return (
        db.session.query(InventoryTransaction)
        .filter(InventoryTransaction.product_id == product_id)
        .order_by(InventoryTransaction.transaction_date.asc(), InventoryTransaction.id.asc())
        .all()
    )


def get_transaction_history(product_id: int, page: int = 0, size: int = 20) -> list[InventoryTransaction]:
    """Zero-based page of a product's movements in ledger order."""
    _require_product(product_id)
    page = max(page, 0)
    size = max(size, 1)
    return (
        db.session.query(InventoryTransaction)
        .filter(InventoryTransaction.product_id == product_id)
        .order_by(InventoryTransaction.transaction_date.asc(), InventoryTransaction.id.asc())
        .offset(page * size)
        .limit(size)
        .all()
    )


def get_transactions_by_date_range(start, end) -> list[InventoryTransaction]:
    start_dt: datetime | None = normalize_datetime(start)
    end_dt: datetime | None = normalize_datetime(end)
    return (
        db.session.query(InventoryTransaction)
        .filter(InventoryTransaction.transaction_date.between(start_dt, end_dt))
        .order_by(InventoryTransaction.transaction_date.asc(), InventoryTransaction.id.asc())
        .all()
    )


def get_stock_movement_report(start, end) -> list[InventoryTransaction]:
    return get_transactions_by_date_range(start, end)


def get_transactions_by_type(transaction_type: str) -> list[InventoryTransaction]:
    if transaction_type not in TRANSACTION_TYPES:
        raise InvalidOperationError(f"Invalid transaction type '{transaction_type}'")
    return (
        db.session.query(InventoryTransaction)
        .filter(InventoryTransaction.transaction_type == transaction_type)
        .order_by(InventoryTransaction.transaction_date.asc(), InventoryTransaction.id.asc())
        .all()
    )


def get_transactions_by_reference(reference_type: str, reference_id) -> list[InventoryTransaction]:
    return (
        db.session.query(InventoryTransaction)
        .filter(
            InventoryTransaction.reference_type == reference_type,
            InventoryTransaction.reference_id == str(reference_id),
        )
        .order_by(InventoryTransaction.id.asc())
        .all()
    )


def search_transactions(keyword: str) -> list[InventoryTransaction]:
    return (
        db.session.query(InventoryTransaction)
        .filter(InventoryTransaction.notes.ilike(f"%{keyword}%"))
        .order_by(InventoryTransaction.id.asc())
        .all()
    )
