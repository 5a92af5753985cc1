# Overview: Service-layer operations for orders; lifecycle state machine, totals and stock issue.

"""
Order Lifecycle Service

STATE MACHINE:
    PENDING -> CONFIRMED -> PROCESSING -> SHIPPED -> DELIVERED
    PENDING / CONFIRMED / PROCESSING -> CANCELLED

    DELIVERED and CANCELLED are terminal.

RULES:
1. update_order_status() accepts only the pairs in ALLOWED_TRANSITIONS.
   Moving to the current status is a successful no-op.
2. cancel_order() is the one exception: it also cancels a SHIPPED order.
   This is the only way out of SHIPPED other than DELIVERED.
3. process_payment() confirms a PENDING order when the amount matches
   total_amount exactly.
4. Items, fees and discounts are editable only while PENDING; total_amount
   is recomputed whenever they change.

STOCK:
- Orders do not touch the ledger until ship_order(). Shipping writes one OUT
  movement per tracked product (reference SALE / order_number) after checking
  the aggregate quantity across the order's lines.
- Cancelling an order whose stock was issued writes matching RETURN
  movements from the ledger rows posted at shipping.
"""

from __future__ import annotations

from collections import defaultdict
from contextlib import ExitStack
from decimal import Decimal

from flask import current_app

from ..errors import (
    AmountMismatchError,
    DuplicateValueError,
    InvalidAmountError,
    InvalidOperationError,
    InvalidQuantityError,
    InvalidTransitionError,
    NotFoundError,
)
from ..extensions import db
from ..models import Customer, InventoryTransaction, Order, OrderItem, ORDER_STATUSES, Product, User
from ..money import ZERO, or_zero, to_decimal
from ..time_utils import normalize_datetime, utcnow
from . import identifier_service
from .concurrency import keyed_lock, run_with_retry
from .inventory_service import post_movements_locked

ALLOWED_TRANSITIONS = {
    "PENDING": {"CONFIRMED", "CANCELLED"},
    "CONFIRMED": {"PROCESSING", "CANCELLED"},
    "PROCESSING": {"SHIPPED", "CANCELLED"},
    "SHIPPED": {"DELIVERED"},
    "DELIVERED": set(),
    "CANCELLED": set(),
}

MONEY_FIELDS = ("shipping_fee", "tax_amount", "discount_amount")
PENDING_ONLY_FIELDS = {"items", "total_amount", *MONEY_FIELDS}
ALWAYS_EDITABLE_FIELDS = {"notes", "shipping_address", "delivery_date"}

SALE_REFERENCE = "SALE"
RETURN_REFERENCE = "RETURN"


def validate_status(status: str) -> None:
    if status not in ORDER_STATUSES:
        raise InvalidTransitionError(
            f"Invalid order status '{status}'. Must be one of: {', '.join(ORDER_STATUSES)}"
        )


def can_transition(from_status: str, to_status: str) -> bool:
    validate_status(from_status)
    validate_status(to_status)
    if from_status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS[from_status]


def _check_transition(order: Order, to_status: str) -> None:
    if not can_transition(order.status, to_status):
        raise InvalidTransitionError(
            f"Cannot transition order from {order.status} to {to_status}",
            details={"order_id": order.id, "from": order.status, "to": to_status},
        )


def _require_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


def _non_negative(value, field: str) -> Decimal:
    amount = or_zero(to_decimal(value, field=field))
    if amount < ZERO:
        raise InvalidAmountError(f"{field} must be >= 0")
    return amount


def _build_items(lines: list[dict]) -> list[OrderItem]:
    """
    Validate item dicts and turn them into OrderItem rows.

    unit_price defaults to the product's sale_price, falling back to price.
    """
    items = []
    for line in lines:
        product_id = line.get("product_id")
        product = db.session.get(Product, product_id) if product_id is not None else None
        if product is None:
            raise NotFoundError("Product", product_id)

        quantity = line.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantityError(
                f"Quantity must be positive for product ID: {product_id}",
                details={"product_id": product_id, "quantity": quantity},
            )

        unit_price = to_decimal(line.get("unit_price"), field="unit_price")
        if unit_price is None:
            unit_price = product.sale_price if product.sale_price is not None else product.price
        if unit_price < ZERO:
            raise InvalidAmountError(f"unit_price must be >= 0 for product ID: {product_id}")

        discount = _non_negative(line.get("discount_amount"), "discount_amount")

        items.append(
            OrderItem(
                product_id=product_id,
                quantity=quantity,
                unit_price=unit_price,
                discount_amount=discount,
                total_price=unit_price * quantity - discount,
                notes=line.get("notes"),
            )
        )
    return items


def _compute_total(order: Order) -> Decimal:
    subtotal = sum(
        (item.unit_price * item.quantity - or_zero(item.discount_amount) for item in order.items),
        ZERO,
    )
    return (
        subtotal
        + or_zero(order.shipping_fee)
        + or_zero(order.tax_amount)
        - or_zero(order.discount_amount)
    )


def exists_by_order_number(order_number: str) -> bool:
    return db.session.query(Order.id).filter(Order.order_number == order_number).first() is not None


def generate_unique_order_number() -> str:
    return identifier_service.generate_unique(
        identifier_service.generate_order_number, exists_by_order_number, label="order number"
    )


def create_order(patch: dict) -> Order:
    """
    Create an order with its items.

    Defaults: generated order_number, status PENDING, order_date now,
    paid_amount and fees 0. total_amount is computed from items and fees
    unless supplied.

    Raises:
        DuplicateValueError: explicit order_number already used
        ExhaustedRetriesError: no free order number could be generated
        NotFoundError: customer, user or product does not resolve
        InvalidQuantityError / InvalidAmountError: bad item or fee values
    """
    current_app.logger.info("Creating new order for customer ID: %s", patch.get("customer_id"))

    def _op():
        order_number = patch.get("order_number")
        if order_number:
            if exists_by_order_number(order_number):
                raise DuplicateValueError(f"Order number already exists: {order_number}")
        else:
            order_number = generate_unique_order_number()

        customer_id = patch.get("customer_id")
        if customer_id is not None and db.session.get(Customer, customer_id) is None:
            raise NotFoundError("Customer", customer_id)

        user_id = patch.get("created_by_user_id")
        if user_id is not None and db.session.get(User, user_id) is None:
            raise NotFoundError("User", user_id)

        status = patch.get("status") or "PENDING"
        validate_status(status)

        order = Order(
            order_number=order_number,
            customer_id=customer_id,
            created_by_user_id=user_id,
            status=status,
            order_date=normalize_datetime(patch.get("order_date")) or utcnow(),
            delivery_date=normalize_datetime(patch.get("delivery_date")),
            shipping_address=patch.get("shipping_address"),
            payment_method=patch.get("payment_method"),
            payment_status=patch.get("payment_status"),
            paid_amount=_non_negative(patch.get("paid_amount"), "paid_amount"),
            notes=patch.get("notes"),
            stock_issued=False,
        )
        for field in MONEY_FIELDS:
            setattr(order, field, _non_negative(patch.get(field), field))

        order.items = _build_items(patch.get("items") or [])

        if patch.get("total_amount") is not None:
            order.total_amount = _non_negative(patch["total_amount"], "total_amount")
        else:
            order.total_amount = _compute_total(order)

        db.session.add(order)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info(
        "Order created successfully with ID: %s and number: %s", order.id, order.order_number
    )
    return order


def update_order(order_id: int, patch: dict) -> Order:
    """
    Edit an order.

    notes, shipping_address and delivery_date can change in any status.
    items, fees, discounts and total_amount only while PENDING. An explicit
    total_amount is stored as given, as in create_order(); otherwise replacing
    items or fees recomputes it.

    Every value is parsed before the order is touched, so a bad value
    leaves the order unchanged.
    """
    current_app.logger.info("Updating order with ID: %s", order_id)

    def _op():
        order = _require_order(order_id)

        restricted = PENDING_ONLY_FIELDS & set(patch)
        if restricted and order.status != "PENDING":
            raise InvalidOperationError(
                f"Cannot change {', '.join(sorted(restricted))} of an order in status {order.status}"
            )

        changes = {}
        for field in ALWAYS_EDITABLE_FIELDS & set(patch):
            value = patch[field]
            if field == "delivery_date":
                value = normalize_datetime(value)
            changes[field] = value
        for field in MONEY_FIELDS:
            if field in patch:
                changes[field] = _non_negative(patch[field], field)
        explicit_total = None
        if patch.get("total_amount") is not None:
            explicit_total = _non_negative(patch["total_amount"], "total_amount")
        items = _build_items(patch["items"] or []) if "items" in patch else None

        for field, value in changes.items():
            setattr(order, field, value)
        if items is not None:
            order.items = items

        if explicit_total is not None:
            order.total_amount = explicit_total
        elif restricted:
            order.total_amount = _compute_total(order)

        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order updated successfully with ID: %s", order_id)
    return order


def update_order_status(order_id: int, status: str) -> Order:
    current_app.logger.info("Updating order status for ID: %s to %s", order_id, status)

    def _op():
        order = _require_order(order_id)
        _check_transition(order, status)
        if order.status == status:
            return order
        order.status = status
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Order status updated successfully for ID: %s", order_id)
    return order


def process_payment(order_id: int, payment_method: str, amount) -> Order:
    """
    Record full payment of a PENDING order and confirm it.

    Raises:
        InvalidOperationError: order is not PENDING
        AmountMismatchError: amount differs from total_amount
    """
    current_app.logger.info("Processing payment for order ID: %s with method: %s", order_id, payment_method)
    paid = to_decimal(amount, field="amount")

    def _op():
        order = _require_order(order_id)
        if order.status != "PENDING":
            raise InvalidOperationError(f"Cannot process payment for order in status {order.status}")
        if paid is None or paid != order.total_amount:
            raise AmountMismatchError(
                "Payment amount does not match order total",
                details={"order_id": order_id, "amount": str(paid), "total_amount": str(order.total_amount)},
            )

        order.payment_method = payment_method
        order.paid_amount = paid
        order.payment_status = "PAID"
        order.status = "CONFIRMED"
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Payment processed successfully for order ID: %s", order_id)
    return order


def _issued_quantities(order: Order) -> dict[int, int]:
    """Net quantities shipped for this order, read back from the ledger."""
    totals: dict[int, int] = defaultdict(int)
    rows = (
        db.session.query(InventoryTransaction)
        .filter(
            InventoryTransaction.reference_id == order.order_number,
            InventoryTransaction.transaction_type == "OUT",
            InventoryTransaction.reference_type == SALE_REFERENCE,
        )
        .all()
    )
    for row in rows:
        totals[row.product_id] += row.quantity
    return dict(totals)


def ship_order(order_id: int) -> Order:
    """
    PROCESSING -> SHIPPED, issuing stock for every tracked product.

    Lines for the same product are summed before the sufficiency check.
    Raises InsufficientStockError (nothing written) when any product is short.
    """
    current_app.logger.info("Shipping order with ID: %s", order_id)

    order = _require_order(order_id)
    product_ids = sorted({item.product_id for item in order.items})

    def _op():
        order = _require_order(order_id)
        if order.status != "PROCESSING":
            raise InvalidTransitionError(
                f"Cannot ship order in status {order.status}",
                details={"order_id": order_id, "from": order.status, "to": "SHIPPED"},
            )

        quantities: dict[int, int] = defaultdict(int)
        for item in order.items:
            if item.product.track_inventory:
                quantities[item.product_id] += item.quantity

        if quantities:
            post_movements_locked(
                "OUT",
                dict(quantities),
                reference_type=SALE_REFERENCE,
                reference_id=order.order_number,
                notes=f"Order {order.order_number}",
            )
            order.stock_issued = True

        order.status = "SHIPPED"
        db.session.commit()
        return order

    with ExitStack() as stack:
        for product_id in product_ids:
            stack.enter_context(keyed_lock("product", product_id))
        order = run_with_retry(_op)

    current_app.logger.info("Order shipped successfully with ID: %s", order_id)
    return order


def cancel_order(order_id: int, reason: str | None = None) -> Order:
    """
    Cancel an order that is not DELIVERED or already CANCELLED.

    Unlike update_order_status(), this also cancels SHIPPED orders. Stock
    issued at shipping is written back as RETURN movements.
    """
    current_app.logger.info("Cancelling order with ID: %s", order_id)

    order = _require_order(order_id)
    product_ids = sorted({item.product_id for item in order.items})

    def _op():
        order = _require_order(order_id)
        if order.status in ("DELIVERED", "CANCELLED"):
            raise InvalidOperationError(f"Cannot cancel order in status {order.status}")

        if order.stock_issued:
            returned = _issued_quantities(order)
            if returned:
                post_movements_locked(
                    "RETURN",
                    returned,
                    reference_type=RETURN_REFERENCE,
                    reference_id=order.order_number,
                    notes=f"Cancelled order {order.order_number}",
                )
            order.stock_issued = False

        if reason:
            note = f"Cancellation reason: {reason}"
            order.notes = f"{order.notes}\n{note}" if order.notes else note
        order.status = "CANCELLED"
        db.session.commit()
        return order

    with ExitStack() as stack:
        for product_id in product_ids:
            stack.enter_context(keyed_lock("product", product_id))
        order = run_with_retry(_op)

    current_app.logger.info("Order cancelled successfully with ID: %s", order_id)
    return order


def delete_order(order_id: int) -> None:
    current_app.logger.info("Deleting order with ID: %s", order_id)

    def _op():
        order = _require_order(order_id)
        if order.status != "PENDING":
            raise InvalidOperationError("Only pending orders can be deleted")
        db.session.delete(order)
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("Order deleted successfully with ID: %s", order_id)


def bulk_update_status(order_ids: list[int], status: str) -> list[Order]:
    """
    Move every resolvable order to status in one commit.

    Ids that do not resolve are skipped. Every resolved order is checked
    against the transition table first; the first invalid one raises and no
    order changes.
    """
    current_app.logger.info("Bulk updating status for %s orders to status: %s", len(order_ids), status)
    validate_status(status)

    def _op():
        found = {o.id: o for o in db.session.query(Order).filter(Order.id.in_(order_ids)).all()}
        orders = [found[order_id] for order_id in order_ids if order_id in found]

        for order in orders:
            _check_transition(order, status)
        for order in orders:
            order.status = status

        db.session.commit()
        return orders

    return run_with_retry(_op)


def calculate_order_total(order_id: int) -> Decimal:
    """sum(unit_price * quantity - discount) + shipping_fee + tax_amount - discount_amount"""
    return _compute_total(_require_order(order_id))


def update_shipping_info(order_id: int, tracking_number: str | None, estimated_delivery=None) -> Order:
    current_app.logger.info("Updating shipping info for order ID: %s", order_id)

    def _op():
        order = _require_order(order_id)
        order.tracking_number = tracking_number
        order.delivery_date = normalize_datetime(estimated_delivery)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.info("Shipping info updated successfully for order ID: %s", order_id)
    return order


def get_order(order_id: int) -> Order | None:
    return db.session.get(Order, order_id)


def get_order_by_number(order_number: str) -> Order | None:
    return db.session.query(Order).filter(Order.order_number == order_number).first()


def list_orders() -> list[Order]:
    return db.session.query(Order).order_by(Order.order_date.desc(), Order.id.desc()).all()


def get_orders_by_customer(customer_id: int) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(Order.customer_id == customer_id)
        .order_by(Order.order_date.desc(), Order.id.desc())
        .all()
    )


def get_orders_by_status(status: str) -> list[Order]:
    validate_status(status)
    return (
        db.session.query(Order)
        .filter(Order.status == status)
        .order_by(Order.order_date.desc(), Order.id.desc())
        .all()
    )


def get_orders_by_created_by(user_id: int) -> list[Order]:
    return (
        db.session.query(Order)
        .filter(Order.created_by_user_id == user_id)
        .order_by(Order.order_date.desc(), Order.id.desc())
        .all()
    )


def search_orders(keyword: str) -> list[Order]:
    """Substring match on order number or customer name."""
    pattern = f"%{keyword}%"
    return (
        db.session.query(Order)
        .outerjoin(Customer, Order.customer_id == Customer.id)
        .filter(db.or_(Order.order_number.ilike(pattern), Customer.name.ilike(pattern)))
        .order_by(Order.order_date.desc(), Order.id.desc())
        .all()
    )


def get_orders_by_date_range(start, end) -> list[Order]:
    """Orders with order_date in [start, end]."""
    return (
        db.session.query(Order)
        .filter(Order.order_date.between(normalize_datetime(start), normalize_datetime(end)))
        .order_by(Order.order_date.asc(), Order.id.asc())
        .all()
    )


def get_order_count_by_status(status: str) -> int:
    validate_status(status)
    return db.session.query(Order).filter(Order.status == status).count()


def get_total_revenue_by_status(statuses) -> Decimal:
    """Sum of total_amount over orders in any of the given statuses."""
    statuses = list(statuses)
    for status in statuses:
        validate_status(status)
    total = ZERO
    for (amount,) in db.session.query(Order.total_amount).filter(Order.status.in_(statuses)).all():
        total += or_zero(amount)
    return total
