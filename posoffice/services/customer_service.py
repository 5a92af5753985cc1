# posoffice/services/customer_service.py
"""
Customer accounts: master data, loyalty points and store credit.

customer_code is unique and generated as KH+nnnnnn when absent. email is
unique when present. Loyalty points never go below zero; current_balance is
what the customer owes against credit_limit.
"""
from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..errors import (
    DuplicateValueError,
    InvalidAmountError,
    InvalidOperationError,
    InvalidQuantityError,
    NotFoundError,
)
from ..extensions import db
from ..models import Customer, Order
from ..money import ZERO, or_zero, to_decimal
from . import identifier_service
from .concurrency import run_with_retry

CUSTOMER_MUTABLE_FIELDS = {
    "customer_code",
    "name",
    "email",
    "phone_number",
    "address",
    "city",
    "district",
    "postal_code",
    "birth_date",
    "credit_limit",
    "current_balance",
    "is_active",
    "notes",
}
CONTACT_FIELDS = {"email", "phone_number", "address", "city", "district", "postal_code"}


def apply_customer_patch(c: Customer, patch: dict, fields=CUSTOMER_MUTABLE_FIELDS) -> None:
    for k, v in patch.items():
        if k not in fields:
            continue
        setattr(c, k, v)


def _require_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer", customer_id)
    return customer


def _normalize_money(patch: dict) -> dict:
    cleaned = dict(patch)
    if "credit_limit" in cleaned:
        limit = to_decimal(cleaned["credit_limit"], field="credit_limit")
        if limit is None or limit < ZERO:
            raise InvalidAmountError("credit_limit must be >= 0")
        cleaned["credit_limit"] = limit
    if "current_balance" in cleaned:
        cleaned["current_balance"] = or_zero(to_decimal(cleaned["current_balance"], field="current_balance"))
    return cleaned


def _check_unique(*, code=None, email=None, exclude_id: int | None = None) -> None:
    if code is not None:
        q = db.session.query(Customer.id).filter(Customer.customer_code == code)
        if exclude_id is not None:
            q = q.filter(Customer.id != exclude_id)
        if q.first() is not None:
            raise DuplicateValueError(f"Customer code already exists: {code}")
    if email:
        q = db.session.query(Customer.id).filter(Customer.email == email)
        if exclude_id is not None:
            q = q.filter(Customer.id != exclude_id)
        if q.first() is not None:
            raise DuplicateValueError(f"Email already exists: {email}")


def exists_by_customer_code(code: str) -> bool:
    return db.session.query(Customer.id).filter(Customer.customer_code == code).first() is not None


def exists_by_email(email: str) -> bool:
    return db.session.query(Customer.id).filter(Customer.email == email).first() is not None


def generate_unique_customer_code() -> str:
    return identifier_service.generate_unique(
        identifier_service.generate_customer_code, exists_by_customer_code, label="customer code"
    )


def create_customer(patch: dict) -> Customer:
    current_app.logger.info("Creating new customer: %s", patch.get("name"))

    def _op():
        cleaned = _normalize_money(patch)
        if not cleaned.get("name"):
            raise InvalidOperationError("Customer name is required")

        if not cleaned.get("customer_code"):
            cleaned["customer_code"] = generate_unique_customer_code()
        _check_unique(code=cleaned["customer_code"], email=cleaned.get("email"))

        c = Customer(loyalty_points=0, credit_limit=ZERO, current_balance=ZERO, is_active=True)
        apply_customer_patch(c, cleaned)

        db.session.add(c)
        db.session.commit()
        return c

    customer = run_with_retry(_op)
    current_app.logger.info("Customer created successfully with ID: %s", customer.id)
    return customer


def update_customer(customer_id: int, patch: dict) -> Customer:
    current_app.logger.info("Updating customer with ID: %s", customer_id)

    def _op():
        c = _require_customer(customer_id)
        cleaned = _normalize_money(patch)
        if "name" in cleaned and not cleaned["name"]:
            raise InvalidOperationError("Customer name is required")
        if "customer_code" in cleaned and not cleaned["customer_code"]:
            raise InvalidOperationError("customer_code cannot be empty")
        _check_unique(code=cleaned.get("customer_code"), email=cleaned.get("email"), exclude_id=c.id)

        apply_customer_patch(c, cleaned)
        db.session.commit()
        return c

    customer = run_with_retry(_op)
    current_app.logger.info("Customer updated successfully with ID: %s", customer_id)
    return customer


def update_contact_info(customer_id: int, patch: dict) -> Customer:
    """Update only the contact fields (email, phone, address parts)."""
    def _op():
        c = _require_customer(customer_id)
        _check_unique(email=patch.get("email"), exclude_id=c.id)
        apply_customer_patch(c, patch, fields=CONTACT_FIELDS)
        db.session.commit()
        return c

    return run_with_retry(_op)


def delete_customer(customer_id: int) -> None:
    current_app.logger.info("Deleting customer with ID: %s", customer_id)

    def _op():
        c = _require_customer(customer_id)
        if get_order_count(customer_id) > 0:
            raise InvalidOperationError("Cannot delete customer with existing orders")
        db.session.delete(c)
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("Customer deleted successfully with ID: %s", customer_id)


def add_loyalty_points(customer_id: int, points: int) -> Customer:
    current_app.logger.info("Adding %s loyalty points to customer ID: %s", points, customer_id)
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise InvalidQuantityError("Loyalty points must be positive")

    def _op():
        c = _require_customer(customer_id)
        c.loyalty_points = (c.loyalty_points or 0) + points
        db.session.commit()
        return c

    return run_with_retry(_op)


def redeem_loyalty_points(customer_id: int, points: int) -> Customer:
    current_app.logger.info("Redeeming %s loyalty points for customer ID: %s", points, customer_id)
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise InvalidQuantityError("Loyalty points must be positive")

    def _op():
        c = _require_customer(customer_id)
        held = c.loyalty_points or 0
        if points > held:
            raise InvalidOperationError(
                "Insufficient loyalty points",
                details={"customer_id": customer_id, "requested": points, "available": held},
            )
        c.loyalty_points = held - points
        db.session.commit()
        return c

    return run_with_retry(_op)


def update_credit_limit(customer_id: int, credit_limit) -> Customer:
    current_app.logger.info("Updating credit limit for customer ID: %s", customer_id)
    return update_customer(customer_id, {"credit_limit": credit_limit})


def update_balance(customer_id: int, balance) -> Customer:
    """Set current_balance to the given value."""
    current_app.logger.info("Updating balance for customer ID: %s", customer_id)
    value = to_decimal(balance, field="balance")
    if value is None:
        raise InvalidAmountError("balance is required")

    def _op():
        c = _require_customer(customer_id)
        c.current_balance = value
        db.session.commit()
        return c

    return run_with_retry(_op)


def adjust_balance(customer_id: int, amount) -> Customer:
    """Add amount (may be negative, e.g. a payment) to current_balance."""
    delta = to_decimal(amount, field="amount")
    if delta is None:
        raise InvalidAmountError("amount is required")

    def _op():
        c = _require_customer(customer_id)
        c.current_balance = or_zero(c.current_balance) + delta
        db.session.commit()
        return c

    return run_with_retry(_op)


def toggle_customer_status(customer_id: int, active: bool) -> Customer:
    def _op():
        c = _require_customer(customer_id)
        c.is_active = active
        db.session.commit()
        return c

    return run_with_retry(_op)


def bulk_update_status(customer_ids: list[int], active: bool) -> list[Customer]:
    """Set is_active on every listed customer; an unknown id fails the batch."""
    current_app.logger.info("Bulk updating status for %s customers to active: %s", len(customer_ids), active)

    def _op():
        found = {c.id: c for c in db.session.query(Customer).filter(Customer.id.in_(customer_ids)).all()}
        ordered = []
        for customer_id in customer_ids:
            c = found.get(customer_id)
            if c is None:
                raise NotFoundError("Customer", customer_id)
            ordered.append(c)
        for c in ordered:
            c.is_active = active
        db.session.commit()
        return ordered

    return run_with_retry(_op)


def has_sufficient_credit(customer_id: int, amount) -> bool:
    """True when current_balance + amount stays within credit_limit."""
    c = _require_customer(customer_id)
    needed = or_zero(to_decimal(amount, field="amount"))
    return or_zero(c.current_balance) + needed <= or_zero(c.credit_limit)


def get_customer_debt(customer_id: int) -> Decimal:
    c = _require_customer(customer_id)
    return max(or_zero(c.current_balance), ZERO)


def get_order_count(customer_id: int) -> int:
    return db.session.query(Order).filter(Order.customer_id == customer_id).count()


def get_customer(customer_id: int) -> Customer | None:
    return db.session.get(Customer, customer_id)


def get_customer_by_code(code: str) -> Customer | None:
    return db.session.query(Customer).filter(Customer.customer_code == code).first()


def get_customer_by_email(email: str) -> Customer | None:
    return db.session.query(Customer).filter(Customer.email == email).first()


def list_customers() -> list[Customer]:
    return db.session.query(Customer).order_by(Customer.name.asc(), Customer.id.asc()).all()


def get_active_customers() -> list[Customer]:
    return (
        db.session.query(Customer)
        .filter(Customer.is_active.is_(True))
        .order_by(Customer.name.asc(), Customer.id.asc())
        .all()
    )


def search_customers(keyword: str) -> list[Customer]:
    """Substring match on name, code, email or phone number."""
    pattern = f"%{keyword}%"
    return (
        db.session.query(Customer)
        .filter(
            db.or_(
                Customer.name.ilike(pattern),
                Customer.customer_code.ilike(pattern),
                Customer.email.ilike(pattern),
                Customer.phone_number.ilike(pattern),
            )
        )
        .order_by(Customer.name.asc(), Customer.id.asc())
        .all()
    )


def get_customers_with_loyalty_points() -> list[Customer]:
    return (
        db.session.query(Customer)
        .filter(Customer.loyalty_points > 0)
        .order_by(Customer.loyalty_points.desc(), Customer.id.asc())
        .all()
    )
