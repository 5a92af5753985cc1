# posoffice/services/product_service.py
"""
Product catalog service

Products carry master data only. Stock is never stored on the product; the
low-stock query and delete guard both read the inventory ledger.

RULES:
- sku is unique (generated as SKU+yyMM+nnnn when absent); barcode is unique
  when present.
- category_id must resolve to an existing category.
- price, cost_price and sale_price are >= 0; tax_rate is within 0..100.
- A product with ledger history or order lines cannot be deleted; mark it
  DISCONTINUED instead.
"""
from __future__ import annotations

from decimal import Decimal

from flask import current_app

from ..errors import DuplicateValueError, InvalidAmountError, InvalidOperationError, NotFoundError
from ..extensions import db
from ..models import Category, InventoryTransaction, OrderItem, PRODUCT_STATUSES, Product
from ..money import ZERO, quantize_cents, to_decimal
from . import identifier_service
from .concurrency import run_with_retry
from .inventory_service import get_low_stock_product_ids

PRODUCT_MUTABLE_FIELDS = {
    "sku",
    "barcode",
    "name",
    "description",
    "image_url",
    "category_id",
    "status",
    "price",
    "cost_price",
    "sale_price",
    "is_taxable",
    "tax_rate",
    "track_inventory",
    "min_stock_level",
    "max_stock_level",
}
PRICE_FIELDS = ("price", "cost_price", "sale_price")
HUNDRED = Decimal("100")


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def _require_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def _normalize_patch(patch: dict) -> dict:
    """Coerce money fields to Decimal and check their ranges."""
    cleaned = dict(patch)
    for field in PRICE_FIELDS:
        if field in cleaned:
            value = to_decimal(cleaned[field], field=field)
            if value is not None and value < ZERO:
                raise InvalidAmountError(f"{field} must be >= 0")
            cleaned[field] = value

    if "tax_rate" in cleaned:
        rate = to_decimal(cleaned["tax_rate"], field="tax_rate")
        if rate is None:
            rate = ZERO
        if rate < ZERO or rate > HUNDRED:
            raise InvalidAmountError("tax_rate must be between 0 and 100")
        cleaned["tax_rate"] = rate

    if "status" in cleaned and cleaned["status"] not in PRODUCT_STATUSES:
        raise InvalidOperationError(
            f"Invalid product status '{cleaned['status']}'. Must be one of: {', '.join(PRODUCT_STATUSES)}"
        )
    return cleaned


def _check_unique(*, sku=None, barcode=None, exclude_id: int | None = None) -> None:
    if sku is not None:
        q = db.session.query(Product.id).filter(Product.sku == sku)
        if exclude_id is not None:
            q = q.filter(Product.id != exclude_id)
        if q.first() is not None:
            raise DuplicateValueError(f"SKU already exists: {sku}")
    if barcode:
        q = db.session.query(Product.id).filter(Product.barcode == barcode)
        if exclude_id is not None:
            q = q.filter(Product.id != exclude_id)
        if q.first() is not None:
            raise DuplicateValueError(f"Barcode already exists: {barcode}")


def _require_category(category_id) -> None:
    if category_id is None or db.session.get(Category, category_id) is None:
        raise NotFoundError("Category", category_id)


def exists_by_sku(sku: str) -> bool:
    return db.session.query(Product.id).filter(Product.sku == sku).first() is not None


def exists_by_barcode(barcode: str) -> bool:
    return db.session.query(Product.id).filter(Product.barcode == barcode).first() is not None


def generate_unique_sku() -> str:
    return identifier_service.generate_unique(
        identifier_service.generate_sku, exists_by_sku, label="SKU"
    )


def create_product(patch: dict) -> Product:
    """
    Create a product from a patch dict.

    Raises:
        NotFoundError: category_id does not resolve
        DuplicateValueError: sku or barcode already used
        InvalidAmountError: negative price or tax_rate outside 0..100
        ExhaustedRetriesError: no free SKU could be generated
    """
    current_app.logger.info("Creating new product: %s", patch.get("name"))

    def _op():
        cleaned = _normalize_patch(patch)
        if not cleaned.get("name"):
            raise InvalidOperationError("Product name is required")
        if cleaned.get("price") is None:
            raise InvalidAmountError("price is required")
        _require_category(cleaned.get("category_id"))

        if not cleaned.get("sku"):
            cleaned["sku"] = generate_unique_sku()
        _check_unique(sku=cleaned["sku"], barcode=cleaned.get("barcode"))

        p = Product()
        apply_product_patch(p, cleaned)
        if p.status is None:
            p.status = "ACTIVE"

        db.session.add(p)
        db.session.commit()
        return p

    product = run_with_retry(_op)
    current_app.logger.info("Product created successfully with ID: %s", product.id)
    return product


def update_product(product_id: int, patch: dict) -> Product:
    current_app.logger.info("Updating product with ID: %s", product_id)

    def _op():
        p = _require_product(product_id)
        cleaned = _normalize_patch(patch)

        if "name" in cleaned and not cleaned["name"]:
            raise InvalidOperationError("Product name is required")
        if "price" in cleaned and cleaned["price"] is None:
            raise InvalidAmountError("price is required")
        if "category_id" in cleaned:
            _require_category(cleaned["category_id"])
        if "sku" in cleaned and not cleaned["sku"]:
            raise InvalidOperationError("sku cannot be empty")

        _check_unique(sku=cleaned.get("sku"), barcode=cleaned.get("barcode"), exclude_id=p.id)

        apply_product_patch(p, cleaned)
        db.session.commit()
        return p

    product = run_with_retry(_op)
    current_app.logger.info("Product updated successfully with ID: %s", product_id)
    return product


def delete_product(product_id: int) -> None:
    """
    Hard-delete a product that nothing refers to.

    Raises InvalidOperationError when the product has inventory movements or
    appears on any order.
    """
    current_app.logger.info("Deleting product with ID: %s", product_id)

    def _op():
        p = _require_product(product_id)

        has_history = (
            db.session.query(InventoryTransaction.id)
            .filter(InventoryTransaction.product_id == product_id)
            .first()
            is not None
        )
        has_order_lines = (
            db.session.query(OrderItem.id).filter(OrderItem.product_id == product_id).first() is not None
        )
        if has_history or has_order_lines:
            raise InvalidOperationError(
                "Cannot delete product with inventory or order history. Mark it DISCONTINUED instead."
            )

        db.session.delete(p)
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("Product deleted successfully with ID: %s", product_id)


def update_product_status(product_id: int, status: str) -> Product:
    return update_product(product_id, {"status": status})


def bulk_update_prices(product_ids: list[int], delta) -> list[Product]:
    """
    Add delta to the price of every listed product in one commit.

    Every product is resolved and every new price checked before anything is
    written; an unknown id or a price that would go negative fails the batch.
    """
    amount = to_decimal(delta, field="delta")
    if amount is None:
        raise InvalidAmountError("delta is required")
    current_app.logger.info("Bulk updating prices for %s products by %s", len(product_ids), amount)

    def _op():
        found = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()}

        planned = []
        for product_id in product_ids:
            p = found.get(product_id)
            if p is None:
                raise NotFoundError("Product", product_id)
            new_price = p.price + amount
            if new_price < ZERO:
                raise InvalidAmountError(
                    f"Price for product ID: {product_id} would become negative",
                    details={"product_id": product_id, "price": str(p.price), "delta": str(amount)},
                )
            planned.append((p, new_price))

        for p, new_price in planned:
            p.price = new_price
        db.session.commit()
        return [p for p, _ in planned]

    return run_with_retry(_op)


def calculate_price_with_tax(product_id: int) -> Decimal:
    """
    Selling price including tax, rounded half-up to cents.

    Uses sale_price when set, otherwise price. Non-taxable products return
    the base price unchanged.
    """
    p = _require_product(product_id)
    base = p.sale_price if p.sale_price is not None else p.price
    if not p.is_taxable or not p.tax_rate:
        return quantize_cents(base)
    return quantize_cents(base + base * p.tax_rate / HUNDRED)


def get_product(product_id: int) -> Product | None:
    return db.session.get(Product, product_id)


def get_product_by_sku(sku: str) -> Product | None:
    return db.session.query(Product).filter(Product.sku == sku).first()


def list_products() -> list[Product]:
    return db.session.query(Product).order_by(Product.name.asc(), Product.id.asc()).all()


def get_products_by_category(category_id: int) -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.category_id == category_id)
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )


def get_products_by_status(status: str) -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.status == status)
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )


def get_active_products() -> list[Product]:
    return get_products_by_status("ACTIVE")


def search_products(keyword: str) -> list[Product]:
    pattern = f"%{keyword}%"
    return (
        db.session.query(Product)
        .filter(
            db.or_(
                Product.name.ilike(pattern),
                Product.sku.ilike(pattern),
                Product.description.ilike(pattern),
            )
        )
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )


def get_products_by_price_range(min_price, max_price) -> list[Product]:
    low = to_decimal(min_price, field="min_price")
    high = to_decimal(max_price, field="max_price")
    return (
        db.session.query(Product)
        .filter(Product.price >= low, Product.price <= high)
        .order_by(Product.price.asc(), Product.id.asc())
        .all()
    )


def get_low_stock_products() -> list[Product]:
    ids = get_low_stock_product_ids()
    if not ids:
        return []
    return db.session.query(Product).filter(Product.id.in_(ids)).order_by(Product.id.asc()).all()
