from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z


# Product status values (services validate against this set)
PRODUCT_STATUSES = ("ACTIVE", "INACTIVE", "OUT_OF_STOCK", "DISCONTINUED")


class Category(db.Model):
    """
    Catalog category, arranged as a forest via parent_id.

    TREE DESIGN:
    Only the parent reference is stored. Child lists are rebuilt on demand by
    category_service from a parent_id index, so there are no ORM back-references
    to keep in sync when a category is reparented.

    sort_order is sibling-scoped: it orders categories that share a parent
    (or the root set when parent_id is NULL).
    """
    __tablename__ = "categories"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_categories_name"),
        db.Index("ix_categories_parent_sort", "parent_id", "sort_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    parent_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)
    sort_order = db.Column(db.Integer, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Category id={self.id} name={self.name!r} parent_id={self.parent_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "parent_id": self.parent_id,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Product(db.Model):
    """
    Product master data.

    STOCK DESIGN DECISION:
    There is deliberately no quantity column. On-hand stock is derived from
    InventoryTransaction rows by inventory_service.get_current_stock().
    min_stock_level / max_stock_level are thresholds compared against that
    derived value.

    Money columns are NUMERIC(19, 2) and surface as Decimal.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.UniqueConstraint("barcode", name="uq_products_barcode"),
        db.Index("ix_products_name", "name"),
        db.Index("ix_products_category_status", "category_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    image_url = db.Column(db.String(512), nullable=True)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)

    price = db.Column(db.Numeric(19, 2), nullable=False)
    cost_price = db.Column(db.Numeric(19, 2), nullable=True)
    sale_price = db.Column(db.Numeric(19, 2), nullable=True)

    is_taxable = db.Column(db.Boolean, nullable=False, default=True)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    track_inventory = db.Column(db.Boolean, nullable=False, default=True)

    min_stock_level = db.Column(db.Integer, nullable=False, default=0)
    max_stock_level = db.Column(db.Integer, nullable=False, default=1000)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    category = db.relationship("Category", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "description": self.description,
            "image_url": self.image_url,
            "category_id": self.category_id,
            "status": self.status,
            "price": money_str(self.price),
            "cost_price": money_str(self.cost_price),
            "sale_price": money_str(self.sale_price),
            "is_taxable": self.is_taxable,
            "tax_rate": money_str(self.tax_rate),
            "track_inventory": self.track_inventory,
            "min_stock_level": self.min_stock_level,
            "max_stock_level": self.max_stock_level,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
