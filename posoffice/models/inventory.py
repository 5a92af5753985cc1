from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z


# Movement types
TRANSACTION_TYPES = ("IN", "OUT", "ADJUSTMENT", "RETURN")


def movement_delta(transaction_type: str, quantity: int, adjustment_sign: int = 1) -> int:
    """
    Signed effect of one movement on derived stock.

    IN and RETURN add, OUT subtracts, ADJUSTMENT applies its own sign.
    This is the single definition of the stock fold; the SQL aggregate in
    inventory_service.get_current_stock() mirrors it.
    """
    if transaction_type in ("IN", "RETURN"):
        return quantity
    if transaction_type == "OUT":
        return -quantity
    if transaction_type == "ADJUSTMENT":
        return (adjustment_sign or 1) * quantity
    raise ValueError(f"Unknown transaction type: {transaction_type}")


class InventoryTransaction(db.Model):
    """
    One stock movement for one product.

    quantity is always a magnitude (> 0). The direction comes from
    transaction_type, and for ADJUSTMENT from adjustment_sign (+1 / -1).

    total_cost is derived (unit_cost * quantity) and recomputed on every
    insert and update by the mapper listener below; it is never set directly.
    """
    __tablename__ = "inventory_transactions"

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(16), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    adjustment_sign = db.Column(db.Integer, nullable=False, default=1)

    unit_cost = db.Column(db.Numeric(19, 2), nullable=True)
    total_cost = db.Column(db.Numeric(19, 2), nullable=True)

    # Free-form link to the originating business event (PURCHASE, SALE, ...)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)

    notes = db.Column(db.String(255), nullable=True)

    transaction_date = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("inventory_transactions", lazy=True))

    __table_args__ = (
        db.Index("ix_invtx_product_date", "product_id", "transaction_date"),
        db.Index("ix_invtx_product_type", "product_id", "transaction_type"),
        db.Index("ix_invtx_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    @property
    def quantity_delta(self) -> int:
        return movement_delta(self.transaction_type, self.quantity, self.adjustment_sign)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "transaction_type": self.transaction_type,
            "quantity": self.quantity,
            "quantity_delta": self.quantity_delta,
            "unit_cost": money_str(self.unit_cost),
            "total_cost": money_str(self.total_cost),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "notes": self.notes,
            "transaction_date": to_utc_z(self.transaction_date),
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(InventoryTransaction, "before_insert")
@event.listens_for(InventoryTransaction, "before_update")
def _recompute_total_cost(mapper, connection, target):
    if target.unit_cost is not None and target.quantity is not None:
        target.total_cost = target.unit_cost * target.quantity
    else:
        target.total_cost = None
