from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z


# Order lifecycle states (transition table lives in order_service)
ORDER_STATUSES = ("PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED")


class Order(db.Model):
    """
    Customer order with its line items.

    total_amount is normally derived from items + shipping_fee + tax_amount
    - discount_amount by order_service; once the order leaves PENDING it must
    reconcile with the last recalculation.

    stock_issued records whether ship_order() has written OUT movements for
    this order, so a later cancellation knows to return the stock.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_status_date", "status", "order_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable order number (e.g., "HD0001")
    order_number = db.Column(db.String(64), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    order_date = db.Column(db.DateTime(timezone=True), nullable=False)
    delivery_date = db.Column(db.DateTime(timezone=True), nullable=True)
    shipping_address = db.Column(db.String(512), nullable=True)
    tracking_number = db.Column(db.String(64), nullable=True)

    shipping_fee = db.Column(db.Numeric(19, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(19, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(19, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(19, 2), nullable=False, default=0)
    paid_amount = db.Column(db.Numeric(19, 2), nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=True)
    payment_status = db.Column(db.String(16), nullable=True)

    stock_issued = db.Column(db.Boolean, nullable=False, default=False)

    notes = db.Column(db.String(512), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    created_by = db.relationship("User", foreign_keys=[created_by_user_id])
    items = db.relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "created_by_user_id": self.created_by_user_id,
            "status": self.status,
            "order_date": to_utc_z(self.order_date),
            "delivery_date": to_utc_z(self.delivery_date) if self.delivery_date else None,
            "shipping_address": self.shipping_address,
            "tracking_number": self.tracking_number,
            "shipping_fee": money_str(self.shipping_fee),
            "tax_amount": money_str(self.tax_amount),
            "discount_amount": money_str(self.discount_amount),
            "total_amount": money_str(self.total_amount),
            "paid_amount": money_str(self.paid_amount),
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "stock_issued": self.stock_issued,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(19, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(19, 2), nullable=False, default=0)

    # Derived: unit_price * quantity - discount_amount
    total_price = db.Column(db.Numeric(19, 2), nullable=True)

    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product", backref=db.backref("order_items", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": money_str(self.unit_price),
            "discount_amount": money_str(self.discount_amount),
            "total_price": money_str(self.total_price),
            "notes": self.notes,
        }


@event.listens_for(OrderItem, "before_insert")
@event.listens_for(OrderItem, "before_update")
def _recompute_total_price(mapper, connection, target):
    discount = target.discount_amount if target.discount_amount is not None else 0
    target.total_price = target.unit_price * target.quantity - discount
