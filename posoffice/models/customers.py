from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer master data for orders, loyalty and store credit.

    customer_code is generated (e.g. "KH000001") unless supplied.
    current_balance is the amount the customer owes against credit_limit.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("customer_code", name="uq_customers_code"),
        db.UniqueConstraint("email", name="uq_customers_email"),
        db.Index("ix_customers_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_code = db.Column(db.String(32), nullable=False)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone_number = db.Column(db.String(32), nullable=True)
    address = db.Column(db.String(512), nullable=True)
    city = db.Column(db.String(128), nullable=True)
    district = db.Column(db.String(128), nullable=True)
    postal_code = db.Column(db.String(16), nullable=True)
    birth_date = db.Column(db.Date, nullable=True)

    loyalty_points = db.Column(db.Integer, nullable=False, default=0)
    credit_limit = db.Column(db.Numeric(19, 2), nullable=False, default=0)
    current_balance = db.Column(db.Numeric(19, 2), nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    notes = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_code": self.customer_code,
            "name": self.name,
            "email": self.email,
            "phone_number": self.phone_number,
            "address": self.address,
            "city": self.city,
            "district": self.district,
            "postal_code": self.postal_code,
            "birth_date": self.birth_date.isoformat() if self.birth_date else None,
            "loyalty_points": self.loyalty_points,
            "credit_limit": money_str(self.credit_limit),
            "current_balance": money_str(self.current_balance),
            "is_active": self.is_active,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
