from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z


class Supplier(db.Model):
    """
    Supplier master data. Managed elsewhere; the purchase workflow only
    looks suppliers up by id.
    """
    __tablename__ = "suppliers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    code = db.Column(db.String(32), nullable=False, unique=True)
    contact_person = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")  # ACTIVE / INACTIVE / DELETED

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Supplier id={self.id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "contact_person": self.contact_person,
            "email": self.email,
            "phone": self.phone,
            "status": self.status,
        }


class Purchase(db.Model):
    """
    Supplier purchase order.

    LIFECYCLE (payment-driven):
    PENDING -> PARTIAL -> COMPLETED, and CANCELLED from PENDING or PARTIAL.
    COMPLETED and CANCELLED are terminal: lines and totals are frozen.

    TOTALS:
    - grand_total = subtotal + other_charges - discount  (>= 0)
    - amount_due = grand_total - amount_paid              (>= 0)

    Lines are owned (cascade delete-orphan) and not addressable on their own.
    """
    __tablename__ = "purchases"
    __table_args__ = (
        db.CheckConstraint("grand_total_cents >= 0", name="ck_purchases_grand_total_nonnegative"),
        db.CheckConstraint("amount_due_cents >= 0", name="ck_purchases_amount_due_nonnegative"),
        db.Index("ix_purchases_supplier_status", "supplier_id", "status"),
        db.Index("ix_purchases_purchase_date", "purchase_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_code = db.Column(db.String(32), nullable=False, unique=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    purchase_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    other_charges_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    grand_total_cents = db.Column(db.Integer, nullable=False, default=0)

    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_due_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_type = db.Column(db.String(16), nullable=True)

    notes = db.Column(db.Text, nullable=False, default="")

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancelled_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    supplier = db.relationship("Supplier")
    lines = db.relationship(
        "PurchaseLine",
        back_populates="purchase",
        cascade="all, delete-orphan",
        order_by="PurchaseLine.position",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Purchase id={self.id} code={self.purchase_code!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "purchase_code": self.purchase_code,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "purchase_date": to_utc_z(self.purchase_date),
            "lines": [line.to_dict() for line in self.lines],
            "summary": {
                "subtotal_cents": self.subtotal_cents,
                "other_charges_cents": self.other_charges_cents,
                "discount_cents": self.discount_cents,
                "grand_total_cents": self.grand_total_cents,
            },
            "payment": {
                "amount_paid_cents": self.amount_paid_cents,
                "amount_due_cents": self.amount_due_cents,
                "payment_type": self.payment_type,
            },
            "notes": self.notes,
            "created_by_user_id": self.created_by_user_id,
            "cancelled_by_user_id": self.cancelled_by_user_id,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PurchaseLine(db.Model):
    __tablename__ = "purchase_lines"
    __table_args__ = (
        db.UniqueConstraint("purchase_id", "variant_id", name="uq_purchase_lines_purchase_variant"),
        db.CheckConstraint("quantity >= 1", name="ck_purchase_lines_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_purchase_lines_unit_price_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    purchase_id = db.Column(db.Integer, db.ForeignKey("purchases.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False, default=0)

    purchase = db.relationship("Purchase", back_populates="lines")
    variant = db.relationship("Variant")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "tax_percent": self.tax_rate_bps / 100,
            "tax_amount_cents": self.tax_amount_cents,
            "line_total_cents": self.line_total_cents,
        }
