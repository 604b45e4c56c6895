from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..errors import ImmutableRecordError
from backoffice.time_utils import to_utc_z


DEFAULT_MOVEMENT_TYPE = "Manual Adjustment"


class StockMovement(db.Model):
    """
    Append-only stock ledger entry.

    INVARIANTS:
    - new_quantity = previous_quantity + change_quantity
    - new_quantity >= 0
    - Rows are never updated or deleted. A correction is a new row with
      the opposite sign.

    variant_id is a lookup reference, not ownership: variants are only ever
    soft-deleted, so the audit trail survives them.

    movement_type is an open label ("Manual Adjustment", "Purchase/Received",
    "Sale", "Damage", ...). No logic keys off specific values.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("new_quantity >= 0", name="ck_stock_movements_new_nonnegative"),
        db.CheckConstraint(
            "new_quantity = previous_quantity + change_quantity",
            name="ck_stock_movements_arithmetic",
        ),
        db.Index("ix_stock_movements_variant_occurred", "variant_id", "occurred_at"),
        db.Index("ix_stock_movements_movement_type", "movement_type"),
        db.Index("ix_stock_movements_sku", "sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    variant_id = db.Column(db.Integer, db.ForeignKey("variants.id"), nullable=False)
    # Snapshot at the time of the movement; the variant's SKU may change later
    sku = db.Column(db.String(64), nullable=True)

    previous_quantity = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)
    change_quantity = db.Column(db.Integer, nullable=False)
    is_stock_increasing = db.Column(db.Boolean, nullable=False)

    movement_type = db.Column(db.String(64), nullable=False, default=DEFAULT_MOVEMENT_TYPE)
    reason = db.Column(db.String(255), nullable=False)
    reference_id = db.Column(db.String(64), nullable=True, index=True)

    performed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    performed_by = db.Column(db.String(64), nullable=False)

    occurred_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    variant = db.relationship("Variant")
    performed_by_user = db.relationship("User")

    def __repr__(self) -> str:
        return (
            f"<StockMovement id={self.id} variant_id={self.variant_id} "
            f"change={self.change_quantity} type={self.movement_type!r}>"
        )

    @property
    def change_display(self) -> str:
        return format_signed(self.change_quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "sku": self.sku,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "change_quantity": self.change_quantity,
            "change_display": self.change_display,
            "is_stock_increasing": self.is_stock_increasing,
            "movement_type": self.movement_type,
            "reason": self.reason,
            "reference_id": self.reference_id,
            "performed_by_user_id": self.performed_by_user_id,
            "performed_by": self.performed_by,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


def format_signed(value: int) -> str:
    return f"+{value}" if value > 0 else str(value)


@event.listens_for(StockMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise ImmutableRecordError(f"Stock movement {target.id} is immutable")


@event.listens_for(StockMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Stock movement {target.id} cannot be deleted")
