# Overview: Service-layer operations for the stock ledger; the only write path for variant stock.

"""
Stock Ledger Invariants (authoritative)

Single write path:
- Variant.stock_quantity is changed ONLY by _apply_adjustment() below.
- Each change writes the variant update AND one StockMovement row in the
  same DB transaction. Either both land or neither does.

Concurrency:
- No read-modify-write in Python. The new quantity is computed by the
  database in a single conditional UPDATE:
      SET stock_quantity = stock_quantity + :delta
      WHERE id = :id AND stock_quantity + :delta >= 0
      RETURNING stock_quantity
  Two concurrent adjustments of the same variant serialize on the row;
  neither can lose the other's update, and the non-negative guard is
  evaluated against the committed value, not a stale read.
- The same statement bumps version_id, so any ORM write holding an older
  copy of the variant fails with StaleDataError and is retried.

Ledger:
- stock_quantity == SUM(change_quantity) over the variant's movements.
- Movements are append-only; corrections are opposite-signed movements.
- Quantity at time T is rebuilt from movements with occurred_at <= T.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import func, update

from ..extensions import db
from ..errors import InsufficientStock, InvalidInput, VariantNotFound
from ..models import Product, StockMovement, Variant
from ..models.catalog import variant_status_case
from ..models.inventory import DEFAULT_MOVEMENT_TYPE, format_signed
from ..validation import coerce_int, coerce_text
from .code_service import generate_adjustment_reference
from .concurrency import run_with_retry
from .session_service import ActorContext
from backoffice.time_utils import to_utc_z, utcnow


MOVEMENT_TYPE_MIN_LENGTH = 2
MOVEMENT_TYPE_MAX_LENGTH = 64
REASON_MAX_LENGTH = 255
REFERENCE_MAX_LENGTH = 64


@dataclass(frozen=True)
class MovementResult:
    """Confirmation returned to callers after a committed adjustment."""
    movement_id: int
    variant_id: int
    sku: str | None
    product_name: str
    previous_quantity: int
    new_quantity: int
    change: int
    movement_type: str
    reference_id: str
    expiry_date: datetime | None
    performed_by: str

    @property
    def change_display(self) -> str:
        return format_signed(self.change)

    def to_dict(self) -> dict:
        return {
            "movement_id": self.movement_id,
            "variant_id": self.variant_id,
            "sku": self.sku,
            "product_name": self.product_name,
            "previous_quantity": self.previous_quantity,
            "new_quantity": self.new_quantity,
            "change": self.change,
            "change_display": self.change_display,
            "movement_type": self.movement_type,
            "reference_id": self.reference_id,
            "expiry_date": to_utc_z(self.expiry_date),
            "performed_by": self.performed_by,
        }


def _normalize_movement_type(movement_type: str | None) -> str:
    if movement_type is None:
        return DEFAULT_MOVEMENT_TYPE
    value = coerce_text(movement_type, "movement_type")
    if not value:
        return DEFAULT_MOVEMENT_TYPE
    if len(value) < MOVEMENT_TYPE_MIN_LENGTH or len(value) > MOVEMENT_TYPE_MAX_LENGTH:
        raise InvalidInput(
            f"movement_type must be between {MOVEMENT_TYPE_MIN_LENGTH} "
            f"and {MOVEMENT_TYPE_MAX_LENGTH} characters"
        )
    return value


def _stock_label(sku: str | None, variant_id: int) -> str:
    return sku if sku else f"variant {variant_id}"


def _apply_adjustment(
    *,
    variant_id: int,
    quantity_change,
    is_increasing: bool,
    reason: str,
    actor: ActorContext,
    movement_type: str | None = None,
    reference_id: str | None = None,
    expiry_date: datetime | None = None,
    purchase_price_cents: int | None = None,
) -> MovementResult:
    """
    Core adjustment logic without retry or commit.

    Called by adjust_stock() and by the purchase workflow, which needs every
    line's movement inside its own transaction.
    """
    if actor is None:
        raise InvalidInput("An authenticated actor is required for stock adjustments")
    if not isinstance(is_increasing, bool):
        raise InvalidInput("is_stock_increasing must be a boolean")

    quantity = coerce_int(quantity_change, "quantity_change", minimum=1)
    reason_text = coerce_text(reason, "reason", max_length=REASON_MAX_LENGTH, required=True)
    movement_label = _normalize_movement_type(movement_type)
    reference = coerce_text(reference_id, "reference_id", max_length=REFERENCE_MAX_LENGTH)
    if not reference:
        reference = generate_adjustment_reference()

    # Push pending ORM state before the core UPDATE so nothing is flushed
    # afterwards against a stale version_id.
    db.session.flush()

    variant = db.session.query(Variant).filter(Variant.id == variant_id).first()
    if variant is None or variant.is_deleted:
        raise VariantNotFound(f"Variant {variant_id} not found")
    product_id = variant.product_id

    delta = quantity if is_increasing else -quantity
    now = utcnow()

    table = Variant.__table__
    new_quantity_expr = table.c.stock_quantity + delta
    values = {
        "stock_quantity": new_quantity_expr,
        "version_id": table.c.version_id + 1,
        "updated_at": now,
    }
    if expiry_date is not None:
        values["expiry_date"] = expiry_date
        values["status"] = variant_status_case(new_quantity_expr, now=now, expiry_date=expiry_date)
    else:
        values["status"] = variant_status_case(new_quantity_expr, now=now)
    if purchase_price_cents is not None:
        values["purchase_price_cents"] = purchase_price_cents

    stmt = (
        update(table)
        .where(
            table.c.id == variant_id,
            table.c.is_deleted == False,  # noqa: E712
            new_quantity_expr >= 0,
        )
        .values(**values)
        .returning(table.c.stock_quantity, table.c.sku, table.c.expiry_date)
    )
    row = db.session.execute(stmt).first()

    # The identity-map copy is now stale; reload on next access.
    db.session.expire(variant)

    if row is None:
        current = (
            db.session.query(Variant.stock_quantity)
            .filter(Variant.id == variant_id)
            .scalar()
        )
        raise InsufficientStock(
            f"Insufficient stock to reduce quantity for {_stock_label(variant.sku, variant_id)}: "
            f"available {current}, requested {quantity}"
        )

    new_quantity = row.stock_quantity
    previous_quantity = new_quantity - delta

    movement = StockMovement(
        variant_id=variant_id,
        sku=row.sku,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        change_quantity=delta,
        is_stock_increasing=is_increasing,
        movement_type=movement_label,
        reason=reason_text,
        reference_id=reference,
        performed_by_user_id=actor.user_id,
        performed_by=actor.username,
        occurred_at=now,
    )
    db.session.add(movement)
    db.session.flush()

    product_name = (
        db.session.query(Product.name).filter(Product.id == product_id).scalar()
        or "Unknown"
    )

    return MovementResult(
        movement_id=movement.id,
        variant_id=variant_id,
        sku=row.sku,
        product_name=product_name,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        change=delta,
        movement_type=movement_label,
        reference_id=reference,
        expiry_date=row.expiry_date,
        performed_by=actor.username,
    )


def adjust_stock(
    *,
    variant_id: int,
    quantity_change,
    is_increasing: bool,
    reason: str,
    actor: ActorContext,
    movement_type: str | None = None,
    reference_id: str | None = None,
    expiry_date: datetime | None = None,
) -> MovementResult:
    """
    Change a variant's stock by a positive magnitude in the given direction.

    Raises:
        VariantNotFound: unknown or soft-deleted variant
        InvalidInput: bad quantity, empty reason, bad movement_type, no actor
        InsufficientStock: the decrease would make stock negative
    """
    def _op():
        result = _apply_adjustment(
            variant_id=variant_id,
            quantity_change=quantity_change,
            is_increasing=is_increasing,
            reason=reason,
            actor=actor,
            movement_type=movement_type,
            reference_id=reference_id,
            expiry_date=expiry_date,
        )
        db.session.commit()
        return result

    result = run_with_retry(_op)
    current_app.logger.info(
        "Stock %s for variant %s: %d -> %d (%s, ref %s, by %s)",
        "increased" if result.change > 0 else "decreased",
        result.variant_id,
        result.previous_quantity,
        result.new_quantity,
        result.movement_type,
        result.reference_id,
        result.performed_by,
    )
    return result


def get_ledger_quantity(variant_id: int, as_of: datetime | None = None) -> int:
    """
    Rebuild a variant's quantity from its movements.

    as_of is inclusive: occurred_at <= as_of.
    """
    q = db.session.query(
        func.coalesce(func.sum(StockMovement.change_quantity), 0)
    ).filter(StockMovement.variant_id == variant_id)
    if as_of is not None:
        q = q.filter(StockMovement.occurred_at <= as_of)
    return int(q.scalar() or 0)


def get_stock_as_of(variant_id: int, as_of: datetime | None = None) -> dict:
    """What the variant's stock was at a point in time, according to the ledger."""
    variant = db.session.query(Variant).filter(Variant.id == variant_id).first()
    if variant is None:
        raise VariantNotFound(f"Variant {variant_id} not found")

    as_of_dt = as_of or utcnow()
    return {
        "variant_id": variant_id,
        "sku": variant.sku,
        "as_of": to_utc_z(as_of_dt),
        "quantity": get_ledger_quantity(variant_id, as_of=as_of_dt),
        "current_stock_quantity": variant.stock_quantity,
    }
