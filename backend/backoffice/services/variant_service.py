# Overview: Service-layer operations for product variants; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..errors import InvalidInput, InvalidReference, VariantNotFound
from ..models import Product, Variant
from ..models.catalog import VARIANT_ACTIVE, VARIANT_DISCONTINUED, VARIANT_INACTIVE, variant_status_case
from ..validation import PayloadPolicy, check_payload, coerce_bool, coerce_cents, coerce_datetime, coerce_int, coerce_text
from .concurrency import run_with_retry
from .session_service import ActorContext
from .stock_ledger_service import _apply_adjustment
from backoffice.time_utils import utcnow


OPENING_BALANCE_MOVEMENT = "Opening Balance"

BULK_UPDATE_POLICY = PayloadPolicy(
    writable_fields={"expiry_date", "low_stock_threshold", "discontinued"},
)


def get_variant(variant_id: int, *, include_deleted: bool = False) -> Variant:
    variant = db.session.query(Variant).filter(Variant.id == variant_id).first()
    if variant is None or (variant.is_deleted and not include_deleted):
        raise VariantNotFound(f"Variant {variant_id} not found")
    return variant


def create_variant(
    *,
    product_id: int,
    actor: ActorContext,
    sku: str | None = None,
    attribute: str | None = None,
    value: str | None = None,
    unit_id: int | None = None,
    purchase_price_cents=0,
    price_cents=0,
    discount_price_cents=0,
    opening_stock=0,
    low_stock_threshold=None,
    expiry_date: datetime | None = None,
) -> Variant:
    """
    Create a variant of an existing product.

    Stock starts at zero; a positive opening_stock is booked through the
    ledger as an "Opening Balance" movement in the same transaction, so
    the cached quantity and the movement sum agree from the first row.

    Raises:
        InvalidReference: product missing or soft-deleted
        InvalidInput: bad prices, duplicate SKU, negative opening stock
    """
    product = db.session.query(Product).filter(Product.id == product_id).first()
    if product is None or product.is_deleted:
        raise InvalidReference(f"Product {product_id} not found")

    sku_value = coerce_text(sku, "sku", max_length=64) or None
    purchase_price = coerce_cents(purchase_price_cents, "purchase_price_cents")
    price = coerce_cents(price_cents, "price_cents")
    discount = coerce_cents(discount_price_cents, "discount_price_cents")
    if discount > price:
        raise InvalidInput("discount_price_cents cannot exceed price_cents")
    opening = coerce_int(opening_stock, "opening_stock", minimum=0)
    threshold = None
    if low_stock_threshold is not None:
        threshold = coerce_int(low_stock_threshold, "low_stock_threshold", minimum=0)

    if sku_value:
        exists = db.session.query(Variant.id).filter(Variant.sku == sku_value).first()
        if exists:
            raise InvalidInput(f"SKU '{sku_value}' already exists")

    def _op():
        variant = Variant(
            product_id=product.id,
            sku=sku_value,
            attribute=coerce_text(attribute, "attribute", max_length=64),
            value=coerce_text(value, "value", max_length=64),
            unit_id=unit_id,
            purchase_price_cents=purchase_price,
            price_cents=price,
            discount_price_cents=discount,
            stock_quantity=0,
            low_stock_threshold=threshold,
            expiry_date=expiry_date,
        )
        db.session.add(variant)
        db.session.flush()

        if opening > 0:
            _apply_adjustment(
                variant_id=variant.id,
                quantity_change=opening,
                is_increasing=True,
                reason="Opening stock on variant creation",
                actor=actor,
                movement_type=OPENING_BALANCE_MOVEMENT,
            )

        db.session.commit()
        return variant

    variant = run_with_retry(_op)
    current_app.logger.info(
        "Created variant %s (sku=%s) for product %s with opening stock %d",
        variant.id, variant.sku, product_id, opening,
    )
    return variant


def set_variant_discontinued(variant_id: int, discontinued: bool) -> Variant:
    """
    Manually discontinue a variant, or reinstate it.

    Reinstating re-derives the status from stock and expiry, so a variant
    that is empty or expired comes back as INACTIVE.
    """
    flag = coerce_bool(discontinued, "discontinued")

    def _op():
        variant = get_variant(variant_id)
        if flag:
            variant.status = VARIANT_DISCONTINUED
        elif variant.status == VARIANT_DISCONTINUED:
            # Listener re-derives ACTIVE/INACTIVE on flush
            variant.status = VARIANT_ACTIVE
        db.session.commit()
        return variant

    return run_with_retry(_op)


def soft_delete_variant(variant_id: int) -> Variant:
    """Hide a variant from every operation. Movements stay in the ledger."""
    def _op():
        variant = get_variant(variant_id)
        variant.is_deleted = True
        variant.deleted_at = utcnow()
        db.session.commit()
        return variant

    variant = run_with_retry(_op)
    current_app.logger.info("Soft-deleted variant %s", variant_id)
    return variant


def bulk_update_variants(variant_ids: list[int], patch: dict) -> int:
    """
    Update many variants in one statement.

    The status column is recomputed in the same UPDATE with the same rules
    as the ORM listener, so an expiry moved into the past or a reinstated
    variant never keeps a stale status.

    Returns the number of rows updated.
    """
    check_payload(patch, BULK_UPDATE_POLICY)
    if not patch:
        raise InvalidInput("Nothing to update")
    if not isinstance(variant_ids, (list, tuple)) or not variant_ids:
        raise InvalidInput("variant_ids must be a non-empty list")
    ids = [coerce_int(v, "variant_ids", minimum=1) for v in variant_ids]

    now = utcnow()
    table = Variant.__table__
    values = {
        "version_id": table.c.version_id + 1,
        "updated_at": now,
    }

    if "low_stock_threshold" in patch:
        threshold = patch["low_stock_threshold"]
        values["low_stock_threshold"] = (
            None if threshold is None
            else coerce_int(threshold, "low_stock_threshold", minimum=0)
        )

    status_kwargs = {"now": now}
    if "expiry_date" in patch:
        expiry = coerce_datetime(patch["expiry_date"], "expiry_date")
        values["expiry_date"] = expiry
        status_kwargs["expiry_date"] = expiry

    if "discontinued" in patch:
        if coerce_bool(patch["discontinued"], "discontinued"):
            values["status"] = VARIANT_DISCONTINUED
        else:
            values["status"] = variant_status_case(
                table.c.stock_quantity, keep_discontinued=False, **status_kwargs
            )
    else:
        values["status"] = variant_status_case(table.c.stock_quantity, **status_kwargs)

    stmt = (
        update(table)
        .where(table.c.id.in_(ids), table.c.is_deleted == False)  # noqa: E712
        .values(**values)
    )

    def _op():
        result = db.session.execute(stmt)
        db.session.commit()
        return result.rowcount

    updated = run_with_retry(_op)
    db.session.expire_all()
    current_app.logger.info("Bulk-updated %d variants (%s)", updated, ", ".join(sorted(patch)))
    return updated


def deactivate_expired_variants(now: datetime | None = None) -> int:
    """
    Flip ACTIVE variants whose expiry date has passed to INACTIVE.

    DISCONTINUED rows are left alone. Returns the number of rows changed.
    """
    now = now or utcnow()
    table = Variant.__table__
    stmt = (
        update(table)
        .where(
            table.c.status == VARIANT_ACTIVE,
            table.c.is_deleted == False,  # noqa: E712
            table.c.expiry_date.isnot(None),
            table.c.expiry_date < now,
        )
        .values(
            status=VARIANT_INACTIVE,
            version_id=table.c.version_id + 1,
            updated_at=now,
        )
    )

    def _op():
        result = db.session.execute(stmt)
        db.session.commit()
        return result.rowcount

    changed = run_with_retry(_op)
    db.session.expire_all()
    current_app.logger.info("Deactivated %d expired variants", changed)
    return changed
