# Overview: Service-layer operations for supplier purchases; encapsulates business logic and database work.

"""
Purchase Workflow Service

LIFECYCLE:
PENDING -> PARTIAL -> COMPLETED   (payment-driven)
PENDING/PARTIAL -> CANCELLED      (returns received goods)

- COMPLETED and CANCELLED are terminal: no edits, no cancellation.
- Every stock effect of a purchase goes through the stock ledger with
  reference_id = purchase_code, inside the same transaction as the
  purchase write. A failure anywhere rolls back the purchase AND every
  movement already written for its lines.

Hard delete is an admin-only path that reverses stock first.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload, selectinload

from ..extensions import db
from ..errors import (
    AmountMismatch,
    Forbidden,
    InconsistentStatus,
    InvalidInput,
    InvalidReference,
    NotFound,
    PaymentIncomplete,
)
from ..models import Purchase, PurchaseLine, Supplier, Variant
from ..models.auth import ROLE_ADMIN
from ..models.catalog import VARIANT_DISCONTINUED
from ..validation import (
    PayloadPolicy,
    check_payload,
    coerce_cents,
    coerce_datetime,
    coerce_int,
    coerce_text,
    percent_to_bps,
    round_half_up,
)
from .code_service import next_purchase_code
from .concurrency import lock_for_update, run_with_retry
from .session_service import ActorContext
from .stock_ledger_service import _apply_adjustment
from backoffice.time_utils import utcnow


# Purchase statuses
STATUS_PENDING = "PENDING"
STATUS_PARTIAL = "PARTIAL"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELLED = "CANCELLED"

PURCHASE_STATUSES = (STATUS_PENDING, STATUS_PARTIAL, STATUS_COMPLETED, STATUS_CANCELLED)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_CANCELLED)

PAYMENT_TYPES = ("CASH", "CARD", "ONLINE", "BANK_TRANSFER")

# Movement labels written to the ledger
MOVEMENT_PURCHASE_RECEIVED = "Purchase/Received"
MOVEMENT_PURCHASE_UPDATED = "Purchase Updated"
MOVEMENT_PURCHASE_CANCELLED = "Purchase Cancelled"
MOVEMENT_PURCHASE_DELETED = "Purchase Deleted"

CANCELLED_MARKER = "[CANCELLED]"
NOTES_MAX_LENGTH = 2000

ACTIVE_SUPPLIER_STATUS = "ACTIVE"

UPDATE_POLICY = PayloadPolicy(
    writable_fields={"supplier_id", "lines", "summary", "payment", "status", "notes", "purchase_date"},
)
LINE_POLICY = PayloadPolicy(
    writable_fields={"variant_id", "quantity", "unit_price_cents", "tax_percent"},
    required={"variant_id", "quantity", "unit_price_cents"},
)
SUMMARY_POLICY = PayloadPolicy(
    writable_fields={"subtotal_cents", "other_charges_cents", "discount_cents", "grand_total_cents"},
)
PAYMENT_POLICY = PayloadPolicy(
    writable_fields={"amount_paid_cents", "amount_due_cents", "payment_type"},
)


@dataclass(frozen=True)
class LineInput:
    """A validated purchase line with its derived amounts."""
    variant_id: int
    quantity: int
    unit_price_cents: int
    tax_rate_bps: int
    tax_amount_cents: int
    line_total_cents: int


def compute_line_amounts(quantity: int, unit_price_cents: int, tax_rate_bps: int) -> tuple[int, int]:
    """
    Returns (tax_amount_cents, line_total_cents).

    tax = unit_price * quantity * rate, rounded half-up to the cent.
    """
    gross = unit_price_cents * quantity
    tax = round_half_up(Decimal(gross) * Decimal(tax_rate_bps) / Decimal(10_000))
    return tax, gross + tax


def normalize_status(value) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidInput("status must be a string")
    status = value.strip().upper()
    if not status:
        return None
    if status not in PURCHASE_STATUSES:
        raise InvalidInput(f"Invalid status. Must be one of: {', '.join(PURCHASE_STATUSES)}")
    return status


def resolve_purchase_status(
    requested: str | None,
    amount_paid_cents: int,
    amount_due_cents: int,
    current: str | None = None,
) -> str:
    """
    Status implied by the payment figures and the caller's request.

    - COMPLETED requires nothing due (PaymentIncomplete otherwise)
    - PENDING is impossible once anything has been paid
    - PENDING/PARTIAL with nothing due is upgraded to COMPLETED
    - PARTIAL with nothing paid is PENDING
    - no request: derived from the figures
    - a COMPLETED order never moves back
    """
    requested = normalize_status(requested)
    if requested == STATUS_CANCELLED:
        raise InvalidInput("CANCELLED is not a valid status here; cancel the purchase instead")

    if requested == STATUS_COMPLETED:
        if amount_due_cents > 0:
            raise PaymentIncomplete(
                f"Cannot mark purchase as completed: {amount_due_cents} cents still due"
            )
        status = STATUS_COMPLETED
    elif requested == STATUS_PENDING:
        if amount_paid_cents > 0:
            raise InconsistentStatus("A purchase with a payment recorded cannot be PENDING")
        status = STATUS_COMPLETED if amount_due_cents == 0 else STATUS_PENDING
    elif requested == STATUS_PARTIAL:
        if amount_due_cents == 0:
            status = STATUS_COMPLETED
        elif amount_paid_cents == 0:
            status = STATUS_PENDING
        else:
            status = STATUS_PARTIAL
    elif amount_due_cents == 0:
        status = STATUS_COMPLETED
    elif amount_paid_cents > 0:
        status = STATUS_PARTIAL
    else:
        status = STATUS_PENDING

    if current == STATUS_COMPLETED and status != STATUS_COMPLETED:
        raise InconsistentStatus("A completed purchase cannot move back to an earlier status")
    return status


def _require_supplier(supplier_id) -> Supplier:
    sid = coerce_int(supplier_id, "supplier_id", minimum=1)
    supplier = db.session.query(Supplier).filter(Supplier.id == sid).first()
    if supplier is None:
        raise InvalidReference(f"Invalid supplier: {sid}")
    if supplier.status != ACTIVE_SUPPLIER_STATUS:
        raise InvalidReference(f"Supplier {supplier.code} is not active")
    return supplier


def _check_receivable(variant: Variant) -> None:
    """
    A variant can receive stock unless it is discontinued or expired.

    A variant that is INACTIVE only because it ran out is exactly what a
    purchase is for, so zero stock does not block it.
    """
    if variant.status == VARIANT_DISCONTINUED:
        raise InvalidReference(f"Variant {variant.sku or variant.id} is discontinued")
    if variant.is_expired:
        raise InvalidReference(f"Variant {variant.sku or variant.id} is expired")


def build_lines(raw_lines, *, existing_quantities: dict[int, int] | None = None) -> list[LineInput]:
    """
    Validate line payloads and compute their amounts.

    existing_quantities maps variant_id -> quantity already on the order;
    only lines that add stock are held to the receivable check.
    """
    if not isinstance(raw_lines, list) or not raw_lines:
        raise InvalidInput("lines must be a non-empty list")
    existing_quantities = existing_quantities or {}

    built = []
    seen = set()
    for raw in raw_lines:
        check_payload(raw, LINE_POLICY)
        variant_id = coerce_int(raw["variant_id"], "variant_id", minimum=1)
        if variant_id in seen:
            raise InvalidInput(f"Duplicate variant in purchase lines: {variant_id}")
        seen.add(variant_id)

        quantity = coerce_int(raw["quantity"], "quantity", minimum=1)
        unit_price = coerce_cents(raw["unit_price_cents"], "unit_price_cents")
        tax_bps = percent_to_bps(raw.get("tax_percent"))

        variant = db.session.query(Variant).filter(Variant.id == variant_id).first()
        if variant is None or variant.is_deleted:
            raise InvalidReference(f"Invalid variant: {variant_id}")
        if quantity > existing_quantities.get(variant_id, 0):
            _check_receivable(variant)

        tax, total = compute_line_amounts(quantity, unit_price, tax_bps)
        built.append(LineInput(
            variant_id=variant_id,
            quantity=quantity,
            unit_price_cents=unit_price,
            tax_rate_bps=tax_bps,
            tax_amount_cents=tax,
            line_total_cents=total,
        ))
    return built


def _lines_from_purchase(purchase: Purchase) -> list[LineInput]:
    return [
        LineInput(
            variant_id=line.variant_id,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            tax_rate_bps=line.tax_rate_bps,
            tax_amount_cents=line.tax_amount_cents,
            line_total_cents=line.line_total_cents,
        )
        for line in purchase.lines
    ]


def compute_totals(
    lines: list[LineInput],
    summary: dict | None,
    *,
    default_other_charges: int = 0,
    default_discount: int = 0,
) -> dict:
    """
    subtotal = sum of line totals (tax included)
    grand_total = subtotal + other_charges - discount

    A grand_total_cents sent by the client must match the computed one.
    """
    summary = check_payload(summary, SUMMARY_POLICY)
    other = summary.get("other_charges_cents")
    discount = summary.get("discount_cents")
    other_charges = default_other_charges if other is None else coerce_cents(other, "other_charges_cents")
    discount_cents = default_discount if discount is None else coerce_cents(discount, "discount_cents")

    subtotal = sum(line.line_total_cents for line in lines)
    grand_total = subtotal + other_charges - discount_cents
    if grand_total < 0:
        raise AmountMismatch("Grand total cannot be negative")

    provided = summary.get("grand_total_cents")
    if provided is not None and coerce_int(provided, "grand_total_cents") != grand_total:
        raise AmountMismatch(
            f"Provided grand total ({provided}) does not match calculated grand total ({grand_total})"
        )

    return {
        "subtotal_cents": subtotal,
        "other_charges_cents": other_charges,
        "discount_cents": discount_cents,
        "grand_total_cents": grand_total,
    }


def parse_payment(payment: dict | None, grand_total_cents: int, *, default_paid: int = 0, default_type: str | None = None) -> dict:
    payment = check_payload(payment, PAYMENT_POLICY)
    paid_raw = payment.get("amount_paid_cents")
    amount_paid = default_paid if paid_raw is None else coerce_cents(paid_raw, "amount_paid_cents")

    payment_type = default_type
    if "payment_type" in payment:
        raw_type = payment["payment_type"]
        if raw_type is None:
            payment_type = None
        else:
            if not isinstance(raw_type, str) or raw_type.strip().upper() not in PAYMENT_TYPES:
                raise InvalidInput(f"Invalid payment type. Must be one of: {', '.join(PAYMENT_TYPES)}")
            payment_type = raw_type.strip().upper()

    amount_due = grand_total_cents - amount_paid
    if amount_due < 0:
        raise AmountMismatch("Amount paid cannot exceed grand total")

    return {
        "amount_paid_cents": amount_paid,
        "amount_due_cents": amount_due,
        "payment_type": payment_type,
    }


def _require_actor(actor: ActorContext | None) -> ActorContext:
    if actor is None:
        raise InvalidInput("An authenticated actor is required")
    return actor


def _get_purchase_for_update(purchase_id: int) -> Purchase:
    purchase = lock_for_update(
        db.session.query(Purchase).filter(Purchase.id == purchase_id)
    ).first()
    if purchase is None:
        raise NotFound("Purchase not found")
    return purchase


def create_purchase(
    *,
    supplier_id,
    lines,
    actor: ActorContext,
    summary: dict | None = None,
    payment: dict | None = None,
    status: str | None = None,
    notes: str | None = None,
    purchase_date=None,
) -> Purchase:
    """
    Create a purchase and receive its goods.

    One transaction covers the purchase row, its lines, one
    "Purchase/Received" ledger increase per line and the purchase price
    update on each variant. A concurrent insert that takes the same code
    trips the unique constraint and the whole unit is retried.

    Raises:
        InvalidReference: unknown/inactive supplier, unknown or unreceivable variant
        InvalidInput: malformed lines, payment type or status
        AmountMismatch: negative total, overpayment, grand total mismatch
        PaymentIncomplete / InconsistentStatus: status contradicts payment
    """
    _require_actor(actor)
    notes_text = coerce_text(notes, "notes", max_length=NOTES_MAX_LENGTH) or ""
    purchase_dt = coerce_datetime(purchase_date, "purchase_date") or utcnow()

    def _op():
        supplier = _require_supplier(supplier_id)
        built = build_lines(lines)
        totals = compute_totals(built, summary)
        pay = parse_payment(payment, totals["grand_total_cents"])
        resolved = resolve_purchase_status(status, pay["amount_paid_cents"], pay["amount_due_cents"])

        code = next_purchase_code()
        purchase = Purchase(
            purchase_code=code,
            supplier_id=supplier.id,
            status=resolved,
            purchase_date=purchase_dt,
            notes=notes_text,
            created_by_user_id=actor.user_id,
            **totals,
            **pay,
        )
        for position, line in enumerate(built):
            purchase.lines.append(PurchaseLine(
                variant_id=line.variant_id,
                position=position,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                tax_rate_bps=line.tax_rate_bps,
                tax_amount_cents=line.tax_amount_cents,
                line_total_cents=line.line_total_cents,
            ))
        db.session.add(purchase)
        db.session.flush()

        for line in built:
            _apply_adjustment(
                variant_id=line.variant_id,
                quantity_change=line.quantity,
                is_increasing=True,
                reason=f"Received on purchase {code}",
                actor=actor,
                movement_type=MOVEMENT_PURCHASE_RECEIVED,
                reference_id=code,
                purchase_price_cents=line.unit_price_cents,
            )

        db.session.commit()
        return purchase

    purchase = run_with_retry(_op, retry_on=(IntegrityError,))
    current_app.logger.info(
        "Purchase %s created by %s: %d lines, total %d, status %s",
        purchase.purchase_code, actor.username, len(purchase.lines),
        purchase.grand_total_cents, purchase.status,
    )
    return purchase


def _cancel_in_session(purchase: Purchase, actor: ActorContext, reason: str | None) -> None:
    """Return every line's goods and zero the payment. Caller commits."""
    if purchase.status == STATUS_CANCELLED:
        raise Forbidden("Purchase is already cancelled")
    if purchase.status == STATUS_COMPLETED:
        raise Forbidden("Completed purchases cannot be cancelled")

    for line in purchase.lines:
        _apply_adjustment(
            variant_id=line.variant_id,
            quantity_change=line.quantity,
            is_increasing=False,
            reason=f"Purchase {purchase.purchase_code} cancelled",
            actor=actor,
            movement_type=MOVEMENT_PURCHASE_CANCELLED,
            reference_id=purchase.purchase_code,
        )

    marker = f"{CANCELLED_MARKER} {reason}" if reason else CANCELLED_MARKER
    purchase.notes = f"{purchase.notes} {marker}".strip() if purchase.notes else marker
    purchase.status = STATUS_CANCELLED
    purchase.amount_paid_cents = 0
    purchase.amount_due_cents = 0
    purchase.cancelled_at = utcnow()
    purchase.cancelled_by_user_id = actor.user_id


def cancel_purchase(purchase_id: int, actor: ActorContext, reason: str | None = None) -> Purchase:
    """
    Cancel a PENDING or PARTIAL purchase.

    Lines and summary are kept for audit; stock comes back out through
    "Purchase Cancelled" movements. Raises InsufficientStock when the
    received goods are no longer there.
    """
    _require_actor(actor)
    reason_text = coerce_text(reason, "reason", max_length=255)

    def _op():
        purchase = _get_purchase_for_update(purchase_id)
        _cancel_in_session(purchase, actor, reason_text)
        db.session.commit()
        return purchase

    purchase = run_with_retry(_op)
    current_app.logger.info("Purchase %s cancelled by %s", purchase.purchase_code, actor.username)
    return purchase


def update_purchase(purchase_id: int, payload: dict, actor: ActorContext) -> Purchase:
    """
    Edit a PENDING or PARTIAL purchase, or cancel it via status=CANCELLED.

    Line changes are booked as one ledger adjustment per changed variant:
    increases for new or larger lines, decreases for smaller or removed
    lines. Fields not sent keep their current values.
    """
    _require_actor(actor)
    payload = check_payload(payload, UPDATE_POLICY)
    requested = normalize_status(payload.get("status"))

    if requested == STATUS_CANCELLED:
        return cancel_purchase(purchase_id, actor, reason=payload.get("notes"))

    def _op():
        purchase = _get_purchase_for_update(purchase_id)
        if purchase.status in TERMINAL_STATUSES:
            raise Forbidden(f"Cannot edit a {purchase.status.lower()} purchase")

        if payload.get("supplier_id") is not None:
            purchase.supplier_id = _require_supplier(payload["supplier_id"]).id

        old_quantities = {line.variant_id: line.quantity for line in purchase.lines}
        if "lines" in payload:
            built = build_lines(payload["lines"], existing_quantities=old_quantities)
        else:
            built = _lines_from_purchase(purchase)

        totals = compute_totals(
            built,
            payload.get("summary"),
            default_other_charges=purchase.other_charges_cents,
            default_discount=purchase.discount_cents,
        )
        pay = parse_payment(
            payload.get("payment"),
            totals["grand_total_cents"],
            default_paid=purchase.amount_paid_cents,
            default_type=purchase.payment_type,
        )
        resolved = resolve_purchase_status(
            requested, pay["amount_paid_cents"], pay["amount_due_cents"], current=purchase.status
        )

        if "lines" in payload:
            _apply_line_changes(purchase, built, old_quantities, actor)

        for key, value in {**totals, **pay}.items():
            setattr(purchase, key, value)
        purchase.status = resolved
        if "notes" in payload:
            purchase.notes = coerce_text(payload["notes"], "notes", max_length=NOTES_MAX_LENGTH) or ""
        if payload.get("purchase_date") is not None:
            purchase.purchase_date = coerce_datetime(payload["purchase_date"], "purchase_date")

        db.session.commit()
        return purchase

    purchase = run_with_retry(_op)
    current_app.logger.info(
        "Purchase %s updated by %s: total %d, status %s",
        purchase.purchase_code, actor.username, purchase.grand_total_cents, purchase.status,
    )
    return purchase


def _apply_line_changes(
    purchase: Purchase,
    built: list[LineInput],
    old_quantities: dict[int, int],
    actor: ActorContext,
) -> None:
    """Rewrite the purchase's lines in place and book the stock differences."""
    code = purchase.purchase_code
    existing = {line.variant_id: line for line in purchase.lines}
    new_ids = {line.variant_id for line in built}

    # Removed lines give their whole quantity back
    for variant_id, line in existing.items():
        if variant_id in new_ids:
            continue
        _apply_adjustment(
            variant_id=variant_id,
            quantity_change=line.quantity,
            is_increasing=False,
            reason=f"Line removed from purchase {code}",
            actor=actor,
            movement_type=MOVEMENT_PURCHASE_UPDATED,
            reference_id=code,
        )
        purchase.lines.remove(line)

    for position, line in enumerate(built):
        diff = line.quantity - old_quantities.get(line.variant_id, 0)
        if diff != 0:
            _apply_adjustment(
                variant_id=line.variant_id,
                quantity_change=abs(diff),
                is_increasing=diff > 0,
                reason=(
                    f"Quantity {'increased' if diff > 0 else 'reduced'} on purchase {code}"
                    if line.variant_id in existing
                    else f"Line added to purchase {code}"
                ),
                actor=actor,
                movement_type=MOVEMENT_PURCHASE_UPDATED,
                reference_id=code,
                purchase_price_cents=line.unit_price_cents,
            )

        row = existing.get(line.variant_id)
        if diff == 0 and row is not None and row.unit_price_cents != line.unit_price_cents:
            # Price-only edit: no movement, but the cost price still follows
            variant = db.session.get(Variant, line.variant_id)
            if variant is not None and not variant.is_deleted:
                variant.purchase_price_cents = line.unit_price_cents
        if row is None:
            row = PurchaseLine(variant_id=line.variant_id)
            purchase.lines.append(row)
        row.position = position
        row.quantity = line.quantity
        row.unit_price_cents = line.unit_price_cents
        row.tax_rate_bps = line.tax_rate_bps
        row.tax_amount_cents = line.tax_amount_cents
        row.line_total_cents = line.line_total_cents


def delete_purchase(purchase_id: int, actor: ActorContext) -> str:
    """
    Admin-only destructive delete.

    Stock received by a non-cancelled purchase is taken back out through
    "Purchase Deleted" movements before the document is removed. The
    movements themselves stay in the ledger. Returns the deleted code.
    """
    _require_actor(actor)
    if actor.role != ROLE_ADMIN:
        raise Forbidden("Only administrators can delete purchases")

    def _op():
        purchase = _get_purchase_for_update(purchase_id)
        code = purchase.purchase_code
        if purchase.status != STATUS_CANCELLED:
            for line in purchase.lines:
                _apply_adjustment(
                    variant_id=line.variant_id,
                    quantity_change=line.quantity,
                    is_increasing=False,
                    reason=f"Purchase {code} deleted",
                    actor=actor,
                    movement_type=MOVEMENT_PURCHASE_DELETED,
                    reference_id=code,
                )
        db.session.delete(purchase)
        db.session.commit()
        return code

    code = run_with_retry(_op)
    current_app.logger.warning("Purchase %s deleted by %s", code, actor.username)
    return code


def _line_to_dict(line: PurchaseLine) -> dict:
    data = line.to_dict()
    variant = line.variant
    if variant is None:
        data["variant"] = None
        return data
    product = variant.product
    data["variant"] = {
        "id": variant.id,
        "sku": variant.sku,
        "attribute": variant.attribute,
        "value": variant.value,
        "product_name": product.name if product else "Unknown",
        "thumbnail": product.thumbnail if product else None,
        "unit": variant.unit.short_name if variant.unit else None,
        "purchase_price_cents": variant.purchase_price_cents,
        "price_cents": variant.price_cents,
        "stock_quantity": variant.stock_quantity,
        "status": variant.status,
    }
    return data


def purchase_to_dict(purchase: Purchase) -> dict:
    """Purchase with supplier and variant/product/unit context for display."""
    data = purchase.to_dict()
    supplier = purchase.supplier
    data["supplier"] = (
        {"id": supplier.id, "name": supplier.name, "code": supplier.code}
        if supplier else None
    )
    data["lines"] = [_line_to_dict(line) for line in purchase.lines]
    return data


def _with_display_context(query):
    return query.options(
        joinedload(Purchase.supplier),
        selectinload(Purchase.lines)
        .selectinload(PurchaseLine.variant)
        .selectinload(Variant.product),
        selectinload(Purchase.lines)
        .selectinload(PurchaseLine.variant)
        .selectinload(Variant.unit),
    )


def get_purchase(purchase_id: int) -> Purchase:
    purchase = _with_display_context(
        db.session.query(Purchase).filter(Purchase.id == purchase_id)
    ).first()
    if purchase is None:
        raise NotFound("Purchase not found")
    return purchase


def list_purchases(
    *,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    supplier_id: int | None = None,
    from_date=None,
    to_date=None,
    search: str | None = None,
) -> tuple[list[Purchase], int]:
    """
    List purchases, newest first, with optional filters.

    search matches the purchase code, notes and supplier name.
    Returns (purchases, total_count).
    """
    query = db.session.query(Purchase).outerjoin(Supplier, Purchase.supplier_id == Supplier.id)

    status_filter = normalize_status(status)
    if status_filter:
        query = query.filter(Purchase.status == status_filter)
    if supplier_id:
        query = query.filter(Purchase.supplier_id == supplier_id)
    if from_date:
        query = query.filter(Purchase.purchase_date >= from_date)
    if to_date:
        query = query.filter(Purchase.purchase_date <= to_date)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Purchase.purchase_code.ilike(pattern),
            Purchase.notes.ilike(pattern),
            Supplier.name.ilike(pattern),
        ))

    total = query.count()
    purchases = (
        _with_display_context(query)
        .order_by(Purchase.created_at.desc(), Purchase.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return purchases, total

