# Overview: Service-layer operations for maintenance; scheduled sweeps over the stock ledger.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func, select, update

from ..extensions import db
from ..models import StockMovement, Variant
from ..models.catalog import variant_status_case
from .concurrency import run_with_retry
from .variant_service import deactivate_expired_variants
from backoffice.time_utils import utcnow


def find_stock_drift() -> list[dict]:
    """
    Variants whose cached stock_quantity differs from the movement sum.

    Variants with no movements are compared against zero.
    """
    ledger = (
        db.session.query(
            StockMovement.variant_id.label("variant_id"),
            func.sum(StockMovement.change_quantity).label("ledger_quantity"),
        )
        .group_by(StockMovement.variant_id)
        .subquery()
    )
    ledger_quantity = func.coalesce(ledger.c.ledger_quantity, 0)

    rows = (
        db.session.query(Variant.id, Variant.sku, Variant.stock_quantity, ledger_quantity)
        .outerjoin(ledger, ledger.c.variant_id == Variant.id)
        .filter(Variant.stock_quantity != ledger_quantity)
        .order_by(Variant.id.asc())
        .all()
    )
    return [
        {
            "variant_id": variant_id,
            "sku": sku,
            "cached_quantity": cached,
            "ledger_quantity": int(ledger_qty),
        }
        for variant_id, sku, cached, ledger_qty in rows
    ]


def _ledger_sum_for_row():
    """Correlated movement sum for the Variant row being updated."""
    movements = StockMovement.__table__
    return (
        select(func.coalesce(func.sum(movements.c.change_quantity), 0))
        .where(movements.c.variant_id == Variant.__table__.c.id)
        .correlate(Variant.__table__)
        .scalar_subquery()
    )


def reconcile_stock_quantities(*, fix: bool = True) -> list[dict]:
    """
    Recompute every variant's cached stock from its movement history.

    The ledger is authoritative: drifted variants get stock_quantity set
    to the movement sum (status re-derived in the same statement). A
    negative ledger sum cannot be written and is only reported.

    The sum is evaluated inside the UPDATE, so a movement committed after
    the drift scan is included rather than overwritten. A row whose drift
    disappeared in the meantime is left alone.

    Returns the drift found, each entry marked "fixed" True/False.
    """
    drift = find_stock_drift()
    table = Variant.__table__

    for entry in drift:
        current_app.logger.warning(
            "Stock drift on variant %s (sku=%s): cached %d, ledger %d",
            entry["variant_id"], entry["sku"], entry["cached_quantity"], entry["ledger_quantity"],
        )
        entry["fixed"] = False
        if not fix:
            continue
        if entry["ledger_quantity"] < 0:
            current_app.logger.error(
                "Ledger sum for variant %s is negative; left unchanged", entry["variant_id"]
            )
            continue

        now = utcnow()
        ledger_sum = _ledger_sum_for_row()
        stmt = (
            update(table)
            .where(
                table.c.id == entry["variant_id"],
                table.c.stock_quantity != ledger_sum,
                ledger_sum >= 0,
            )
            .values(
                stock_quantity=ledger_sum,
                status=variant_status_case(ledger_sum, now=now),
                version_id=table.c.version_id + 1,
                updated_at=now,
            )
            .returning(table.c.stock_quantity)
        )

        def _op():
            written = db.session.execute(stmt).scalar_one_or_none()
            db.session.commit()
            return written

        written = run_with_retry(_op)
        if written is None:
            current_app.logger.info(
                "Drift on variant %s resolved before reconciliation; skipped", entry["variant_id"]
            )
            continue
        entry["ledger_quantity"] = written
        entry["fixed"] = True

    db.session.expire_all()
    return drift


def run_daily_maintenance() -> dict:
    """Nightly job: expire variants, then reconcile cached stock."""
    deactivated = deactivate_expired_variants()
    drift = reconcile_stock_quantities(fix=True)
    current_app.logger.info(
        "Daily maintenance finished: %d variants deactivated, %d drifted variants reconciled",
        deactivated, sum(1 for entry in drift if entry["fixed"]),
    )
    return {"deactivated": deactivated, "drift": drift}
