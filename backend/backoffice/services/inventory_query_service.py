# Overview: Read-only inventory projections joining variants with the stock ledger.

"""
Inventory Query Service

Everything here is a projection of two sources of truth: the variants
table (current quantity) and the stock_movements table (history). Nothing
in this module writes.

- Joins to product/brand/category are OUTER joins: a movement whose
  variant or product has gone missing still shows up, with "Unknown" in
  place of the names.
- Ordering is deterministic (occurred_at desc, id desc) so identical
  requests return identical pages.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func, or_

from ..extensions import db
from ..errors import NotFound, VariantNotFound
from ..models import Brand, Category, Product, StockMovement, Unit, Variant
from ..models.catalog import VARIANT_DISCONTINUED
from backoffice.time_utils import to_utc_z, utcnow


UNKNOWN = "Unknown"

STATUS_LABEL_EXPIRED = "Expired"
STATUS_LABEL_LOW_STOCK = "Low Stock"
STATUS_LABEL_GOOD = "Good"

STOCK_LEVEL_SORTS = ("name", "stock", "expiry")


def _paginate(query, page: int, limit: int) -> tuple[list, dict]:
    total = query.order_by(None).count()
    total_pages = (total + limit - 1) // limit if total > 0 else 1
    rows = query.offset((page - 1) * limit).limit(limit).all()
    return rows, {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def _default_low_stock_threshold() -> int:
    return current_app.config.get("LOW_STOCK_THRESHOLD", 10)


def stock_status_label(
    stock_quantity: int,
    expiry_date: datetime | None,
    threshold: int,
    now: datetime | None = None,
) -> str:
    """Expired beats Low Stock beats Good."""
    now = now or utcnow()
    if expiry_date is not None and expiry_date < now:
        return STATUS_LABEL_EXPIRED
    if stock_quantity <= threshold:
        return STATUS_LABEL_LOW_STOCK
    return STATUS_LABEL_GOOD


def _movement_query():
    return (
        db.session.query(StockMovement, Variant, Product, Brand, Category)
        .outerjoin(Variant, Variant.id == StockMovement.variant_id)
        .outerjoin(Product, Product.id == Variant.product_id)
        .outerjoin(Brand, Brand.id == Product.brand_id)
        .outerjoin(Category, Category.id == Product.category_id)
    )


def _movement_row_to_dict(row) -> dict:
    movement, variant, product, brand, category = row
    data = movement.to_dict()
    data.update({
        "product_name": product.name if product else UNKNOWN,
        "brand_name": brand.name if brand else UNKNOWN,
        "category_name": category.name if category else UNKNOWN,
        "attribute": variant.attribute if variant else None,
        "value": variant.value if variant else None,
        "thumbnail": product.thumbnail if product else None,
        "current_stock_quantity": variant.stock_quantity if variant else None,
    })
    return data


def get_inventory_dashboard(
    *,
    search: str | None = None,
    movement_type: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """
    Movement history with product, brand and category context.

    search matches SKU, product, brand and category names, reason and
    reference. Date bounds apply to occurred_at and are inclusive.
    """
    query = _movement_query()

    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            StockMovement.sku.ilike(pattern),
            StockMovement.reason.ilike(pattern),
            StockMovement.reference_id.ilike(pattern),
            Product.name.ilike(pattern),
            Brand.name.ilike(pattern),
            Category.name.ilike(pattern),
        ))
    if movement_type:
        query = query.filter(func.lower(StockMovement.movement_type) == movement_type.strip().lower())
    if from_date:
        query = query.filter(StockMovement.occurred_at >= from_date)
    if to_date:
        query = query.filter(StockMovement.occurred_at <= to_date)

    query = query.order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
    rows, pagination = _paginate(query, page, limit)
    return {
        "items": [_movement_row_to_dict(row) for row in rows],
        "pagination": pagination,
    }


def list_variant_movements(variant_id: int, *, page: int = 1, limit: int = 20) -> dict:
    """Movement history of one variant. Soft-deleted variants keep their history."""
    variant = db.session.query(Variant).filter(Variant.id == variant_id).first()
    if variant is None:
        raise VariantNotFound(f"Variant {variant_id} not found")

    query = (
        _movement_query()
        .filter(StockMovement.variant_id == variant_id)
        .order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
    )
    rows, pagination = _paginate(query, page, limit)
    return {
        "variant_id": variant_id,
        "sku": variant.sku,
        "current_stock_quantity": variant.stock_quantity,
        "items": [_movement_row_to_dict(row) for row in rows],
        "pagination": pagination,
    }


def _variant_query():
    return (
        db.session.query(Variant, Product, Brand, Category, Unit)
        .outerjoin(Product, Product.id == Variant.product_id)
        .outerjoin(Brand, Brand.id == Product.brand_id)
        .outerjoin(Category, Category.id == Product.category_id)
        .outerjoin(Unit, Unit.id == Variant.unit_id)
        .filter(Variant.is_deleted == False)  # noqa: E712
    )


def _variant_row_to_dict(row, *, default_threshold: int, now: datetime) -> dict:
    variant, product, brand, category, unit = row
    threshold = (
        variant.low_stock_threshold
        if variant.low_stock_threshold is not None
        else default_threshold
    )
    return {
        "variant_id": variant.id,
        "sku": variant.sku,
        "attribute": variant.attribute,
        "value": variant.value,
        "product_name": product.name if product else UNKNOWN,
        "brand_name": brand.name if brand else UNKNOWN,
        "category_name": category.name if category else UNKNOWN,
        "thumbnail": product.thumbnail if product else None,
        "unit": unit.short_name if unit else None,
        "stock_quantity": variant.stock_quantity,
        "low_stock_threshold": threshold,
        "expiry_date": to_utc_z(variant.expiry_date),
        "status": variant.status,
        "status_label": stock_status_label(variant.stock_quantity, variant.expiry_date, threshold, now),
        "updated_at": to_utc_z(variant.updated_at),
    }


def list_stock_levels(
    *,
    search: str | None = None,
    sort: str = "name",
    page: int = 1,
    limit: int = 20,
) -> dict:
    """
    Current stock of every live, non-discontinued variant with a
    status_label of Expired, Low Stock or Good.
    """
    query = _variant_query().filter(Variant.status != VARIANT_DISCONTINUED)

    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Variant.sku.ilike(pattern),
            Product.name.ilike(pattern),
            Brand.name.ilike(pattern),
            Category.name.ilike(pattern),
        ))

    if sort == "stock":
        query = query.order_by(Variant.stock_quantity.asc(), Variant.id.asc())
    elif sort == "expiry":
        query = query.order_by(Variant.expiry_date.is_(None), Variant.expiry_date.asc(), Variant.id.asc())
    else:
        query = query.order_by(Product.name.asc(), Variant.id.asc())

    rows, pagination = _paginate(query, page, limit)
    now = utcnow()
    default_threshold = _default_low_stock_threshold()
    return {
        "items": [_variant_row_to_dict(row, default_threshold=default_threshold, now=now) for row in rows],
        "pagination": pagination,
    }


def find_low_stock(threshold: int | None = None) -> list[dict]:
    """
    Variants at or below their low-stock threshold.

    An explicit threshold applies to every variant; otherwise each
    variant's own threshold is used, falling back to LOW_STOCK_THRESHOLD.
    """
    default_threshold = _default_low_stock_threshold()
    if threshold is not None:
        limit_expr = threshold
    else:
        limit_expr = func.coalesce(Variant.low_stock_threshold, default_threshold)

    rows = (
        _variant_query()
        .filter(Variant.status != VARIANT_DISCONTINUED)
        .filter(Variant.stock_quantity <= limit_expr)
        .order_by(Variant.stock_quantity.asc(), Variant.id.asc())
        .all()
    )
    now = utcnow()
    items = []
    for row in rows:
        data = _variant_row_to_dict(
            row,
            default_threshold=threshold if threshold is not None else default_threshold,
            now=now,
        )
        if threshold is not None:
            data["low_stock_threshold"] = threshold
        items.append(data)
    return items


def find_expiring(days: int | None = None) -> list[dict]:
    """Variants already expired or expiring within the look-ahead window."""
    if days is None:
        days = current_app.config.get("EXPIRY_LOOKAHEAD_DAYS", 30)
    now = utcnow()
    horizon = now + timedelta(days=days)

    rows = (
        _variant_query()
        .filter(Variant.status != VARIANT_DISCONTINUED)
        .filter(Variant.expiry_date.isnot(None))
        .filter(Variant.expiry_date <= horizon)
        .order_by(Variant.expiry_date.asc(), Variant.id.asc())
        .all()
    )
    default_threshold = _default_low_stock_threshold()
    items = []
    for row in rows:
        data = _variant_row_to_dict(row, default_threshold=default_threshold, now=now)
        expiry = row[0].expiry_date
        data["is_expired"] = expiry < now
        data["days_until_expiry"] = (expiry - now).days
        items.append(data)
    return items


def get_variant_snapshot(variant_id: int) -> dict:
    """Current state of one variant plus its latest movement."""
    row = _variant_query().filter(Variant.id == variant_id).first()
    if row is None:
        raise VariantNotFound(f"Variant {variant_id} not found")

    data = _variant_row_to_dict(row, default_threshold=_default_low_stock_threshold(), now=utcnow())
    variant = row[0]
    data["purchase_price_cents"] = variant.purchase_price_cents
    data["price_cents"] = variant.price_cents
    data["discount_price_cents"] = variant.discount_price_cents

    last = (
        db.session.query(StockMovement)
        .filter(StockMovement.variant_id == variant_id)
        .order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
        .first()
    )
    data["last_movement"] = last.to_dict() if last else None
    return data


def get_movement_detail(movement_id: int) -> dict:
    row = _movement_query().filter(StockMovement.id == movement_id).first()
    if row is None:
        raise NotFound(f"Stock movement {movement_id} not found")
    return _movement_row_to_dict(row)
