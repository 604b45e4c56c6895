from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, case, event, false, true

from ..extensions import db
from backoffice.time_utils import to_utc_z, utcnow


VARIANT_ACTIVE = "ACTIVE"
VARIANT_INACTIVE = "INACTIVE"
VARIANT_DISCONTINUED = "DISCONTINUED"
VARIANT_STATUSES = {VARIANT_ACTIVE, VARIANT_INACTIVE, VARIANT_DISCONTINUED}


class Brand(db.Model):
    __tablename__ = "brands"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=True, unique=True)
    name = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {"id": self.id, "code": self.code, "name": self.name, "is_active": self.is_active}


class Category(db.Model):
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "is_active": self.is_active}


class Unit(db.Model):
    __tablename__ = "units"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False)  # e.g. 'Kilogram'
    short_name = db.Column(db.String(16), nullable=False)  # e.g. 'kg'

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "short_name": self.short_name}


class Product(db.Model):
    """
    Base catalog entity. Pricing and stock live on its variants.

    Brand and category are plain nullable references: the inventory
    projections outer-join them and render missing rows as "Unknown".
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_brand_category", "brand_id", "category_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    brand_id = db.Column(db.Integer, db.ForeignKey("brands.id"), nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    description = db.Column(db.Text, nullable=True)
    thumbnail = db.Column(db.String(255), nullable=True)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    brand = db.relationship("Brand")
    category = db.relationship("Category")

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "brand_id": self.brand_id,
            "category_id": self.category_id,
            "description": self.description,
            "thumbnail": self.thumbnail,
            "is_deleted": self.is_deleted,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Variant(db.Model):
    """
    A stockable configuration of a product (size, flavour, ...).

    stock_quantity is a cached value. The authority for why it changed is
    the stock_movements table, and the two must always agree:
        stock_quantity == SUM(stock_movements.change_quantity)

    After creation stock_quantity is written ONLY by the stock ledger's
    conditional update (services/stock_ledger_service.py). Never assign
    it directly.

    STATUS:
    - INACTIVE is set automatically (expired or out of stock) and lifted
      automatically when both reasons are gone.
    - DISCONTINUED is manual and is never touched by stock/expiry logic.
    """
    __tablename__ = "variants"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_variants_stock_nonnegative"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_variants_reserved_nonnegative"),
        db.CheckConstraint("discount_price_cents <= price_cents", name="ck_variants_discount_le_price"),
        db.Index("ix_variants_product", "product_id"),
        db.Index("ix_variants_stock", "stock_quantity"),
        db.Index("ix_variants_expiry", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    # Optional, unique when present (NULLs never collide)
    sku = db.Column(db.String(64), nullable=True, unique=True)
    attribute = db.Column(db.String(64), nullable=True)  # e.g. 'Size'
    value = db.Column(db.String(64), nullable=True)  # e.g. 'Large'
    unit_id = db.Column(db.Integer, db.ForeignKey("units.id"), nullable=True)

    purchase_price_cents = db.Column(db.Integer, nullable=False, default=0)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_price_cents = db.Column(db.Integer, nullable=False, default=0)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=VARIANT_ACTIVE, index=True)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("variants", lazy=True))
    unit = db.relationship("Unit")

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Variant id={self.id} sku={self.sku!r} stock={self.stock_quantity}>"

    @property
    def is_expired(self) -> bool:
        return self.expiry_date is not None and self.expiry_date < utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sku": self.sku,
            "attribute": self.attribute,
            "value": self.value,
            "unit_id": self.unit_id,
            "purchase_price_cents": self.purchase_price_cents,
            "price_cents": self.price_cents,
            "discount_price_cents": self.discount_price_cents,
            "stock_quantity": self.stock_quantity,
            "reserved_quantity": self.reserved_quantity,
            "low_stock_threshold": self.low_stock_threshold,
            "expiry_date": to_utc_z(self.expiry_date),
            "status": self.status,
            "is_deleted": self.is_deleted,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


def derive_variant_status(
    current: str | None,
    stock_quantity: int | None,
    expiry_date: datetime | None,
    now: datetime | None = None,
) -> str:
    """
    Status implied by stock and expiry.

    DISCONTINUED is sticky; otherwise expired or empty means INACTIVE and
    anything else means ACTIVE.
    """
    if current == VARIANT_DISCONTINUED:
        return VARIANT_DISCONTINUED
    if now is None:
        now = utcnow()
    if (stock_quantity or 0) <= 0:
        return VARIANT_INACTIVE
    if expiry_date is not None and expiry_date < now:
        return VARIANT_INACTIVE
    return VARIANT_ACTIVE


_KEEP_EXPIRY = object()


def variant_status_case(quantity_expr, *, now: datetime, expiry_date=_KEEP_EXPIRY, keep_discontinued: bool = True):
    """
    SQL twin of derive_variant_status() for UPDATE ... SET status = CASE ...

    quantity_expr is the post-update quantity (column or expression).
    Pass expiry_date when the same statement also writes a new expiry;
    otherwise the row's current expiry_date column is used.
    keep_discontinued=False re-derives rows that are being reinstated.
    """
    table = Variant.__table__
    if expiry_date is _KEEP_EXPIRY:
        expired = and_(table.c.expiry_date.isnot(None), table.c.expiry_date < now)
    elif expiry_date is not None and expiry_date < now:
        expired = true()
    else:
        expired = false()

    whens = []
    if keep_discontinued:
        whens.append((table.c.status == VARIANT_DISCONTINUED, VARIANT_DISCONTINUED))
    whens.append((quantity_expr <= 0, VARIANT_INACTIVE))
    whens.append((expired, VARIANT_INACTIVE))
    return case(*whens, else_=VARIANT_ACTIVE)


@event.listens_for(Variant, "before_insert")
@event.listens_for(Variant, "before_update")
def _derive_status_on_save(mapper, connection, target):
    target.status = derive_variant_status(target.status, target.stock_quantity, target.expiry_date)
