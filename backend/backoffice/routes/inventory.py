# Overview: Flask API routes for stock adjustments and inventory queries; parses input and returns JSON responses.

"""
Inventory routes.

SECURITY: All routes require authentication.
- Read operations: any authenticated role
- Stock adjustments: admin or inventory_manager

Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- as_of filtering is inclusive: occurred_at <= as_of.
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..errors import InvalidInput
from ..models.auth import ROLE_ADMIN, ROLE_INVENTORY_MANAGER
from ..services import inventory_query_service, stock_ledger_service
from ..validation import PayloadPolicy, check_payload, clamp_pagination, coerce_bool, coerce_datetime, coerce_int


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

ADJUST_POLICY = PayloadPolicy(
    writable_fields={
        "variant_id",
        "quantity_change",
        "is_stock_increasing",
        "movement_type",
        "reason",
        "reference_id",
        "expiry_alert_date",
    },
    required={"quantity_change", "is_stock_increasing", "reason"},
)

WRITE_ROLES = (ROLE_ADMIN, ROLE_INVENTORY_MANAGER)


def _pagination_args() -> tuple[int, int]:
    return clamp_pagination(
        request.args.get("page", 1),
        request.args.get("limit", current_app.config["DEFAULT_PAGE_SIZE"]),
        default_limit=current_app.config["DEFAULT_PAGE_SIZE"],
        max_limit=current_app.config["MAX_PAGE_SIZE"],
    )


def _date_arg(name: str):
    value = request.args.get(name)
    if not value:
        return None
    return coerce_datetime(value, name)


def _int_arg(name: str, *, minimum: int = 0):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    return coerce_int(value, name, minimum=minimum)


def _adjust(variant_id: int, payload: dict):
    result = stock_ledger_service.adjust_stock(
        variant_id=variant_id,
        quantity_change=payload["quantity_change"],
        is_increasing=coerce_bool(payload["is_stock_increasing"], "is_stock_increasing"),
        reason=payload["reason"],
        actor=g.actor,
        movement_type=payload.get("movement_type"),
        reference_id=payload.get("reference_id"),
        expiry_date=coerce_datetime(payload.get("expiry_alert_date"), "expiry_alert_date"),
    )
    return {"success": True, "msg": "Stock updated successfully", "data": result.to_dict()}


@inventory_bp.post("")
@require_auth
@require_role(*WRITE_ROLES)
def add_inventory_route():
    """
    Adjust a variant's stock.

    Request body:
    {
        "variant_id": 1,                 // required
        "quantity_change": 5,            // required, positive
        "is_stock_increasing": true,     // required
        "reason": "Recount",             // required
        "movement_type": "Damage",       // optional, default "Manual Adjustment"
        "reference_id": "...",           // optional, generated when absent
        "expiry_alert_date": "..."       // optional, ISO-8601
    }
    """
    payload = check_payload(request.get_json(silent=True), ADJUST_POLICY)
    if payload.get("variant_id") is None:
        raise InvalidInput("Missing required fields: variant_id")
    variant_id = coerce_int(payload["variant_id"], "variant_id", minimum=1)
    return jsonify(_adjust(variant_id, payload)), 201


@inventory_bp.put("/<int:variant_id>")
@require_auth
@require_role(*WRITE_ROLES)
def update_inventory_route(variant_id: int):
    """Same as POST with the variant taken from the path."""
    payload = check_payload(request.get_json(silent=True), ADJUST_POLICY)
    if payload.get("variant_id") is not None:
        if coerce_int(payload["variant_id"], "variant_id", minimum=1) != variant_id:
            raise InvalidInput("variant_id in body does not match the URL")
    return jsonify(_adjust(variant_id, payload))


@inventory_bp.get("/dashboard")
@require_auth
def inventory_dashboard_route():
    """
    Movement history with product context.

    Query parameters:
    - search, movement_type
    - from_date / to_date: ISO-8601, inclusive
    - page, limit (max MAX_PAGE_SIZE)
    """
    page, limit = _pagination_args()
    result = inventory_query_service.get_inventory_dashboard(
        search=request.args.get("search"),
        movement_type=request.args.get("movement_type"),
        from_date=_date_arg("from_date"),
        to_date=_date_arg("to_date"),
        page=page,
        limit=limit,
    )
    return jsonify({"success": True, "data": result["items"], "pagination": result["pagination"]})


@inventory_bp.get("/stock-levels")
@require_auth
def stock_levels_route():
    page, limit = _pagination_args()
    sort = request.args.get("sort", "name")
    if sort not in inventory_query_service.STOCK_LEVEL_SORTS:
        sort = "name"
    result = inventory_query_service.list_stock_levels(
        search=request.args.get("search"),
        sort=sort,
        page=page,
        limit=limit,
    )
    return jsonify({"success": True, "data": result["items"], "pagination": result["pagination"]})


@inventory_bp.get("/low-stock")
@require_auth
def low_stock_route():
    items = inventory_query_service.find_low_stock(threshold=_int_arg("threshold"))
    return jsonify({"success": True, "data": items, "count": len(items)})


@inventory_bp.get("/expiring")
@require_auth
def expiring_route():
    items = inventory_query_service.find_expiring(days=_int_arg("days"))
    return jsonify({"success": True, "data": items, "count": len(items)})


@inventory_bp.get("/<int:variant_id>")
@require_auth
def variant_snapshot_route(variant_id: int):
    return jsonify({"success": True, "data": inventory_query_service.get_variant_snapshot(variant_id)})


@inventory_bp.get("/<int:variant_id>/movements")
@require_auth
def variant_movements_route(variant_id: int):
    page, limit = _pagination_args()
    result = inventory_query_service.list_variant_movements(variant_id, page=page, limit=limit)
    return jsonify({
        "success": True,
        "data": result["items"],
        "variant": {
            "variant_id": result["variant_id"],
            "sku": result["sku"],
            "current_stock_quantity": result["current_stock_quantity"],
        },
        "pagination": result["pagination"],
    })


@inventory_bp.get("/<int:variant_id>/stock-as-of")
@require_auth
def stock_as_of_route(variant_id: int):
    """
    Stock rebuilt from the ledger.

    Query: as_of (ISO-8601, optional, default now).
    """
    data = stock_ledger_service.get_stock_as_of(variant_id, _date_arg("as_of"))
    return jsonify({"success": True, "data": data})


@inventory_bp.get("/movements/<int:movement_id>")
@require_auth
def movement_detail_route(movement_id: int):
    return jsonify({"success": True, "data": inventory_query_service.get_movement_detail(movement_id)})
