# Overview: Flask API routes for supplier purchase operations; parses input and returns JSON responses.

"""
Purchase Routes

SECURITY: All routes require authentication.
- List/view: any authenticated role
- Create/edit/cancel: admin or inventory_manager
- Delete: admin only (destructive; reverses stock first)

Cancellation is a status transition (POST /<id>/cancel, or PUT with
status=CANCELLED). DELETE is not part of the normal lifecycle.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_role
from ..models.auth import ROLE_ADMIN, ROLE_INVENTORY_MANAGER
from ..services import purchase_service
from ..validation import PayloadPolicy, check_payload, clamp_pagination, coerce_datetime, coerce_int


purchases_bp = Blueprint("purchases", __name__, url_prefix="/api/purchases")

CREATE_POLICY = PayloadPolicy(
    writable_fields={"supplier_id", "lines", "summary", "payment", "status", "notes", "purchase_date"},
    required={"supplier_id", "lines"},
)
CANCEL_POLICY = PayloadPolicy(writable_fields={"reason"})

WRITE_ROLES = (ROLE_ADMIN, ROLE_INVENTORY_MANAGER)


@purchases_bp.get("")
@require_auth
def list_purchases_route():
    """
    List purchases, newest first.

    Query parameters:
    - status: PENDING, PARTIAL, COMPLETED, CANCELLED
    - supplier_id
    - from_date / to_date: purchase_date bounds (ISO-8601, inclusive)
    - search: purchase code, notes or supplier name
    - page, limit
    """
    page, limit = clamp_pagination(
        request.args.get("page", 1),
        request.args.get("limit", current_app.config["DEFAULT_PAGE_SIZE"]),
        default_limit=current_app.config["DEFAULT_PAGE_SIZE"],
        max_limit=current_app.config["MAX_PAGE_SIZE"],
    )
    supplier_id = request.args.get("supplier_id")

    purchases, total = purchase_service.list_purchases(
        page=page,
        limit=limit,
        status=request.args.get("status"),
        supplier_id=coerce_int(supplier_id, "supplier_id", minimum=1) if supplier_id else None,
        from_date=coerce_datetime(request.args.get("from_date") or None, "from_date"),
        to_date=coerce_datetime(request.args.get("to_date") or None, "to_date"),
        search=request.args.get("search"),
    )
    total_pages = (total + limit - 1) // limit if total > 0 else 1

    return jsonify({
        "success": True,
        "data": [purchase_service.purchase_to_dict(p) for p in purchases],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    })


@purchases_bp.post("")
@require_auth
@require_role(*WRITE_ROLES)
def create_purchase_route():
    """
    Create a purchase and receive its goods.

    Request body:
    {
        "supplier_id": 1,
        "lines": [{"variant_id": 1, "quantity": 5, "unit_price_cents": 200, "tax_percent": 7.5}],
        "summary": {"other_charges_cents": 0, "discount_cents": 0, "grand_total_cents": 1075},
        "payment": {"amount_paid_cents": 0, "payment_type": "CASH"},
        "status": "PENDING",             // optional, derived from payment when absent
        "notes": "...",                  // optional
        "purchase_date": "..."           // optional, ISO-8601
    }
    """
    payload = check_payload(request.get_json(silent=True), CREATE_POLICY)
    purchase = purchase_service.create_purchase(
        supplier_id=payload["supplier_id"],
        lines=payload["lines"],
        actor=g.actor,
        summary=payload.get("summary"),
        payment=payload.get("payment"),
        status=payload.get("status"),
        notes=payload.get("notes"),
        purchase_date=payload.get("purchase_date"),
    )
    return jsonify({
        "success": True,
        "msg": "Purchase created",
        "data": purchase_service.purchase_to_dict(purchase),
    }), 201


@purchases_bp.get("/<int:purchase_id>")
@require_auth
def get_purchase_route(purchase_id: int):
    purchase = purchase_service.get_purchase(purchase_id)
    return jsonify({"success": True, "data": purchase_service.purchase_to_dict(purchase)})


@purchases_bp.put("/<int:purchase_id>")
@require_auth
@require_role(*WRITE_ROLES)
def update_purchase_route(purchase_id: int):
    """Edit a PENDING/PARTIAL purchase; status=CANCELLED cancels it."""
    payload = request.get_json(silent=True)
    purchase = purchase_service.update_purchase(purchase_id, payload, g.actor)
    return jsonify({
        "success": True,
        "msg": "Purchase updated",
        "data": purchase_service.purchase_to_dict(purchase),
    })


@purchases_bp.post("/<int:purchase_id>/cancel")
@require_auth
@require_role(*WRITE_ROLES)
def cancel_purchase_route(purchase_id: int):
    payload = check_payload(request.get_json(silent=True), CANCEL_POLICY)
    purchase = purchase_service.cancel_purchase(purchase_id, g.actor, reason=payload.get("reason"))
    return jsonify({
        "success": True,
        "msg": "Purchase cancelled",
        "data": purchase_service.purchase_to_dict(purchase),
    })


@purchases_bp.delete("/<int:purchase_id>")
@require_auth
@require_role(ROLE_ADMIN)
def delete_purchase_route(purchase_id: int):
    code = purchase_service.delete_purchase(purchase_id, g.actor)
    return jsonify({"success": True, "msg": f"Purchase {code} deleted"})
