# backend/backoffice/routes/system.py
"""
System health endpoint.

Unauthenticated. Reports database connectivity and whether the cached
variant stock still agrees with the stock ledger.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Purchase, StockMovement, Variant
from ..services.maintenance_service import find_stock_drift
from backoffice.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        variant_count = db.session.query(Variant).count()
        movement_count = db.session.query(StockMovement).count()
        purchase_count = db.session.query(Purchase).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "variants": variant_count,
                "stock_movements": movement_count,
                "purchases": purchase_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_ledger_health() -> dict:
    """
    Compare cached stock with the movement sums.

    Drift is "degraded", not "unhealthy": the nightly reconciliation
    repairs it and writes keep working.
    """
    start_time = time.time()
    try:
        drift = find_stock_drift()
        elapsed_ms = (time.time() - start_time) * 1000

        if drift:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": f"{len(drift)} variants out of sync with the stock ledger",
                "details": {"drifted_variant_ids": [entry["variant_id"] for entry in drift[:20]]},
            }

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Stock ledger health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Stock ledger error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    ledger_health = check_ledger_health()

    all_checks = [database_health, ledger_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200  # Degraded is still operational
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "stock_ledger": ledger_health,
        }
    }

    return response, http_status
