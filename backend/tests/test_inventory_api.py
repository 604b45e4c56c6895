"""
Inventory API tests.

Verifies authentication, role enforcement, the error body shape and the
read endpoints over HTTP.
"""

from backoffice.extensions import db
from backoffice.models import StockMovement, Variant
from backoffice.services import session_service


def _adjust_body(variant_id, **overrides):
    body = {
        "variant_id": variant_id,
        "quantity_change": 5,
        "is_stock_increasing": True,
        "reason": "Delivery counted",
    }
    body.update(overrides)
    return body


class TestAuthentication:
    def test_missing_token(self, client, db_session):
        response = client.get("/api/inventory/dashboard")
        assert response.status_code == 401
        assert response.get_json() == {"success": False, "msg": "Authentication required"}

    def test_bad_token(self, client, db_session):
        response = client.get(
            "/api/inventory/dashboard", headers={"Authorization": "Bearer not-a-real-token"}
        )
        assert response.status_code == 401
        assert response.get_json()["msg"] == "Invalid or expired token"

    def test_revoked_token(self, client, admin_user):
        _, token = session_service.create_session(admin_user.id)
        session_service.revoke_session(token)

        response = client.get(
            "/api/inventory/dashboard", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401


class TestAdjustEndpoint:
    def test_manager_can_adjust(self, client, manager_headers, make_variant):
        variant_id = make_variant(stock=10)

        response = client.post("/api/inventory", json=_adjust_body(variant_id), headers=manager_headers)

        assert response.status_code == 201
        body = response.get_json()
        assert body["success"] is True
        assert body["msg"] == "Stock updated successfully"
        assert body["data"]["new_quantity"] == 15
        assert body["data"]["change_display"] == "+5"
        assert body["data"]["performed_by"] == "manager"

    def test_staff_is_forbidden(self, client, staff_headers, make_variant):
        variant_id = make_variant(stock=10)

        response = client.post("/api/inventory", json=_adjust_body(variant_id), headers=staff_headers)

        assert response.status_code == 403
        assert response.get_json()["required_roles"] == ["admin", "inventory_manager"]
        assert db.session.get(Variant, variant_id).stock_quantity == 10

    def test_insufficient_stock_body(self, client, admin_headers, make_variant):
        variant_id = make_variant(stock=3)

        response = client.post(
            "/api/inventory",
            json=_adjust_body(variant_id, is_stock_increasing=False),
            headers=admin_headers,
        )

        assert response.status_code == 400
        body = response.get_json()
        assert body["success"] is False
        assert "Insufficient stock" in body["msg"]
        assert db.session.query(StockMovement).filter_by(variant_id=variant_id).count() == 1

    def test_unknown_variant_is_404(self, client, admin_headers, db_session):
        response = client.post("/api/inventory", json=_adjust_body(4040), headers=admin_headers)
        assert response.status_code == 404

    def test_missing_fields(self, client, admin_headers, make_variant):
        variant_id = make_variant(stock=3)
        response = client.post(
            "/api/inventory", json={"variant_id": variant_id, "reason": "x"}, headers=admin_headers,
        )
        assert response.status_code == 400
        assert "Missing required fields" in response.get_json()["msg"]

    def test_unknown_field(self, client, admin_headers, make_variant):
        variant_id = make_variant(stock=3)
        response = client.post(
            "/api/inventory",
            json=_adjust_body(variant_id, stock_quantity=99),
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.get_json()["msg"] == "Field not allowed: stock_quantity"

    def test_put_uses_path_variant(self, client, admin_headers, make_variant):
        variant_id = make_variant(stock=3)
        body = _adjust_body(variant_id, quantity_change=2, movement_type="Recount")
        del body["variant_id"]

        response = client.put(f"/api/inventory/{variant_id}", json=body, headers=admin_headers)

        assert response.status_code == 200
        assert response.get_json()["data"]["new_quantity"] == 5

    def test_put_rejects_mismatched_body(self, client, admin_headers, make_variant):
        variant_id = make_variant(stock=3)
        response = client.put(
            f"/api/inventory/{variant_id}",
            json=_adjust_body(variant_id + 1),
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_expiry_alert_date(self, client, admin_headers, make_variant):
        variant_id = make_variant(stock=3)
        response = client.post(
            "/api/inventory",
            json=_adjust_body(variant_id, expiry_alert_date="2030-06-01T00:00:00Z"),
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert response.get_json()["data"]["expiry_date"] == "2030-06-01T00:00:00Z"


class TestReadEndpoints:
    def test_dashboard(self, client, staff_headers, make_variant):
        make_variant(stock=10)

        response = client.get("/api/inventory/dashboard?limit=500", headers=staff_headers)

        assert response.status_code == 200
        body = response.get_json()
        assert body["pagination"]["limit"] == 100
        assert body["data"][0]["product_name"] == "Chicken Kibble"

    def test_bad_date_filter(self, client, staff_headers, db_session):
        response = client.get("/api/inventory/dashboard?from_date=yesterday", headers=staff_headers)
        assert response.status_code == 400

    def test_stock_levels(self, client, staff_headers, make_variant):
        make_variant(stock=3)
        response = client.get("/api/inventory/stock-levels?sort=bogus", headers=staff_headers)
        assert response.status_code == 200
        assert response.get_json()["data"][0]["status_label"] == "Low Stock"

    def test_low_stock_and_expiring(self, client, staff_headers, make_variant):
        make_variant(stock=3)

        low = client.get("/api/inventory/low-stock?threshold=5", headers=staff_headers).get_json()
        expiring = client.get("/api/inventory/expiring?days=7", headers=staff_headers).get_json()

        assert low["count"] == 1
        assert expiring["count"] == 0

    def test_negative_threshold_rejected(self, client, staff_headers, db_session):
        response = client.get("/api/inventory/low-stock?threshold=-1", headers=staff_headers)
        assert response.status_code == 400

    def test_variant_views(self, client, staff_headers, make_variant):
        variant_id = make_variant(stock=4)

        snapshot = client.get(f"/api/inventory/{variant_id}", headers=staff_headers).get_json()
        movements = client.get(f"/api/inventory/{variant_id}/movements", headers=staff_headers).get_json()
        as_of = client.get(f"/api/inventory/{variant_id}/stock-as-of", headers=staff_headers).get_json()

        assert snapshot["data"]["stock_quantity"] == 4
        assert movements["variant"]["current_stock_quantity"] == 4
        assert as_of["data"]["quantity"] == 4

        movement_id = movements["data"][0]["id"]
        detail = client.get(f"/api/inventory/movements/{movement_id}", headers=staff_headers)
        assert detail.get_json()["data"]["movement_type"] == "Opening Balance"

    def test_unknown_variant_view(self, client, staff_headers, db_session):
        response = client.get("/api/inventory/999", headers=staff_headers)
        assert response.status_code == 404
        assert response.get_json()["success"] is False


class TestHealth:
    def test_healthy(self, client, make_variant):
        make_variant(stock=2)

        response = client.get("/health")

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["details"]["variants"] == 1

    def test_drift_is_degraded(self, client, make_variant):
        variant_id = make_variant(stock=2)
        db.session.execute(
            Variant.__table__.update()
            .where(Variant.__table__.c.id == variant_id)
            .values(stock_quantity=7)
        )
        db.session.commit()

        response = client.get("/health")

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "degraded"
        assert body["checks"]["stock_ledger"]["details"]["drifted_variant_ids"] == [variant_id]

    def test_unknown_route_is_json(self, client, db_session):
        response = client.get("/api/nothing-here")
        assert response.status_code == 404
        assert response.get_json()["success"] is False
