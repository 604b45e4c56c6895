"""
Maintenance sweeps and their CLI commands.

Drift is simulated with a raw UPDATE that bypasses the ledger, the way a
manual database edit would.
"""

from datetime import timedelta

from sqlalchemy import update

from backoffice.extensions import db
from backoffice.models import SessionToken, StockMovement, User, Variant
from backoffice.models.catalog import VARIANT_ACTIVE, VARIANT_INACTIVE
from backoffice.services import maintenance_service, stock_ledger_service
from backoffice.time_utils import utcnow


def _force_stock(variant_id, quantity):
    db.session.execute(
        update(Variant.__table__)
        .where(Variant.__table__.c.id == variant_id)
        .values(stock_quantity=quantity)
    )
    db.session.commit()
    db.session.expire_all()


class TestReconcile:
    def test_no_drift(self, make_variant):
        make_variant(stock=5)
        assert maintenance_service.reconcile_stock_quantities() == []

    def test_fixes_drift_from_ledger(self, make_variant):
        variant_id = make_variant(stock=5)
        _force_stock(variant_id, 9)

        drift = maintenance_service.reconcile_stock_quantities()

        assert drift == [{
            "variant_id": variant_id,
            "sku": "KIB-001",
            "cached_quantity": 9,
            "ledger_quantity": 5,
            "fixed": True,
        }]
        assert db.session.get(Variant, variant_id).stock_quantity == 5
        assert maintenance_service.find_stock_drift() == []

    def test_dry_run_reports_only(self, make_variant):
        variant_id = make_variant(stock=5)
        _force_stock(variant_id, 9)

        drift = maintenance_service.reconcile_stock_quantities(fix=False)

        assert drift[0]["fixed"] is False
        assert db.session.get(Variant, variant_id).stock_quantity == 9

    def test_variant_without_movements_compared_to_zero(self, make_variant):
        variant_id = make_variant(stock=0)
        _force_stock(variant_id, 4)

        drift = maintenance_service.reconcile_stock_quantities()

        assert drift[0]["ledger_quantity"] == 0
        variant = db.session.get(Variant, variant_id)
        assert variant.stock_quantity == 0
        assert variant.status == VARIANT_INACTIVE

    def test_reconcile_rederives_status(self, make_variant):
        variant_id = make_variant(stock=5)
        _force_stock(variant_id, 0)
        db.session.execute(
            update(Variant.__table__)
            .where(Variant.__table__.c.id == variant_id)
            .values(status=VARIANT_INACTIVE)
        )
        db.session.commit()

        maintenance_service.reconcile_stock_quantities()

        variant = db.session.get(Variant, variant_id)
        assert variant.stock_quantity == 5
        assert variant.status == VARIANT_ACTIVE

    def test_writes_no_movements(self, make_variant):
        variant_id = make_variant(stock=5)
        _force_stock(variant_id, 9)
        before = db.session.query(StockMovement).count()

        maintenance_service.reconcile_stock_quantities()

        assert db.session.query(StockMovement).count() == before

    def test_adjustment_after_scan_is_kept(self, make_variant, manager_actor, monkeypatch):
        variant_id = make_variant(stock=10)
        _force_stock(variant_id, 7)
        scan = maintenance_service.find_stock_drift

        def scan_then_sell():
            drift = scan()
            stock_ledger_service.adjust_stock(
                variant_id=variant_id,
                quantity_change=4,
                is_increasing=False,
                reason="Till sale",
                movement_type="Sale",
                actor=manager_actor,
            )
            return drift

        monkeypatch.setattr(maintenance_service, "find_stock_drift", scan_then_sell)

        drift = maintenance_service.reconcile_stock_quantities()

        assert drift[0]["fixed"] is True
        assert drift[0]["ledger_quantity"] == 6
        assert db.session.get(Variant, variant_id).stock_quantity == 6
        assert stock_ledger_service.get_ledger_quantity(variant_id) == 6
        assert scan() == []

    def test_drift_resolved_after_scan_is_skipped(self, make_variant, monkeypatch):
        variant_id = make_variant(stock=10)
        _force_stock(variant_id, 7)
        scan = maintenance_service.find_stock_drift

        def scan_then_repair():
            drift = scan()
            _force_stock(variant_id, 10)
            return drift

        monkeypatch.setattr(maintenance_service, "find_stock_drift", scan_then_repair)
        version = db.session.get(Variant, variant_id).version_id

        drift = maintenance_service.reconcile_stock_quantities()

        assert drift[0]["fixed"] is False
        variant = db.session.get(Variant, variant_id)
        assert variant.stock_quantity == 10
        assert variant.version_id == version


class TestDailyMaintenance:
    def test_runs_both_sweeps(self, make_variant):
        expiring = make_variant(stock=5, expiry_date=utcnow() + timedelta(seconds=1))
        drifted = make_variant(stock=5)
        _force_stock(drifted, 6)
        db.session.execute(
            update(Variant.__table__)
            .where(Variant.__table__.c.id == expiring)
            .values(expiry_date=utcnow() - timedelta(minutes=1))
        )
        db.session.commit()

        result = maintenance_service.run_daily_maintenance()

        assert result["deactivated"] == 1
        assert [entry["variant_id"] for entry in result["drift"]] == [drifted]
        assert db.session.get(Variant, expiring).status == VARIANT_INACTIVE


class TestMaintenanceCli:
    def test_reconcile_command(self, app, make_variant):
        variant_id = make_variant(stock=5)
        _force_stock(variant_id, 2)

        result = app.test_cli_runner().invoke(args=["maintenance", "reconcile-stock"])

        assert result.exit_code == 0
        assert "cached 2, ledger 5 [fixed]" in result.output
        assert db.session.get(Variant, variant_id).stock_quantity == 5

    def test_reconcile_dry_run(self, app, make_variant):
        variant_id = make_variant(stock=5)
        _force_stock(variant_id, 2)

        result = app.test_cli_runner().invoke(args=["maintenance", "reconcile-stock", "--dry-run"])

        assert "[not fixed]" in result.output
        assert db.session.get(Variant, variant_id).stock_quantity == 2

    def test_reconcile_clean(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["maintenance", "reconcile-stock"])
        assert "PASS" in result.output

    def test_daily_command(self, app, make_variant):
        make_variant(stock=5)
        result = app.test_cli_runner().invoke(args=["maintenance", "daily"])
        assert result.exit_code == 0
        assert "Deactivated 0 expired variants." in result.output
        assert "Reconciled 0 of 0 drifted variants." in result.output


class TestUserCli:
    def test_create_user_and_issue_token(self, app, db_session):
        runner = app.test_cli_runner()

        created = runner.invoke(args=[
            "users", "create",
            "--username", "clerk",
            "--email", "clerk@shop.test",
            "--password", "Password123",
            "--role", "staff",
        ])
        assert "PASS Created user: clerk" in created.output
        assert db.session.query(User).filter_by(username="clerk").count() == 1

        issued = runner.invoke(args=[
            "users", "issue-token", "--username", "clerk", "--password", "Password123",
        ])
        token = issued.output.strip().splitlines()[-1]
        assert len(token) == 64

        revoked = runner.invoke(args=["users", "revoke-token", "--token", token])
        assert "PASS Token revoked" in revoked.output

    def test_issue_token_checks_password(self, app, staff_user):
        runner = app.test_cli_runner()

        wrong = runner.invoke(args=[
            "users", "issue-token", "--username", "staff", "--password", "Password124",
        ])
        unknown = runner.invoke(args=[
            "users", "issue-token", "--username", "ghost", "--password", "Password123",
        ])

        assert "FAIL Invalid credentials or inactive user" in wrong.output
        assert "FAIL Invalid credentials or inactive user" in unknown.output
        assert db.session.query(SessionToken).count() == 0

    def test_issue_token_refuses_inactive_user(self, app, staff_user):
        staff_user.is_active = False
        db.session.commit()

        result = app.test_cli_runner().invoke(args=[
            "users", "issue-token", "--username", "staff", "--password", "Password123",
        ])

        assert "FAIL Invalid credentials or inactive user" in result.output
        assert db.session.query(SessionToken).count() == 0

    def test_weak_password_rejected(self, app, db_session):
        result = app.test_cli_runner().invoke(args=[
            "users", "create", "--username", "weak", "--password", "short", "--role", "staff",
        ])
        assert "FAIL Password validation failed" in result.output
        assert db.session.query(User).filter_by(username="weak").count() == 0

    def test_system_init_is_idempotent(self, app, db_session):
        runner = app.test_cli_runner()
        first = runner.invoke(args=["system", "init", "--admin-password", "Password123"])
        second = runner.invoke(args=["system", "init"])

        assert "PASS Created admin user" in first.output
        assert "PASS Using existing admin user" in second.output
        assert db.session.query(User).filter_by(username="admin").count() == 1
