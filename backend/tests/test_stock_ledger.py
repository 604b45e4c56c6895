"""
Stock ledger tests.

Verifies:
- Increases and decreases write exactly one movement each
- A decrease past zero is rejected with no partial effect
- Cached stock always equals the movement sum
- Movements cannot be edited or deleted
- Historical quantity is rebuilt from the ledger
- Concurrent writers on one variant never lose an update
"""

import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from backoffice import create_app
from backoffice.errors import ImmutableRecordError, InsufficientStock, InvalidInput, VariantNotFound
from backoffice.extensions import db
from backoffice.models import Product, StockMovement, Variant
from backoffice.models.catalog import VARIANT_ACTIVE, VARIANT_DISCONTINUED, VARIANT_INACTIVE
from backoffice.services import stock_ledger_service, variant_service
from backoffice.services.maintenance_service import find_stock_drift
from backoffice.services.session_service import ActorContext
from backoffice.time_utils import utcnow


def _movements(variant_id):
    return (
        db.session.query(StockMovement)
        .filter_by(variant_id=variant_id)
        .order_by(StockMovement.id.asc())
        .all()
    )


def _stock(variant_id):
    return db.session.query(Variant.stock_quantity).filter_by(id=variant_id).scalar()


class TestAdjustStock:
    def test_increase_records_movement(self, make_variant, manager_actor):
        variant_id = make_variant(stock=10)

        result = stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=5,
            is_increasing=True,
            reason="Found in back room",
            actor=manager_actor,
        )

        assert result.previous_quantity == 10
        assert result.new_quantity == 15
        assert result.change == 5
        assert result.change_display == "+5"
        assert result.movement_type == "Manual Adjustment"
        assert result.reference_id.startswith("ADJ-")
        assert result.product_name == "Chicken Kibble"
        assert _stock(variant_id) == 15

        movement = db.session.get(StockMovement, result.movement_id)
        assert movement.change_quantity == 5
        assert movement.previous_quantity == 10
        assert movement.new_quantity == 15
        assert movement.performed_by == "manager"
        assert movement.performed_by_user_id == manager_actor.user_id

    def test_decrease_records_negative_change(self, make_variant, manager_actor):
        variant_id = make_variant(stock=10)

        result = stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=3,
            is_increasing=False,
            reason="Torn bags",
            movement_type="Damage",
            reference_id="DMG-42",
            actor=manager_actor,
        )

        assert result.change == -3
        assert result.change_display == "-3"
        assert result.new_quantity == 7
        assert result.movement_type == "Damage"
        assert result.reference_id == "DMG-42"

    def test_insufficient_stock_leaves_state_unchanged(self, make_variant, manager_actor):
        variant_id = make_variant(stock=3)
        before = len(_movements(variant_id))

        with pytest.raises(InsufficientStock) as exc:
            stock_ledger_service.adjust_stock(
                variant_id=variant_id,
                quantity_change=5,
                is_increasing=False,
                reason="Shrinkage",
                actor=manager_actor,
            )

        assert "available 3" in exc.value.msg
        assert _stock(variant_id) == 3
        assert len(_movements(variant_id)) == before

    def test_decrease_to_exactly_zero_is_allowed(self, make_variant, manager_actor):
        variant_id = make_variant(stock=4)

        result = stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=4,
            is_increasing=False,
            reason="Sold out",
            actor=manager_actor,
        )

        assert result.new_quantity == 0
        variant = db.session.get(Variant, variant_id)
        assert variant.status == VARIANT_INACTIVE

    @pytest.mark.parametrize("quantity", [0, -2, 1.5, "abc", "1e3", True, None])
    def test_rejects_bad_quantity(self, make_variant, manager_actor, quantity):
        variant_id = make_variant(stock=5)

        with pytest.raises(InvalidInput):
            stock_ledger_service.adjust_stock(
                variant_id=variant_id,
                quantity_change=quantity,
                is_increasing=True,
                reason="Recount",
                actor=manager_actor,
            )
        assert _stock(variant_id) == 5

    def test_accepts_numeric_string_quantity(self, make_variant, manager_actor):
        variant_id = make_variant(stock=5)
        result = stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change="2",
            is_increasing=True,
            reason="Recount",
            actor=manager_actor,
        )
        assert result.new_quantity == 7

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_rejects_blank_reason(self, make_variant, manager_actor, reason):
        variant_id = make_variant(stock=5)
        with pytest.raises(InvalidInput):
            stock_ledger_service.adjust_stock(
                variant_id=variant_id,
                quantity_change=1,
                is_increasing=True,
                reason=reason,
                actor=manager_actor,
            )

    def test_rejects_one_character_movement_type(self, make_variant, manager_actor):
        variant_id = make_variant(stock=5)
        with pytest.raises(InvalidInput):
            stock_ledger_service.adjust_stock(
                variant_id=variant_id,
                quantity_change=1,
                is_increasing=True,
                reason="Recount",
                movement_type="X",
                actor=manager_actor,
            )

    def test_requires_actor(self, make_variant):
        variant_id = make_variant(stock=5)
        with pytest.raises(InvalidInput):
            stock_ledger_service.adjust_stock(
                variant_id=variant_id,
                quantity_change=1,
                is_increasing=True,
                reason="Recount",
                actor=None,
            )

    def test_system_actor_is_recorded(self, make_variant):
        variant_id = make_variant(stock=5)
        result = stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=1,
            is_increasing=False,
            reason="Nightly correction",
            actor=ActorContext.system(),
        )
        movement = db.session.get(StockMovement, result.movement_id)
        assert movement.performed_by == "system"
        assert movement.performed_by_user_id is None

    def test_unknown_variant(self, db_session, manager_actor):
        with pytest.raises(VariantNotFound):
            stock_ledger_service.adjust_stock(
                variant_id=9999,
                quantity_change=1,
                is_increasing=True,
                reason="Recount",
                actor=manager_actor,
            )

    def test_soft_deleted_variant_is_not_found(self, make_variant, manager_actor):
        variant_id = make_variant(stock=5)
        variant_service.soft_delete_variant(variant_id)

        with pytest.raises(VariantNotFound):
            stock_ledger_service.adjust_stock(
                variant_id=variant_id,
                quantity_change=1,
                is_increasing=True,
                reason="Recount",
                actor=manager_actor,
            )

    def test_expiry_date_is_written_with_the_adjustment(self, make_variant, manager_actor):
        variant_id = make_variant(stock=5)
        expiry = (utcnow() + timedelta(days=90)).replace(microsecond=0)

        result = stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=1,
            is_increasing=True,
            reason="New batch",
            expiry_date=expiry,
            actor=manager_actor,
        )

        assert result.expiry_date == expiry
        assert db.session.get(Variant, variant_id).expiry_date == expiry

    def test_past_expiry_makes_variant_inactive(self, make_variant, manager_actor):
        variant_id = make_variant(stock=5)

        stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=1,
            is_increasing=True,
            reason="Old batch",
            expiry_date=utcnow() - timedelta(days=1),
            actor=manager_actor,
        )

        assert db.session.get(Variant, variant_id).status == VARIANT_INACTIVE

    def test_restock_reactivates_empty_variant(self, make_variant, manager_actor):
        variant_id = make_variant(stock=0)
        assert db.session.get(Variant, variant_id).status == VARIANT_INACTIVE

        stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=3,
            is_increasing=True,
            reason="Delivery",
            actor=manager_actor,
        )

        assert db.session.get(Variant, variant_id).status == VARIANT_ACTIVE

    def test_restock_keeps_discontinued(self, make_variant, manager_actor):
        variant_id = make_variant(stock=0)
        variant_service.set_variant_discontinued(variant_id, True)

        stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=3,
            is_increasing=True,
            reason="Late delivery",
            actor=manager_actor,
        )

        assert db.session.get(Variant, variant_id).status == VARIANT_DISCONTINUED

    def test_adjustment_bumps_version(self, make_variant, manager_actor):
        variant_id = make_variant(stock=5)
        before = db.session.get(Variant, variant_id).version_id

        stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=1,
            is_increasing=True,
            reason="Recount",
            actor=manager_actor,
        )

        assert db.session.get(Variant, variant_id).version_id == before + 1


class TestLedgerInvariants:
    def test_cached_stock_matches_movement_sum(self, make_variant, manager_actor):
        a = make_variant(stock=10)
        b = make_variant(stock=0)

        for variant_id, qty, up in [(a, 4, False), (b, 7, True), (a, 2, True), (b, 7, False)]:
            stock_ledger_service.adjust_stock(
                variant_id=variant_id,
                quantity_change=qty,
                is_increasing=up,
                reason="Shuffle",
                actor=manager_actor,
            )

        assert _stock(a) == 8
        assert _stock(b) == 0
        assert stock_ledger_service.get_ledger_quantity(a) == 8
        assert stock_ledger_service.get_ledger_quantity(b) == 0
        assert find_stock_drift() == []

    def test_each_movement_chains_from_the_previous(self, make_variant, manager_actor):
        variant_id = make_variant(stock=10)
        for qty in (3, 2, 4):
            stock_ledger_service.adjust_stock(
                variant_id=variant_id,
                quantity_change=qty,
                is_increasing=False,
                reason="Sale",
                movement_type="Sale",
                actor=manager_actor,
            )

        movements = _movements(variant_id)
        for earlier, later in zip(movements, movements[1:]):
            assert later.previous_quantity == earlier.new_quantity
        assert movements[-1].new_quantity == 1

    def test_movements_cannot_be_updated(self, make_variant, manager_actor):
        variant_id = make_variant(stock=10)
        movement = _movements(variant_id)[0]

        movement.reason = "rewritten"
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()

    def test_movements_cannot_be_deleted(self, make_variant):
        variant_id = make_variant(stock=10)
        movement = _movements(variant_id)[0]

        db.session.delete(movement)
        with pytest.raises(ImmutableRecordError):
            db.session.flush()
        db.session.rollback()


class TestStockAsOf:
    def test_rebuilds_quantity_at_point_in_time(self, make_variant, manager_actor):
        variant_id = make_variant(stock=10)
        checkpoint = utcnow()

        # Push the second movement strictly after the checkpoint
        later = stock_ledger_service.adjust_stock(
            variant_id=variant_id,
            quantity_change=4,
            is_increasing=False,
            reason="Sale",
            actor=manager_actor,
        )
        db.session.query(StockMovement).filter_by(id=later.movement_id).update(
            {"occurred_at": checkpoint + timedelta(seconds=5)}
        )
        db.session.commit()

        past = stock_ledger_service.get_stock_as_of(variant_id, checkpoint)
        now = stock_ledger_service.get_stock_as_of(variant_id, checkpoint + timedelta(seconds=10))

        assert past["quantity"] == 10
        assert now["quantity"] == 6
        assert now["current_stock_quantity"] == 6

    def test_before_any_movement_is_zero(self, make_variant):
        variant_id = make_variant(stock=10)
        result = stock_ledger_service.get_stock_as_of(variant_id, utcnow() - timedelta(days=1))
        assert result["quantity"] == 0

    def test_unknown_variant(self, db_session):
        with pytest.raises(VariantNotFound):
            stock_ledger_service.get_stock_as_of(12345, utcnow())


class TestConcurrentAdjustments:
    """Several writers on one variant, each in its own thread and app context."""

    @pytest.fixture
    def file_backed_app(self, tmp_path):
        app = create_app({
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.db'}",
            'BCRYPT_ROUNDS': 4,
        })
        with app.app_context():
            db.create_all()
            product = Product(name="Salmon Treats", is_deleted=False)
            db.session.add(product)
            db.session.commit()
            variant = variant_service.create_variant(
                product_id=product.id,
                actor=ActorContext.system(),
                sku="SAL-100",
                opening_stock=10,
            )
            variant_id = variant.id
            db.session.remove()

        yield app, variant_id

        with app.app_context():
            db.session.remove()
            db.drop_all()
            db.engine.dispose()

    def test_writers_on_one_variant_serialize(self, file_backed_app):
        file_app, variant_id = file_backed_app
        changes = [(3, True), (5, False)] * 4
        committed = []
        errors = []
        lock = threading.Lock()
        barrier = threading.Barrier(len(changes))

        def worker(quantity, is_increasing):
            with file_app.app_context():
                try:
                    barrier.wait(timeout=10)
                    result = stock_ledger_service.adjust_stock(
                        variant_id=variant_id,
                        quantity_change=quantity,
                        is_increasing=is_increasing,
                        reason="Parallel till",
                        actor=ActorContext.system(),
                    )
                    with lock:
                        committed.append(result.change)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=change) for change in changes]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # Losers may be refused (stock) or give up on the write lock; neither commits
        assert all(isinstance(exc, (InsufficientStock, OperationalError)) for exc in errors), errors
        assert committed

        with file_app.app_context():
            stock = _stock(variant_id)
            movements = _movements(variant_id)

            assert stock == 10 + sum(committed)
            assert stock >= 0
            assert stock == stock_ledger_service.get_ledger_quantity(variant_id)
            assert len(movements) == 1 + len(committed)
            for earlier, later in zip(movements, movements[1:]):
                assert later.previous_quantity == earlier.new_quantity
                assert later.new_quantity >= 0
            assert find_stock_drift() == []
            db.session.remove()
