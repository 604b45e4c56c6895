"""
Pytest fixtures for back-office tests.

Provides an in-memory database, users with API tokens, and a small
catalog (brand, category, unit, product, supplier) plus a variant factory
that books opening stock through the ledger.
"""

import pytest
from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Brand, Category, Product, Supplier, Unit
from backoffice.models.auth import ROLE_ADMIN, ROLE_INVENTORY_MANAGER, ROLE_STAFF
from backoffice.services import session_service, variant_service
from backoffice.services.auth_service import create_user
from backoffice.services.session_service import ActorContext


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'BCRYPT_ROUNDS': 4,
        'LOW_STOCK_THRESHOLD': 10,
        'EXPIRY_LOOKAHEAD_DAYS': 30,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema (core deletes bypass ORM listeners)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def admin_user(db_session):
    return create_user(username="admin", password="Password123", role=ROLE_ADMIN, email="admin@shop.test")


@pytest.fixture(scope='function')
def manager_user(db_session):
    return create_user(username="manager", password="Password123", role=ROLE_INVENTORY_MANAGER)


@pytest.fixture(scope='function')
def staff_user(db_session):
    return create_user(username="staff", password="Password123", role=ROLE_STAFF)


@pytest.fixture(scope='function')
def admin_actor(admin_user):
    return ActorContext.from_user(admin_user)


@pytest.fixture(scope='function')
def manager_actor(manager_user):
    return ActorContext.from_user(manager_user)


def auth_headers(user) -> dict:
    """Issue a session token for user and build the Authorization header."""
    _, token = session_service.create_session(user.id)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(admin_user):
    return auth_headers(admin_user)


@pytest.fixture(scope='function')
def manager_headers(manager_user):
    return auth_headers(manager_user)


@pytest.fixture(scope='function')
def staff_headers(staff_user):
    return auth_headers(staff_user)


@pytest.fixture(scope='function')
def product(db_session):
    brand = Brand(code="PAWS", name="Happy Paws", is_active=True)
    category = Category(name="Dog Food", is_active=True)
    db_session.add_all([brand, category])
    db_session.flush()

    product = Product(name="Chicken Kibble", brand_id=brand.id, category_id=category.id, is_deleted=False)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def unit(db_session):
    unit = Unit(name="Kilogram", short_name="kg")
    db_session.add(unit)
    db_session.commit()
    return unit


@pytest.fixture(scope='function')
def supplier(db_session):
    supplier = Supplier(name="Pet Wholesale Ltd", code="SUP-001", status="ACTIVE")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def make_variant(db_session, product, admin_actor):
    """Factory: make_variant(stock=10, sku="KIB-1KG", **fields) -> variant id."""
    counter = {"n": 0}

    def _make(stock: int = 0, sku: str | None = None, **fields) -> int:
        counter["n"] += 1
        variant = variant_service.create_variant(
            product_id=fields.pop("product_id", product.id),
            actor=admin_actor,
            sku=sku or f"KIB-{counter['n']:03d}",
            attribute=fields.pop("attribute", "Size"),
            value=fields.pop("value", f"{counter['n']}kg"),
            price_cents=fields.pop("price_cents", 1500),
            purchase_price_cents=fields.pop("purchase_price_cents", 900),
            opening_stock=stock,
            **fields,
        )
        return variant.id

    return _make
