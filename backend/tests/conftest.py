"""
Pytest fixtures for reconciler backend tests.

Provides the app on an in-memory database, a per-test clean session,
two tenants with admins, clients and stocked products, and helpers for
building purchase requests and actor headers.
"""

import pytest
from reconciler import create_app
from reconciler.extensions import db
from reconciler.models import Organization, User, Product, ProductDeal, PurchaseRequest
from reconciler.models.auth import ROLE_SUPER_ADMIN, ROLE_ADMIN, ROLE_CLIENT
from reconciler.services.notification_service import RecordingEmitter
from reconciler.services.reconciliation_service import ReconciliationOrchestrator


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'NOTIFICATION_BACKEND': 'outbox',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def org_a(db_session):
    """Create Organization A (first tenant)."""
    org = Organization(name="Org A - Acme Corp", code="ACME", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture(scope='function')
def org_b(db_session):
    """Create Organization B (second tenant)."""
    org = Organization(name="Org B - Beta Inc", code="BETA", is_active=True)
    db_session.add(org)
    db_session.commit()
    return org


def make_user(db_session, org, username, role, **kwargs):
    user = User(
        org_id=org.id if org is not None else None,
        username=username,
        email=f"{username}@example.com",
        role=role,
        **kwargs,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def super_admin(db_session):
    return make_user(db_session, None, "root", ROLE_SUPER_ADMIN)


@pytest.fixture(scope='function')
def admin_a(db_session, org_a):
    return make_user(db_session, org_a, "admin_a", ROLE_ADMIN)


@pytest.fixture(scope='function')
def admin_b(db_session, org_b):
    return make_user(db_session, org_b, "admin_b", ROLE_ADMIN)


@pytest.fixture(scope='function')
def client_a(db_session, org_a):
    return make_user(db_session, org_a, "client_a", ROLE_CLIENT)


@pytest.fixture(scope='function')
def client_a2(db_session, org_a):
    return make_user(db_session, org_a, "client_a2", ROLE_CLIENT)


def make_product(db_session, org, *, sku="PROD-A-001", stock=10, points=5, price_cents=1000, is_active=True):
    product = Product(
        org_id=org.id,
        sku=sku,
        name=f"Product {sku}",
        price_cents=price_cents,
        stock=stock,
        loyalty_points_per_unit=points,
        is_active=is_active,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_a(db_session, org_a):
    """Product in Org A: stock 10, 5 points per unit."""
    return make_product(db_session, org_a)


@pytest.fixture(scope='function')
def product_b(db_session, org_b):
    return make_product(db_session, org_b, sku="PROD-B-001", stock=5, points=2)


def make_deal(db_session, product, *, min_quantity, bonus_points, starts_at=None, ends_at=None, name=None):
    deal = ProductDeal(
        product_id=product.id,
        name=name or f"Buy {min_quantity}+",
        min_quantity=min_quantity,
        bonus_points=bonus_points,
        starts_at=starts_at,
        ends_at=ends_at,
    )
    db_session.add(deal)
    db_session.commit()
    return deal


def make_request(db_session, client_user, product, quantity, *, unit_price_cents=None):
    """PENDING purchase request inserted directly (bypasses submission rules)."""
    purchase_request = PurchaseRequest(
        org_id=product.org_id,
        product_id=product.id,
        client_id=client_user.id,
        quantity=quantity,
        unit_price_cents=product.price_cents if unit_price_cents is None else unit_price_cents,
        status="PENDING",
        version_id=1,
    )
    db_session.add(purchase_request)
    db_session.commit()
    return purchase_request


@pytest.fixture(scope='function')
def notifier():
    return RecordingEmitter()


@pytest.fixture(scope='function')
def orchestrator(db_session, notifier):
    """Orchestrator on the test session with an in-memory notification recorder."""
    return ReconciliationOrchestrator(db_session, notifier=notifier)


def actor_headers(user) -> dict:
    """Helper to create the upstream identity header for a user."""
    return {'X-Actor-Id': str(user.id)}
