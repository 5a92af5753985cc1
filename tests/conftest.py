"""
Pytest fixtures for posoffice tests.

Provides an in-memory application, a per-test clean database and small
catalog/customer builders shared by the service tests.
"""

from decimal import Decimal

import pytest

from posoffice import create_app
from posoffice.extensions import db
from posoffice.models import Category, Customer, Product, User
from posoffice.services import identifier_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'WARNING',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        identifier_service.reset_sequences()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def runner(app):
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def category(db_session):
    c = Category(name="Beverages", sort_order=1, is_active=True)
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture(scope='function')
def make_product(db_session, category):
    """Factory: make_product(sku="P-1", price="10.00", min_stock_level=0, ...)."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = {
            "sku": f"TEST-{counter['n']:03d}",
            "name": f"Test Product {counter['n']}",
            "category_id": category.id,
            "price": Decimal("10.00"),
            "status": "ACTIVE",
            "min_stock_level": 0,
        }
        fields.update(overrides)
        p = Product(**fields)
        db_session.add(p)
        db_session.commit()
        return p

    return _make


@pytest.fixture(scope='function')
def product(make_product):
    return make_product()


@pytest.fixture(scope='function')
def customer(db_session):
    c = Customer(customer_code="KH900001", name="Alice Nguyen", email="alice@example.com")
    db_session.add(c)
    db_session.commit()
    return c


@pytest.fixture(scope='function')
def staff_user(db_session):
    u = User(username="staff", email="staff@posoffice.local", role="STAFF", is_active=True)
    db_session.add(u)
    db_session.commit()
    return u
