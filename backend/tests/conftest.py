"""
Pytest fixtures for retailpos backend tests.

Provides the application, a fresh database per test, a store with 16% tax
and products whose opening stock is booked through the movement ledger.
"""

from decimal import Decimal

import pytest
from retailpos import create_app
from retailpos.config import TestingConfig
from retailpos.extensions import db
from retailpos.models import Store, Product
from retailpos.models.inventory import MOVEMENT_ADJUSTMENT
from retailpos.services import inventory_service


ACTOR_ID = 7


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def actor_headers():
    return {"X-User-Id": str(ACTOR_ID)}


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
def store(db_session):
    """Store with a 16% tax rate."""
    store = Store(name="Main Store", code="MAIN", tax_rate=Decimal("16.00"))
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    store = Store(name="Second Store", code="SECOND", tax_rate=Decimal("0"))
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: product with opening stock booked as ledger adjustments."""
    def _make(store, *, name="Product", sku=None, price="10.00", venta=0, deposito=0, **extra):
        product = Product(
            store_id=store.id,
            name=name,
            sku=sku,
            price=Decimal(price),
            cost=Decimal("1.00"),
            **extra,
        )
        db_session.add(product)
        db_session.commit()

        for stock_type, quantity in (("venta", venta), ("deposito", deposito)):
            if quantity:
                inventory_service.apply_stock_change(
                    product_id=product.id,
                    store_id=store.id,
                    stock_type=stock_type,
                    quantity_change=quantity,
                    movement_type=MOVEMENT_ADJUSTMENT,
                    reason="Opening stock",
                    actor_id=ACTOR_ID,
                )
        return db_session.get(Product, product.id)

    return _make


@pytest.fixture(scope='function')
def product(store, make_product):
    """Price 10.00; 5 on the sales floor, 20 in the warehouse."""
    return make_product(store, name="Ground Coffee", sku="COF-250", price="10.00", venta=5, deposito=20)


@pytest.fixture(scope='function')
def second_product(store, make_product):
    return make_product(store, name="Green Tea", sku="TEA-20", price="4.75", venta=10, deposito=10)
