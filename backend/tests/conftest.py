"""
Pytest fixtures for ordercore backend tests.

Provides an in-memory application, per-test table wipe, and small builders
for the catalogue, riders, vendors, leads and orders the tests work on.
"""

import pytest

from ordercore import create_app
from ordercore.extensions import db
from ordercore.services import (
    inventory_service,
    lead_service,
    order_service,
    settlement_service,
    vendor_service,
)
from ordercore.services.state_machine import CHANNEL_COURIER, CHANNEL_LOCAL, CHANNEL_POS

ACTOR_ID = 1


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ORDERCORE_RETRY_BACKOFF': 0,
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
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def actor_id():
    return ACTOR_ID


@pytest.fixture(scope='function')
def variant(db_session):
    """A variant with 10 units on hand, selling at 500 cents."""
    return inventory_service.create_variant(
        sku="TSHIRT-M", name="T-Shirt M",
        cost_price_cents=200, selling_price_cents=500, opening_stock=10,
    )


@pytest.fixture(scope='function')
def second_variant(db_session):
    return inventory_service.create_variant(
        sku="CAP-01", name="Cap",
        cost_price_cents=100, selling_price_cents=300, opening_stock=5,
    )


@pytest.fixture(scope='function')
def rider(db_session):
    return settlement_service.create_rider(name="Ram", phone="9800000001")


@pytest.fixture(scope='function')
def vendor(db_session):
    return vendor_service.create_vendor(name="Textile House", opening_balance_cents=1000)


def make_lead(variant_id, *, quantity=1, phone="9811111111", channel=CHANNEL_LOCAL, **fields):
    return lead_service.create_lead(
        customer={"phone": phone, "name": "Sita", "address": "Baneshwor", "city": "Kathmandu"},
        items=[{"variant_id": variant_id, "quantity": quantity}],
        actor_id=ACTOR_ID,
        fulfillment_type=channel,
        **fields,
    )


def make_order(variant_id, *, quantity=1, channel=CHANNEL_LOCAL, phone="9822222222"):
    return order_service.create_order(
        customer_phone=phone,
        fulfillment_type=channel,
        items=[{"variant_id": variant_id, "quantity": quantity}],
        actor_id=ACTOR_ID,
    )


@pytest.fixture(scope='function')
def local_order(variant):
    return make_order(variant.id, quantity=2, channel=CHANNEL_LOCAL)


@pytest.fixture(scope='function')
def courier_order(variant):
    return make_order(variant.id, quantity=2, channel=CHANNEL_COURIER)


@pytest.fixture(scope='function')
def pos_order(variant):
    return make_order(variant.id, quantity=1, channel=CHANNEL_POS)


def actor_headers(actor=ACTOR_ID) -> dict:
    """Helper to create the acting-user header."""
    return {'X-Actor-Id': str(actor)}
