"""Shared test fixtures for the Stripe integration test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: processors, a contact, a recurring series and a one-off contribution
- gateway: a GatewayClient mock bound to the signed processor
"""

from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from crm_stripe import create_app
from crm_stripe.extensions import db as _db
from crm_stripe.models.contact import Contact
from crm_stripe.models.contribution import (
    Contribution,
    Payment,
    RecurringContribution,
)
from crm_stripe.models.processor import PaymentProcessor
from crm_stripe.services.gateway import GatewayClient, ProcessorConfig


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed two processors, a contact, a recurring series and a one-off.

    The recurring series already has its first (completed) contribution;
    the one-off contribution is Pending with no Stripe references yet.
    Returns plain IDs so tests can use them from any app context.
    """
    # --- Processors ---
    signed = PaymentProcessor(
        name="Stripe (signed)",
        secret_key="sk_test_signed",
        publishable_key="pk_test_signed",
        webhook_secret="whsec_test_secret",
        is_test=True,
    )
    unsigned = PaymentProcessor(
        name="Stripe (unsigned)",
        secret_key="sk_test_unsigned",
        is_test=True,
    )
    _db.session.add_all([signed, unsigned])
    _db.session.flush()

    # --- Contact ---
    contact = Contact(display_name="Jane Donor", email="jane@example.org")
    _db.session.add(contact)
    _db.session.flush()

    # --- Recurring series ---
    recur = RecurringContribution(
        contact_id=contact.id,
        processor_id=signed.id,
        amount=Decimal("10.00"),
        currency="USD",
        frequency_unit="month",
        frequency_interval=1,
        status="In Progress",
        auto_renew=True,
        subscription_reference="sub_123",
        latest_order_reference="in_first",
        next_scheduled_date=datetime(2024, 2, 15, tzinfo=timezone.utc),
        is_test=True,
    )
    _db.session.add(recur)
    _db.session.flush()

    first = Contribution(
        contact_id=contact.id,
        recurring_contribution_id=recur.id,
        processor_id=signed.id,
        status="Completed",
        total_amount=Decimal("10.00"),
        currency="USD",
        trxn_id="ch_first",
        order_reference="in_first",
        description="Monthly gift",
        is_test=True,
    )
    _db.session.add(first)
    _db.session.flush()
    _db.session.add(Payment(
        contribution_id=first.id,
        trxn_id="ch_first",
        total_amount=Decimal("10.00"),
        order_reference="in_first",
    ))

    # --- One-off, not yet paid ---
    oneoff = Contribution(
        contact_id=contact.id,
        processor_id=signed.id,
        status="Pending",
        total_amount=Decimal("25.00"),
        currency="USD",
        description="One-off gift",
        is_test=True,
    )
    _db.session.add(oneoff)
    _db.session.commit()

    return {
        "processor_id": signed.id,
        "unsigned_processor_id": unsigned.id,
        "contact_id": contact.id,
        "recur_id": recur.id,
        "first_contribution_id": first.id,
        "oneoff_id": oneoff.id,
    }


@pytest.fixture
def gateway(seed_data):
    """GatewayClient stand-in for the signed processor.

    Configure return values per test; every Stripe object is a plain dict.
    """
    gw = MagicMock(spec=GatewayClient)
    gw.config = ProcessorConfig(
        processor_id=seed_data["processor_id"],
        secret_key="sk_test_signed",
        api_version="2020-08-27",
        webhook_secret="whsec_test_secret",
        is_test=True,
    )
    return gw
