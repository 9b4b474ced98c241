"""
Shared fixtures: an in-memory SQLite payment store and a row factory.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from tenant_payments.common import PaymentRecord, SessionManager, create_engine_from_url, create_tables


T0 = datetime(2025, 10, 1, 9, 0, 0)
T1 = datetime(2025, 10, 2, 9, 0, 0)
T2 = datetime(2025, 10, 3, 9, 0, 0)

OCTOBER = date(2025, 10, 1)
SEPTEMBER = date(2025, 9, 1)


@pytest.fixture
def engine():
    engine = create_engine_from_url('sqlite://', retries=1)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_manager(engine):
    return SessionManager(engine)


@pytest.fixture
def add_payment(session_manager):
    """Insert one payment row and return its id."""

    def _add(id=None, tenant_id=1, property_id=1, payment_month=OCTOBER,
             status='pending', created_at=T0, amount='850.00'):
        with session_manager.session_scope() as session:
            record = PaymentRecord(
                id=id,
                tenant_id=tenant_id,
                property_id=property_id,
                payment_month=payment_month,
                status=status,
                amount=Decimal(amount),
                created_at=created_at,
            )
            session.add(record)
            session.flush()
            return record.id

    return _add


@pytest.fixture
def payment_ids(session_manager):
    """Current set of payment ids in the store."""

    def _ids():
        with session_manager.session_scope() as session:
            return {row.id for row in session.query(PaymentRecord.id).all()}

    return _ids
