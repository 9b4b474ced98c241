"""CLI commands against a file-backed SQLite store."""

import pytest
from click.testing import CliRunner
from sqlalchemy import inspect

from tenant_payments.cli.main import cli
from tenant_payments.common import (
    MigrationLedgerEntry,
    PaymentRecord,
    SessionManager,
    create_engine_from_url,
    create_tables,
)

from .conftest import OCTOBER, SEPTEMBER, T0, T1


@pytest.fixture
def database_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'payments.db'}"
    engine = create_engine_from_url(url, retries=1)
    create_tables(engine)
    session_manager = SessionManager(engine)
    with session_manager.session_scope() as session:
        session.add_all([
            PaymentRecord(id=10, tenant_id=1, property_id=1, payment_month=OCTOBER,
                          status='pending', amount=850, created_at=T0),
            PaymentRecord(id=11, tenant_id=1, property_id=1, payment_month=OCTOBER,
                          status='paid', amount=850, created_at=T1),
            PaymentRecord(id=20, tenant_id=2, property_id=1, payment_month=SEPTEMBER,
                          status='pending', amount=700, created_at=T0),
            PaymentRecord(id=21, tenant_id=2, property_id=1, payment_month=SEPTEMBER,
                          status='pending', amount=700, created_at=T1),
        ])
    engine.dispose()
    return url


def remaining_ids(url):
    engine = create_engine_from_url(url, retries=1)
    with SessionManager(engine).session_scope() as session:
        ids = {row.id for row in session.query(PaymentRecord.id).all()}
    engine.dispose()
    return ids


def invoke(database_url, *args):
    return CliRunner().invoke(cli, ['--database-url', database_url, *args])


def test_reconcile_json(database_url):
    result = invoke(database_url, 'reconcile', '--json')

    assert result.exit_code == 0, result.output
    assert '"groupsFound": 2' in result.output
    assert '"recordsDeleted": 2' in result.output
    assert '"state": "clean"' in result.output
    assert remaining_ids(database_url) == {11, 21}


def test_reconcile_month_scope_exits_non_zero_without_constraint(database_url):
    result = invoke(database_url, 'reconcile', '--month', '2025-10', '--json')

    assert result.exit_code == 1
    assert '"state": "clean_constraint_missing"' in result.output
    assert remaining_ids(database_url) == {11, 20, 21}


def test_reconcile_dry_run(database_url):
    result = invoke(database_url, 'reconcile', '--dry-run')

    assert result.exit_code == 0, result.output
    assert remaining_ids(database_url) == {10, 11, 20, 21}


def test_reconcile_tie_break_override(database_url):
    result = invoke(database_url, 'reconcile', '--tie-break', 'lowest_id_wins', '--json')

    assert result.exit_code == 0, result.output
    assert remaining_ids(database_url) == {11, 20}


def test_reconcile_rejects_bad_month(database_url):
    result = invoke(database_url, 'reconcile', '--month', 'October')

    assert result.exit_code == 2
    assert remaining_ids(database_url) == {10, 11, 20, 21}


def test_check_lists_groups(database_url):
    result = invoke(database_url, 'check')

    assert result.exit_code == 0, result.output
    assert '2 groups, 4 records, 2 to delete' in result.output
    assert remaining_ids(database_url) == {10, 11, 20, 21}


def test_check_does_not_create_ledger_table(database_url):
    engine = create_engine_from_url(database_url, retries=1)
    MigrationLedgerEntry.__table__.drop(engine)
    engine.dispose()

    result = invoke(database_url, 'check')

    assert result.exit_code == 0, result.output
    assert 'not executed' in result.output
    engine = create_engine_from_url(database_url, retries=1)
    assert not inspect(engine).has_table('migrations')
    engine.dispose()


def test_constraint_commands(database_url):
    blocked = invoke(database_url, 'constraint', 'install')
    assert blocked.exit_code == 1

    invoke(database_url, 'reconcile')
    status = invoke(database_url, 'constraint', 'status')
    again = invoke(database_url, 'constraint', 'install')

    assert 'Constraint installed' in status.output
    assert again.exit_code == 0
    assert 'already_exists' in again.output


def test_startup_then_ledger(database_url):
    first = invoke(database_url, 'startup', '--json')
    second = invoke(database_url, 'startup', '--json')
    ledger = invoke(database_url, 'ledger', 'list')

    assert '"recordsDeleted": 2' in first.output
    assert '"ledgerSkipped": true' in second.output
    assert 'reconcile_duplicate_payments' in ledger.output


def test_ledger_mark(database_url):
    result = invoke(database_url, 'ledger', 'mark', 'add_payment_month', 'add_status_column')
    again = invoke(database_url, 'ledger', 'mark', 'add_payment_month')

    assert 'Marked add_payment_month' in result.output
    assert 'already recorded' in again.output


def test_schedule_disabled_by_default(database_url):
    result = invoke(database_url, 'schedule')

    assert result.exit_code == 0
    assert 'disabled' in result.output
