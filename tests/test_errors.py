"""Store error classification at the adapter boundary."""

import sqlite3

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, ProgrammingError

from tenant_payments.common import StoreErrorKind, classify_store_error


class FakePgError(Exception):
    def __init__(self, pgcode):
        super().__init__(f"pg error {pgcode}")
        self.pgcode = pgcode


FakeMySQLError = type('OperationalError', (Exception,), {'__module__': 'pymysql.err'})


def wrap(cls, orig):
    return cls("CREATE UNIQUE INDEX ...", {}, orig)


def test_postgresql_sqlstate():
    assert classify_store_error(wrap(ProgrammingError, FakePgError('42P07'))) is StoreErrorKind.ALREADY_EXISTS
    assert classify_store_error(wrap(IntegrityError, FakePgError('23505'))) is StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA
    assert classify_store_error(wrap(OperationalError, FakePgError('40P01'))) is StoreErrorKind.TRANSIENT
    assert classify_store_error(wrap(OperationalError, FakePgError('08006'))) is StoreErrorKind.TRANSIENT
    assert classify_store_error(wrap(ProgrammingError, FakePgError('42601'))) is StoreErrorKind.FATAL


def test_mysql_errno():
    assert classify_store_error(wrap(OperationalError, FakeMySQLError(1061, "Duplicate key name"))) is StoreErrorKind.ALREADY_EXISTS
    assert classify_store_error(wrap(IntegrityError, FakeMySQLError(1062, "Duplicate entry"))) is StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA
    assert classify_store_error(wrap(OperationalError, FakeMySQLError(1213, "Deadlock"))) is StoreErrorKind.TRANSIENT
    assert classify_store_error(wrap(OperationalError, FakeMySQLError(1146, "No such table"))) is StoreErrorKind.FATAL


def test_sqlite():
    already = sqlite3.OperationalError("index unique_tenant_property_month already exists")
    locked = sqlite3.OperationalError("database is locked")
    unique = sqlite3.IntegrityError("UNIQUE constraint failed: tenant_payments.tenant_id")

    assert classify_store_error(wrap(OperationalError, already)) is StoreErrorKind.ALREADY_EXISTS
    assert classify_store_error(wrap(OperationalError, locked)) is StoreErrorKind.TRANSIENT
    assert classify_store_error(wrap(IntegrityError, unique)) is StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA


def test_invalidated_connection_is_transient():
    error = DBAPIError("SELECT 1", {}, Exception("server closed the connection"), connection_invalidated=True)
    assert classify_store_error(error) is StoreErrorKind.TRANSIENT


def test_unknown_error_is_fatal():
    assert classify_store_error(RuntimeError("boom")) is StoreErrorKind.FATAL
