"""
Error taxonomy for the reconciliation engine and the store error classifier.

classify_store_error() is the only place that looks inside driver exceptions;
everything above the storage boundary works with StoreErrorKind.
"""

from enum import Enum
from typing import Iterable, Optional, Tuple

from sqlalchemy.exc import DBAPIError, IntegrityError


class StoreErrorKind(Enum):
    """Closed set of storage failure kinds"""
    ALREADY_EXISTS = "already_exists"
    CONSTRAINT_VIOLATION_DUE_TO_DATA = "constraint_violation_due_to_data"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ReconciliationError(Exception):
    """Base class for reconciliation engine errors."""


class DetectionError(ReconciliationError):
    """Querying the payment store for duplicates failed. Safe to retry."""


class ResolutionAmbiguityError(ReconciliationError):
    """A duplicate group the policy refuses to rank (empty, or an unknown status)."""

    def __init__(self, message: str, natural_key: Optional[tuple] = None):
        super().__init__(message)
        self.natural_key = natural_key


class DeletionError(ReconciliationError):
    """A deletion batch failed; its transaction was rolled back in full."""

    def __init__(self, message: str, batch_number: int, payment_ids: Iterable[int],
                 kind: StoreErrorKind = StoreErrorKind.FATAL):
        super().__init__(message)
        self.batch_number = batch_number
        self.payment_ids: Tuple[int, ...] = tuple(payment_ids)
        self.kind = kind


class ConstraintInstallError(ReconciliationError):
    """Installing the natural-key uniqueness constraint failed."""

    def __init__(self, message: str, kind: StoreErrorKind = StoreErrorKind.FATAL):
        super().__init__(message)
        self.kind = kind


class ConstraintViolation(ConstraintInstallError):
    """Duplicates are still present; reconciliation must run before the constraint can be installed."""

    def __init__(self, message: str):
        super().__init__(message, StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA)


# ============================================================================
# Store error classification
# ============================================================================

# PostgreSQL SQLSTATE codes
_PG_ALREADY_EXISTS = {'42P07', '42710'}     # duplicate_table (relation/index), duplicate_object
_PG_DATA_VIOLATION = {'23505'}              # unique_violation
_PG_TRANSIENT = {'40001', '40P01', '55P03', '57014', '53300'}

# MySQL / MariaDB error numbers
_MYSQL_ALREADY_EXISTS = {1061}              # ER_DUP_KEYNAME
_MYSQL_DATA_VIOLATION = {1062}              # ER_DUP_ENTRY
_MYSQL_TRANSIENT = {1205, 1213, 2003, 2006, 2013}

# SQLite extended result codes
_SQLITE_DATA_VIOLATION = {2067, 1555}       # CONSTRAINT_UNIQUE, CONSTRAINT_PRIMARYKEY
_SQLITE_TRANSIENT_PRIMARY = {5, 6}          # BUSY, LOCKED


def classify_store_error(error: BaseException) -> StoreErrorKind:
    """
    Map a SQLAlchemy/DBAPI exception to a StoreErrorKind.

    Driver codes are used where the driver exposes them; SQLite reports
    "index ... already exists" with the generic error code, so that case
    alone falls back to the message.
    """
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return StoreErrorKind.TRANSIENT

    orig = getattr(error, 'orig', None) or error
    module = type(orig).__module__ or ''

    sqlstate = getattr(orig, 'pgcode', None) or getattr(orig, 'sqlstate', None)
    if sqlstate:
        if sqlstate in _PG_ALREADY_EXISTS:
            return StoreErrorKind.ALREADY_EXISTS
        if sqlstate in _PG_DATA_VIOLATION:
            return StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA
        if sqlstate in _PG_TRANSIENT or sqlstate.startswith('08'):
            return StoreErrorKind.TRANSIENT
        return StoreErrorKind.FATAL

    if module.startswith(('pymysql', 'MySQLdb', 'mysql')):
        errno = orig.args[0] if orig.args and isinstance(orig.args[0], int) else None
        if errno in _MYSQL_ALREADY_EXISTS:
            return StoreErrorKind.ALREADY_EXISTS
        if errno in _MYSQL_DATA_VIOLATION:
            return StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA
        if errno in _MYSQL_TRANSIENT:
            return StoreErrorKind.TRANSIENT

    if module.startswith('sqlite3'):
        code = getattr(orig, 'sqlite_errorcode', None)
        message = str(orig).lower()
        if code in _SQLITE_DATA_VIOLATION:
            return StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA
        if code is not None and (code & 0xff) in _SQLITE_TRANSIENT_PRIMARY:
            return StoreErrorKind.TRANSIENT
        if 'already exists' in message:
            return StoreErrorKind.ALREADY_EXISTS
        if 'database is locked' in message:
            return StoreErrorKind.TRANSIENT

    if isinstance(error, IntegrityError):
        return StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA

    return StoreErrorKind.FATAL
