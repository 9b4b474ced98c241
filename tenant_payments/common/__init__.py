"""
Common payment store layer (config → engine → session → models).

Example Usage:
    from tenant_payments.common import ReconciliationConfig, create_engine_from_url, get_database_url
    from tenant_payments.common import SessionManager, PaymentRepository

    config = ReconciliationConfig.load()
    engine = create_engine_from_url(get_database_url())
    session_manager = SessionManager(engine)

    with session_manager.session_scope() as session:
        repo = PaymentRepository(session)
        repo.ensure_payment_records([12, 14], property_id=3, payment_month='2025-10', amount='850.00')
"""

# Configuration
from .config import (
    DatabaseConfig,
    DatabaseType,
    ReconciliationConfig,
    ScheduleConfig,
    TieBreakMode,
    get_database_url,
    mask_database_url,
)

# Database engine and session management
from .engine import (
    create_engine_from_config,
    create_engine_from_url,
    build_connection_url,
)

from .session import SessionManager

# Models
from .models import (
    Base,
    BaseModel,
    TimestampMixin,
    PaymentRecord,
    PaymentStatus,
    MigrationLedgerEntry,
    PAYMENTS_TABLE,
    UNIQUE_CONSTRAINT_NAME,
    NATURAL_KEY_COLUMNS,
    create_tables,
    drop_tables,
)

# Errors
from .errors import (
    StoreErrorKind,
    ReconciliationError,
    DetectionError,
    ResolutionAmbiguityError,
    DeletionError,
    ConstraintInstallError,
    ConstraintViolation,
    classify_store_error,
)

# Operations
from .operations import PaymentRepository, EnsureResult

# Insert-if-absent strategies
from .insert_strategies import (
    InsertIfAbsentStrategy,
    InsertStrategyFactory,
    PostgreSQLInsertStrategy,
    MariaDBInsertStrategy,
    SQLiteInsertStrategy,
)

# Date utilities
from .date_utils import (
    get_first_day_of_month,
    add_months,
    normalize_payment_month,
    parse_month_prefix,
    format_month,
)


__all__ = [
    # Configuration
    'DatabaseConfig',
    'DatabaseType',
    'ReconciliationConfig',
    'ScheduleConfig',
    'TieBreakMode',
    'get_database_url',
    'mask_database_url',

    # Database
    'create_engine_from_config',
    'create_engine_from_url',
    'build_connection_url',
    'SessionManager',

    # Models
    'Base',
    'BaseModel',
    'TimestampMixin',
    'PaymentRecord',
    'PaymentStatus',
    'MigrationLedgerEntry',
    'PAYMENTS_TABLE',
    'UNIQUE_CONSTRAINT_NAME',
    'NATURAL_KEY_COLUMNS',
    'create_tables',
    'drop_tables',

    # Errors
    'StoreErrorKind',
    'ReconciliationError',
    'DetectionError',
    'ResolutionAmbiguityError',
    'DeletionError',
    'ConstraintInstallError',
    'ConstraintViolation',
    'classify_store_error',

    # Operations
    'PaymentRepository',
    'EnsureResult',

    # Insert strategies
    'InsertIfAbsentStrategy',
    'InsertStrategyFactory',
    'PostgreSQLInsertStrategy',
    'MariaDBInsertStrategy',
    'SQLiteInsertStrategy',

    # Date utilities
    'get_first_day_of_month',
    'add_months',
    'normalize_payment_month',
    'parse_month_prefix',
    'format_month',
]
