"""
Configuration management for the payment reconciliation engine.
Loads config/reconciliation.yaml and applies environment overrides (.env via decouple).
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
import os
import re
import urllib.parse

import yaml
from decouple import config as env_config

# Repository root (parent of tenant_payments/)
BASE_DIR = Path(__file__).parent.parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / 'config' / 'reconciliation.yaml'


class DatabaseType(Enum):
    """Supported database types"""
    MARIADB = "mariadb"
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"

    @classmethod
    def from_dialect(cls, dialect_name: str) -> 'DatabaseType':
        """Map a SQLAlchemy dialect name (engine.dialect.name) to a DatabaseType."""
        mapping = {
            'postgresql': cls.POSTGRESQL,
            'mysql': cls.MARIADB,
            'mariadb': cls.MARIADB,
            'sqlite': cls.SQLITE,
        }
        if dialect_name not in mapping:
            raise ValueError(
                f"Unsupported database dialect: {dialect_name}. "
                f"Supported types: {', '.join([t.value for t in cls])}"
            )
        return mapping[dialect_name]


class TieBreakMode(Enum):
    """
    How equal-status duplicates are ranked after the paid-first rule.

    NEWEST_WINS keeps the most recently created row; LOWEST_ID_WINS keeps the
    row with the smallest id. Both variants existed in the legacy cleanups.
    """
    NEWEST_WINS = "newest_wins"
    LOWEST_ID_WINS = "lowest_id_wins"

    @classmethod
    def parse(cls, value: Any) -> 'TieBreakMode':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid tie-break mode: {value!r}. "
                f"Expected one of: {', '.join([m.value for m in cls])}"
            ) from None


@dataclass
class DatabaseConfig:
    """
    Database connection configuration.
    Supports MariaDB, PostgreSQL and SQLite (database = file path).
    """
    db_type: DatabaseType
    database: str
    host: str = ''
    port: int = 0
    username: str = ''
    password: str = ''

    # Connection pool settings (ignored for SQLite)
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 60
    pool_recycle: int = 1800
    pool_pre_ping: bool = True

    def __repr__(self) -> str:
        """Safe representation without password"""
        return (f"DatabaseConfig(db_type={self.db_type.value}, host={self.host}, "
                f"database={self.database}, username={self.username})")


@dataclass
class ScheduleConfig:
    """Cron schedule for the recurring reconciliation job."""
    enabled: bool = False
    cron: str = '30 2 * * *'            # 02:30 daily
    timezone: str = 'UTC'
    coalesce: bool = True               # Combine missed runs
    max_instances: int = 1              # Never overlap with itself
    misfire_grace_time: int = 3600      # Allow 1 hour late


@dataclass
class ReconciliationConfig:
    """
    Reconciliation settings.
    Can be loaded from YAML, environment variables, or both (YAML first, env wins).
    """
    # TODO: confirm with the product owner whether newest_wins or lowest_id_wins is authoritative
    tie_break: TieBreakMode = TieBreakMode.NEWEST_WINS
    batch_size: int = 100
    install_constraint: bool = True
    run_on_startup: bool = True
    ledger_operation: str = 'reconcile_duplicate_payments'
    show_progress: bool = False
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    def __post_init__(self):
        self.tie_break = TieBreakMode.parse(self.tie_break)
        self.batch_size = int(self.batch_size)
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        if not self.ledger_operation:
            raise ValueError("ledger_operation must not be empty")
        if len(self.schedule.cron.split()) != 5:
            raise ValueError(f"schedule.cron must have 5 fields, got {self.schedule.cron!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReconciliationConfig':
        """Build configuration from the 'reconciliation' section of the YAML file."""
        defaults = cls()
        sched = data.get('schedule', {}) or {}
        schedule = ScheduleConfig(
            enabled=sched.get('enabled', defaults.schedule.enabled),
            cron=_resolve_env(sched.get('cron', defaults.schedule.cron)),
            timezone=_resolve_env(sched.get('timezone', defaults.schedule.timezone)),
            coalesce=sched.get('coalesce', defaults.schedule.coalesce),
            max_instances=sched.get('max_instances', defaults.schedule.max_instances),
            misfire_grace_time=sched.get('misfire_grace_time', defaults.schedule.misfire_grace_time),
        )
        return cls(
            tie_break=_resolve_env(data.get('tie_break', defaults.tie_break)),
            batch_size=data.get('batch_size', defaults.batch_size),
            install_constraint=data.get('install_constraint', defaults.install_constraint),
            run_on_startup=data.get('run_on_startup', defaults.run_on_startup),
            ledger_operation=_resolve_env(data.get('ledger_operation', defaults.ledger_operation)),
            show_progress=data.get('show_progress', defaults.show_progress),
            schedule=schedule,
        )

    @classmethod
    def from_yaml(cls, config_path: str = None) -> 'ReconciliationConfig':
        """
        Load configuration from YAML.
        Environment variables can be referenced as ${VAR_NAME}.
        A missing file yields the defaults.
        """
        path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data.get('reconciliation', {}) or {})

    def with_env_overrides(self) -> 'ReconciliationConfig':
        """Return a copy with RECONCILE_* environment variables applied."""
        schedule = ScheduleConfig(
            enabled=env_config('RECONCILE_SCHEDULE_ENABLED', default=self.schedule.enabled, cast=bool),
            cron=env_config('RECONCILE_SCHEDULE_CRON', default=self.schedule.cron),
            timezone=env_config('RECONCILE_SCHEDULE_TIMEZONE', default=self.schedule.timezone),
            coalesce=self.schedule.coalesce,
            max_instances=self.schedule.max_instances,
            misfire_grace_time=self.schedule.misfire_grace_time,
        )
        return ReconciliationConfig(
            tie_break=env_config('RECONCILE_TIE_BREAK', default=self.tie_break.value),
            batch_size=env_config('RECONCILE_BATCH_SIZE', default=self.batch_size, cast=int),
            install_constraint=env_config('RECONCILE_INSTALL_CONSTRAINT', default=self.install_constraint, cast=bool),
            run_on_startup=env_config('RECONCILE_ON_STARTUP', default=self.run_on_startup, cast=bool),
            ledger_operation=env_config('RECONCILE_LEDGER_OPERATION', default=self.ledger_operation),
            show_progress=env_config('RECONCILE_SHOW_PROGRESS', default=self.show_progress, cast=bool),
            schedule=schedule,
        )

    @classmethod
    def from_env(cls) -> 'ReconciliationConfig':
        """Load configuration from environment variables only."""
        return cls().with_env_overrides()

    @classmethod
    def load(cls, config_path: str = None) -> 'ReconciliationConfig':
        """Load YAML configuration, then apply environment overrides."""
        return cls.from_yaml(config_path).with_env_overrides()


def get_database_url() -> str:
    """
    Get database URL from environment (.env supported).

    DATABASE_URL wins; otherwise a PostgreSQL URL is built from the
    POSTGRESQL_* variables.

    Raises:
        ValueError: If neither is configured
    """
    url = env_config('DATABASE_URL', default='')
    if url:
        return url

    host = env_config('POSTGRESQL_HOST', default='')
    database = env_config('POSTGRESQL_DATABASE', default='')
    if not host or not database:
        raise ValueError(
            "Database not configured: set DATABASE_URL or POSTGRESQL_HOST/POSTGRESQL_DATABASE"
        )

    port = env_config('POSTGRESQL_PORT', default=5432, cast=int)
    username = urllib.parse.quote_plus(env_config('POSTGRESQL_USERNAME', default=''))
    password = urllib.parse.quote_plus(env_config('POSTGRESQL_PASSWORD', default=''))
    return f"postgresql+psycopg2://{username}:{password}@{host}:{port}/{database}"


def mask_database_url(database_url: str) -> str:
    """Mask the password part of a database URL for display."""
    if '@' not in database_url:
        return database_url
    before_at, after_at = database_url.rsplit('@', 1)
    if ':' in before_at.split('//', 1)[-1]:
        proto_user = before_at.rsplit(':', 1)[0]
        return f"{proto_user}:****@{after_at}"
    return database_url


def _resolve_env(value: Any) -> Any:
    """Resolve ${VAR_NAME} references in string values."""
    if not isinstance(value, str):
        return value

    pattern = r'\$\{([^}]+)\}'

    def replace(match):
        return os.environ.get(match.group(1), '')

    return re.sub(pattern, replace, value)
