"""
Database engine factory for the payment store.
PostgreSQL, MariaDB and SQLite; pooled engines with connect retries.
"""

import time
import logging
from typing import Union

from sqlalchemy import create_engine, exc
from sqlalchemy.exc import OperationalError
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig, DatabaseType, mask_database_url


logger = logging.getLogger(__name__)

# db_type -> (SQLAlchemy driver name, default port)
_SERVER_DRIVERS = {
    DatabaseType.POSTGRESQL: ('postgresql+psycopg2', 5432),
    DatabaseType.MARIADB: ('mysql+pymysql', 3306),
}


def create_engine_from_config(
    db_config: DatabaseConfig,
    retries: int = 3,
    retry_delay: int = 5
) -> Engine:
    """
    Create an engine for a DatabaseConfig, retrying the first connection.

    Pool settings from the config apply to server databases only.

    Raises:
        ValueError: Unsupported database type
        OperationalError: If connection fails after retries
    """
    url = build_connection_url(db_config)

    engine_kwargs = {}
    if db_config.db_type != DatabaseType.SQLITE:
        engine_kwargs = {
            'pool_size': db_config.pool_size,
            'max_overflow': db_config.max_overflow,
            'pool_timeout': db_config.pool_timeout,
            'pool_recycle': db_config.pool_recycle,
            'pool_pre_ping': db_config.pool_pre_ping,
        }

    return _connect_with_retry(url, engine_kwargs, retries, retry_delay)


def create_engine_from_url(
    database_url: str,
    retries: int = 3,
    retry_delay: int = 5
) -> Engine:
    """
    Create SQLAlchemy engine from a URL (DATABASE_URL style) with retry logic.

    In-memory SQLite URLs get a StaticPool so every session sees the same database.
    """
    url = make_url(database_url)
    engine_kwargs = {}
    if url.get_backend_name() == 'sqlite':
        if url.database in (None, '', ':memory:'):
            engine_kwargs = {
                'poolclass': StaticPool,
                'connect_args': {'check_same_thread': False},
            }
    else:
        engine_kwargs = {'pool_pre_ping': True}

    return _connect_with_retry(url, engine_kwargs, retries, retry_delay)


def _connect_with_retry(url: Union[str, URL], engine_kwargs: dict, retries: int, retry_delay: int) -> Engine:
    if retries < 1:
        raise ValueError(f"retries must be at least 1, got {retries}")

    display_url = mask_database_url(url.render_as_string(hide_password=False) if isinstance(url, URL) else url)

    for attempt in range(1, retries + 1):
        try:
            engine = create_engine(url, **engine_kwargs)
            with engine.connect():
                logger.debug(f"Connection test successful for {display_url}")
            logger.info(f"SQLAlchemy engine created: {display_url}")
            return engine

        except OperationalError as oe:
            logger.error(f"Connection attempt {attempt}/{retries} failed for {display_url}: {oe}")
            if attempt == retries:
                logger.critical(f"Max retries ({retries}) reached, giving up on {display_url}")
                raise
            logger.info(f"Retrying in {retry_delay} seconds...")
            time.sleep(retry_delay)

        except exc.SQLAlchemyError as e:
            logger.error(f"SQLAlchemy error occurred for {display_url}: {e}")
            raise


def build_connection_url(db_config: DatabaseConfig) -> URL:
    """
    Build the SQLAlchemy URL for a DatabaseConfig (credentials are escaped by URL).

    Raises:
        ValueError: Unsupported database type
    """
    if db_config.db_type == DatabaseType.SQLITE:
        return URL.create('sqlite', database=db_config.database)

    if db_config.db_type not in _SERVER_DRIVERS:
        raise ValueError(
            f"Unsupported database type: {db_config.db_type}. "
            f"Supported types: {', '.join([t.value for t in DatabaseType])}"
        )

    drivername, default_port = _SERVER_DRIVERS[db_config.db_type]
    return URL.create(
        drivername,
        username=db_config.username or None,
        password=db_config.password or None,
        host=db_config.host or None,
        port=db_config.port or default_port,
        database=db_config.database,
    )
