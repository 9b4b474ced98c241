"""
Session management for payment store operations with context managers.
Provides transaction safety with automatic commit/rollback.
"""

import logging
from contextlib import contextmanager
from typing import Generator
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.engine import Engine

from .config import DatabaseType


logger = logging.getLogger(__name__)


class SessionManager:
    """
    Manages database sessions with automatic transaction handling.

    Every reconciliation batch, ledger write and repository call runs inside
    its own session_scope(), so one failing unit of work never drags a
    neighbouring one down with it.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)
        self.db_type = DatabaseType.from_dialect(engine.dialect.name)
        logger.debug(f"Session manager initialized ({self.db_type.value})")

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope for database operations.

        Example:
            with session_manager.session_scope() as session:
                session.query(PaymentRecord).filter_by(id=1).first()
                # Auto-commit on success, auto-rollback on exception
        """
        session = self.Session()
        try:
            yield session
            session.commit()
            logger.debug("Session committed successfully")

        except Exception as e:
            session.rollback()
            logger.debug(f"Session rolled back due to error: {e}")
            raise

        finally:
            session.close()

    @property
    def supports_row_locks(self) -> bool:
        """SELECT ... FOR UPDATE is meaningful on server databases only."""
        return self.db_type in (DatabaseType.POSTGRESQL, DatabaseType.MARIADB)
