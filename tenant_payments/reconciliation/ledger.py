"""
Migration ledger: which one-time operations already completed.

Rows in the `migrations` table are written with insert-if-absent semantics so
several service instances can race to record the same operation.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import inspect

from ..common.insert_strategies import InsertStrategyFactory
from ..common.models import MigrationLedgerEntry
from ..common.session import SessionManager


logger = logging.getLogger(__name__)


class MigrationLedger:
    """Read and write completed-operation entries."""

    def __init__(self, session_manager: SessionManager):
        self.session_manager = session_manager

    def ensure_table(self):
        """Create the migrations table if it does not exist."""
        MigrationLedgerEntry.__table__.create(self.session_manager.engine, checkfirst=True)

    def table_exists(self) -> bool:
        return inspect(self.session_manager.engine).has_table(MigrationLedgerEntry.__tablename__)

    def has_run(self, name: str) -> bool:
        """True if the operation has an entry; unknown names are simply False."""
        with self.session_manager.session_scope() as session:
            return session.get(MigrationLedgerEntry, name) is not None

    def record_run(self, name: str, executed_at: Optional[datetime] = None) -> bool:
        """
        Record a completed operation.

        Returns:
            bool: True if this call inserted the entry, False if it was already there
        """
        values = {'filename': name, 'executed_at': executed_at or datetime.utcnow()}
        with self.session_manager.session_scope() as session:
            strategy = InsertStrategyFactory.for_session(session)
            inserted = strategy.insert_if_absent(session, MigrationLedgerEntry, values, ['filename'])

        if inserted:
            logger.info(f"Ledger: recorded {name}")
        else:
            logger.info(f"Ledger: {name} was already recorded")
        return inserted

    def history(self, pattern: Optional[str] = None) -> List[MigrationLedgerEntry]:
        """
        List entries, newest first.

        Args:
            pattern: Optional SQL LIKE pattern on the operation name (e.g. 'add_%')
        """
        with self.session_manager.session_scope() as session:
            query = session.query(MigrationLedgerEntry)
            if pattern:
                query = query.filter(MigrationLedgerEntry.filename.like(pattern))
            return query.order_by(MigrationLedgerEntry.executed_at.desc(), MigrationLedgerEntry.filename).all()

    def mark_executed(self, names: Iterable[str]) -> List[str]:
        """
        Mark operations as executed without running them (superseded or manually applied ones).

        Returns:
            List[str]: Names that were newly recorded
        """
        now = datetime.utcnow()
        return [name for name in names if self.record_run(name, executed_at=now)]
