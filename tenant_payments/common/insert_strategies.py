"""
Database-specific insert-if-absent strategies using the Strategy pattern.
Handles differences in "insert, ignore the conflict" syntax across PostgreSQL,
MariaDB and SQLite.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Type
from sqlalchemy import insert
from sqlalchemy.orm import Session
from sqlalchemy.dialects import postgresql, sqlite

from .config import DatabaseType


logger = logging.getLogger(__name__)


class InsertIfAbsentStrategy(ABC):
    """Abstract base class for database-specific insert-if-absent strategies"""

    @abstractmethod
    def insert_if_absent(
        self,
        session: Session,
        model: Type,
        values: Dict[str, Any],
        constraint_columns: List[str]
    ) -> bool:
        """
        Insert a single record unless a row with the same constraint columns exists.

        Args:
            session: SQLAlchemy session
            model: SQLAlchemy model class
            values: Dictionary of column name -> value
            constraint_columns: Columns covered by a primary key or unique index

        Returns:
            bool: True if a row was inserted, False if it already existed
        """


class PostgreSQLInsertStrategy(InsertIfAbsentStrategy):
    """
    PostgreSQL using ON CONFLICT ... DO NOTHING.

    Syntax:
        INSERT INTO table (col1, col2) VALUES (:val1, :val2)
        ON CONFLICT (col1) DO NOTHING
    """

    def insert_if_absent(self, session, model, values, constraint_columns) -> bool:
        stmt = postgresql.insert(model).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=constraint_columns)
        result = session.execute(stmt)
        logger.debug(f"PostgreSQL insert-if-absent: {model.__tablename__} ({result.rowcount})")
        return result.rowcount > 0


class SQLiteInsertStrategy(InsertIfAbsentStrategy):
    """
    SQLite using ON CONFLICT ... DO NOTHING (SQLite 3.24+).
    """

    def insert_if_absent(self, session, model, values, constraint_columns) -> bool:
        stmt = sqlite.insert(model).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=constraint_columns)
        result = session.execute(stmt)
        logger.debug(f"SQLite insert-if-absent: {model.__tablename__} ({result.rowcount})")
        return result.rowcount > 0


class MariaDBInsertStrategy(InsertIfAbsentStrategy):
    """
    MariaDB/MySQL using INSERT IGNORE.

    Syntax:
        INSERT IGNORE INTO table (col1, col2) VALUES (:val1, :val2)
    """

    def insert_if_absent(self, session, model, values, constraint_columns) -> bool:
        stmt = insert(model).values(**values).prefix_with('IGNORE')
        result = session.execute(stmt)
        logger.debug(f"MariaDB insert-if-absent: {model.__tablename__} ({result.rowcount})")
        return result.rowcount > 0


class InsertStrategyFactory:
    """Factory for creating database-specific insert-if-absent strategies"""

    _strategies = {
        DatabaseType.POSTGRESQL: PostgreSQLInsertStrategy(),
        DatabaseType.MARIADB: MariaDBInsertStrategy(),
        DatabaseType.SQLITE: SQLiteInsertStrategy(),
    }

    @classmethod
    def get_strategy(cls, db_type: DatabaseType) -> InsertIfAbsentStrategy:
        """
        Get insert strategy for database type.

        Raises:
            ValueError: If database type is unsupported
        """
        strategy = cls._strategies.get(db_type)

        if strategy is None:
            raise ValueError(
                f"Unsupported database type for insert-if-absent: {db_type}. "
                f"Supported types: {', '.join([t.value for t in DatabaseType])}"
            )

        return strategy

    @classmethod
    def for_session(cls, session: Session) -> InsertIfAbsentStrategy:
        """Pick the strategy matching the session's bound dialect."""
        return cls.get_strategy(DatabaseType.from_dialect(session.get_bind().dialect.name))
