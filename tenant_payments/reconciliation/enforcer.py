"""
Invariant enforcer: install the unique index on the payment natural key.

The index name and columns are a schema contract; writers elsewhere rely on a
uniqueness violation on exactly (tenant_id, property_id, payment_month).
"""

import logging
from enum import Enum

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..common.errors import ConstraintInstallError, ConstraintViolation, StoreErrorKind, classify_store_error
from ..common.models import NATURAL_KEY_COLUMNS, PAYMENTS_TABLE, UNIQUE_CONSTRAINT_NAME


logger = logging.getLogger(__name__)


class ConstraintStatus(Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


CREATE_UNIQUE_INDEX_SQL = (
    f"CREATE UNIQUE INDEX {UNIQUE_CONSTRAINT_NAME} "
    f"ON {PAYMENTS_TABLE} ({', '.join(NATURAL_KEY_COLUMNS)})"
)


class InvariantEnforcer:
    """
    Installs unique_tenant_property_month idempotently.

    Call only after the reconciler reports zero remaining duplicate groups.
    The index build can take a while on a large table; callers should not
    hold other locks while install() runs.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def constraint_exists(self) -> bool:
        """Check the live schema for the unique index on the natural key."""
        indexes = inspect(self.engine).get_indexes(PAYMENTS_TABLE)
        for index in indexes:
            if index.get('name') == UNIQUE_CONSTRAINT_NAME:
                return True
        return False

    def install(self) -> ConstraintStatus:
        """
        Create the unique index.

        Returns:
            ConstraintStatus.CREATED, or ALREADY_EXISTS when the index is already there

        Raises:
            ConstraintViolation: Duplicates still present; nothing was changed
            ConstraintInstallError: Any other store failure (kind attribute set)
        """
        try:
            with self.engine.begin() as conn:
                conn.execute(text(CREATE_UNIQUE_INDEX_SQL))
        except SQLAlchemyError as e:
            kind = classify_store_error(e)

            if kind is StoreErrorKind.ALREADY_EXISTS:
                logger.info(f"Constraint {UNIQUE_CONSTRAINT_NAME} already exists")
                return ConstraintStatus.ALREADY_EXISTS

            if kind is StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA:
                # Another instance may have built the index between our checks
                if self.constraint_exists():
                    logger.info(f"Constraint {UNIQUE_CONSTRAINT_NAME} was created concurrently")
                    return ConstraintStatus.ALREADY_EXISTS
                logger.error(f"Cannot install {UNIQUE_CONSTRAINT_NAME}: duplicate payments still present")
                raise ConstraintViolation(
                    f"Duplicate payments still present; run reconciliation before installing "
                    f"{UNIQUE_CONSTRAINT_NAME}: {e}"
                ) from e

            logger.error(f"Failed to install {UNIQUE_CONSTRAINT_NAME} ({kind.value}): {e}")
            raise ConstraintInstallError(
                f"Failed to install {UNIQUE_CONSTRAINT_NAME}: {e}", kind
            ) from e

        logger.info(f"Installed constraint {UNIQUE_CONSTRAINT_NAME} on {PAYMENTS_TABLE}")
        return ConstraintStatus.CREATED
