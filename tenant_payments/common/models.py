"""
SQLAlchemy ORM models for the payment store and the migration ledger.
"""

from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Dict, Any
from sqlalchemy import Column, String, Integer, DateTime, Date, Numeric, Text
from sqlalchemy.orm import declarative_base


# Declarative base for all models
Base = declarative_base()

# Schema contract: external upserts expect a uniqueness violation on exactly this key
PAYMENTS_TABLE = 'tenant_payments'
UNIQUE_CONSTRAINT_NAME = 'unique_tenant_property_month'
NATURAL_KEY_COLUMNS = ('tenant_id', 'property_id', 'payment_month')


class PaymentStatus(str, Enum):
    """Payment obligation status values"""
    PENDING = 'pending'
    PAID = 'paid'
    OVERDUE = 'overdue'

    @classmethod
    def values(cls) -> frozenset:
        return frozenset(member.value for member in cls)


class TimestampMixin:
    """Mixin for automatic timestamp tracking"""
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class BaseModel:
    """Base model with common functionality"""

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model instance to dictionary.

        Returns:
            dict: Dictionary representation of the model
        """
        result = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            if isinstance(value, (datetime, date)):
                value = value.isoformat()
            elif isinstance(value, Decimal):
                value = str(value)
            result[column.name] = value
        return result

    def __repr__(self) -> str:
        """String representation of model"""
        return f"<{self.__class__.__name__}({self.to_dict()})>"


# ============================================================================
# Domain Models
# ============================================================================


class PaymentRecord(Base, BaseModel, TimestampMixin):
    """
    One payment obligation for a tenant at a property for a billing month.

    Natural key: tenant_id + property_id + payment_month (first of month).
    The unique index on the natural key is deliberately NOT declared here:
    legacy tables hold duplicates, and the index is installed by the
    InvariantEnforcer only after reconciliation.
    """
    __tablename__ = PAYMENTS_TABLE

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Natural key
    tenant_id = Column(Integer, nullable=False, index=True, comment="Tenant (users.id)")
    property_id = Column(Integer, nullable=False, index=True, comment="Property (properties.id)")
    payment_month = Column(Date, nullable=False, index=True, comment="Billing month, first day")

    # Status is a plain string: legacy rows may carry values outside PaymentStatus
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    amount = Column(Numeric(10, 2), nullable=False, default=Decimal('0.00'))
    payment_date = Column(DateTime, nullable=True, comment="Set when status becomes paid")
    notes = Column(Text, nullable=True)

    @property
    def natural_key(self) -> tuple:
        return (self.tenant_id, self.property_id, self.payment_month)

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID.value


class MigrationLedgerEntry(Base, BaseModel):
    """
    Completed one-time operations (migrations, reconciliation runs).
    Keyed by operation name; written once, on success.
    """
    __tablename__ = 'migrations'

    filename = Column(String(255), primary_key=True, comment="Operation name")
    executed_at = Column(DateTime, nullable=False, default=datetime.utcnow)


def create_tables(engine):
    """Create payment store and ledger tables if they don't exist."""
    Base.metadata.create_all(engine)


def drop_tables(engine):
    """Drop all tables (use with caution!)."""
    Base.metadata.drop_all(engine)
