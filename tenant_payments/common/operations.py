"""
Payment store operations used by application writers.

Writers go through PaymentRepository so that payment creation honours the
natural-key contract: a uniqueness violation on (tenant_id, property_id,
payment_month) means "another writer created it first", never a crash.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .date_utils import normalize_payment_month
from .errors import StoreErrorKind, classify_store_error
from .models import PaymentRecord, PaymentStatus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnsureResult:
    """Outcome of ensuring one tenant's payment record for a month."""
    payment_id: int
    tenant_id: int
    payment_month: date
    created: bool


class PaymentRepository:
    """
    Repository for tenant payment records.

    Operates inside the caller's session; the caller owns commit/rollback
    (use SessionManager.session_scope()).
    """

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, payment_id: int) -> Optional[PaymentRecord]:
        return self.session.get(PaymentRecord, payment_id)

    def get_by_natural_key(self, tenant_id: int, property_id: int, payment_month) -> Optional[PaymentRecord]:
        """
        Fetch the payment for a natural key.

        On a not-yet-reconciled table several rows may match; the lowest id is returned.
        """
        month = normalize_payment_month(payment_month)
        return (
            self.session.query(PaymentRecord)
            .filter_by(tenant_id=tenant_id, property_id=property_id, payment_month=month)
            .order_by(PaymentRecord.id)
            .first()
        )

    def list_for_month(self, payment_month, property_id: Optional[int] = None) -> List[PaymentRecord]:
        month = normalize_payment_month(payment_month)
        query = self.session.query(PaymentRecord).filter(PaymentRecord.payment_month == month)
        if property_id is not None:
            query = query.filter(PaymentRecord.property_id == property_id)
        return query.order_by(PaymentRecord.tenant_id, PaymentRecord.property_id, PaymentRecord.id).all()

    def ensure_payment_records(
        self,
        tenant_ids: Iterable[int],
        property_id: int,
        payment_month,
        amount: Decimal
    ) -> List[EnsureResult]:
        """
        Make sure each tenant has a payment record for the month.

        An existing record is reused whatever its status. New records start as
        pending with the given amount.

        Args:
            tenant_ids: Tenants to ensure records for
            property_id: Property the payments belong to
            payment_month: Month (date, datetime or 'YYYY-MM' string)
            amount: Monthly amount for newly created records

        Returns:
            List[EnsureResult]: One entry per tenant, in input order
        """
        month = normalize_payment_month(payment_month)
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")

        results = []
        for tenant_id in tenant_ids:
            existing = self.get_by_natural_key(tenant_id, property_id, month)
            if existing is not None:
                logger.debug(
                    f"Tenant {tenant_id} already has payment {existing.id} for "
                    f"{month.isoformat()} ({existing.status})"
                )
                results.append(EnsureResult(existing.id, tenant_id, month, created=False))
                continue

            record = PaymentRecord(
                tenant_id=tenant_id,
                property_id=property_id,
                payment_month=month,
                amount=amount,
                status=PaymentStatus.PENDING.value,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(record)
            except IntegrityError as e:
                if classify_store_error(e) is not StoreErrorKind.CONSTRAINT_VIOLATION_DUE_TO_DATA:
                    raise
                existing = self.get_by_natural_key(tenant_id, property_id, month)
                if existing is None:
                    raise
                logger.info(
                    f"Payment for tenant {tenant_id}, property {property_id}, "
                    f"{month.isoformat()} was created concurrently (id {existing.id})"
                )
                results.append(EnsureResult(existing.id, tenant_id, month, created=False))
                continue

            logger.info(f"Created payment {record.id} for tenant {tenant_id}, {month.isoformat()}")
            results.append(EnsureResult(record.id, tenant_id, month, created=True))

        return results

    def update_status(
        self,
        payment_id: int,
        status: str,
        notes: Optional[str] = None,
        paid_at: Optional[datetime] = None
    ) -> Optional[PaymentRecord]:
        """
        Change a payment's status.

        payment_date is set when the payment becomes paid and cleared for any
        other status.

        Returns:
            The updated record, or None if no payment has that id

        Raises:
            ValueError: If status is not pending, paid or overdue
        """
        if status not in PaymentStatus.values():
            raise ValueError(f"Invalid status value: {status!r}")

        record = self.get_by_id(payment_id)
        if record is None:
            return None

        record.status = status
        if notes is not None:
            record.notes = notes
        record.payment_date = (paid_at or datetime.utcnow()) if status == PaymentStatus.PAID.value else None

        self.session.flush()
        logger.debug(f"Payment {payment_id} status -> {status}")
        return record

    def count(self) -> int:
        return self.session.query(PaymentRecord).count()
