"""
Duplicate detection over the payment store.

Groups tenant_payments rows by the natural key (tenant_id, property_id,
payment_month) and returns every group with more than one member. Read-only.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from itertools import groupby
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..common.date_utils import add_months, format_month, parse_month_prefix
from ..common.errors import DetectionError
from ..common.models import PaymentRecord, PaymentStatus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NaturalKey:
    """(tenant_id, property_id, payment_month)"""
    tenant_id: int
    property_id: int
    payment_month: date

    def __str__(self) -> str:
        return f"tenant {self.tenant_id}, property {self.property_id}, month {format_month(self.payment_month)}"


@dataclass(frozen=True)
class PaymentSnapshot:
    """The fields of a payment row the resolution policy ranks on."""
    id: int
    status: str
    created_at: Optional[datetime]
    amount: Optional[Decimal] = None

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID.value


@dataclass(frozen=True)
class DuplicateGroup:
    """Rows sharing one natural key."""
    key: NaturalKey
    members: Tuple[PaymentSnapshot, ...]

    @property
    def member_ids(self) -> Tuple[int, ...]:
        return tuple(sorted(m.id for m in self.members))

    @property
    def size(self) -> int:
        return len(self.members)


@dataclass(frozen=True)
class MonthScope:
    """
    Half-open [start, end) range of payment months to scan.
    Both bounds None means the whole table.
    """
    start: Optional[date] = None
    end: Optional[date] = None
    label: str = 'all'

    @classmethod
    def everything(cls) -> 'MonthScope':
        return cls()

    @classmethod
    def from_prefix(cls, month_prefix: Optional[str]) -> 'MonthScope':
        """'2025' -> that year, '2025-10' -> that month; None/'' -> everything."""
        if not month_prefix:
            return cls.everything()
        start, end = parse_month_prefix(month_prefix)
        return cls(start=start, end=end, label=month_prefix.strip())

    @classmethod
    def between(cls, first_month: date, last_month: date) -> 'MonthScope':
        """Inclusive month range, e.g. between(date(2025, 1, 1), date(2025, 3, 1))."""
        start = date(first_month.year, first_month.month, 1)
        end = add_months(date(last_month.year, last_month.month, 1), 1)
        if end <= start:
            raise ValueError(f"Empty month range: {first_month} .. {last_month}")
        return cls(start=start, end=end, label=f"{format_month(start)}..{format_month(last_month)}")

    @property
    def is_full(self) -> bool:
        return self.start is None and self.end is None

    def apply(self, query, column):
        """Restrict a query on the given payment_month column."""
        if self.start is not None:
            query = query.filter(column >= self.start)
        if self.end is not None:
            query = query.filter(column < self.end)
        return query

    def contains(self, payment_month: date) -> bool:
        if self.start is not None and payment_month < self.start:
            return False
        if self.end is not None and payment_month >= self.end:
            return False
        return True

    def __str__(self) -> str:
        return self.label


@dataclass
class DetectionResult:
    """Duplicate groups found in one scan."""
    scope: MonthScope
    groups: List[DuplicateGroup] = field(default_factory=list)

    @property
    def group_count(self) -> int:
        return len(self.groups)

    @property
    def record_count(self) -> int:
        """Total rows that belong to a duplicate group."""
        return sum(g.size for g in self.groups)

    @property
    def excess_count(self) -> int:
        """Rows that would be removed if every group kept exactly one."""
        return self.record_count - self.group_count

    @property
    def is_clean(self) -> bool:
        return not self.groups


def _snapshot(row) -> PaymentSnapshot:
    return PaymentSnapshot(id=row.id, status=row.status, created_at=row.created_at, amount=row.amount)


def detect_duplicates(session: Session, scope: Optional[MonthScope] = None) -> DetectionResult:
    """
    Find every natural key with more than one payment row.

    Args:
        session: SQLAlchemy session
        scope: Optional month range; rows outside it are never read

    Returns:
        DetectionResult: groups ordered by tenant, property, month; members by id

    Raises:
        DetectionError: If the store cannot be queried
    """
    scope = scope or MonthScope.everything()

    try:
        dup_keys = session.query(
            PaymentRecord.tenant_id,
            PaymentRecord.property_id,
            PaymentRecord.payment_month,
        )
        dup_keys = scope.apply(dup_keys, PaymentRecord.payment_month)
        dup_keys = (
            dup_keys
            .group_by(PaymentRecord.tenant_id, PaymentRecord.property_id, PaymentRecord.payment_month)
            .having(func.count(PaymentRecord.id) > 1)
            .subquery()
        )

        rows = (
            session.query(
                PaymentRecord.id,
                PaymentRecord.tenant_id,
                PaymentRecord.property_id,
                PaymentRecord.payment_month,
                PaymentRecord.status,
                PaymentRecord.created_at,
                PaymentRecord.amount,
            )
            .join(dup_keys, and_(
                PaymentRecord.tenant_id == dup_keys.c.tenant_id,
                PaymentRecord.property_id == dup_keys.c.property_id,
                PaymentRecord.payment_month == dup_keys.c.payment_month,
            ))
            .order_by(
                PaymentRecord.tenant_id,
                PaymentRecord.property_id,
                PaymentRecord.payment_month,
                PaymentRecord.id,
            )
            .all()
        )
    except SQLAlchemyError as e:
        raise DetectionError(f"Duplicate detection failed (scope={scope}): {e}") from e

    groups = []
    for key_values, members in groupby(rows, key=lambda r: (r.tenant_id, r.property_id, r.payment_month)):
        groups.append(DuplicateGroup(
            key=NaturalKey(*key_values),
            members=tuple(_snapshot(r) for r in members),
        ))

    result = DetectionResult(scope=scope, groups=groups)
    logger.info(
        f"Duplicate scan (scope={scope}): {result.group_count} groups, "
        f"{result.record_count} records, {result.excess_count} excess"
    )
    return result


def fetch_groups_by_key(
    session: Session,
    keys: Iterable[NaturalKey],
    lock: bool = False
) -> Dict[NaturalKey, List[PaymentSnapshot]]:
    """
    Re-read the current rows of the given natural keys.

    Used inside a deletion transaction so each group is decided on what the
    store holds now, including rows written since detection. With lock=True
    the rows are read with SELECT ... FOR UPDATE.

    Returns:
        dict: key -> members ordered by id (keys with no rows map to [])
    """
    keys = list(keys)
    if not keys:
        return {}

    query = session.query(
        PaymentRecord.id,
        PaymentRecord.tenant_id,
        PaymentRecord.property_id,
        PaymentRecord.payment_month,
        PaymentRecord.status,
        PaymentRecord.created_at,
        PaymentRecord.amount,
    ).filter(or_(*[
        and_(
            PaymentRecord.tenant_id == key.tenant_id,
            PaymentRecord.property_id == key.property_id,
            PaymentRecord.payment_month == key.payment_month,
        )
        for key in keys
    ])).order_by(PaymentRecord.id)
    if lock:
        query = query.with_for_update()

    current: Dict[NaturalKey, List[PaymentSnapshot]] = {key: [] for key in keys}
    for row in query.all():
        key = NaturalKey(row.tenant_id, row.property_id, row.payment_month)
        if key in current:
            current[key].append(_snapshot(row))
    return current
