"""
Duplicate payment reconciliation (detector → policy → reconciler → enforcer → ledger).

Example Usage:
    from tenant_payments.common import SessionManager, create_engine_from_url, get_database_url
    from tenant_payments.reconciliation import reconcile_duplicate_payments

    session_manager = SessionManager(create_engine_from_url(get_database_url()))
    report = reconcile_duplicate_payments(session_manager, month_prefix='2025-10')
    print(report.to_dict())
"""

from .detector import (
    NaturalKey,
    PaymentSnapshot,
    DuplicateGroup,
    MonthScope,
    DetectionResult,
    detect_duplicates,
    fetch_groups_by_key,
)

from .policy import Resolution, rank_members, resolve_group

from .reconciler import BatchFailure, ReconcileOutcome, Reconciler, pack_batches

from .enforcer import ConstraintStatus, InvariantEnforcer

from .ledger import MigrationLedger

from .service import (
    ReconciliationReport,
    ReconciliationService,
    reconcile_duplicate_payments,
    run_startup_reconciliation,
)


__all__ = [
    # Detection
    'NaturalKey',
    'PaymentSnapshot',
    'DuplicateGroup',
    'MonthScope',
    'DetectionResult',
    'detect_duplicates',
    'fetch_groups_by_key',

    # Policy
    'Resolution',
    'rank_members',
    'resolve_group',

    # Reconciler
    'BatchFailure',
    'ReconcileOutcome',
    'Reconciler',
    'pack_batches',

    # Enforcer
    'ConstraintStatus',
    'InvariantEnforcer',

    # Ledger
    'MigrationLedger',

    # Service
    'ReconciliationReport',
    'ReconciliationService',
    'reconcile_duplicate_payments',
    'run_startup_reconciliation',
]
