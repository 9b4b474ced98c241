"""
The reconcile-duplicate-payments operation and its startup hook.

Invoked from three places: service startup (ledger-guarded), the admin CLI and
the scheduled job. All of them return a ReconciliationReport.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..common.config import ReconciliationConfig
from ..common.errors import ConstraintViolation
from ..common.session import SessionManager
from .detector import MonthScope, detect_duplicates
from .enforcer import InvariantEnforcer
from .ledger import MigrationLedger
from .reconciler import ReconcileOutcome, Reconciler


logger = logging.getLogger(__name__)


# Report states
STATE_CLEAN = 'clean'
STATE_PARTIALLY_CLEANED = 'partially_cleaned'
STATE_CONSTRAINT_MISSING = 'clean_constraint_missing'
STATE_DRY_RUN = 'dry_run'
STATE_SKIPPED = 'skipped'

# constraint_status values beyond ConstraintStatus
CONSTRAINT_PRESENT = 'present'
CONSTRAINT_MISSING = 'missing'
CONSTRAINT_BLOCKED = 'blocked_by_duplicates'


@dataclass
class ReconciliationReport:
    """Structured result of one reconciliation invocation."""
    groups_found: int = 0
    records_deleted: int = 0
    groups_remaining: int = 0
    constraint_installed: bool = False
    constraint_status: str = CONSTRAINT_MISSING
    groups_skipped: int = 0
    failed_batches: int = 0
    cancelled: bool = False
    ledger_skipped: bool = False
    dry_run: bool = False
    scope: str = 'all'

    @property
    def state(self) -> str:
        if self.ledger_skipped:
            return STATE_SKIPPED
        if self.dry_run:
            return STATE_DRY_RUN
        if self.groups_remaining or self.groups_skipped or self.failed_batches or self.cancelled:
            return STATE_PARTIALLY_CLEANED
        if not self.constraint_installed:
            return STATE_CONSTRAINT_MISSING
        return STATE_CLEAN

    @classmethod
    def from_outcome(cls, outcome: ReconcileOutcome) -> 'ReconciliationReport':
        return cls(
            groups_found=outcome.groups_found,
            records_deleted=outcome.records_deleted,
            groups_remaining=outcome.groups_remaining_after,
            groups_skipped=len(outcome.groups_skipped),
            failed_batches=len(outcome.failed_batches),
            cancelled=outcome.cancelled or outcome.aborted,
            dry_run=outcome.dry_run,
            scope=str(outcome.scope),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Machine-readable form (camelCase keys)."""
        return {
            'groupsFound': self.groups_found,
            'recordsDeleted': self.records_deleted,
            'groupsRemaining': self.groups_remaining,
            'constraintInstalled': self.constraint_installed,
            'constraintStatus': self.constraint_status,
            'groupsSkipped': self.groups_skipped,
            'failedBatches': self.failed_batches,
            'cancelled': self.cancelled,
            'ledgerSkipped': self.ledger_skipped,
            'dryRun': self.dry_run,
            'scope': self.scope,
            'state': self.state,
        }


class ReconciliationService:
    """
    Wires detector, reconciler, enforcer and ledger into one idempotent operation.

    Scoped runs (month_prefix given) only clean their months: they never
    install the constraint and never write the ledger.
    """

    def __init__(self, session_manager: SessionManager, config: Optional[ReconciliationConfig] = None):
        self.session_manager = session_manager
        self.config = config or ReconciliationConfig()
        self.reconciler = Reconciler(
            session_manager,
            tie_break=self.config.tie_break,
            batch_size=self.config.batch_size,
            show_progress=self.config.show_progress,
        )
        self.enforcer = InvariantEnforcer(session_manager.engine)
        self.ledger = MigrationLedger(session_manager)

    def reconcile(
        self,
        month_prefix: Optional[str] = None,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None
    ) -> ReconciliationReport:
        """
        Reconcile duplicate payments.

        Args:
            month_prefix: Restrict to 'YYYY', 'YYYY-MM' or 'YYYY-MM-DD' (that date's month)
            dry_run: Report what would be deleted, change nothing
            cancel_event: Stops the run between deletion batches

        Raises:
            ValueError: Invalid month_prefix
            DetectionError: The store could not be scanned
            ConstraintInstallError: The index install failed for a reason other than duplicates
        """
        scope = MonthScope.from_prefix(month_prefix)
        logger.info(
            f"Reconciling duplicate payments (scope={scope}, tie_break={self.config.tie_break.value}, "
            f"dry_run={dry_run})"
        )

        outcome = self.reconciler.run(scope, dry_run=dry_run, cancel_event=cancel_event)
        report = ReconciliationReport.from_outcome(outcome)

        may_install = (
            scope.is_full
            and not dry_run
            and self.config.install_constraint
            and outcome.groups_remaining_after == 0
            and not outcome.aborted
            and not outcome.cancelled
        )
        if may_install:
            try:
                report.constraint_status = self.enforcer.install().value
                report.constraint_installed = True
            except ConstraintViolation as e:
                # Duplicates reappeared after the post-check
                logger.warning(f"Constraint not installed: {e}")
                report.constraint_status = CONSTRAINT_BLOCKED
                report.constraint_installed = False
                with self.session_manager.session_scope() as session:
                    report.groups_remaining = detect_duplicates(session, scope).group_count
        else:
            report.constraint_installed = self.enforcer.constraint_exists()
            report.constraint_status = CONSTRAINT_PRESENT if report.constraint_installed else CONSTRAINT_MISSING

        if scope.is_full and report.state == STATE_CLEAN:
            self.ledger.ensure_table()
            self.ledger.record_run(self.config.ledger_operation)

        log = logger.info if report.state in (STATE_CLEAN, STATE_DRY_RUN) else logger.warning
        log(f"Reconciliation report ({report.state}): {report.to_dict()}")
        return report

    def run_on_startup(self, force: bool = False) -> Optional[ReconciliationReport]:
        """
        Startup hook: full reconciliation unless the ledger says it already ran.

        Returns:
            The report, or None when startup reconciliation is disabled
        """
        if not self.config.run_on_startup and not force:
            logger.info("Startup reconciliation disabled")
            return None

        name = self.config.ledger_operation
        self.ledger.ensure_table()
        if not force and self.ledger.has_run(name):
            logger.info(f"Ledger: {name} already executed, skipping startup reconciliation")
            installed = self.enforcer.constraint_exists()
            return ReconciliationReport(
                constraint_installed=installed,
                constraint_status=CONSTRAINT_PRESENT if installed else CONSTRAINT_MISSING,
                ledger_skipped=True,
            )

        return self.reconcile()


def reconcile_duplicate_payments(
    session_manager: SessionManager,
    month_prefix: Optional[str] = None,
    config: Optional[ReconciliationConfig] = None,
    dry_run: bool = False
) -> ReconciliationReport:
    """Run one reconciliation; see ReconciliationService.reconcile."""
    return ReconciliationService(session_manager, config).reconcile(month_prefix, dry_run=dry_run)


def run_startup_reconciliation(
    session_manager: SessionManager,
    config: Optional[ReconciliationConfig] = None,
    force: bool = False
) -> Optional[ReconciliationReport]:
    """Ledger-guarded reconciliation for service startup."""
    return ReconciliationService(session_manager, config).run_on_startup(force=force)
