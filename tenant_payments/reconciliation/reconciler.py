"""
Reconciler: delete the losing rows of every duplicate group.

Groups are packed whole into batches; each batch is one transaction that
re-reads its groups, re-resolves them on the fresh rows and deletes only the
losers. A failed batch rolls back alone and earlier batches stay committed.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from tqdm import tqdm

from ..common.config import TieBreakMode
from ..common.errors import DeletionError, ResolutionAmbiguityError, StoreErrorKind, classify_store_error
from ..common.models import PaymentRecord
from ..common.session import SessionManager
from .detector import DetectionResult, DuplicateGroup, MonthScope, NaturalKey, detect_duplicates, fetch_groups_by_key
from .policy import Resolution, resolve_group


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchFailure:
    """A deletion batch whose transaction was rolled back."""
    batch_number: int
    payment_ids: Tuple[int, ...]
    kind: StoreErrorKind
    message: str


@dataclass
class ReconcileOutcome:
    """What one reconciler run actually did."""
    scope: MonthScope
    dry_run: bool = False
    groups_found: int = 0
    groups_processed: int = 0
    records_deleted: int = 0
    planned_deletes: int = 0
    groups_remaining_after: int = 0
    groups_skipped: List[NaturalKey] = field(default_factory=list)
    failed_batches: List[BatchFailure] = field(default_factory=list)
    deleted_ids: List[int] = field(default_factory=list)
    cancelled: bool = False
    aborted: bool = False

    @property
    def is_clean(self) -> bool:
        return (
            not self.dry_run
            and self.groups_remaining_after == 0
            and not self.failed_batches
            and not self.cancelled
            and not self.aborted
        )


def pack_batches(resolutions: List[Resolution], batch_size: int) -> List[List[Resolution]]:
    """
    Pack whole groups into batches of at most batch_size delete ids.

    A group is never split; a group with more losers than batch_size gets a
    batch of its own.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")

    batches: List[List[Resolution]] = []
    current: List[Resolution] = []
    current_size = 0

    for resolution in resolutions:
        size = resolution.delete_count
        if current and current_size + size > batch_size:
            batches.append(current)
            current, current_size = [], 0
        current.append(resolution)
        current_size += size

    if current:
        batches.append(current)
    return batches


class Reconciler:
    """
    Applies the resolution policy to every duplicate group and deletes the losers.

    Example:
        reconciler = Reconciler(session_manager, TieBreakMode.NEWEST_WINS, batch_size=100)
        outcome = reconciler.run(MonthScope.from_prefix('2025-10'))
    """

    def __init__(
        self,
        session_manager: SessionManager,
        tie_break: TieBreakMode = TieBreakMode.NEWEST_WINS,
        batch_size: int = 100,
        show_progress: bool = False
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.session_manager = session_manager
        self.tie_break = TieBreakMode.parse(tie_break)
        self.batch_size = batch_size
        self.show_progress = show_progress

    def plan(self, detection: DetectionResult) -> Tuple[List[Resolution], List[NaturalKey]]:
        """
        Resolve every detected group.

        Returns:
            (resolutions, skipped keys); ambiguous groups are logged and skipped
        """
        resolutions = []
        skipped = []
        for group in detection.groups:
            try:
                resolutions.append(resolve_group(group, self.tie_break))
            except ResolutionAmbiguityError as e:
                logger.warning(f"Skipping duplicate group, manual review needed: {e}")
                skipped.append(group.key)
        return resolutions, skipped

    def _apply_batch(self, session: Session, batch: List[Resolution]) -> Tuple[List[int], int, int, List[NaturalKey]]:
        """
        Re-resolve the batch's groups on current rows and delete the losers.

        Returns:
            (ids removed, rows the store reported deleted, groups resolved,
            groups skipped as ambiguous)
        """
        current = fetch_groups_by_key(
            session,
            [r.key for r in batch],
            lock=self.session_manager.supports_row_locks,
        )

        delete_ids: List[int] = []
        processed = 0
        skipped: List[NaturalKey] = []

        for planned in batch:
            members = current.get(planned.key, [])
            if len(members) < 2:
                logger.info(f"{planned.key}: already resolved by another writer")
                continue

            try:
                resolution = resolve_group(DuplicateGroup(planned.key, tuple(members)), self.tie_break)
            except ResolutionAmbiguityError as e:
                logger.warning(f"Skipping duplicate group, manual review needed: {e}")
                skipped.append(planned.key)
                continue

            if resolution.keep_id != planned.keep_id:
                logger.info(f"{planned.key}: rows changed since detection, keeping {resolution.keep_id}")
            logger.info(f"{planned.key}: keep {resolution.keep_id}, delete {list(resolution.delete_ids)}")
            delete_ids.extend(resolution.delete_ids)
            processed += 1

        removed_ids: List[int] = []
        removed = 0
        if delete_ids:
            # Rows another writer deleted since the re-read are not counted
            removed_ids = [
                row.id for row in
                session.query(PaymentRecord.id)
                .filter(PaymentRecord.id.in_(delete_ids))
                .order_by(PaymentRecord.id)
            ]
            removed = (
                session.query(PaymentRecord)
                .filter(PaymentRecord.id.in_(delete_ids))
                .delete(synchronize_session=False)
            )
            if removed != len(delete_ids):
                logger.warning(
                    f"Expected to delete {len(delete_ids)} rows, store reported {removed}; "
                    f"the rest were already gone"
                )

        return removed_ids, removed, processed, skipped

    def run(
        self,
        scope: Optional[MonthScope] = None,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None
    ) -> ReconcileOutcome:
        """
        Detect, resolve and delete duplicates within scope.

        Args:
            scope: Month range to reconcile (default: whole table)
            dry_run: Plan and report without deleting anything
            cancel_event: Checked between batches; set it to stop after the current batch

        Returns:
            ReconcileOutcome

        Raises:
            DetectionError: If the initial scan or the post-check cannot query the store
        """
        scope = scope or MonthScope.everything()
        outcome = ReconcileOutcome(scope=scope, dry_run=dry_run)

        with self.session_manager.session_scope() as session:
            detection = detect_duplicates(session, scope)

        outcome.groups_found = detection.group_count
        if detection.is_clean:
            logger.info(f"No duplicate payments (scope={scope}), nothing to do")
            return outcome

        resolutions, skipped = self.plan(detection)
        outcome.groups_skipped.extend(skipped)
        outcome.planned_deletes = sum(r.delete_count for r in resolutions)

        if dry_run:
            for resolution in resolutions:
                logger.info(
                    f"[dry run] {resolution.key}: would keep {resolution.keep_id}, "
                    f"delete {list(resolution.delete_ids)}"
                )
            outcome.groups_processed = len(resolutions)
            outcome.groups_remaining_after = detection.group_count
            return outcome

        batches = pack_batches(resolutions, self.batch_size)
        logger.info(
            f"Reconciling {len(resolutions)} groups ({outcome.planned_deletes} rows) "
            f"in {len(batches)} batches of up to {self.batch_size}"
        )

        with tqdm(total=len(batches), desc="Reconciling", unit="batch",
                  disable=not self.show_progress) as pbar:
            for batch_number, batch in enumerate(batches, start=1):
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Cancelled before batch {batch_number}/{len(batches)}")
                    outcome.cancelled = True
                    break

                batch_ids = [i for r in batch for i in r.delete_ids]
                try:
                    with self.session_manager.session_scope() as session:
                        deleted_ids, deleted, processed, batch_skipped = self._apply_batch(session, batch)
                except SQLAlchemyError as e:
                    error = DeletionError(
                        f"Batch {batch_number} rolled back: {e}",
                        batch_number=batch_number,
                        payment_ids=batch_ids,
                        kind=classify_store_error(e),
                    )
                    logger.error(f"{error} (payment ids {list(error.payment_ids)}, kind={error.kind.value})")
                    outcome.failed_batches.append(
                        BatchFailure(batch_number, error.payment_ids, error.kind, str(e))
                    )
                    if error.kind is StoreErrorKind.FATAL:
                        logger.error("Fatal store error, stopping reconciliation")
                        outcome.aborted = True
                        break
                    continue
                finally:
                    pbar.update(1)

                outcome.deleted_ids.extend(deleted_ids)
                outcome.records_deleted += deleted
                outcome.groups_processed += processed
                outcome.groups_skipped.extend(batch_skipped)

        with self.session_manager.session_scope() as session:
            remaining = detect_duplicates(session, scope)
        outcome.groups_remaining_after = remaining.group_count

        if remaining.group_count:
            logger.warning(
                f"{remaining.group_count} duplicate groups remain after reconciliation "
                f"(scope={scope}); re-run or investigate"
            )
        logger.info(
            f"Reconciliation finished: {outcome.groups_processed} groups, "
            f"{outcome.records_deleted} rows deleted, {outcome.groups_remaining_after} groups remaining"
        )
        return outcome
