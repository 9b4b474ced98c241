"""Reconciler: batching, deletion, failure isolation and post-check."""

import sqlite3
import threading
from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from tenant_payments.common import PaymentRepository, StoreErrorKind, TieBreakMode
from tenant_payments.reconciliation import MonthScope, NaturalKey, PaymentSnapshot, Reconciler, Resolution, pack_batches
from tenant_payments.reconciliation import reconciler as reconciler_module

from .conftest import OCTOBER, SEPTEMBER, T0, T1, T2


def resolution(keep_id, *delete_ids):
    return Resolution(NaturalKey(keep_id, 1, OCTOBER), keep_id, tuple(delete_ids), (keep_id,) + tuple(delete_ids))


def seed_duplicates(add_payment, tenants, copies=2, payment_month=OCTOBER):
    for tenant_id in tenants:
        for _ in range(copies):
            add_payment(tenant_id=tenant_id, payment_month=payment_month)


class TestPackBatches:

    def test_groups_are_never_split(self):
        resolutions = [resolution(1, 2, 3), resolution(4, 5, 6), resolution(7, 8)]
        batches = pack_batches(resolutions, batch_size=3)

        assert [[r.keep_id for r in b] for b in batches] == [[1], [4, 7]]

    def test_oversize_group_gets_own_batch(self):
        resolutions = [resolution(1, 2), resolution(10, 11, 12, 13, 14), resolution(20, 21)]
        batches = pack_batches(resolutions, batch_size=2)

        assert [[r.keep_id for r in b] for b in batches] == [[1], [10], [20]]

    def test_keep_ids_never_in_batch_deletes(self):
        resolutions = [resolution(i * 10, i * 10 + 1, i * 10 + 2) for i in range(1, 8)]
        for batch in pack_batches(resolutions, batch_size=5):
            deletes = {i for r in batch for i in r.delete_ids}
            assert not deletes & {r.keep_id for r in batch}
            assert len(deletes) <= 5

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            pack_batches([], batch_size=0)


def test_paid_record_survives(session_manager, add_payment, payment_ids):
    add_payment(id=10, status='pending', created_at=T0)
    add_payment(id=11, status='paid', created_at=T1)

    outcome = Reconciler(session_manager).run()

    assert payment_ids() == {11}
    assert outcome.records_deleted == 1
    assert outcome.deleted_ids == [10]
    assert outcome.groups_remaining_after == 0


def test_newest_pending_survives(session_manager, add_payment, payment_ids):
    add_payment(id=20, created_at=T0)
    add_payment(id=21, created_at=T1)
    add_payment(id=22, created_at=T2)

    Reconciler(session_manager, TieBreakMode.NEWEST_WINS).run()

    assert payment_ids() == {22}


def test_lowest_id_mode(session_manager, add_payment, payment_ids):
    add_payment(id=20, created_at=T0)
    add_payment(id=21, created_at=T1)
    add_payment(id=22, created_at=T2)

    Reconciler(session_manager, TieBreakMode.LOWEST_ID_WINS).run()

    assert payment_ids() == {20}


def test_exactly_one_survivor_per_group(session_manager, add_payment, payment_ids):
    for tenant_id, copies in ((1, 2), (2, 3), (3, 5)):
        seed_duplicates(add_payment, [tenant_id], copies=copies)
    add_payment(tenant_id=4)
    before = len(payment_ids())

    outcome = Reconciler(session_manager, batch_size=2).run()

    assert outcome.groups_found == 3
    assert outcome.groups_processed == 3
    assert outcome.records_deleted == (2 - 1) + (3 - 1) + (5 - 1)
    assert len(payment_ids()) == before - outcome.records_deleted == 4
    assert outcome.is_clean


def test_second_run_is_a_no_op(session_manager, add_payment):
    seed_duplicates(add_payment, [1, 2, 3])
    reconciler = Reconciler(session_manager)

    first = reconciler.run()
    second = reconciler.run()

    assert first.records_deleted == 3
    assert second.records_deleted == 0
    assert second.groups_found == 0
    assert second.groups_remaining_after == 0


def test_scoped_run_leaves_other_months_alone(session_manager, add_payment, payment_ids):
    october = [add_payment(payment_month=OCTOBER) for _ in range(2)]
    september = [add_payment(payment_month=SEPTEMBER) for _ in range(2)]
    november = [add_payment(payment_month=date(2025, 11, 1)) for _ in range(2)]

    outcome = Reconciler(session_manager).run(MonthScope.from_prefix('2025-10'))

    remaining = payment_ids()
    assert len(set(october) & remaining) == 1
    assert set(september) <= remaining
    assert set(november) <= remaining
    assert outcome.groups_remaining_after == 0


def test_dry_run_deletes_nothing(session_manager, add_payment, payment_ids):
    seed_duplicates(add_payment, [1, 2], copies=3)
    before = payment_ids()

    outcome = Reconciler(session_manager).run(dry_run=True)

    assert payment_ids() == before
    assert outcome.dry_run
    assert outcome.planned_deletes == 4
    assert outcome.records_deleted == 0
    assert outcome.groups_remaining_after == 2
    assert not outcome.is_clean


def test_unrankable_group_is_skipped(session_manager, add_payment, payment_ids):
    add_payment(id=1, tenant_id=1, status='pending')
    add_payment(id=2, tenant_id=1, status='refunded')
    add_payment(id=3, tenant_id=2, created_at=T0)
    add_payment(id=4, tenant_id=2, created_at=T1)

    outcome = Reconciler(session_manager).run()

    assert outcome.groups_skipped == [NaturalKey(1, 1, OCTOBER)]
    assert payment_ids() == {1, 2, 4}
    assert outcome.groups_remaining_after == 1
    assert not outcome.is_clean


def test_cancel_between_batches(session_manager, add_payment, payment_ids):
    seed_duplicates(add_payment, [1, 2])
    before = payment_ids()
    cancel = threading.Event()
    cancel.set()

    outcome = Reconciler(session_manager, batch_size=1).run(cancel_event=cancel)

    assert outcome.cancelled
    assert outcome.records_deleted == 0
    assert payment_ids() == before
    assert outcome.groups_remaining_after == 2


def _failing_first_batch(monkeypatch, orig_error):
    original = Reconciler._apply_batch
    calls = {'count': 0}

    def apply_batch(self, session, batch):
        calls['count'] += 1
        if calls['count'] == 1:
            raise OperationalError("DELETE FROM tenant_payments", {}, orig_error)
        return original(self, session, batch)

    monkeypatch.setattr(Reconciler, '_apply_batch', apply_batch)
    return calls


def test_transient_batch_failure_does_not_stop_run(monkeypatch, session_manager, add_payment):
    seed_duplicates(add_payment, [1, 2])
    _failing_first_batch(monkeypatch, sqlite3.OperationalError("database is locked"))

    outcome = Reconciler(session_manager, batch_size=1).run()

    assert len(outcome.failed_batches) == 1
    assert outcome.failed_batches[0].kind is StoreErrorKind.TRANSIENT
    assert outcome.failed_batches[0].batch_number == 1
    assert outcome.records_deleted == 1
    assert outcome.groups_remaining_after == 1
    assert not outcome.aborted


def test_fatal_batch_failure_stops_run(monkeypatch, session_manager, add_payment):
    seed_duplicates(add_payment, [1, 2])
    calls = _failing_first_batch(monkeypatch, sqlite3.OperationalError("disk I/O error"))

    outcome = Reconciler(session_manager, batch_size=1).run()

    assert outcome.aborted
    assert calls['count'] == 1
    assert outcome.records_deleted == 0
    assert outcome.groups_remaining_after == 2


def test_group_changed_since_detection_is_re_resolved(monkeypatch, session_manager, add_payment, payment_ids):
    add_payment(id=1, created_at=T0)
    add_payment(id=2, created_at=T1)
    reconciler = Reconciler(session_manager)
    original_plan = reconciler.plan

    def plan_then_pay(detection):
        planned = original_plan(detection)
        # A writer marks the older row paid after detection
        with session_manager.session_scope() as session:
            PaymentRepository(session).update_status(1, 'paid')
        return planned

    monkeypatch.setattr(reconciler, 'plan', plan_then_pay)
    outcome = reconciler.run()

    assert payment_ids() == {1}
    assert outcome.deleted_ids == [2]


def test_records_deleted_counts_rows_the_store_removed(monkeypatch, session_manager, add_payment, payment_ids):
    add_payment(id=1, created_at=T0)
    add_payment(id=2, created_at=T1)
    original_fetch = reconciler_module.fetch_groups_by_key

    def fetch_with_vanished_row(session, keys, lock=False):
        groups = original_fetch(session, keys, lock=lock)
        # Row 999 was read, then deleted by another instance before our DELETE
        for members in groups.values():
            members.append(PaymentSnapshot(id=999, status='pending', created_at=T0))
        return groups

    monkeypatch.setattr(reconciler_module, 'fetch_groups_by_key', fetch_with_vanished_row)
    outcome = Reconciler(session_manager).run()

    assert payment_ids() == {2}
    assert outcome.records_deleted == 1
    assert outcome.deleted_ids == [1]
    assert outcome.groups_remaining_after == 0
