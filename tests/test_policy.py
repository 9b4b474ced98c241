"""Resolution policy: pure ranking over in-memory snapshots."""

from datetime import date, datetime, timedelta
from itertools import permutations

import pytest

from tenant_payments.common import ResolutionAmbiguityError, TieBreakMode
from tenant_payments.reconciliation import (
    DuplicateGroup,
    NaturalKey,
    PaymentSnapshot,
    rank_members,
    resolve_group,
)


KEY = NaturalKey(1, 1, date(2025, 10, 1))
T0 = datetime(2025, 10, 1, 9, 0)
T1 = T0 + timedelta(hours=1)
T2 = T0 + timedelta(hours=2)


def group(*members):
    return DuplicateGroup(KEY, tuple(members))


def test_paid_row_wins_over_newer_pending():
    resolution = resolve_group(group(
        PaymentSnapshot(10, 'pending', T0),
        PaymentSnapshot(11, 'paid', T1),
    ), TieBreakMode.NEWEST_WINS)

    assert resolution.keep_id == 11
    assert resolution.delete_ids == (10,)


def test_newest_wins_among_equal_status():
    resolution = resolve_group(group(
        PaymentSnapshot(20, 'pending', T0),
        PaymentSnapshot(21, 'pending', T1),
        PaymentSnapshot(22, 'pending', T2),
    ), TieBreakMode.NEWEST_WINS)

    assert resolution.keep_id == 22
    assert resolution.delete_ids == (20, 21)
    assert resolution.ranking == (22, 21, 20)


def test_lowest_id_wins_ignores_created_at():
    resolution = resolve_group(group(
        PaymentSnapshot(20, 'pending', T0),
        PaymentSnapshot(21, 'overdue', T1),
        PaymentSnapshot(22, 'pending', T2),
    ), TieBreakMode.LOWEST_ID_WINS)

    assert resolution.keep_id == 20
    assert resolution.delete_ids == (21, 22)


def test_same_created_at_falls_back_to_lowest_id():
    resolution = resolve_group(group(
        PaymentSnapshot(31, 'pending', T1),
        PaymentSnapshot(30, 'pending', T1),
    ), TieBreakMode.NEWEST_WINS)

    assert resolution.keep_id == 30


def test_missing_created_at_ranks_last():
    ranked = rank_members([
        PaymentSnapshot(40, 'pending', None),
        PaymentSnapshot(41, 'pending', T0),
    ], TieBreakMode.NEWEST_WINS)

    assert [m.id for m in ranked] == [41, 40]


def test_paid_kept_regardless_of_creation_order():
    snapshots = [
        PaymentSnapshot(1, 'pending', T0),
        PaymentSnapshot(2, 'overdue', T1),
        PaymentSnapshot(3, 'paid', T2),
    ]
    for mode in TieBreakMode:
        for order in permutations(snapshots):
            for created in permutations([T0, T1, T2]):
                members = [PaymentSnapshot(s.id, s.status, c) for s, c in zip(order, created)]
                assert resolve_group(group(*members), mode).keep_id == 3


def test_several_paid_rows_keep_one_paid():
    resolution = resolve_group(group(
        PaymentSnapshot(50, 'paid', T0),
        PaymentSnapshot(51, 'paid', T2),
        PaymentSnapshot(52, 'pending', T1),
    ), TieBreakMode.NEWEST_WINS)

    assert resolution.keep_id == 51
    assert set(resolution.delete_ids) == {50, 52}


def test_keep_id_never_in_delete_ids():
    resolution = resolve_group(group(
        PaymentSnapshot(60, 'pending', T0),
        PaymentSnapshot(61, 'pending', T0),
    ), TieBreakMode.NEWEST_WINS)

    assert resolution.keep_id not in resolution.delete_ids
    assert len(resolution.delete_ids) == 1


def test_mode_accepts_config_string():
    resolution = resolve_group(group(
        PaymentSnapshot(70, 'pending', T0),
        PaymentSnapshot(71, 'pending', T1),
    ), 'lowest_id_wins')

    assert resolution.keep_id == 70


def test_empty_group_is_ambiguous():
    with pytest.raises(ResolutionAmbiguityError) as exc_info:
        resolve_group(group(), TieBreakMode.NEWEST_WINS)
    assert exc_info.value.natural_key == KEY


def test_unknown_status_is_ambiguous():
    with pytest.raises(ResolutionAmbiguityError):
        resolve_group(group(
            PaymentSnapshot(80, 'pending', T0),
            PaymentSnapshot(81, 'refunded', T1),
        ), TieBreakMode.NEWEST_WINS)
