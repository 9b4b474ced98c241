"""
Resolution policy: pick the one row of a duplicate group that survives.

Ranking, most preferred first:
    1. status == paid outranks every other status
    2. NEWEST_WINS only: most recent created_at (rows without one rank last)
    3. lowest id

Pure functions over in-memory snapshots; no database access.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Tuple

from ..common.config import TieBreakMode
from ..common.errors import ResolutionAmbiguityError
from ..common.models import PaymentStatus
from .detector import DuplicateGroup, NaturalKey, PaymentSnapshot


@dataclass(frozen=True)
class Resolution:
    """Keep/delete decision for one duplicate group."""
    key: NaturalKey
    keep_id: int
    delete_ids: Tuple[int, ...]
    ranking: Tuple[int, ...]

    @property
    def delete_count(self) -> int:
        return len(self.delete_ids)


def rank_members(members: Iterable[PaymentSnapshot], mode: TieBreakMode) -> List[PaymentSnapshot]:
    """
    Order members from most to least preferred to keep.

    Raises:
        ResolutionAmbiguityError: If a member carries a status outside pending/paid/overdue
    """
    mode = TieBreakMode.parse(mode)
    ranked = list(members)

    valid = PaymentStatus.values()
    for member in ranked:
        if member.status not in valid:
            raise ResolutionAmbiguityError(
                f"Payment {member.id} has unrankable status {member.status!r}"
            )

    # Stable sorts, least significant rule first
    ranked.sort(key=lambda m: m.id)
    if mode is TieBreakMode.NEWEST_WINS:
        ranked.sort(
            key=lambda m: (m.created_at is not None, m.created_at or datetime.min),
            reverse=True,
        )
    ranked.sort(key=lambda m: not m.is_paid)
    return ranked


def resolve_group(group: DuplicateGroup, mode: TieBreakMode) -> Resolution:
    """
    Resolve a duplicate group into one keep_id and the ids to delete.

    Raises:
        ResolutionAmbiguityError: On an empty group or an unrankable status
    """
    if not group.members:
        raise ResolutionAmbiguityError(f"Duplicate group {group.key} has no members", group.key)

    try:
        ranked = rank_members(group.members, mode)
    except ResolutionAmbiguityError as e:
        raise ResolutionAmbiguityError(f"{group.key}: {e}", group.key) from e

    keep = ranked[0]
    return Resolution(
        key=group.key,
        keep_id=keep.id,
        delete_ids=tuple(sorted(m.id for m in ranked[1:])),
        ranking=tuple(m.id for m in ranked),
    )
