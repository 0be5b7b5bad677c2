"""Group membership drift detection."""

from dataclasses import dataclass, field
from typing import AbstractSet, FrozenSet, List


@dataclass(frozen=True)
class GroupDiff:
    """Membership edges to add and remove for one user"""
    to_add: FrozenSet[str] = field(default_factory=frozenset)
    to_remove: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def empty(self) -> bool:
        return not self.to_add and not self.to_remove

    def additions(self) -> List[str]:
        return sorted(self.to_add)

    def removals(self) -> List[str]:
        return sorted(self.to_remove)


def diff_groups(
    desired: AbstractSet[str],
    baseline: AbstractSet[str],
    current: AbstractSet[str],
    managed: AbstractSet[str] = frozenset(),
) -> GroupDiff:
    """
    Detect drift between desired and actual group membership

    Only groups in `managed` (memberships the controller itself added) are
    ever candidates for removal, and never while they are desired or
    baseline.

    Args:
        desired: Groups requested by the resource
        baseline: Groups every service user of this kind must belong to
        current: Groups the user belongs to in the directory
        managed: Groups the controller has a record of adding

    Returns:
        GroupDiff with the edges to add and remove
    """
    wanted = set(desired) | set(baseline)
    to_add = wanted - set(current)
    to_remove = (set(managed) & set(current)) - wanted
    return GroupDiff(to_add=frozenset(to_add), to_remove=frozenset(to_remove))
