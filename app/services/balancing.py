"""Unit building and unit-to-reviewer distribution for auto-assignment.

A *unit* is a group of applications that must land on the same reviewer:
the collected members of one team, or a single applicant with no team.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..errors import NoReviewersAvailableError


@dataclass(frozen=True)
class AssignmentUnit:
    key: str
    application_ids: Tuple[str, ...]
    team_id: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.application_ids)

    @property
    def is_team(self) -> bool:
        return self.team_id is not None


def build_units(applications: Iterable[Tuple[str, Optional[str]]]) -> List[AssignmentUnit]:
    """Group ``(application_id, team_ref)`` pairs into units.

    Applications sharing a team reference form one unit (only the ones
    present in *applications*); the rest are singletons. Units come back in
    first-seen order.
    """
    grouped: Dict[str, List[str]] = {}
    team_of: Dict[str, Optional[str]] = {}
    for application_id, team_ref in applications:
        if team_ref:
            key = f'team:{team_ref}'
        else:
            key = f'individual:{application_id}'
        grouped.setdefault(key, []).append(application_id)
        team_of[key] = team_ref or None
    return [AssignmentUnit(key, tuple(ids), team_of[key]) for key, ids in grouped.items()]


def sort_units(units: Iterable[AssignmentUnit]) -> List[AssignmentUnit]:
    """Largest first; equal sizes ordered by unit key."""
    return sorted(units, key=lambda u: (-u.size, u.key))


class BalancingStrategy(ABC):
    """Decides which reviewer receives each unit."""

    @abstractmethod
    def distribute(self, units: Sequence[AssignmentUnit], reviewers: Sequence[str],
                   baseline: Optional[Mapping[str, int]] = None
                   ) -> Dict[str, List[AssignmentUnit]]:
        """Return ``{reviewer email: [units]}`` covering every unit exactly once.

        Args:
            units:     Units to distribute.
            reviewers: Reviewer e-mails in registry order.
            baseline:  Starting load per reviewer; missing reviewers start at 0.
        """


class GreedyLeastLoadedStrategy(BalancingStrategy):
    """Largest unit first, to whichever reviewer currently carries the least.

    Load ties go to the reviewer that comes first in registry order. This is
    a heuristic for balanced partitioning, not an optimal solver.
    """

    def distribute(self, units: Sequence[AssignmentUnit], reviewers: Sequence[str],
                   baseline: Optional[Mapping[str, int]] = None
                   ) -> Dict[str, List[AssignmentUnit]]:
        if not reviewers:
            raise NoReviewersAvailableError("No reviewers available to distribute applications")
        start = baseline or {}
        # counters live for this call only
        load = {email: int(start.get(email, 0)) for email in reviewers}
        rank = {email: i for i, email in enumerate(reviewers)}
        result: Dict[str, List[AssignmentUnit]] = {email: [] for email in reviewers}
        for unit in sort_units(units):
            target = min(reviewers, key=lambda email: (load[email], rank[email]))
            result[target].append(unit)
            load[target] += unit.size
        return result
