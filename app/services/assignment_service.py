"""Reviewer assignment: bulk auto-assignment and manual assignment.

Both keep the two stored sides of the reviewer relation in step:
``application.reviewer_ref`` and ``reviewer.assigned_applications``. Both
run under the ``"assignment"`` lock so their read-decide-write windows never
interleave.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from database import UNASSIGNED, session_scope, utcnow
from ..errors import (NoReviewersAvailableError, NotFoundError,
                      PrivilegeRequiredError, ValidationError)
from ..locks import ASSIGNMENT_LOCK, LockRegistry
from ..repositories.application_repository import ApplicationRepository
from ..repositories.reviewer_repository import ReviewerRepository
from ..repositories.team_repository import TeamRepository
from ..unit_of_work import UnitOfWork, WritePlan
from .balancing import BalancingStrategy, GreedyLeastLoadedStrategy, build_units

logger = logging.getLogger('hackreview.assignment')


@dataclass
class ReviewerStat:
    reviewer: str
    new_assignments: int
    total_assignments: int


@dataclass
class AutoAssignResult:
    total_assigned: int = 0
    reviewer_stats: List[ReviewerStat] = field(default_factory=list)
    teams_assigned: int = 0
    individuals_assigned: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ManualAssignResult:
    reviewer: str
    total_assigned: int
    team_members_added: int
    assigned_applications: List[str]

    def to_dict(self) -> Dict:
        return asdict(self)


class AssignmentService:
    """Distributes applications to reviewers.

    Args:
        session_factory:         ``sessionmaker`` for the record store.
        locks:                   Shared :class:`~app.locks.LockRegistry`.
        unit_of_work:            Applies write plans.
        strategy:                Unit-to-reviewer policy; greedy least-loaded
                                 by default.
        clock:                   Returns the current (aware, UTC) time.
        seed_from_existing_load: Start each reviewer's counter at the size of
                                 their current set instead of zero.
    """

    def __init__(self, session_factory, locks: LockRegistry, unit_of_work: UnitOfWork,
                 strategy: Optional[BalancingStrategy] = None,
                 clock: Callable = utcnow,
                 seed_from_existing_load: bool = False) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._uow = unit_of_work
        self._strategy = strategy or GreedyLeastLoadedStrategy()
        self._clock = clock
        self.seed_from_existing_load = bool(seed_from_existing_load)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def preview_stats(self) -> Dict:
        """Counts shown before an auto-assign run. Read-only."""
        with session_scope(self._session_factory) as db:
            return {
                'unassigned_count': ApplicationRepository(db).count_unassigned_submitted(),
                'reviewer_count': ReviewerRepository(db).count_active(),
            }

    def auto_assign(self, privileged: bool = False) -> AutoAssignResult:
        """Assign every submitted, unassigned application to a reviewer,
        keeping each team's collected members together.

        Applications that are still unassigned but already sit in a
        reviewer's set stay with that reviewer, and any other set holding
        them releases them.

        Raises:
            PrivilegeRequiredError:     *privileged* is false.
            NoReviewersAvailableError:  There are applications but no
                reviewers. Nothing is written.
        """
        if not privileged:
            raise PrivilegeRequiredError("Auto-assignment requires super-admin privileges")

        with self._locks.hold(ASSIGNMENT_LOCK):
            with session_scope(self._session_factory) as db:
                pending = ApplicationRepository(db).unassigned_submitted()
                if not pending:
                    logger.info("Auto-assign: no unassigned applications")
                    return AutoAssignResult()
                reviewers = ReviewerRepository(db).active_reviewers()
                if not reviewers:
                    raise NoReviewersAvailableError(
                        "No reviewers available. Cannot auto-assign applications.",
                        {'unassigned_count': len(pending)},
                    )
                units = build_units((a.id, a.team_ref) for a in pending)
                emails = [r.email for r in reviewers]
                existing = {r.email: r.assigned_set() for r in reviewers}
                pending_ids = {a.id for a in pending}
                # unassigned ids already in some set: left by an interrupted run
                holders: Dict[str, List[str]] = {}
                for reviewer in ReviewerRepository(db).all():
                    for app_id in sorted(reviewer.assigned_set() & pending_ids):
                        holders.setdefault(app_id, []).append(reviewer.email)

            pinned, free = _pin_held_units(units, holders, emails)
            if self.seed_from_existing_load:
                baseline = {email: len(ids) for email, ids in existing.items()}
            else:
                baseline = {email: sum(u.size for u in held) for email, held in pinned.items()}
            distribution = self._strategy.distribute(free, emails, baseline)

            now = self._clock()
            plan = WritePlan('auto-assign applications')
            new_ids: Dict[str, List[str]] = {}
            destination: Dict[str, str] = {}
            for email in emails:
                assigned_units = pinned.get(email, []) + distribution.get(email, [])
                ids = [i for unit in assigned_units for i in unit.application_ids]
                if ids:
                    new_ids[email] = ids
                    destination.update((i, email) for i in ids)
            stale: Dict[str, List[str]] = {}
            for app_id, emails_holding in holders.items():
                for email in emails_holding:
                    if email != destination.get(app_id):
                        stale.setdefault(email, []).append(app_id)
            for email, ids in stale.items():
                plan.add(f'release from {email}', ids, _discard_step(email, ids))
            for email, ids in new_ids.items():
                plan.add(f'add to {email}', ids, _union_step(email, ids))
            for email, ids in new_ids.items():
                plan.add(f'point at {email}', ids, _point_step(email, ids, now))
            self._uow.apply(plan)

        result = AutoAssignResult(
            total_assigned=sum(len(ids) for ids in new_ids.values()),
            teams_assigned=sum(1 for u in units if u.is_team),
            individuals_assigned=sum(1 for u in units if not u.is_team),
        )
        for email, ids in new_ids.items():
            result.reviewer_stats.append(ReviewerStat(
                reviewer=email,
                new_assignments=len(ids),
                total_assignments=len((existing[email] - set(stale.get(email, []))) | set(ids)),
            ))
            logger.info("Auto-assign: %d applications to %s", len(ids), email)
        logger.info("Auto-assign: %d applications in %d units (%d teams)",
                    result.total_assigned, len(units), result.teams_assigned)
        return result

    def manual_assign(self, application_ids: Sequence[str],
                      reviewer_email: str) -> ManualAssignResult:
        """Assign the given applications, plus all of their teammates, to
        *reviewer_email*, moving them away from any previous reviewer.

        Repeating the call with the same arguments changes nothing.

        Raises:
            ValidationError: Empty id list or blank e-mail.
            NotFoundError:   Unknown reviewer or application (nothing is
                written).
        """
        selected: List[str] = []
        for raw in application_ids or []:
            app_id = str(raw).strip()
            if app_id and app_id not in selected:
                selected.append(app_id)
        target = (reviewer_email or '').strip()
        if not selected:
            raise ValidationError("At least one application id is required")
        if not target:
            raise ValidationError("Reviewer e-mail is required")

        with self._locks.hold(ASSIGNMENT_LOCK):
            with session_scope(self._session_factory) as db:
                apps = ApplicationRepository(db)
                teams = TeamRepository(db)
                reviewer = ReviewerRepository(db).find_by_email(target)
                if reviewer is None:
                    raise NotFoundError(f"Reviewer {target} not found", {'reviewer': target})
                # stored spelling, so reviewer_ref matches the registry
                target = reviewer.email
                found = apps.find_many(selected)
                missing = [i for i in selected if i not in found]
                if missing:
                    raise NotFoundError("Applications not found", {'missing': missing})

                all_ids = list(selected)
                for app_id in selected:
                    team = teams.find_by_member(app_id)
                    if team is None:
                        continue
                    for member_id in team.member_ids:
                        if member_id not in all_ids:
                            all_ids.append(member_id)
                team_members_added = len(all_ids) - len(selected)

                found = apps.find_many(all_ids)
                missing = [i for i in all_ids if i not in found]
                if missing:
                    raise NotFoundError("Team member applications not found",
                                        {'missing': missing})
                previous: Dict[str, List[str]] = {}
                for app_id in all_ids:
                    current = found[app_id].reviewer_ref
                    if current and current not in (UNASSIGNED, target):
                        previous.setdefault(current, []).append(app_id)

            now = self._clock()
            plan = WritePlan(f'assign {len(all_ids)} applications to {target}')
            for email, ids in previous.items():
                plan.add(f'release from {email}', ids, _discard_step(email, ids))
            plan.add(f'add to {target}', all_ids, _union_step(target, all_ids))
            plan.add(f'point at {target}', all_ids, _point_step(target, all_ids, now))
            self._uow.apply(plan)

            with session_scope(self._session_factory) as db:
                reviewer = ReviewerRepository(db).find_by_email(target)
                assigned = sorted(reviewer.assigned_set()) if reviewer else []

        if previous:
            logger.info("Moved %d applications to %s from %s",
                        sum(len(v) for v in previous.values()), target, ', '.join(sorted(previous)))
        logger.info("Assigned %d applications to %s (%d teammates added)",
                    len(all_ids), target, team_members_added)
        return ManualAssignResult(
            reviewer=target,
            total_assigned=len(all_ids),
            team_members_added=team_members_added,
            assigned_applications=assigned,
        )


def _pin_held_units(units, holders: Dict[str, List[str]], emails: Sequence[str]):
    """Split *units* into those already sitting in an active reviewer's set
    and those still free to distribute.

    A unit is pinned to the first reviewer, in registry order, whose set holds
    any of its applications, so rerunning an interrupted plan converges on the
    reviewer it already started writing to.

    Returns:
        ``({email: [units]}, [free units])``.
    """
    rank = {email: i for i, email in enumerate(emails)}
    pinned: Dict[str, List] = {}
    free = []
    for unit in units:
        held_by = [email for app_id in unit.application_ids
                   for email in holders.get(app_id, []) if email in rank]
        if held_by:
            pinned.setdefault(min(held_by, key=rank.get), []).append(unit)
        else:
            free.append(unit)
    return pinned, free


# ----------------------------------------------------------------------
# Write steps
# ----------------------------------------------------------------------

def _union_step(email: str, ids: List[str]) -> Callable:
    def apply(db) -> None:
        ReviewerRepository(db).add_assignments(email, ids)
    return apply


def _discard_step(email: str, ids: List[str]) -> Callable:
    def apply(db) -> None:
        ReviewerRepository(db).remove_assignments(email, ids)
    return apply


def _point_step(email: str, ids: List[str], now) -> Callable:
    def apply(db) -> None:
        ApplicationRepository(db).set_reviewer(ids, email, now)
    return apply
