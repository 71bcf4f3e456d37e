"""Cross-record consistency checks and reconciliation.

Used after a :class:`~app.errors.PartialFailureError` (or on a schedule) to
find and repair records whose two stored sides disagree.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Set

from database import MAX_TEAM_SIZE, UNASSIGNED, session_scope
from ..locks import ASSIGNMENT_LOCK, LockRegistry
from ..repositories.application_repository import ApplicationRepository
from ..repositories.reviewer_repository import ReviewerRepository
from ..repositories.team_repository import TEAM_CODE_PATTERN, TeamRepository

logger = logging.getLogger('hackreview.consistency')


@dataclass
class ConsistencyIssue:
    kind: str
    record_id: str
    detail: str

    def to_dict(self) -> Dict:
        return asdict(self)


class ConsistencyService:
    """Checks the invariants that span teams, applications and reviewers.

    Membership rows are authoritative for ``application.team_ref``;
    ``application.reviewer_ref`` is authoritative for reviewer sets.
    """

    def __init__(self, session_factory, locks: LockRegistry) -> None:
        self._session_factory = session_factory
        self._locks = locks

    def check(self) -> List[ConsistencyIssue]:
        """Return every inconsistency found. Read-only."""
        issues: List[ConsistencyIssue] = []
        with session_scope(self._session_factory) as db:
            applications = {a.id: a for a in ApplicationRepository(db).all()}
            teams = TeamRepository(db).all()
            reviewers = ReviewerRepository(db).all()

            member_of: Dict[str, str] = {}
            for team in teams:
                ids = team.member_ids
                if not 1 <= len(ids) <= MAX_TEAM_SIZE:
                    issues.append(ConsistencyIssue('team_size', team.id,
                                                   f'{len(ids)} members'))
                if team.owner_id not in ids:
                    issues.append(ConsistencyIssue('owner_not_member', team.id,
                                                   f'owner {team.owner_id} is not a member'))
                if team.id != team.owner_id:
                    issues.append(ConsistencyIssue('team_id_mismatch', team.id,
                                                   f'owner is {team.owner_id}'))
                if not TEAM_CODE_PATTERN.match(team.code or ''):
                    issues.append(ConsistencyIssue('invalid_code', team.id, repr(team.code)))
                for app_id in ids:
                    member_of[app_id] = team.id
                    if app_id not in applications:
                        issues.append(ConsistencyIssue('missing_application', app_id,
                                                       f'member of team {team.id}'))

            for app in applications.values():
                expected = member_of.get(app.id)
                if app.team_ref != expected:
                    issues.append(ConsistencyIssue(
                        'team_ref_mismatch', app.id,
                        f'team_ref={app.team_ref!r}, member of {expected!r}'))

            holders: Dict[str, List[str]] = {}
            emails = {r.email for r in reviewers}
            for reviewer in reviewers:
                for app_id in reviewer.assigned_set():
                    holders.setdefault(app_id, []).append(reviewer.email)
                    app = applications.get(app_id)
                    if app is None:
                        issues.append(ConsistencyIssue(
                            'missing_application', app_id,
                            f'assigned to {reviewer.email}'))
                    elif app.reviewer_ref != reviewer.email:
                        issues.append(ConsistencyIssue(
                            'unexpected_assignment', app_id,
                            f'in set of {reviewer.email}, reviewer_ref={app.reviewer_ref!r}'))

            for app_id, owners in holders.items():
                if len(owners) > 1:
                    issues.append(ConsistencyIssue('multiple_reviewers', app_id,
                                                   ', '.join(sorted(owners))))

            for app in applications.values():
                ref = app.reviewer_ref
                if not ref or ref == UNASSIGNED:
                    continue
                if ref not in emails:
                    issues.append(ConsistencyIssue('unknown_reviewer', app.id,
                                                   f'reviewer_ref={ref!r}'))
                elif ref not in holders.get(app.id, []):
                    issues.append(ConsistencyIssue('reviewer_set_mismatch', app.id,
                                                   f'missing from set of {ref}'))

        if issues:
            logger.warning("Consistency check found %d issues", len(issues))
        return issues

    def reconcile(self) -> int:
        """Rewrite back-references from their authoritative side.

        * ``team_ref`` of every application is set from the membership rows;
        * every reviewer set is rebuilt from ``reviewer_ref``.

        Team-shape problems (size, owner) are reported by :meth:`check` but
        left for an operator. Returns the number of records changed.
        """
        changed = 0
        with self._locks.hold(ASSIGNMENT_LOCK):
            with session_scope(self._session_factory) as db:
                apps = ApplicationRepository(db)
                member_of: Dict[str, str] = {}
                for team in TeamRepository(db).all():
                    for app_id in team.member_ids:
                        member_of[app_id] = team.id

                wanted: Dict[str, Set[str]] = {}
                for app in apps.all():
                    expected = member_of.get(app.id)
                    if app.team_ref != expected:
                        logger.info("Reconcile: %s team_ref %r -> %r",
                                    app.id, app.team_ref, expected)
                        app.team_ref = expected
                        changed += 1
                    if app.reviewer_ref and app.reviewer_ref != UNASSIGNED:
                        wanted.setdefault(app.reviewer_ref, set()).add(app.id)

                reviewers = ReviewerRepository(db)
                for reviewer in reviewers.all():
                    target = wanted.get(reviewer.email, set())
                    if reviewer.assigned_set() != target:
                        logger.info("Reconcile: rebuilt assignment set of %s (%d ids)",
                                    reviewer.email, len(target))
                        reviewers.replace_assignments(reviewer.email, target)
                        changed += 1
        logger.info("Reconcile changed %d records", changed)
        return changed
