"""Team lifecycle: create, add member, remove member, delete, and lookups."""
import logging
import math
import secrets
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Sequence

from database import MAX_TEAM_SIZE, session_scope, utcnow
from ..errors import (AlreadyTeamedError, DuplicateNameError, IneligibleError,
                      NotAMemberError, NotFoundError, PrivilegeRequiredError,
                      ResourceExhaustedError, TeamFullError, TooManyMembersError,
                      ValidationError)
from ..locks import LockRegistry, team_lock_name
from ..repositories.application_repository import ApplicationRepository
from ..repositories.team_repository import SORT_FIELDS, TEAM_CODE_PATTERN, TeamRepository
from ..unit_of_work import UnitOfWork, WritePlan
from .eligibility import ELIGIBLE_STATUSES, is_eligible
from .succession import RandomSuccessor, SuccessorStrategy

logger = logging.getLogger('hackreview.teams')

DEFAULT_PAGE_SIZE = 8
MAX_PAGE_SIZE = 50
CANDIDATE_SEARCH_LIMIT = 10

ACTION_TEAM_DELETED = 'team_deleted'
ACTION_MEMBER_REMOVED = 'member_removed'
ACTION_OWNER_CHANGED = 'owner_changed'


def default_code_generator() -> str:
    """Six random lower-case hex characters."""
    return secrets.token_hex(3)


def _normalize_reference(reference: str) -> str:
    ref = (reference or '').strip()
    return ref.lower() if '@' in ref else ref


@dataclass
class RemoveMemberResult:
    action: str
    removed_id: str
    old_team_id: str
    team_id: Optional[str] = None
    new_owner: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


class TeamService:
    """Creates and mutates teams while keeping ``application.team_ref`` in
    step with the team member lists.

    Every operation validates first, then hands its writes to the
    :class:`~app.unit_of_work.UnitOfWork` as one plan. Mutations of a team
    hold the ``team:<id>`` lock for their whole validate-and-write window.

    Args:
        session_factory:    ``sessionmaker`` for the record store.
        locks:              Shared :class:`~app.locks.LockRegistry`.
        unit_of_work:       Applies write plans.
        successor_strategy: Picks the new owner when the owner leaves.
        code_generator:     Returns candidate team codes; defaults to
                            :func:`default_code_generator`.
        clock:              Returns the current (aware, UTC) time.
        code_attempts:      Maximum codes tried before giving up.
    """

    def __init__(self, session_factory, locks: LockRegistry, unit_of_work: UnitOfWork,
                 successor_strategy: Optional[SuccessorStrategy] = None,
                 code_generator: Optional[Callable[[], str]] = None,
                 clock: Callable = utcnow, code_attempts: int = 10) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._uow = unit_of_work
        self._successor = successor_strategy or RandomSuccessor()
        self._generate_code = code_generator or default_code_generator
        self._clock = clock
        self._code_attempts = max(1, int(code_attempts))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_team(self, name: str, leader: str,
                    members: Optional[Sequence[str]] = None) -> Dict:
        """Create a team led by *leader* with up to three more *members*.

        Args:
            name:    Team name, unique after stripping.
            leader:  Application id or e-mail of the leader (becomes owner
                     and team id).
            members: Additional applicant references, in join order.

        Returns:
            The new team, as returned by :meth:`get_team`.
        """
        team_name = (name or '').strip()
        leader_ref = _normalize_reference(leader)
        member_refs = [_normalize_reference(m) for m in (members or [])]
        if not team_name:
            raise ValidationError("Team name is required")
        if not leader_ref:
            raise ValidationError("Team leader is required")
        if any(not ref for ref in member_refs):
            raise ValidationError("Member references must not be blank")
        requested = [leader_ref] + member_refs
        if len(set(requested)) != len(requested):
            raise ValidationError("Duplicate members in request",
                                  {'members': requested})
        if len(requested) > MAX_TEAM_SIZE:
            raise TooManyMembersError(
                f"A team can have at most {MAX_TEAM_SIZE} members",
                {'requested': len(requested)},
            )

        with session_scope(self._session_factory) as db:
            self._check_name_free(TeamRepository(db), team_name)
            leader_app = ApplicationRepository(db).resolve(leader_ref)
            if leader_app is None:
                raise NotFoundError(f"Team leader {leader_ref} not found",
                                    {'applicant': leader_ref})
            leader_id = leader_app.id

        with self._locks.hold(team_lock_name(leader_id)):
            with session_scope(self._session_factory) as db:
                apps = ApplicationRepository(db)
                teams = TeamRepository(db)
                self._check_name_free(teams, team_name)
                leader_app = self._require_joinable(apps, teams, leader_ref)
                if teams.find(leader_app.id) is not None:
                    raise AlreadyTeamedError(
                        f"A team with id {leader_app.id} already exists",
                        {'team_id': leader_app.id},
                    )
                member_ids = [leader_app.id]
                for ref in member_refs:
                    member_ids.append(self._require_joinable(apps, teams, ref).id)
                if len(set(member_ids)) != len(member_ids):
                    raise ValidationError("Duplicate members in request",
                                          {'members': member_ids})
                code = self._new_code(teams)

            team_id = leader_app.id
            now = self._clock()
            plan = WritePlan(f'create team {team_name!r}')
            plan.add('create team', [team_id],
                     lambda db: TeamRepository(db).upsert(team_id, team_name, code,
                                                          member_ids, now))
            plan.add('point members at team', member_ids,
                     lambda db: ApplicationRepository(db).set_team_ref(member_ids, team_id))
            self._uow.apply(plan)

        logger.info("Created team %s (%s) with %d members", team_id, team_name, len(member_ids))
        return self.get_team(team_id)

    def add_member(self, team_id: str, applicant: str) -> Dict:
        """Add *applicant* to an existing team. Returns the updated team."""
        team_id = (team_id or '').strip()
        ref = _normalize_reference(applicant)
        if not team_id or not ref:
            raise ValidationError("Team id and applicant are required")

        with self._locks.hold(team_lock_name(team_id)):
            with session_scope(self._session_factory) as db:
                apps = ApplicationRepository(db)
                teams = TeamRepository(db)
                team = teams.find(team_id)
                if team is None:
                    raise NotFoundError(f"Team {team_id} not found", {'team_id': team_id})
                if len(team.members) >= MAX_TEAM_SIZE:
                    raise TeamFullError(f"Team {team_id} is full",
                                        {'team_id': team_id, 'max_size': MAX_TEAM_SIZE})
                app = apps.resolve(ref)
                if app is None:
                    raise NotFoundError(f"Applicant {ref} not found", {'applicant': ref})
                if app.id in team.member_ids:
                    raise AlreadyTeamedError(f"Applicant {app.id} is already in this team",
                                             {'applicant': app.id, 'team_id': team_id})
                if not is_eligible(app):
                    raise IneligibleError(
                        f"Applicant {app.id} with status {app.status} cannot join a team",
                        {'applicant': app.id, 'status': app.status},
                    )
                other = teams.find_by_member(app.id)
                if other is not None:
                    raise AlreadyTeamedError(f"Applicant {app.id} is already in another team",
                                             {'applicant': app.id, 'team_id': other.id})
                app_id = app.id

            now = self._clock()
            plan = WritePlan(f'add {app_id} to team {team_id}')
            plan.add('add member', [team_id],
                     lambda db: TeamRepository(db).add_member(team_id, app_id, now))
            plan.add('point member at team', [app_id],
                     lambda db: ApplicationRepository(db).set_team_ref([app_id], team_id))
            self._uow.apply(plan)

        logger.info("Added %s to team %s", app_id, team_id)
        return self.get_team(team_id)

    def remove_member(self, team_id: str, applicant: str) -> RemoveMemberResult:
        """Remove *applicant* from the team.

        * last member leaving deletes the team;
        * a non-owner leaving just shrinks it;
        * the owner leaving hands the team to a successor, whose id becomes
          the team id.
        """
        team_id = (team_id or '').strip()
        ref = _normalize_reference(applicant)
        if not team_id or not ref:
            raise ValidationError("Team id and applicant are required")

        with self._locks.hold(team_lock_name(team_id)):
            with session_scope(self._session_factory) as db:
                team = TeamRepository(db).find(team_id)
                if team is None:
                    raise NotFoundError(f"Team {team_id} not found", {'team_id': team_id})
                member_ids = team.member_ids
                owner_id = team.owner_id
                app = ApplicationRepository(db).resolve(ref)
                if app is not None:
                    removed_id = app.id
                elif ref in member_ids:
                    # record gone from the store but still listed as a member
                    removed_id = ref
                else:
                    raise NotFoundError(f"Applicant {ref} not found", {'applicant': ref})
                if removed_id not in member_ids:
                    raise NotAMemberError(f"Applicant {removed_id} is not in team {team_id}",
                                          {'applicant': removed_id, 'team_id': team_id})

            remaining = [m for m in member_ids if m != removed_id]
            now = self._clock()

            if not remaining:
                plan = WritePlan(f'dissolve team {team_id}')
                plan.add('delete team', [team_id],
                         lambda db: TeamRepository(db).delete(team_id))
                plan.add('clear team ref', [removed_id],
                         lambda db: ApplicationRepository(db).set_team_ref([removed_id], None))
                self._uow.apply(plan)
                logger.info("Team %s deleted, last member %s left", team_id, removed_id)
                return RemoveMemberResult(ACTION_TEAM_DELETED, removed_id, team_id)

            if removed_id != owner_id:
                plan = WritePlan(f'remove {removed_id} from team {team_id}')
                plan.add('remove member', [team_id],
                         lambda db: TeamRepository(db).remove_member(team_id, removed_id, now))
                plan.add('clear team ref', [removed_id],
                         lambda db: ApplicationRepository(db).set_team_ref([removed_id], None))
                self._uow.apply(plan)
                logger.info("Removed %s from team %s", removed_id, team_id)
                return RemoveMemberResult(ACTION_MEMBER_REMOVED, removed_id, team_id,
                                          team_id=team_id)

            successor = self._successor.choose(remaining)
            with self._locks.hold(team_lock_name(successor)):
                plan = WritePlan(f'hand team {team_id} over to {successor}')
                plan.add('re-identify team', [team_id, successor],
                         lambda db: TeamRepository(db).reidentify(team_id, successor,
                                                                  remaining, now))
                plan.add('repoint members', remaining,
                         lambda db: ApplicationRepository(db).set_team_ref(remaining, successor))
                plan.add('clear team ref', [removed_id],
                         lambda db: ApplicationRepository(db).set_team_ref([removed_id], None))
                self._uow.apply(plan)

        logger.info("Owner %s left team %s, ownership moved to %s", removed_id, team_id, successor)
        return RemoveMemberResult(ACTION_OWNER_CHANGED, removed_id, team_id,
                                  team_id=successor, new_owner=successor)

    def delete_team(self, team_id: str, privileged: bool = False) -> Dict:
        """Delete a team and release all of its members (super-admin only)."""
        if not privileged:
            raise PrivilegeRequiredError("Deleting a team requires super-admin privileges")
        team_id = (team_id or '').strip()
        if not team_id:
            raise ValidationError("Team id is required")

        with self._locks.hold(team_lock_name(team_id)):
            with session_scope(self._session_factory) as db:
                team = TeamRepository(db).find(team_id)
                if team is None:
                    raise NotFoundError(f"Team {team_id} not found", {'team_id': team_id})
                member_ids = team.member_ids
                team_name = team.name

            plan = WritePlan(f'delete team {team_id}')
            plan.add('delete team', [team_id],
                     lambda db: TeamRepository(db).delete(team_id))
            plan.add('clear team refs', member_ids,
                     lambda db: ApplicationRepository(db).set_team_ref(member_ids, None))
            self._uow.apply(plan)

        logger.info("Deleted team %s (%s), released %d members", team_id, team_name, len(member_ids))
        return {'team_id': team_id, 'name': team_name, 'released': member_ids}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_team(self, team_id: str) -> Dict:
        """Return the team with its members (owner first)."""
        with session_scope(self._session_factory) as db:
            team = TeamRepository(db).find((team_id or '').strip())
            if team is None:
                raise NotFoundError(f"Team {team_id} not found", {'team_id': team_id})
            return self._describe(db, team)

    def get_team_for_application(self, applicant: str) -> Optional[Dict]:
        """Return the team *applicant* belongs to, or ``None``."""
        ref = _normalize_reference(applicant)
        with session_scope(self._session_factory) as db:
            app = ApplicationRepository(db).resolve(ref)
            if app is None:
                raise NotFoundError(f"Applicant {ref} not found", {'applicant': ref})
            team = TeamRepository(db).find_by_member(app.id)
            if team is None:
                return None
            return self._describe(db, team)

    def list_teams(self, search: str = '', member_count=None,
                   sort_field: str = 'member_count', sort_order: str = 'asc',
                   page=1, limit=DEFAULT_PAGE_SIZE) -> Dict:
        """Paginated team listing.

        Unknown sort fields/orders and out-of-range member counts are
        ignored rather than rejected; ``limit`` is clamped to 1..50 and
        ``page`` to at least 1.

        Returns:
            ``{'teams': [...], 'pagination': {...}}``.
        """
        page = max(1, _to_int(page, 1))
        limit = min(MAX_PAGE_SIZE, max(1, _to_int(limit, DEFAULT_PAGE_SIZE)))
        if sort_field not in SORT_FIELDS:
            sort_field = 'member_count'
        descending = (sort_order or '').lower() == 'desc'
        count_filter = _to_int(member_count, None)
        if count_filter is not None and not 1 <= count_filter <= MAX_TEAM_SIZE:
            count_filter = None
        search = (search or '').strip()

        with session_scope(self._session_factory) as db:
            apps = ApplicationRepository(db)
            member_matches = apps.ids_matching(search) if search else []
            total, rows = TeamRepository(db).page(
                search=search, search_member_ids=member_matches,
                member_count=count_filter, sort_field=sort_field,
                descending=descending, offset=(page - 1) * limit, limit=limit,
            )
            teams = [self._describe(db, team) for team, _count in rows]

        total_pages = math.ceil(total / limit) if total else 0
        return {
            'teams': teams,
            'pagination': {
                'page': page,
                'limit': limit,
                'total_pages': total_pages,
                'total_teams': total,
                'has_next_page': page < total_pages,
                'has_prev_page': page > 1,
            },
        }

    def search_candidates(self, query: str, eligible_only: bool = False) -> List[Dict]:
        """Find applicants to add to a team.

        Queries shorter than two characters return nothing. At most ten
        matches; eligible applicants first, then those not yet in a team.
        """
        query = (query or '').strip()
        if len(query) < 2:
            return []
        with session_scope(self._session_factory) as db:
            found = ApplicationRepository(db).search(
                query, statuses=ELIGIBLE_STATUSES if eligible_only else None,
                limit=CANDIDATE_SEARCH_LIMIT,
            )
            team_names = TeamRepository(db).team_names_for(a.id for a in found)
            results = []
            for app in found:
                team_name = team_names.get(app.id)
                results.append({
                    'id': app.id,
                    'email': app.email,
                    'first_name': app.first_name or '',
                    'last_name': app.last_name or '',
                    'status': app.status,
                    'is_in_team': team_name is not None,
                    'team_name': team_name,
                    'is_eligible': is_eligible(app) and team_name is None,
                })
        results.sort(key=lambda r: (not r['is_eligible'], r['is_in_team']))
        return results

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_name_free(teams: TeamRepository, name: str) -> None:
        if teams.find_by_name(name) is not None:
            raise DuplicateNameError(f"Team name {name!r} is already taken", {'name': name})

    @staticmethod
    def _require_joinable(apps: ApplicationRepository, teams: TeamRepository, ref: str):
        app = apps.resolve(ref)
        if app is None:
            raise NotFoundError(f"Applicant {ref} not found", {'applicant': ref})
        if not is_eligible(app):
            raise IneligibleError(
                f"Applicant {app.id} with status {app.status} cannot join a team",
                {'applicant': app.id, 'status': app.status},
            )
        current = teams.find_by_member(app.id)
        if current is not None:
            raise AlreadyTeamedError(f"Applicant {app.id} is already in a team",
                                     {'applicant': app.id, 'team_id': current.id})
        return app

    def _new_code(self, teams: TeamRepository) -> str:
        for attempt in range(1, self._code_attempts + 1):
            code = (self._generate_code() or '').lower()
            if TEAM_CODE_PATTERN.match(code) and not teams.code_exists(code):
                return code
            logger.debug("Team code candidate %r rejected (attempt %d)", code, attempt)
        raise ResourceExhaustedError(
            f"Could not generate a unique team code in {self._code_attempts} attempts",
            {'attempts': self._code_attempts},
        )

    @staticmethod
    def _describe(db, team) -> Dict:
        apps = ApplicationRepository(db).find_many(team.member_ids)
        members = []
        for app_id in team.member_ids:
            app = apps.get(app_id)
            entry = ApplicationRepository.to_dict(app) if app else {'id': app_id, 'missing': True}
            entry['is_owner'] = app_id == team.owner_id
            members.append(entry)
        members.sort(key=lambda m: not m['is_owner'])
        return TeamRepository.to_dict(team, members)


def _to_int(value, default):
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
