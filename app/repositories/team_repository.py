"""Repository for teams and their member lists (the team registry)."""
import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select

from database import MAX_TEAM_SIZE, Team, TeamMember
from ..errors import ConflictError, NotFoundError, ValidationError
from .base import BaseRepository

TEAM_CODE_PATTERN = re.compile(r'^[0-9a-f]{6}$')

SORT_FIELDS = ('name', 'code', 'member_count', 'created_at')


class TeamRepository(BaseRepository):
    """Team registry.

    Enforces the invariants that belong to a single team record:

    * one to :data:`database.MAX_TEAM_SIZE` members, no duplicates;
    * the owner is a member and the public id equals the owner's id;
    * the code matches :data:`TEAM_CODE_PATTERN`.

    Name/code uniqueness and membership exclusivity are also guaranteed by
    unique constraints in the schema.
    """

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, team_id: str) -> Optional[Team]:
        """Return the team whose public id is *team_id*, or ``None``."""
        if not team_id:
            return None
        return self._db.query(Team).filter(Team.id == str(team_id)).first()

    def find_by_name(self, name: str) -> Optional[Team]:
        return self._db.query(Team).filter(Team.name == name).first()

    def code_exists(self, code: str) -> bool:
        return self._db.query(Team.pk).filter(Team.code == code).first() is not None

    def find_by_member(self, application_id: str) -> Optional[Team]:
        """Return the team *application_id* belongs to, or ``None``."""
        return (self._db.query(Team)
                .join(TeamMember, TeamMember.team_pk == Team.pk)
                .filter(TeamMember.application_id == str(application_id))
                .first())

    def team_names_for(self, application_ids: Iterable[str]) -> Dict[str, str]:
        """Return ``{application_id: team name}`` for the ids that are in a team."""
        ids = [str(i) for i in application_ids]
        if not ids:
            return {}
        rows = (self._db.query(TeamMember.application_id, Team.name)
                .join(Team, Team.pk == TeamMember.team_pk)
                .filter(TeamMember.application_id.in_(ids))
                .all())
        return {app_id: name for app_id, name in rows}

    def all(self) -> List[Team]:
        return self._db.query(Team).order_by(Team.pk).all()

    def page(self, search: str = '', search_member_ids: Sequence[str] = (),
             member_count: Optional[int] = None, sort_field: str = 'name',
             descending: bool = False, offset: int = 0,
             limit: int = 12) -> Tuple[int, List[Tuple[Team, int]]]:
        """Filtered, sorted slice of teams.

        Returns:
            ``(total matching teams, [(team, member count), ...])``.
        """
        counts = (select(TeamMember.team_pk,
                         func.count(TeamMember.id).label('member_count'))
                  .group_by(TeamMember.team_pk)
                  .subquery())
        member_total = func.coalesce(counts.c.member_count, 0)
        q = (self._db.query(Team, member_total)
             .outerjoin(counts, counts.c.team_pk == Team.pk))
        if search:
            like = f'%{search}%'
            conditions = [Team.name.ilike(like), Team.code.ilike(like)]
            if search_member_ids:
                conditions.append(Team.pk.in_(
                    select(TeamMember.team_pk)
                    .where(TeamMember.application_id.in_(list(search_member_ids)))
                ))
            q = q.filter(or_(*conditions))
        if member_count is not None:
            q = q.filter(member_total == member_count)
        total = q.count()
        order_column = {
            'name': Team.name,
            'code': Team.code,
            'member_count': member_total,
            'created_at': Team.created_at,
        }.get(sort_field, Team.name)
        q = q.order_by(order_column.desc() if descending else order_column.asc(), Team.pk)
        rows = q.offset(offset).limit(limit).all()
        return total, [(team, int(count)) for team, count in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, team_id: str, name: str, code: str,
               member_ids: Sequence[str], now: datetime) -> Team:
        """Create the team, or bring an existing team with *team_id* to
        exactly this name, code and member list."""
        members = [str(m) for m in member_ids]
        self._check_shape(team_id, team_id, code, members)
        team = self.find(team_id)
        if team is None:
            team = Team(id=team_id, name=name, code=code, owner_id=team_id,
                        created_at=now, updated_at=now)
            self._db.add(team)
        else:
            team.name = name
            team.code = code
            team.owner_id = team_id
            team.updated_at = now
        self._sync_members(team, members, now)
        return team

    def add_member(self, team_id: str, application_id: str, now: datetime) -> Team:
        """Append *application_id* to the team (no-op if already a member)."""
        team = self._require(team_id)
        if application_id in team.member_ids:
            return team
        if len(team.members) >= MAX_TEAM_SIZE:
            raise ConflictError(f"Team {team_id} already has {MAX_TEAM_SIZE} members",
                                {'team_id': team_id})
        self._sync_members(team, team.member_ids + [application_id], now)
        team.updated_at = now
        return team

    def remove_member(self, team_id: str, application_id: str, now: datetime) -> Team:
        """Drop *application_id* from a team that keeps at least one other member."""
        team = self._require(team_id)
        if application_id not in team.member_ids:
            return team
        remaining = [m for m in team.member_ids if m != application_id]
        self._check_shape(team.id, team.owner_id, team.code, remaining)
        self._sync_members(team, remaining, now)
        team.updated_at = now
        return team

    def reidentify(self, old_id: str, new_id: str, member_ids: Sequence[str],
                   now: datetime) -> Team:
        """Move the team from *old_id* to *new_id*, making *new_id* the owner
        and *member_ids* the members.

        Safe to repeat: if a previous attempt already moved the row, the team
        is found under *new_id* and brought to the same state.
        """
        members = [str(m) for m in member_ids]
        team = self.find(old_id) or self.find(new_id)
        if team is None:
            raise NotFoundError(f"Team {old_id} not found", {'team_id': old_id})
        self._check_shape(new_id, new_id, team.code, members)
        self._sync_members(team, members, now)
        team.id = new_id
        team.owner_id = new_id
        team.updated_at = now
        return team

    def delete(self, team_id: str) -> bool:
        """Delete the team. Returns ``False`` if it was already gone."""
        team = self.find(team_id)
        if team is None:
            return False
        self._db.delete(team)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, team_id: str) -> Team:
        team = self.find(team_id)
        if team is None:
            raise NotFoundError(f"Team {team_id} not found", {'team_id': team_id})
        return team

    def _sync_members(self, team: Team, member_ids: List[str], now: datetime) -> None:
        """Make the member rows match *member_ids*, keeping existing rows (and
        their join time) for members that stay."""
        existing = {m.application_id: m for m in team.members}
        for app_id, member in list(existing.items()):
            if app_id not in member_ids:
                team.members.remove(member)
        # flush deletions before re-inserting, application_id is unique
        self._db.flush()
        for position, app_id in enumerate(member_ids):
            member = existing.get(app_id)
            if member is None:
                team.members.append(TeamMember(application_id=app_id, position=position,
                                               is_admitted=True, joined_at=now))
            else:
                member.position = position

    @staticmethod
    def _check_shape(team_id: str, owner_id: str, code: str,
                     member_ids: Sequence[str]) -> None:
        if not 1 <= len(member_ids) <= MAX_TEAM_SIZE:
            raise ValidationError(
                f"A team must have between 1 and {MAX_TEAM_SIZE} members",
                {'team_id': team_id, 'member_count': len(member_ids)},
            )
        if len(set(member_ids)) != len(member_ids):
            raise ValidationError("Duplicate members in team", {'team_id': team_id})
        if owner_id not in member_ids:
            raise ValidationError("Team owner must be a member",
                                  {'team_id': team_id, 'owner_id': owner_id})
        if team_id != owner_id:
            raise ValidationError("Team id must equal its owner's id",
                                  {'team_id': team_id, 'owner_id': owner_id})
        if not TEAM_CODE_PATTERN.match(code or ''):
            raise ValidationError(f"Invalid team code {code!r}", {'team_id': team_id})

    @staticmethod
    def to_dict(team: Team, members: Optional[List[Dict]] = None) -> Dict:
        data = {
            'id': team.id,
            'name': team.name,
            'code': team.code,
            'owner_id': team.owner_id,
            'member_ids': team.member_ids,
            'member_count': len(team.members),
            'created_at': team.created_at.isoformat() if team.created_at else None,
        }
        if members is not None:
            data['members'] = members
        return data
