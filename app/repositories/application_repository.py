"""Repository for application records (the external record store)."""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_

from database import Application, STATUS_SUBMITTED, UNASSIGNED
from .base import BaseRepository


class ApplicationRepository(BaseRepository):
    """Reads applications and writes the two fields the core owns.

    Applicants can be referenced either by application id or by e-mail
    address; :meth:`resolve` accepts both.
    """

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, application_id: str) -> Optional[Application]:
        """Return the application with *application_id*, or ``None``."""
        return self._db.get(Application, str(application_id))

    def find_by_email(self, email: str) -> Optional[Application]:
        """Return the application registered under *email* (case-insensitive)."""
        normalized = (email or '').strip().lower()
        if not normalized:
            return None
        return self._db.query(Application).filter(Application.email == normalized).first()

    def resolve(self, reference: str) -> Optional[Application]:
        """Look an applicant up by e-mail when *reference* contains ``@``,
        otherwise by id."""
        ref = (reference or '').strip()
        if not ref:
            return None
        if '@' in ref:
            return self.find_by_email(ref)
        return self.find(ref)

    def find_many(self, application_ids: Iterable[str]) -> Dict[str, Application]:
        """Return ``{id: application}`` for the ids that exist."""
        ids = list({str(i) for i in application_ids})
        if not ids:
            return {}
        rows = self._db.query(Application).filter(Application.id.in_(ids)).all()
        return {a.id: a for a in rows}

    def all(self) -> List[Application]:
        return self._db.query(Application).order_by(Application.id).all()

    def unassigned_submitted(self) -> List[Application]:
        """Submitted applications no reviewer has been chosen for, by id."""
        return (self._db.query(Application)
                .filter(Application.status == STATUS_SUBMITTED,
                        Application.reviewer_ref == UNASSIGNED)
                .order_by(Application.id)
                .all())

    def count_unassigned_submitted(self) -> int:
        return (self._db.query(Application)
                .filter(Application.status == STATUS_SUBMITTED,
                        Application.reviewer_ref == UNASSIGNED)
                .count())

    def search(self, query: str, statuses: Optional[Iterable[str]] = None,
               limit: int = 10) -> List[Application]:
        """Case-insensitive substring search over e-mail and names."""
        like = f'%{query}%'
        q = self._db.query(Application).filter(or_(
            Application.email.ilike(like),
            Application.first_name.ilike(like),
            Application.last_name.ilike(like),
        ))
        if statuses is not None:
            q = q.filter(Application.status.in_(list(statuses)))
        return q.order_by(Application.id).limit(limit).all()

    def ids_matching(self, query: str) -> List[str]:
        """Ids of every application whose e-mail or name contains *query*."""
        like = f'%{query}%'
        rows = (self._db.query(Application.id)
                .filter(or_(Application.email.ilike(like),
                            Application.first_name.ilike(like),
                            Application.last_name.ilike(like)))
                .all())
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_team_ref(self, application_ids: Iterable[str],
                     team_id: Optional[str]) -> int:
        """Point every listed application at *team_id* (``None`` clears).

        Missing applications are skipped. Returns the number of rows changed.
        """
        changed = 0
        for app in self.find_many(application_ids).values():
            if app.team_ref != team_id:
                app.team_ref = team_id
                changed += 1
        return changed

    def set_reviewer(self, application_ids: Iterable[str], reviewer_email: str,
                     assigned_at: datetime) -> int:
        """Set ``reviewer_ref`` on every listed application.

        ``assigned_at`` only moves when the reviewer actually changes, so
        repeating the call does not alter the rows.
        """
        changed = 0
        for app in self.find_many(application_ids).values():
            if app.reviewer_ref != reviewer_email:
                app.reviewer_ref = reviewer_email
                app.assigned_at = assigned_at
                changed += 1
        return changed

    @staticmethod
    def to_dict(app: Application) -> Dict:
        return {
            'id': app.id,
            'email': app.email,
            'first_name': app.first_name or '',
            'last_name': app.last_name or '',
            'status': app.status,
            'team_ref': app.team_ref,
            'reviewer_ref': app.reviewer_ref,
        }
