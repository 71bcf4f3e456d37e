"""Repository for reviewer accounts and their assigned-application sets."""
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func

from database import Reviewer
from .base import BaseRepository


class ReviewerRepository(BaseRepository):
    """Reviewer registry.

    ``assigned_applications`` is only ever changed through set union
    (:meth:`add_assignments`) and set difference
    (:meth:`remove_assignments`), never by appending, so the list cannot
    collect duplicates.
    """

    def find_by_email(self, email: str) -> Optional[Reviewer]:
        """Return the reviewer registered under *email* (case-insensitive)."""
        normalized = (email or '').strip().lower()
        if not normalized:
            return None
        return (self._db.query(Reviewer)
                .filter(func.lower(Reviewer.email) == normalized)
                .first())

    def all(self) -> List[Reviewer]:
        return self._db.query(Reviewer).order_by(Reviewer.id).all()

    def active_reviewers(self) -> List[Reviewer]:
        """Accounts applications can be assigned to (everyone but super-admins),
        in registry order."""
        return (self._db.query(Reviewer)
                .filter(Reviewer.is_super_admin.is_(False))
                .order_by(Reviewer.id)
                .all())

    def count_active(self) -> int:
        return self._db.query(Reviewer).filter(Reviewer.is_super_admin.is_(False)).count()

    def add_assignments(self, email: str, application_ids: Iterable[str]) -> bool:
        """Union *application_ids* into the reviewer's set.

        Returns:
            ``False`` if the reviewer does not exist, ``True`` otherwise.
        """
        reviewer = self.find_by_email(email)
        if reviewer is None:
            self._log.warning("Cannot add assignments, reviewer %s not found", email)
            return False
        current = reviewer.assigned_set()
        merged = current | {str(i) for i in application_ids}
        if merged != current:
            reviewer.store_assigned(merged)
        return True

    def remove_assignments(self, email: str, application_ids: Iterable[str]) -> bool:
        """Discard *application_ids* from the reviewer's set (missing ids are ignored)."""
        reviewer = self.find_by_email(email)
        if reviewer is None:
            return False
        current = reviewer.assigned_set()
        remaining = current - {str(i) for i in application_ids}
        if remaining != current:
            reviewer.store_assigned(remaining)
        return True

    def replace_assignments(self, email: str, application_ids: Iterable[str]) -> bool:
        """Overwrite the reviewer's set; used by reconciliation only."""
        reviewer = self.find_by_email(email)
        if reviewer is None:
            return False
        reviewer.store_assigned(application_ids)
        return True

    @staticmethod
    def to_dict(reviewer: Reviewer) -> Dict:
        return {
            'id': reviewer.id,
            'email': reviewer.email,
            'first_name': reviewer.first_name or '',
            'last_name': reviewer.last_name or '',
            'is_super_admin': bool(reviewer.is_super_admin),
            'assigned_applications': sorted(reviewer.assigned_set()),
        }
