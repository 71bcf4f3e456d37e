"""Repository base class used by all concrete repositories."""
import logging


class BaseRepository:
    """Wraps an open SQLAlchemy session for one record collection.

    Repositories only read and write rows of their own collection; rules that
    span collections (eligibility, membership exclusivity, reviewer
    back-references) live in the services.  The caller owns the session and
    its transaction (see :func:`database.session_scope`).

    Every write method is idempotent: applying it twice leaves the same rows
    as applying it once, which is what lets a write plan be retried.
    """

    def __init__(self, db) -> None:
        self._db = db
        self._log = logging.getLogger(f'hackreview.repository.{type(self).__name__}')
