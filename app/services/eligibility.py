"""Eligibility gate: which application statuses may take part in a team."""
from database import (STATUS_ADMITTED, STATUS_CHECKED_IN, STATUS_CONFIRMED,
                      STATUS_SUBMITTED, STATUS_WAITLISTED)

# Submitted and beyond, excluding declined/refused.
ELIGIBLE_STATUSES = frozenset({
    STATUS_SUBMITTED,
    STATUS_ADMITTED,
    STATUS_WAITLISTED,
    STATUS_CONFIRMED,
    STATUS_CHECKED_IN,
})


def is_eligible_status(status: str) -> bool:
    return status in ELIGIBLE_STATUSES


def is_eligible(application) -> bool:
    """Return True if *application* may join or lead a team.

    Accepts an ORM row or any object / dict exposing ``status``.
    """
    if application is None:
        return False
    if isinstance(application, dict):
        return is_eligible_status(application.get('status'))
    return is_eligible_status(getattr(application, 'status', None))
