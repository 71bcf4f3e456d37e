"""Typed errors raised by the services and mapped to results by callers."""
from typing import Dict, List, Optional


class ReviewError(Exception):
    """Base class for every error the core reports to its caller.

    Attributes:
        message:     Human-readable summary.
        details:     JSON-serialisable context (ids involved, limits, ...).
        code:        Stable machine-readable error name.
        http_status: Status the HTTP layer answers with.
    """

    code = 'review_error'
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict = dict(details or {})

    def to_dict(self) -> Dict:
        return {'code': self.code, 'message': self.message, 'details': self.details}


class ValidationError(ReviewError):
    """Malformed input."""
    code = 'validation_error'
    http_status = 400


class TooManyMembersError(ValidationError):
    code = 'too_many_members'


class NotFoundError(ReviewError):
    """A team, application or reviewer does not exist."""
    code = 'not_found'
    http_status = 404


class ConflictError(ReviewError):
    """The request contradicts the current state of the records."""
    code = 'conflict'
    http_status = 409


class DuplicateNameError(ConflictError):
    code = 'duplicate_name'


class AlreadyTeamedError(ConflictError):
    code = 'already_teamed'


class TeamFullError(ConflictError):
    code = 'team_full'


class IneligibleError(ConflictError):
    code = 'ineligible'


class NotAMemberError(ConflictError):
    code = 'not_a_member'


class PrivilegeRequiredError(ReviewError):
    """The caller did not pass the privileged flag for a privileged operation."""
    code = 'privilege_required'
    http_status = 403


class ResourceExhaustedError(ReviewError):
    """A bounded retry loop (e.g. team code generation) ran out of attempts."""
    code = 'resource_exhausted'
    http_status = 500


class NoReviewersAvailableError(ReviewError):
    code = 'no_reviewers_available'
    http_status = 400


class ConcurrencyBusyError(ReviewError):
    """A lock could not be acquired in time; retry with backoff."""
    code = 'concurrency_busy'
    http_status = 503


class PartialFailureError(ReviewError):
    """A multi-record mutation stopped half-way after retries were exhausted.

    Carries the steps (and record ids) that were written so an operator can
    reconcile, see :class:`app.services.consistency_service.ConsistencyService`.
    """
    code = 'partial_failure'
    http_status = 500

    def __init__(self, message: str, applied_steps: List[str],
                 failed_step: str, applied_ids: List[str]) -> None:
        super().__init__(message, {
            'applied_steps': list(applied_steps),
            'failed_step': failed_step,
            'applied_ids': list(applied_ids),
        })
        self.applied_steps = list(applied_steps)
        self.failed_step = failed_step
        self.applied_ids = list(applied_ids)
