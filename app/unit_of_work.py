"""Write plans for multi-record mutations.

A service validates everything first, then describes its writes as a
:class:`WritePlan`: an ordered list of named, idempotent steps, each of which
re-loads the rows it needs by id inside the session it is given.
:class:`UnitOfWork` applies a plan either

* atomically: one transaction, the whole plan is retried on transient
  store errors; or
* step by step: one commit per step, each step retried on its own. If a
  step still fails after some earlier steps were committed, a
  :class:`~app.errors.PartialFailureError` names what was written.

Because every step is idempotent, re-running a plan (or a caller retrying
the whole operation) converges on the same end state.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Sequence

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from database import session_scope
from .errors import ConcurrencyBusyError, ConflictError, PartialFailureError

logger = logging.getLogger('hackreview.unit_of_work')

# Errors worth retrying: lock timeouts, dropped connections, "database is locked".
TRANSIENT_ERRORS = (OperationalError,)


@dataclass
class WriteStep:
    """One idempotent write. ``apply`` receives an open session."""
    name: str
    record_ids: List[str]
    apply: Callable


@dataclass
class WritePlan:
    description: str
    steps: List[WriteStep] = field(default_factory=list)

    def add(self, name: str, record_ids: Sequence[str], apply: Callable) -> None:
        self.steps.append(WriteStep(name, [str(r) for r in record_ids], apply))

    def __len__(self) -> int:
        return len(self.steps)


class UnitOfWork:
    """Applies :class:`WritePlan` objects against a session factory.

    Args:
        session_factory: ``sessionmaker`` for the record store.
        atomic:          Apply the plan in one transaction (default) or
                         commit step by step.
        retry_attempts:  Attempts per transaction (atomic) or per step.
        retry_wait_max:  Upper bound in seconds of the exponential backoff.
    """

    def __init__(self, session_factory, atomic: bool = True,
                 retry_attempts: int = 3, retry_wait_max: float = 2.0) -> None:
        self._session_factory = session_factory
        self.atomic = atomic
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_wait_max = max(0.0, float(retry_wait_max))

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.1, min=0, max=self.retry_wait_max),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply(self, plan: WritePlan) -> None:
        """Apply every step of *plan*.

        Raises:
            ConcurrencyBusyError: Transient store errors persisted and
                nothing was written.
            ConflictError:        The store rejected the writes on a unique
                constraint (a concurrent writer got there first) and nothing
                was written.
            PartialFailureError:  Step-by-step mode only; some steps were
                committed before a later one failed for good.
        """
        if not plan.steps:
            return
        if self.atomic:
            self._apply_atomic(plan)
        else:
            self._apply_stepwise(plan)
        logger.debug("Applied plan %r (%d steps)", plan.description, len(plan))

    def _apply_atomic(self, plan: WritePlan) -> None:
        try:
            for attempt in self._retrying():
                with attempt:
                    with session_scope(self._session_factory) as db:
                        for step in plan.steps:
                            step.apply(db)
                            db.flush()
        except TRANSIENT_ERRORS as exc:
            logger.error("Plan %r failed after %d attempts: %s",
                         plan.description, self.retry_attempts, exc)
            raise ConcurrencyBusyError(
                f"The record store is busy; {plan.description} was not applied",
                {'plan': plan.description},
            ) from exc
        except IntegrityError as exc:
            logger.warning("Plan %r rejected by the store: %s", plan.description, exc.orig)
            raise ConflictError(
                f"A concurrent change conflicts with {plan.description}",
                {'plan': plan.description},
            ) from exc

    def _apply_stepwise(self, plan: WritePlan) -> None:
        applied: List[WriteStep] = []
        for step in plan.steps:
            try:
                for attempt in self._retrying():
                    with attempt:
                        with session_scope(self._session_factory) as db:
                            step.apply(db)
            except SQLAlchemyError as exc:
                if applied:
                    applied_ids = [rid for s in applied for rid in s.record_ids]
                    logger.error("Plan %r stopped at step %s after %d committed steps: %s",
                                 plan.description, step.name, len(applied), exc)
                    raise PartialFailureError(
                        f"{plan.description} was only partially applied",
                        applied_steps=[s.name for s in applied],
                        failed_step=step.name,
                        applied_ids=applied_ids,
                    ) from exc
                if isinstance(exc, IntegrityError):
                    raise ConflictError(
                        f"A concurrent change conflicts with {plan.description}",
                        {'plan': plan.description, 'step': step.name},
                    ) from exc
                raise ConcurrencyBusyError(
                    f"The record store is busy; {plan.description} was not applied",
                    {'plan': plan.description, 'step': step.name},
                ) from exc
            applied.append(step)
