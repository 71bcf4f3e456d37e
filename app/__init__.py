"""
hackreview application package.

Layered the same way throughout:

  app/repositories/ : pure I/O, reading and writing the SQL records.
  app/services/     : business logic (validation, team rules, balancing).
  app/locks.py      : named locks that serialise conflicting mutations.
  app/unit_of_work.py: applies a service's writes as one plan, with retries.

``ReviewCore`` (in ``hackreview.py``) is the integration point: it builds the
engine, locks and services once and exposes them as public attributes
(e.g. ``core.teams``).  Route handlers in ``hackreview_api.py`` go through the
core, which turns service errors into ``OperationResult`` values.
"""
