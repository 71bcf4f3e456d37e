"""
Shared fixtures for the hackreview test-suite: an in-memory core and record
seeding helpers.
"""
import itertools
import os
import random
import sys
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Application, Reviewer, STATUS_SUBMITTED, UNASSIGNED, session_scope
from hackreview import ReviewCore

FIXED_NOW = datetime(2025, 1, 18, 12, 0, tzinfo=timezone.utc)


def sequential_codes(start: int = 0xa00000):
    """Team code generator yielding 'a00000', 'a00001', ..."""
    counter = itertools.count(start)
    return lambda: format(next(counter), '06x')


def make_core(**overrides) -> ReviewCore:
    config = {
        'database_url': 'sqlite://',
        'log_level': 'CRITICAL',
        'lock_timeout_seconds': 1,
        'write_retry_wait_max': 0,
        'successor_policy': 'earliest',
    }
    config.update(overrides)
    return ReviewCore(config=config, rng=random.Random(7),
                      code_generator=sequential_codes(), clock=lambda: FIXED_NOW)


def add_applications(core: ReviewCore, ids: Iterable[str],
                     status: str = STATUS_SUBMITTED, **fields) -> List[str]:
    """Insert applications ``<id>@example.com`` with the given status."""
    ids = list(ids)
    with session_scope(core.session_factory) as db:
        for app_id in ids:
            db.add(Application(
                id=app_id,
                email=f'{app_id}@example.com',
                first_name=fields.get('first_name', app_id.title()),
                last_name=fields.get('last_name', 'Tester'),
                status=status,
                reviewer_ref=fields.get('reviewer_ref', UNASSIGNED),
            ))
    return ids


def add_reviewers(core: ReviewCore, emails: Iterable[str],
                  super_admin: bool = False) -> List[str]:
    emails = list(emails)
    with session_scope(core.session_factory) as db:
        for email in emails:
            db.add(Reviewer(email=email, is_super_admin=super_admin,
                            assigned_applications='[]'))
    return emails


def application(core: ReviewCore, app_id: str) -> Optional[Dict]:
    with session_scope(core.session_factory) as db:
        app = db.get(Application, app_id)
        if app is None:
            return None
        return {'id': app.id, 'team_ref': app.team_ref, 'reviewer_ref': app.reviewer_ref,
                'assigned_at': app.assigned_at, 'status': app.status}


def reviewer_set(core: ReviewCore, email: str) -> set:
    with session_scope(core.session_factory) as db:
        reviewer = db.query(Reviewer).filter(Reviewer.email == email).first()
        return reviewer.assigned_set()
