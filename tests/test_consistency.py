#!/usr/bin/env python3
"""
Tests for the consistency checker and reconciliation, including recovery
after a step-by-step plan fails half-way.

Run with:
    python -m pytest tests/test_consistency.py
"""
import json
import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from support import add_applications, add_reviewers, application, make_core, reviewer_set

from sqlalchemy.exc import OperationalError

from app.errors import PartialFailureError
from app.repositories.application_repository import ApplicationRepository
from database import Application, Reviewer, session_scope


def _kinds(issues):
    return sorted({i.kind for i in issues})


class TestConsistencyCheck(unittest.TestCase):

    def setUp(self):
        self.core = make_core()
        add_applications(self.core, ['a', 'b', 'c'])
        add_reviewers(self.core, ['r1@example.com', 'r2@example.com'])

    def test_clean_store(self):
        self.core.teams.create_team('Pair', 'a', ['b'])
        self.core.assignments.manual_assign(['a'], 'r1@example.com')
        self.assertEqual(self.core.consistency.check(), [])

    def test_detects_team_ref_drift(self):
        self.core.teams.create_team('Pair', 'a', ['b'])
        with session_scope(self.core.session_factory) as db:
            db.get(Application, 'b').team_ref = None
            db.get(Application, 'c').team_ref = 'a'
        issues = self.core.consistency.check()
        self.assertEqual(_kinds(issues), ['team_ref_mismatch'])
        self.assertEqual(sorted(i.record_id for i in issues), ['b', 'c'])

    def test_detects_reviewer_drift(self):
        with session_scope(self.core.session_factory) as db:
            db.get(Application, 'a').reviewer_ref = 'r1@example.com'
            db.get(Application, 'c').reviewer_ref = 'ghost@example.com'
            r2 = db.query(Reviewer).filter(Reviewer.email == 'r2@example.com').first()
            r2.assigned_applications = json.dumps(['b'])
        kinds = _kinds(self.core.consistency.check())
        self.assertIn('reviewer_set_mismatch', kinds)
        self.assertIn('unknown_reviewer', kinds)
        self.assertIn('unexpected_assignment', kinds)

    def test_detects_multiple_reviewers(self):
        self.core.assignments.manual_assign(['a'], 'r1@example.com')
        with session_scope(self.core.session_factory) as db:
            r2 = db.query(Reviewer).filter(Reviewer.email == 'r2@example.com').first()
            r2.assigned_applications = json.dumps(['a'])
        self.assertIn('multiple_reviewers', _kinds(self.core.consistency.check()))

    def test_issue_serialises(self):
        with session_scope(self.core.session_factory) as db:
            db.get(Application, 'c').team_ref = 'nope'
        issue = self.core.consistency.check()[0].to_dict()
        self.assertEqual(issue['kind'], 'team_ref_mismatch')
        self.assertEqual(issue['record_id'], 'c')


class TestReconcile(unittest.TestCase):

    def test_rebuilds_back_references(self):
        core = make_core()
        add_applications(core, ['a', 'b', 'c'])
        add_reviewers(core, ['r1@example.com'])
        core.teams.create_team('Pair', 'a', ['b'])
        with session_scope(core.session_factory) as db:
            db.get(Application, 'b').team_ref = None
            db.get(Application, 'c').reviewer_ref = 'r1@example.com'
        self.assertEqual(core.consistency.reconcile(), 2)
        self.assertEqual(core.consistency.check(), [])
        self.assertEqual(application(core, 'b')['team_ref'], 'a')
        self.assertEqual(reviewer_set(core, 'r1@example.com'), {'c'})
        self.assertEqual(core.consistency.reconcile(), 0)

    def test_recovers_from_partial_auto_assign(self):
        core = make_core(atomic_writes=False, write_retry_attempts=2)
        add_applications(core, ['a', 'b'])
        add_reviewers(core, ['r1@example.com'])
        busy = OperationalError('UPDATE applications', {}, Exception('database is locked'))
        with patch.object(ApplicationRepository, 'set_reviewer', side_effect=busy):
            with self.assertRaises(PartialFailureError) as ctx:
                core.assignments.auto_assign(privileged=True)
        self.assertEqual(ctx.exception.applied_steps, ['add to r1@example.com'])
        self.assertEqual(sorted(ctx.exception.applied_ids), ['a', 'b'])

        self.assertIn('unexpected_assignment', _kinds(core.consistency.check()))
        core.consistency.reconcile()
        self.assertEqual(core.consistency.check(), [])
        self.assertEqual(reviewer_set(core, 'r1@example.com'), set())
        # the applications are still unassigned, so a new run picks them up
        self.assertEqual(core.assignments.auto_assign(privileged=True).total_assigned, 2)
        self.assertEqual(core.consistency.check(), [])

    def test_facade_reports_partial_failure(self):
        core = make_core(atomic_writes=False, write_retry_attempts=1)
        add_applications(core, ['a'])
        add_reviewers(core, ['r1@example.com'])
        busy = OperationalError('UPDATE applications', {}, Exception('database is locked'))
        with patch.object(ApplicationRepository, 'set_reviewer', side_effect=busy):
            result = core.auto_assign(privileged=True)
        self.assertFalse(result.success)
        self.assertEqual(result.http_status, 500)
        self.assertEqual(result.to_dict()['error']['code'], 'partial_failure')


class TestAutoAssignRerun(unittest.TestCase):
    """Rerunning auto-assign, with no reconcile in between, repairs what an
    interrupted run left behind."""

    def _busy(self):
        return OperationalError('UPDATE applications', {}, Exception('database is locked'))

    def _assert_single_holder(self, core, emails):
        sets = [reviewer_set(core, e) for e in emails]
        for i, first in enumerate(sets):
            for second in sets[i + 1:]:
                self.assertEqual(first & second, set())

    def test_rerun_with_changed_load_converges(self):
        core = make_core(atomic_writes=False, write_retry_attempts=1,
                         seed_from_existing_load=True)
        add_applications(core, ['a', 'b', 'c'])
        add_reviewers(core, ['r1@example.com', 'r2@example.com'])
        with patch.object(ApplicationRepository, 'set_reviewer', side_effect=self._busy()):
            with self.assertRaises(PartialFailureError):
                core.assignments.auto_assign(privileged=True)
        held = {e: reviewer_set(core, e) for e in ('r1@example.com', 'r2@example.com')}

        add_applications(core, ['d'])
        result = core.assignments.auto_assign(privileged=True)
        self.assertEqual(result.total_assigned, 4)
        self._assert_single_holder(core, ['r1@example.com', 'r2@example.com'])
        for email, ids in held.items():
            self.assertTrue(ids <= reviewer_set(core, email))
            for app_id in ids:
                self.assertEqual(application(core, app_id)['reviewer_ref'], email)
        self.assertEqual(core.consistency.check(), [])

    def test_id_held_by_two_reviewers_keeps_the_first(self):
        core = make_core()
        add_applications(core, ['a', 'b'])
        add_reviewers(core, ['r1@example.com', 'r2@example.com'])
        with session_scope(core.session_factory) as db:
            for reviewer in db.query(Reviewer).all():
                reviewer.assigned_applications = json.dumps(['a'])
        result = core.assignments.auto_assign(privileged=True)
        self.assertEqual(result.total_assigned, 2)
        self.assertEqual(application(core, 'a')['reviewer_ref'], 'r1@example.com')
        self.assertEqual(reviewer_set(core, 'r1@example.com'), {'a'})
        self.assertEqual(reviewer_set(core, 'r2@example.com'), {'b'})
        self.assertEqual(core.consistency.check(), [])

    def test_team_follows_its_held_member(self):
        core = make_core()
        add_applications(core, ['a', 'b', 'c'])
        add_reviewers(core, ['r1@example.com', 'r2@example.com'])
        core.teams.create_team('Pair', 'a', ['b'])
        with session_scope(core.session_factory) as db:
            r2 = db.query(Reviewer).filter(Reviewer.email == 'r2@example.com').first()
            r2.assigned_applications = json.dumps(['b'])
        core.assignments.auto_assign(privileged=True)
        self.assertEqual(reviewer_set(core, 'r2@example.com'), {'a', 'b'})
        self.assertEqual(reviewer_set(core, 'r1@example.com'), {'c'})
        self.assertEqual(core.consistency.check(), [])

    def test_stale_id_in_super_admin_set_is_released(self):
        core = make_core()
        add_applications(core, ['a'])
        add_reviewers(core, ['r1@example.com'])
        add_reviewers(core, ['boss@example.com'], super_admin=True)
        with session_scope(core.session_factory) as db:
            boss = db.query(Reviewer).filter(Reviewer.email == 'boss@example.com').first()
            boss.assigned_applications = json.dumps(['a'])
        core.assignments.auto_assign(privileged=True)
        self.assertEqual(reviewer_set(core, 'boss@example.com'), set())
        self.assertEqual(reviewer_set(core, 'r1@example.com'), {'a'})
        self.assertEqual(core.consistency.check(), [])


if __name__ == '__main__':
    unittest.main()
