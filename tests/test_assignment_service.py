#!/usr/bin/env python3
"""
Tests for reviewer assignment (app/services/assignment_service.py).

Run with:
    python -m pytest tests/test_assignment_service.py
"""
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from support import (add_applications, add_reviewers, application, make_core,
                     reviewer_set, FIXED_NOW)

from app.errors import (NoReviewersAvailableError, NotFoundError,
                        PrivilegeRequiredError, ValidationError)
from database import UNASSIGNED


class TestPreviewStats(unittest.TestCase):

    def test_counts_submitted_unassigned_and_non_super_reviewers(self):
        core = make_core()
        add_applications(core, ['s1', 's2'])
        add_applications(core, ['adm'], status='Admitted')
        add_applications(core, ['done'], reviewer_ref='r1@example.com')
        add_reviewers(core, ['r1@example.com', 'r2@example.com'])
        add_reviewers(core, ['boss@example.com'], super_admin=True)
        self.assertEqual(core.assignments.preview_stats(),
                         {'unassigned_count': 2, 'reviewer_count': 2})


class TestAutoAssign(unittest.TestCase):

    def setUp(self):
        self.core = make_core()
        self.service = self.core.assignments

    def test_requires_privilege(self):
        with self.assertRaises(PrivilegeRequiredError):
            self.service.auto_assign()

    def test_team_and_singles_over_two_reviewers(self):
        add_applications(self.core, ['t1', 't2', 't3', 'x', 'y'])
        self.core.teams.create_team('Trio', 't1', ['t2', 't3'])
        add_reviewers(self.core, ['r1@example.com', 'r2@example.com'])

        result = self.service.auto_assign(privileged=True)

        self.assertEqual(result.total_assigned, 5)
        self.assertEqual(result.teams_assigned, 1)
        self.assertEqual(result.individuals_assigned, 2)
        stats = {s.reviewer: s.new_assignments for s in result.reviewer_stats}
        self.assertEqual(stats, {'r1@example.com': 3, 'r2@example.com': 2})
        self.assertEqual(reviewer_set(self.core, 'r1@example.com'), {'t1', 't2', 't3'})
        self.assertEqual(reviewer_set(self.core, 'r2@example.com'), {'x', 'y'})
        for app_id in ('t1', 't2', 't3'):
            self.assertEqual(application(self.core, app_id)['reviewer_ref'], 'r1@example.com')
        self.assertIsNotNone(application(self.core, 'x')['assigned_at'])

    def test_no_applications_is_success_even_without_reviewers(self):
        result = self.service.auto_assign(privileged=True)
        self.assertEqual(result.total_assigned, 0)
        self.assertEqual(result.reviewer_stats, [])

    def test_no_reviewers_writes_nothing(self):
        add_applications(self.core, ['a', 'b'])
        add_reviewers(self.core, ['boss@example.com'], super_admin=True)
        with self.assertRaises(NoReviewersAvailableError):
            self.service.auto_assign(privileged=True)
        self.assertEqual(application(self.core, 'a')['reviewer_ref'], UNASSIGNED)

    def test_only_submitted_unassigned_are_taken(self):
        add_applications(self.core, ['s1'])
        add_applications(self.core, ['adm'], status='Admitted')
        add_applications(self.core, ['old'], reviewer_ref='r2@example.com')
        add_reviewers(self.core, ['r1@example.com', 'r2@example.com'])
        result = self.service.auto_assign(privileged=True)
        self.assertEqual(result.total_assigned, 1)
        self.assertEqual(application(self.core, 'adm')['reviewer_ref'], UNASSIGNED)
        self.assertEqual(application(self.core, 'old')['reviewer_ref'], 'r2@example.com')

    def test_team_members_not_collected_are_left_alone(self):
        add_applications(self.core, ['lead', 'mate'])
        add_applications(self.core, ['adm'], status='Admitted')
        self.core.teams.create_team('Mixed', 'lead', ['mate', 'adm'])
        add_reviewers(self.core, ['r1@example.com'])
        result = self.service.auto_assign(privileged=True)
        self.assertEqual(result.total_assigned, 2)
        self.assertEqual(result.teams_assigned, 1)
        self.assertEqual(application(self.core, 'adm')['reviewer_ref'], UNASSIGNED)

    def test_second_run_finds_nothing(self):
        add_applications(self.core, ['a', 'b', 'c'])
        add_reviewers(self.core, ['r1@example.com', 'r2@example.com'])
        self.service.auto_assign(privileged=True)
        again = self.service.auto_assign(privileged=True)
        self.assertEqual(again.total_assigned, 0)
        self.assertEqual(len(reviewer_set(self.core, 'r1@example.com')
                             | reviewer_set(self.core, 'r2@example.com')), 3)

    def test_counters_start_at_zero_by_default(self):
        add_applications(self.core, ['old1', 'old2'], reviewer_ref='r1@example.com')
        add_reviewers(self.core, ['r1@example.com', 'r2@example.com'])
        self.core.assignments.manual_assign(['old1', 'old2'], 'r1@example.com')
        add_applications(self.core, ['new1'])
        result = self.service.auto_assign(privileged=True)
        self.assertEqual(result.reviewer_stats[0].reviewer, 'r1@example.com')
        self.assertEqual(result.reviewer_stats[0].total_assignments, 3)

    def test_seeding_from_existing_load(self):
        core = make_core(seed_from_existing_load=True)
        add_reviewers(core, ['r1@example.com', 'r2@example.com'])
        add_applications(core, ['old1', 'old2'])
        core.assignments.manual_assign(['old1', 'old2'], 'r1@example.com')
        add_applications(core, ['new1'])
        result = core.assignments.auto_assign(privileged=True)
        self.assertEqual([s.reviewer for s in result.reviewer_stats], ['r2@example.com'])

    def test_result_serialises(self):
        add_applications(self.core, ['a'])
        add_reviewers(self.core, ['r1@example.com'])
        data = self.service.auto_assign(privileged=True).to_dict()
        self.assertEqual(data['reviewer_stats'],
                         [{'reviewer': 'r1@example.com', 'new_assignments': 1,
                           'total_assignments': 1}])


class TestManualAssign(unittest.TestCase):

    def setUp(self):
        self.core = make_core()
        self.service = self.core.assignments
        add_applications(self.core, ['a', 'b', 'c', 'd'])
        add_reviewers(self.core, ['r1@example.com', 'r2@example.com'])

    def test_assigns_and_reports_set(self):
        result = self.service.manual_assign(['b', 'a'], 'r1@example.com')
        self.assertEqual(result.total_assigned, 2)
        self.assertEqual(result.team_members_added, 0)
        self.assertEqual(result.assigned_applications, ['a', 'b'])
        self.assertEqual(application(self.core, 'a')['reviewer_ref'], 'r1@example.com')

    def test_moves_from_previous_reviewer(self):
        self.service.manual_assign(['a', 'b'], 'r1@example.com')
        self.service.manual_assign(['a'], 'r2@example.com')
        self.assertEqual(reviewer_set(self.core, 'r1@example.com'), {'b'})
        self.assertEqual(reviewer_set(self.core, 'r2@example.com'), {'a'})
        self.assertEqual(application(self.core, 'a')['reviewer_ref'], 'r2@example.com')

    def test_idempotent(self):
        first = self.service.manual_assign(['a'], 'r1@example.com')
        stamp = application(self.core, 'a')['assigned_at']
        second = self.service.manual_assign(['a'], 'r1@example.com')
        self.assertEqual(first.assigned_applications, second.assigned_applications)
        self.assertEqual(application(self.core, 'a')['assigned_at'], stamp)
        self.assertEqual(reviewer_set(self.core, 'r1@example.com'), {'a'})

    def test_expands_to_teammates(self):
        self.core.teams.create_team('Pair', 'a', ['b', 'c'])
        result = self.service.manual_assign(['b'], 'r2@example.com')
        self.assertEqual(result.total_assigned, 3)
        self.assertEqual(result.team_members_added, 2)
        self.assertEqual(result.assigned_applications, ['a', 'b', 'c'])
        self.assertEqual(application(self.core, 'c')['reviewer_ref'], 'r2@example.com')

    def test_validation(self):
        with self.assertRaises(ValidationError):
            self.service.manual_assign([], 'r1@example.com')
        with self.assertRaises(ValidationError):
            self.service.manual_assign(['a'], '  ')

    def test_unknown_reviewer_or_application_writes_nothing(self):
        with self.assertRaises(NotFoundError):
            self.service.manual_assign(['a'], 'ghost@example.com')
        with self.assertRaises(NotFoundError):
            self.service.manual_assign(['a', 'ghost'], 'r1@example.com')
        self.assertEqual(application(self.core, 'a')['reviewer_ref'], UNASSIGNED)
        self.assertEqual(reviewer_set(self.core, 'r1@example.com'), set())

    def test_uses_injected_clock(self):
        self.service.manual_assign(['d'], 'r1@example.com')
        stamp = application(self.core, 'd')['assigned_at']
        self.assertEqual(stamp.replace(tzinfo=None), FIXED_NOW.replace(tzinfo=None))

    def test_reviewer_email_is_case_insensitive(self):
        result = self.service.manual_assign(['a'], ' R1@Example.COM ')
        self.assertEqual(result.reviewer, 'r1@example.com')
        self.assertEqual(application(self.core, 'a')['reviewer_ref'], 'r1@example.com')
        self.assertEqual(reviewer_set(self.core, 'r1@example.com'), {'a'})

    def test_stored_reviewer_spelling_is_kept(self):
        add_reviewers(self.core, ['Mixed@Example.com'])
        result = self.service.manual_assign(['c'], 'mixed@example.com')
        self.assertEqual(result.assigned_applications, ['c'])
        self.assertEqual(application(self.core, 'c')['reviewer_ref'], 'Mixed@Example.com')
        self.assertEqual(self.core.consistency.check(), [])

    def test_cross_record_invariant_holds(self):
        self.core.teams.create_team('Pair', 'a', ['b'])
        self.service.manual_assign(['a'], 'r1@example.com')
        self.service.manual_assign(['c', 'b'], 'r2@example.com')
        self.assertEqual(self.core.consistency.check(), [])


if __name__ == '__main__':
    unittest.main()
