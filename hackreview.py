#!/usr/bin/env python3
"""
hackreview - Team-cohesive reviewer assignment for hackathon applications
Keeps applicant teams consistent and spreads unreviewed applications across
reviewers so every member of a team lands on the same reviewer.
"""

import json
import logging
import os
import random
import sys
import argparse
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from colorama import init, Fore, Style

from database import (DEFAULT_DATABASE_URL, init_db, make_engine,
                      make_session_factory, utcnow)
from app.errors import ReviewError, ValidationError
from app.locks import LockRegistry
from app.services import AssignmentService, ConsistencyService, TeamService
from app.services.succession import SUCCESSOR_POLICIES, make_successor_strategy
from app.unit_of_work import UnitOfWork

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root hackreview logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, str(level).upper(), logging.WARNING)
    logger = logging.getLogger('hackreview')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


# Module-level logger used throughout hackreview.py
logger = setup_logging()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: Dict[str, Any] = {
    'database_url': DEFAULT_DATABASE_URL,
    'log_level': 'WARNING',
    'lock_timeout_seconds': 5,
    'atomic_writes': True,
    'write_retry_attempts': 3,
    'write_retry_wait_max': 2,
    'team_code_attempts': 10,
    'successor_policy': 'random',
    'seed_from_existing_load': False,
}

# environment variable -> config key
ENV_OVERRIDES = {
    'HACKREVIEW_DATABASE_URL': 'database_url',
    'HACKREVIEW_LOG_LEVEL': 'log_level',
    'HACKREVIEW_LOCK_TIMEOUT': 'lock_timeout_seconds',
    'HACKREVIEW_ATOMIC_WRITES': 'atomic_writes',
    'HACKREVIEW_SUCCESSOR_POLICY': 'successor_policy',
}

_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def _as_bool(key: str, value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('1', 'true', 'yes', 'on'):
        return True
    if text in ('0', 'false', 'no', 'off'):
        return False
    raise ValidationError(f"Config value {key!r} must be a boolean", {'value': value})


def _as_number(key: str, value, cast: Callable, minimum) -> Any:
    try:
        number = cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Config value {key!r} must be a number", {'value': value})
    if number < minimum:
        raise ValidationError(f"Config value {key!r} must be at least {minimum}",
                              {'value': value})
    return number


def validate_config(config: Dict) -> Dict:
    """Return a normalised copy of *config*, raising ValidationError on bad values."""
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(config or {})
    url = cfg.get('database_url')
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Config value 'database_url' must be a non-empty string")
    cfg['database_url'] = url.strip()
    level = str(cfg.get('log_level', '')).upper()
    if level not in _LOG_LEVELS:
        raise ValidationError(f"Unknown log level {cfg.get('log_level')!r}",
                              {'allowed': list(_LOG_LEVELS)})
    cfg['log_level'] = level
    timeout = _as_number('lock_timeout_seconds', cfg['lock_timeout_seconds'], float, 0)
    if timeout <= 0:
        raise ValidationError("Config value 'lock_timeout_seconds' must be positive",
                              {'value': cfg['lock_timeout_seconds']})
    cfg['lock_timeout_seconds'] = timeout
    cfg['atomic_writes'] = _as_bool('atomic_writes', cfg['atomic_writes'])
    cfg['write_retry_attempts'] = _as_number('write_retry_attempts',
                                             cfg['write_retry_attempts'], int, 1)
    cfg['write_retry_wait_max'] = _as_number('write_retry_wait_max',
                                             cfg['write_retry_wait_max'], float, 0)
    cfg['team_code_attempts'] = _as_number('team_code_attempts',
                                           cfg['team_code_attempts'], int, 1)
    policy = str(cfg.get('successor_policy', '')).strip().lower()
    if policy not in SUCCESSOR_POLICIES:
        raise ValidationError(f"Unknown successor policy {cfg.get('successor_policy')!r}",
                              {'allowed': list(SUCCESSOR_POLICIES)})
    cfg['successor_policy'] = policy
    cfg['seed_from_existing_load'] = _as_bool('seed_from_existing_load',
                                              cfg['seed_from_existing_load'])
    return cfg


def load_config(config_path: Optional[str] = 'config.json') -> Dict:
    """Load configuration from JSON file with environment variable support

    A missing file is not an error: defaults apply. Environment variables
    take precedence over config file values:
    - HACKREVIEW_DATABASE_URL overrides database_url
    - HACKREVIEW_LOG_LEVEL overrides log_level
    - HACKREVIEW_LOCK_TIMEOUT overrides lock_timeout_seconds
    - HACKREVIEW_ATOMIC_WRITES overrides atomic_writes
    - HACKREVIEW_SUCCESSOR_POLICY overrides successor_policy

    Raises:
        ValidationError: Unreadable file or invalid value.
    """
    config: Dict = {}
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                config = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Error parsing config file {config_path}: {e}")
        if not isinstance(config, dict):
            raise ValidationError(f"Config file {config_path} must hold a JSON object")
    for env_name, key in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            config[key] = value
    return validate_config(config)


# ---------------------------------------------------------------------------
# Core facade
# ---------------------------------------------------------------------------

@dataclass
class OperationResult:
    """Outcome of a :class:`ReviewCore` call; domain errors never escape."""
    success: bool
    message: str
    data: Any = None
    error: Optional[ReviewError] = None

    @property
    def http_status(self) -> int:
        return 200 if self.success else self.error.http_status

    def to_dict(self) -> Dict:
        if self.success:
            return {'status': 'success', 'message': self.message, 'data': self.data}
        return {'status': 'error', 'message': self.message, 'error': self.error.to_dict()}


def _plain(value):
    """Turn service results (dataclasses with ``to_dict``) into plain data."""
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class ReviewCore:
    """Wires the store, locks and services together and exposes every
    operation as a call returning :class:`OperationResult`.

    Args:
        config:         Settings dict (merged over :data:`DEFAULT_CONFIG`).
                        When omitted, :func:`load_config` reads *config_path*.
        config_path:    JSON config file used when *config* is ``None``.
        rng:            ``random.Random`` for the random successor policy.
        code_generator: Team code source (tests inject a fixed sequence).
        clock:          Returns the current aware UTC time.
    """

    def __init__(self, config: Optional[Dict] = None, config_path: Optional[str] = None,
                 rng: Optional[random.Random] = None,
                 code_generator: Optional[Callable[[], str]] = None,
                 clock: Callable = utcnow) -> None:
        if config is None:
            self.config = load_config(config_path or 'config.json')
        else:
            self.config = validate_config(config)
        setup_logging(self.config['log_level'])

        self.engine = make_engine(self.config['database_url'])
        if not init_db(self.engine):
            logger.warning("Could not create tables at %s", self.config['database_url'])
        self.session_factory = make_session_factory(self.engine)
        self.locks = LockRegistry(timeout=self.config['lock_timeout_seconds'])
        self.unit_of_work = UnitOfWork(
            self.session_factory,
            atomic=self.config['atomic_writes'],
            retry_attempts=self.config['write_retry_attempts'],
            retry_wait_max=self.config['write_retry_wait_max'],
        )
        self.teams = TeamService(
            self.session_factory, self.locks, self.unit_of_work,
            successor_strategy=make_successor_strategy(self.config['successor_policy'], rng),
            code_generator=code_generator,
            clock=clock,
            code_attempts=self.config['team_code_attempts'],
        )
        self.assignments = AssignmentService(
            self.session_factory, self.locks, self.unit_of_work,
            clock=clock,
            seed_from_existing_load=self.config['seed_from_existing_load'],
        )
        self.consistency = ConsistencyService(self.session_factory, self.locks)

    def _run(self, message: str, func: Callable, *args, **kwargs) -> OperationResult:
        try:
            data = func(*args, **kwargs)
        except ReviewError as e:
            logger.warning("%s failed: %s", func.__name__, e.message)
            return OperationResult(False, e.message, error=e)
        return OperationResult(True, message, _plain(data))

    # --- teams -------------------------------------------------------------

    def create_team(self, name: str, leader: str,
                    members: Optional[List[str]] = None) -> OperationResult:
        return self._run("Team created successfully", self.teams.create_team,
                         name, leader, members)

    def add_member(self, team_id: str, applicant: str) -> OperationResult:
        return self._run("Member added successfully", self.teams.add_member,
                         team_id, applicant)

    def remove_member(self, team_id: str, applicant: str) -> OperationResult:
        result = self._run("Member removed successfully", self.teams.remove_member,
                           team_id, applicant)
        if result.success:
            action = result.data['action']
            if action == 'team_deleted':
                result.message = "Team deleted as the last member left"
            elif action == 'owner_changed':
                result.message = "Member removed and ownership transferred"
        return result

    def delete_team(self, team_id: str, privileged: bool = False) -> OperationResult:
        return self._run("Team deleted successfully", self.teams.delete_team,
                         team_id, privileged=privileged)

    def get_team(self, team_id: str) -> OperationResult:
        return self._run("Team found", self.teams.get_team, team_id)

    def get_team_for_application(self, applicant: str) -> OperationResult:
        result = self._run("Team found", self.teams.get_team_for_application, applicant)
        if result.success and result.data is None:
            result.message = "Applicant is not in a team"
        return result

    def list_teams(self, **filters) -> OperationResult:
        return self._run("Teams retrieved", self.teams.list_teams, **filters)

    def search_candidates(self, query: str, eligible_only: bool = False) -> OperationResult:
        if len((query or '').strip()) < 2:
            return OperationResult(True, "Search query too short", [])
        return self._run("Users found", self.teams.search_candidates,
                         query, eligible_only=eligible_only)

    # --- assignment ----------------------------------------------------------

    def preview_assignment_stats(self) -> OperationResult:
        return self._run("Auto-assign statistics retrieved", self.assignments.preview_stats)

    def auto_assign(self, privileged: bool = False) -> OperationResult:
        result = self._run("Applications successfully auto-assigned",
                           self.assignments.auto_assign, privileged=privileged)
        if result.success and result.data['total_assigned'] == 0:
            result.message = "No unassigned applications found"
        return result

    def manual_assign(self, application_ids: List[str], reviewer_email: str) -> OperationResult:
        return self._run("Applications successfully assigned",
                         self.assignments.manual_assign, application_ids, reviewer_email)

    # --- consistency ---------------------------------------------------------

    def check_consistency(self) -> OperationResult:
        result = self._run("Consistency check complete", self.consistency.check)
        if result.success:
            result.data = {'issues': result.data, 'issue_count': len(result.data)}
        return result

    def reconcile(self) -> OperationResult:
        result = self._run("Reconciliation complete", self.consistency.reconcile)
        if result.success:
            result.data = {'records_changed': result.data}
        return result


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _print_result(result: OperationResult) -> int:
    if result.success:
        print(f"{Fore.GREEN}{result.message}")
        if result.data is not None:
            print(f"{Fore.WHITE}{json.dumps(result.data, indent=2, default=str)}")
        return 0
    print(f"{Fore.RED}Error: {result.message}")
    if result.error.details:
        print(f"{Fore.YELLOW}{json.dumps(result.error.details, indent=2, default=str)}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='hackreview - team-cohesive reviewer assignment',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 hackreview.py init-db
  python3 hackreview.py preview
  python3 hackreview.py auto-assign --super-admin
  python3 hackreview.py assign reviewer@example.com app1 app2
  python3 hackreview.py create-team "Byte Me" alice@example.com bob@example.com
  python3 hackreview.py remove-member app1 alice@example.com
  python3 hackreview.py check
        """
    )
    parser.add_argument(
        '--config', '-c',
        default='config.json',
        help='Path to config file (default: config.json)'
    )
    parser.add_argument(
        '--log-level',
        choices=_LOG_LEVELS,
        help='Override the configured log level'
    )
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init-db', help='Create the database tables')
    sub.add_parser('preview', help='Show unassigned/reviewer counts')

    auto = sub.add_parser('auto-assign', help='Distribute unassigned applications')
    auto.add_argument('--super-admin', action='store_true',
                      help='Confirm the caller is a super-admin')

    assign = sub.add_parser('assign', help='Assign applications (and teammates) to a reviewer')
    assign.add_argument('reviewer', help='Reviewer e-mail')
    assign.add_argument('applications', nargs='+', metavar='APPLICATION_ID')

    create = sub.add_parser('create-team', help='Create a team')
    create.add_argument('name')
    create.add_argument('leader', help='Leader application id or e-mail')
    create.add_argument('members', nargs='*', help='Additional members (max 3)')

    add = sub.add_parser('add-member', help='Add an applicant to a team')
    add.add_argument('team_id')
    add.add_argument('applicant')

    remove = sub.add_parser('remove-member', help='Remove an applicant from a team')
    remove.add_argument('team_id')
    remove.add_argument('applicant')

    delete = sub.add_parser('delete-team', help='Delete a team')
    delete.add_argument('team_id')
    delete.add_argument('--super-admin', action='store_true',
                        help='Confirm the caller is a super-admin')

    sub.add_parser('check', help='Report records whose two sides disagree')
    sub.add_parser('reconcile', help='Repair back-references from their authoritative side')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    print(f"{Fore.CYAN}{Style.BRIGHT}hackreview{Style.RESET_ALL}")
    print(f"{Fore.WHITE}Team-cohesive reviewer assignment\n")

    try:
        config = load_config(args.config)
        if args.log_level:
            config['log_level'] = args.log_level
        core = ReviewCore(config=config)
    except ValidationError as e:
        print(f"{Fore.RED}Error: {e.message}")
        return 1

    if args.command == 'init-db':
        print(f"{Fore.GREEN}Database ready at {core.config['database_url']}")
        return 0
    if args.command == 'preview':
        return _print_result(core.preview_assignment_stats())
    if args.command == 'auto-assign':
        return _print_result(core.auto_assign(privileged=args.super_admin))
    if args.command == 'assign':
        return _print_result(core.manual_assign(args.applications, args.reviewer))
    if args.command == 'create-team':
        return _print_result(core.create_team(args.name, args.leader, args.members))
    if args.command == 'add-member':
        return _print_result(core.add_member(args.team_id, args.applicant))
    if args.command == 'remove-member':
        return _print_result(core.remove_member(args.team_id, args.applicant))
    if args.command == 'delete-team':
        return _print_result(core.delete_team(args.team_id, privileged=args.super_admin))
    if args.command == 'check':
        result = core.check_consistency()
        if result.success and not result.data['issues']:
            print(f"{Fore.GREEN}No inconsistencies found")
            return 0
        return _print_result(result)
    if args.command == 'reconcile':
        return _print_result(core.reconcile())
    return 1


if __name__ == '__main__':
    sys.exit(main())
