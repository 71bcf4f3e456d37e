#!/usr/bin/env python3
"""
hackreview API - JSON HTTP interface for the team and assignment core
Every response uses the envelope {"status", "message", "data" | "error"}.
"""

import logging
import argparse
import os
import threading
from functools import wraps
from typing import Callable, Optional, Tuple
from flask import Flask, jsonify, request
from dotenv import load_dotenv

import hackreview
from app.errors import ValidationError
from hackreview import OperationResult, ReviewCore

load_dotenv()

# Initialize logging early so service logs are captured
log_level = os.getenv('HACKREVIEW_LOG_LEVEL', 'INFO')
hackreview.setup_logging(log_level)
api_logger = logging.getLogger('hackreview.api')
if os.path.isdir('logs'):
    try:
        fh = logging.FileHandler('logs/hackreview_api.log')
        fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
        fh.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        logging.getLogger('hackreview').addHandler(fh)
    except OSError as e:
        api_logger.warning('Could not create log file handler: %s', e)

app = Flask(__name__)

# Global core instance
core: Optional[ReviewCore] = None
core_lock = threading.Lock()

SUPER_ADMIN_HEADER = 'X-Super-Admin'

# original dashboard sort keys -> listing sort fields
_SORT_ALIASES = {
    'teamName': 'name',
    'teamCode': 'code',
    'memberCount': 'member_count',
    'createdAt': 'created_at',
}


def initialize_core(config_path: str = 'config.json',
                    instance: Optional[ReviewCore] = None) -> Tuple[bool, str]:
    """Initialize the review core (or install *instance*, used by tests)."""
    global core
    with core_lock:
        if instance is not None:
            core = instance
            return True, 'Core installed'
        try:
            core = ReviewCore(config_path=config_path)
            return True, f"Connected to {core.config['database_url']}"
        except ValidationError as e:
            api_logger.error('Invalid configuration: %s', e.message)
            return False, e.message


def require_core(f):
    """Decorator to answer 503 until the core is initialized"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if core is None:
            return jsonify({'status': 'error', 'message': 'Service not initialized',
                            'error': {'code': 'not_initialized'}}), 503
        return f(*args, **kwargs)
    return decorated_function


def is_privileged() -> bool:
    """The upstream auth layer marks super-admin requests with a header."""
    return request.headers.get(SUPER_ADMIN_HEADER, '').strip().lower() == 'true'


def _respond(result: OperationResult):
    return jsonify(result.to_dict()), result.http_status


def _bad_request(message: str):
    return jsonify({'status': 'error', 'message': message,
                    'error': {'code': 'validation_error', 'message': message,
                              'details': {}}}), 400


def _call(operation: Callable, *args, **kwargs):
    """Run a core operation, answering 500 on anything unexpected."""
    try:
        return _respond(operation(*args, **kwargs))
    except Exception as e:
        api_logger.exception('Unexpected error in %s: %s', operation.__name__, e)
        return jsonify({'status': 'error', 'message': 'Internal server error',
                        'error': {'code': 'internal_error', 'message': str(e),
                                  'details': {}}}), 500


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------

@app.route('/api/teams/create', methods=['POST'])
@require_core
def api_create_team():
    """Create a team from teamName, teamLeader and additionalMembers"""
    data = request.get_json(silent=True) or {}
    members = data.get('additionalMembers') or []
    if not isinstance(members, list):
        return _bad_request('additionalMembers must be a list')
    return _call(core.create_team, data.get('teamName', ''), data.get('teamLeader', ''),
                 [str(m) for m in members])


@app.route('/api/teams/add-member', methods=['POST'])
@require_core
def api_add_member():
    data = request.get_json(silent=True) or {}
    return _call(core.add_member, str(data.get('teamId', '')), str(data.get('applicant', '')))


@app.route('/api/teams/remove-member', methods=['POST'])
@require_core
def api_remove_member():
    data = request.get_json(silent=True) or {}
    return _call(core.remove_member, str(data.get('teamId', '')),
                 str(data.get('applicant', '')))


@app.route('/api/teams/<team_id>', methods=['DELETE'])
@require_core
def api_delete_team(team_id):
    return _call(core.delete_team, team_id, privileged=is_privileged())


@app.route('/api/teams', methods=['GET'])
@require_core
def api_list_teams():
    """Paginated team listing with search, member-count filter and sorting"""
    sort_field = request.args.get('sortField', 'member_count')
    return _call(
        core.list_teams,
        search=request.args.get('search', ''),
        member_count=request.args.get('memberCount'),
        sort_field=_SORT_ALIASES.get(sort_field, sort_field),
        sort_order=request.args.get('sortOrder', 'asc'),
        page=request.args.get('page', 1),
        limit=request.args.get('limit', 8),
    )


@app.route('/api/teams/search-users', methods=['GET'])
@require_core
def api_search_users():
    eligible_only = request.args.get('eligibleOnly', '').lower() == 'true'
    return _call(core.search_candidates, request.args.get('q', ''), eligible_only)


@app.route('/api/teams/<team_id>', methods=['GET'])
@require_core
def api_get_team(team_id):
    return _call(core.get_team, team_id)


@app.route('/api/users/team/<applicant>', methods=['GET'])
@require_core
def api_team_for_user(applicant):
    return _call(core.get_team_for_application, applicant)


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

@app.route('/api/admin/assign-applications', methods=['POST'])
@require_core
def api_assign_applications():
    """Assign the selected applications (and their teammates) to one reviewer"""
    data = request.get_json(silent=True) or {}
    ids = data.get('applicationIds', data.get('selectedApplicants')) or []
    email = data.get('reviewerEmail', data.get('selectedAdminEmail')) or ''
    if not isinstance(ids, list):
        return _bad_request('applicationIds must be a list')
    return _call(core.manual_assign, [str(i) for i in ids], str(email))


@app.route('/api/admin/auto-assign-applications', methods=['GET'])
@require_core
def api_auto_assign_preview():
    return _call(core.preview_assignment_stats)


@app.route('/api/admin/auto-assign-applications', methods=['POST'])
@require_core
def api_auto_assign():
    return _call(core.auto_assign, privileged=is_privileged())


@app.route('/api/admin/consistency', methods=['GET'])
@require_core
def api_consistency():
    return _call(core.check_consistency)


# ---------------------------------------------------------------------------
# API Documentation: OpenAPI 3.0
# ---------------------------------------------------------------------------

@app.route('/api/openapi.json')
def api_openapi_spec():
    """Serve the OpenAPI 3.0 specification as JSON."""
    from openapi_spec import build_spec
    server_url = request.url_root.rstrip('/')
    return jsonify(build_spec(server_url=server_url))


def main():
    """Main entry point for the API server"""
    parser = argparse.ArgumentParser(description='hackreview API server')
    parser.add_argument('--config', default='config.json', help='Path to config file')
    parser.add_argument('--host', default='127.0.0.1', help='Interface to bind')
    parser.add_argument('--port', type=int, default=5000, help='Port to listen on')
    args = parser.parse_args()

    ok, message = initialize_core(config_path=args.config)
    if not ok:
        print(f"Failed to start: {message}")
        return 1

    print("\n" + "=" * 60)
    print("hackreview API is starting...")
    print("=" * 60)
    print(f"\n{message}")
    print(f"Listening on http://{args.host}:{args.port}")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    try:
        app.run(host=args.host, port=args.port, debug=False)
    except KeyboardInterrupt:
        print("\nhackreview API stopped")
    return 0


if __name__ == "__main__":
    main()
