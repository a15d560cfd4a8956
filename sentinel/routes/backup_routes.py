"""
Backup routes - run status, manual trigger and cancellation.
"""

import hmac
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from sentinel.scheduler import (
    BackupInProgress,
    cancel_running_backup,
    get_last_result,
    get_scheduled_jobs,
    is_backup_running,
    trigger_backup_now
)


bp = Blueprint('backup', __name__, url_prefix='/api/backup')


def token_required(view):
    """Require 'Authorization: Bearer <API_TOKEN>' when API_TOKEN is configured."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get('API_TOKEN')
        if expected:
            header = request.headers.get('Authorization', '')
            supplied = header[len('Bearer '):] if header.startswith('Bearer ') else ''
            if not hmac.compare_digest(supplied.encode(), expected.encode()):
                return jsonify({'error': 'Unauthorized'}), 401
        return view(*args, **kwargs)

    return wrapper


@bp.route('/status', methods=['GET'])
def status():
    """
    Get current backup state.

    Returns:
        JSON with running flag, scheduled jobs and the last run result
    """
    last_result = get_last_result()

    return jsonify({
        'running': is_backup_running(),
        'scheduled_jobs': get_scheduled_jobs(),
        'last_result': last_result.to_dict() if last_result else None
    })


@bp.route('/run', methods=['POST'])
@token_required
def run_now():
    """Trigger a backup immediately."""
    try:
        job_id = trigger_backup_now()
    except BackupInProgress as e:
        return jsonify({'error': str(e)}), 409
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({'message': 'Backup triggered', 'job_id': job_id}), 202


@bp.route('/cancel', methods=['POST'])
@token_required
def cancel():
    """Cancel the running backup."""
    if not cancel_running_backup():
        return jsonify({'error': 'No backup is running'}), 409

    return jsonify({'message': 'Cancellation requested'})
