"""Helper functions and decorators for Flask routes

This module contains reusable decorators and utilities to reduce
duplication in route handlers.
"""

import logging
import time
from contextlib import contextmanager
from functools import wraps

from flask import jsonify, redirect, url_for, request
from flask_login import current_user, logout_user

from app import db

logger = logging.getLogger(__name__)


def wants_json():
    return request.is_json or request.path.startswith('/api/')


def get_api_user():
    """
    Get the authenticated user from either session login or Bearer token.
    For API endpoints that need to support both web and script access.

    Returns the user if authenticated and not locked, None otherwise.
    """
    user = None
    if current_user.is_authenticated:
        user = current_user
    else:
        from app.models import User
        auth_header = request.headers.get('Authorization')
        if auth_header and auth_header.startswith('Bearer '):
            token = auth_header.split(' ', 1)[1]
            if token:
                user = User.query.filter_by(api_token=token).first()

    if user is not None and user.is_locked:
        if current_user.is_authenticated:
            logout_user()
        return None
    return user


def _unauthorized():
    if wants_json():
        return jsonify({'error': 'Authentication required'}), 401
    return redirect(url_for('main.login'))


# ============================================================================
# Access Decorators
# ============================================================================

def api_login_required(f):
    """Decorator requiring a session login or Bearer token.

    Injects ``api_user`` as a keyword argument.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = get_api_user()
        if not user:
            return _unauthorized()
        kwargs['api_user'] = user
        return f(*args, **kwargs)

    return decorated_function


def admin_required(f):
    """Decorator restricting a route to admin users. Use after api_login_required."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = kwargs.get('api_user') or get_api_user()
        if not user:
            return _unauthorized()
        if not user.is_admin:
            logger.warning("Non-admin user %s denied access to %s", user.id, f.__name__)
            return jsonify({'error': 'Administrator access required'}), 403
        kwargs['api_user'] = user
        return f(*args, **kwargs)

    return decorated_function


def require_plant(f):
    """Decorator loading the ``plant_id`` route argument for the current user.

    Replaces ``plant_id`` with a ``plant`` keyword argument; 404 when the
    plant does not exist or belongs to another user.

    Usage:
        @bp.route('/api/plants/<int:plant_id>/summary')
        @api_login_required
        @require_plant
        def plant_summary(plant, api_user=None):
            pass
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        from app.models import Plant

        user = kwargs.get('api_user') or get_api_user()
        if not user:
            return _unauthorized()
        plant = db.session.get(Plant, kwargs.pop('plant_id'))
        if plant is None or plant.user_id != user.id:
            return jsonify({'error': 'Plant not found'}), 404
        kwargs['api_user'] = user
        kwargs['plant'] = plant
        return f(*args, **kwargs)

    return decorated_function


def require_profile(f):
    """Decorator loading the ``profile_id`` route argument for the current user."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        from app import profiles

        user = kwargs.get('api_user') or get_api_user()
        if not user:
            return _unauthorized()
        profile = profiles.get(kwargs.pop('profile_id'), user)
        if profile is None:
            return jsonify({'error': 'Profile not found'}), 404
        kwargs['api_user'] = user
        kwargs['profile'] = profile
        return f(*args, **kwargs)

    return decorated_function


# ============================================================================
# Database Transaction Helper
# ============================================================================

def _is_locked(e):
    import sqlite3

    return (
        'database is locked' in str(e).lower() or
        (hasattr(e, 'orig') and isinstance(e.orig, sqlite3.OperationalError))
    )


def db_commit_with_retry(work=None, max_retries=3, retry_delay=0.5):
    """Commit database session with retry logic for SQLite locking.

    Request handlers and the monitoring loop thread write to the same
    database; SQLite can return "database is locked" when they overlap.

    ``work`` stages the unit of work in the session and returns its result.
    A rollback discards everything staged, so ``work`` is called again
    before every retried commit. Without ``work`` the pending changes
    cannot be rebuilt and a locked commit is raised instead of retried.

    Returns:
        Whatever ``work`` returned, or None

    Raises:
        Exception: The last exception if all retries fail
    """
    attempts = max_retries + 1 if work is not None else 1
    for attempt in range(attempts):
        try:
            result = work() if work is not None else None
            db.session.commit()
            return result
        except Exception as e:
            db.session.rollback()
            if _is_locked(e) and attempt < attempts - 1:
                wait_time = retry_delay * (2 ** attempt)
                logger.warning(
                    "Database locked on attempt %d/%d, retrying in %ss...",
                    attempt + 1, attempts, wait_time,
                )
                time.sleep(wait_time)
            else:
                raise


@contextmanager
def db_transaction(logger_context=None):
    """Context manager for database transactions with error handling

    Commits on success and rolls back on error. The block runs once, so a
    locked database is reported rather than retried; use
    ``db_commit_with_retry(work)`` for writes that must survive contention.

    Usage:
        with db_transaction(logger_context='Add manual reading'):
            db.session.add(reading)
    """
    try:
        yield
        db.session.commit()
        if logger_context:
            logger.info("%s: Success", logger_context)
    except Exception as e:
        db.session.rollback()
        logger.error("%s failed: %s", logger_context or 'Database operation', e)
        raise
