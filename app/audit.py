# app/audit.py
"""Security audit sink and sign-in lockout.

Audit events are fire-and-forget: they are written after the primary result
is known, and a failing sink is logged but never propagates to the caller.
"""
import json
import logging
from datetime import timedelta

from flask import current_app, has_app_context, has_request_context, request

from app import db
from app.models import SecurityAuditLog
from app.monitoring.errors import LockoutError
from app.utils import SensitiveDataFilter, naive_utcnow

logger = logging.getLogger(__name__)
logger.addFilter(SensitiveDataFilter())

# Audit actions
LOGIN = 'login'
LOGOUT = 'logout'
LOCKOUT = 'account_locked'
UNLOCK = 'account_unlocked'
PROFILE_ACCESS = 'profile_access'
PROFILE_CHANGE = 'profile_change'
CONNECTION_TEST = 'connection_test'
OAUTH_EXCHANGE = 'oauth_exchange'
OAUTH_REFRESH = 'oauth_refresh'


class AuditSink:
    """Destination for audit events."""

    def write(self, action, user_id, success, details, ip_address=None):
        raise NotImplementedError


class DatabaseAuditSink(AuditSink):
    """Appends events to the security_audit_log table."""

    def write(self, action, user_id, success, details, ip_address=None):
        entry = SecurityAuditLog(
            action=action,
            user_id=user_id,
            success=bool(success),
            details=json.dumps(details or {}, default=str, sort_keys=True),
            ip_address=ip_address,
            created_at=naive_utcnow(),
        )
        db.session.add(entry)
        db.session.commit()


class LoggingAuditSink(AuditSink):
    """Writes events to the application log only."""

    def write(self, action, user_id, success, details, ip_address=None):
        logger.info("audit action=%s user=%s success=%s details=%s", action, user_id, success, details)


_sink = DatabaseAuditSink()


def set_audit_sink(sink):
    """Replace the process-wide sink; returns the previous one."""
    global _sink
    previous, _sink = _sink, sink
    return previous


def get_audit_sink():
    return _sink


def _remote_addr():
    if has_request_context():
        return request.headers.get('X-Forwarded-For', request.remote_addr or '').split(',')[0].strip() or None
    return None


def emit_audit_event(action, user_id=None, success=True, details=None):
    """Record an audit event. Never raises."""
    try:
        _sink.write(action, user_id, success, details or {}, ip_address=_remote_addr())
    except Exception:  # noqa: BLE001
        logger.exception("Audit sink failed for action %s", action)
        if has_app_context():
            try:
                db.session.rollback()
            except Exception:  # noqa: BLE001
                logger.exception("Rollback after audit failure failed")


# ============================================================================
# Lockout
# ============================================================================

def recent_failures(user, window):
    """Failed sign-ins inside the window; failures before the last unlock do not count."""
    query = SecurityAuditLog.query.filter(
        SecurityAuditLog.user_id == user.id,
        SecurityAuditLog.action == LOGIN,
        SecurityAuditLog.success.is_(False),
        SecurityAuditLog.created_at >= naive_utcnow() - window,
    )
    if user.unlocked_at is not None:
        query = query.filter(SecurityAuditLog.created_at > user.unlocked_at)
    return query.count()


def record_login_attempt(user, success, email=None):
    """Audit a sign-in attempt and lock the account after too many failures.

    Raises LockoutError when the account is (or just became) locked.
    """
    if user is None:
        emit_audit_event(LOGIN, None, False, {'email': email, 'reason': 'unknown_user'})
        return

    if user.is_locked:
        emit_audit_event(LOGIN, user.id, False, {'reason': 'locked'})
        raise LockoutError("Account is locked after repeated failed sign-ins; contact an administrator",
                           code='account_locked')

    emit_audit_event(LOGIN, user.id, success, {} if success else {'reason': 'bad_password'})
    if success:
        return

    threshold = current_app.config.get('LOCKOUT_THRESHOLD', 5)
    window = timedelta(minutes=current_app.config.get('LOCKOUT_WINDOW_MINUTES', 15))
    if recent_failures(user, window) >= threshold:
        lock_user(user)
        raise LockoutError("Too many failed sign-ins; the account is now locked", code='account_locked')


def lock_user(user):
    user.locked_at = naive_utcnow()
    db.session.commit()
    logger.warning("Locked user %s after repeated failed sign-ins", user.id)
    emit_audit_event(LOCKOUT, user.id, True, {})


def unlock_user(user, admin=None):
    user.locked_at = None
    user.unlocked_at = naive_utcnow()
    db.session.commit()
    logger.info("User %s unlocked by %s", user.id, admin.id if admin else None)
    emit_audit_event(UNLOCK, user.id, True, {'admin_id': admin.id if admin else None})

