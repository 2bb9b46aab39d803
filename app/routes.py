# app/routes.py
import logging

from flask import Blueprint, current_app, jsonify, redirect, request, session, url_for
from flask_login import current_user, login_user, logout_user

from app import db, profiles
from app.audit import (
    CONNECTION_TEST,
    LOGOUT,
    PROFILE_ACCESS,
    PROFILE_CHANGE,
    emit_audit_event,
    record_login_attempt,
    unlock_user,
)
from app.models import Plant, Reading, SyncRun, User
from app.monitoring.aggregation import ChartAxis, Period, parse_period, running_total, summarize
from app.monitoring.connectors import UNSUPPORTED
from app.monitoring.errors import MonitoringError, ValidationError
from app.monitoring.normalizer import normalize_manual_reading
from app.monitoring.readings import Vendor
from app.monitoring.runtime import get_monitoring_runtime
from app.route_helpers import (
    admin_required,
    api_login_required,
    db_commit_with_retry,
    db_transaction,
    get_api_user,
    require_plant,
    require_profile,
)
from app.utils import to_naive_utc

logger = logging.getLogger(__name__)

bp = Blueprint('main', __name__)


def _payload():
    return request.get_json(silent=True) or request.form.to_dict() or {}


def _int_arg(value, name):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", missing_fields=[name]) from None


def _float_arg(value, name):
    if value in (None, ''):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number", missing_fields=[name]) from None


@bp.app_errorhandler(MonitoringError)
def handle_monitoring_error(err):
    logger.info("Request %s failed: %s (%s)", request.path, err.message, type(err).__name__)
    return jsonify(err.to_dict()), err.http_status


@bp.before_app_request
def sign_out_locked_users():
    if current_user.is_authenticated and current_user.is_locked:
        logger.info("Signing out locked user %s", current_user.id)
        logout_user()


# ============================================================================
# Authentication
# ============================================================================

@bp.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'GET':
        if current_user.is_authenticated:
            return jsonify({'authenticated': True, 'email': current_user.email})
        return jsonify({'authenticated': False}), 401

    data = _payload()
    email = (data.get('email') or '').strip().lower()
    user = User.query.filter_by(email=email).first()
    valid = bool(user and not user.is_locked and user.check_password(data.get('password') or ''))
    record_login_attempt(user, valid, email=email)
    if not valid:
        return jsonify({'error': 'Invalid email or password'}), 401

    login_user(user, remember=bool(data.get('remember')))
    logger.info("User %s signed in", user.id)
    return jsonify({'authenticated': True, 'email': user.email, 'is_admin': user.is_admin})


@bp.route('/logout', methods=['POST'])
def logout():
    user = get_api_user()
    if user is not None:
        emit_audit_event(LOGOUT, user.id, True)
    logout_user()
    return jsonify({'authenticated': False})


@bp.route('/api/admin/users/<int:user_id>/unlock', methods=['POST'])
@api_login_required
@admin_required
def unlock_account(user_id, api_user=None):
    user = db.session.get(User, user_id)
    if user is None:
        return jsonify({'error': 'User not found'}), 404
    unlock_user(user, admin=api_user)
    return jsonify({'id': user.id, 'locked': False})


# ============================================================================
# Credential profiles
# ============================================================================

@bp.route('/api/profiles', methods=['GET'])
@api_login_required
def list_profiles(api_user=None):
    vendor = request.args.get('vendor')
    result = [p.to_dict() for p in profiles.list_profiles(api_user, vendor)]
    emit_audit_event(PROFILE_ACCESS, api_user.id, True, {'vendor': vendor, 'count': len(result)})
    return jsonify({'profiles': result})


@bp.route('/api/profiles', methods=['POST'])
@api_login_required
def create_profile(api_user=None):
    profile = profiles.create(api_user, _payload())
    emit_audit_event(PROFILE_CHANGE, api_user.id, True, {'profile_id': profile.id, 'change': 'create'})
    return jsonify(profile.to_dict()), 201


@bp.route('/api/profiles/<int:profile_id>', methods=['GET'])
@api_login_required
@require_profile
def get_profile(profile, api_user=None):
    emit_audit_event(PROFILE_ACCESS, api_user.id, True, {'profile_id': profile.id})
    return jsonify(profile.to_dict())


@bp.route('/api/profiles/<int:profile_id>', methods=['PUT', 'PATCH'])
@api_login_required
@require_profile
def update_profile(profile, api_user=None):
    profile = profiles.update(profile.id, _payload(), api_user)
    emit_audit_event(PROFILE_CHANGE, api_user.id, True, {'profile_id': profile.id, 'change': 'update'})
    return jsonify(profile.to_dict())


@bp.route('/api/profiles/<int:profile_id>', methods=['DELETE'])
@api_login_required
@require_profile
def delete_profile(profile, api_user=None):
    profile_id = profile.id
    profiles.delete(profile_id, api_user)
    emit_audit_event(PROFILE_CHANGE, api_user.id, True, {'profile_id': profile_id, 'change': 'delete'})
    return jsonify({'deleted': profile_id})


@bp.route('/api/profiles/<int:profile_id>/default', methods=['POST'])
@api_login_required
@require_profile
def set_default_profile(profile, api_user=None):
    profile = profiles.set_default(profile.id, api_user)
    return jsonify(profile.to_dict())


@bp.route('/api/profiles/<int:profile_id>/test', methods=['POST'])
@api_login_required
@require_profile
def test_profile(profile, api_user=None):
    runtime = get_monitoring_runtime()
    config = profiles.to_profile_config(profile)
    try:
        auth_session = runtime.run(runtime.sessions.test_connection(config))
    except MonitoringError as err:
        logger.info("Connection test for profile %s failed: %s", profile.id, err.message)
        body = err.to_dict()
        body['success'] = False
        return jsonify(body), err.http_status
    return jsonify({'success': True, 'session': auth_session.to_dict()})


@bp.route('/api/profiles/<int:profile_id>/session', methods=['GET'])
@api_login_required
@require_profile
def profile_session(profile, api_user=None):
    runtime = get_monitoring_runtime()
    return jsonify(runtime.sessions.status(profile.id))


@bp.route('/api/profiles/<int:profile_id>/oauth/start', methods=['POST'])
@api_login_required
@require_profile
def start_oauth(profile, api_user=None):
    runtime = get_monitoring_runtime()
    origin = current_app.config['OAUTH_REDIRECT_ORIGIN'].rstrip('/')
    redirect_uri = f"{origin}/plants?oauth=callback"
    pending = runtime.run(runtime.sessions.begin_authorization(profiles.to_profile_config(profile), redirect_uri))
    return jsonify({'auth_url': pending.auth_url, 'state': pending.state.value})


@bp.route('/api/profiles/<int:profile_id>/discover', methods=['POST'])
@api_login_required
@require_profile
def discover_plants(profile, api_user=None):
    runtime = get_monitoring_runtime()
    result = runtime.run(runtime.service.discover(profiles.to_profile_config(profile)))
    return jsonify(result.to_dict())


# ============================================================================
# Plants
# ============================================================================

@bp.route('/plants', methods=['GET'])
@api_login_required
def plants(api_user=None):
    """Plant list; also the OAuth2 redirect target.

    A callback (``?oauth=callback&code=..&state=..`` or ``&error=..``) is
    processed once and answered with a redirect to the bare URL, so a reload
    cannot replay it.
    """
    if request.args.get('oauth') == 'callback':
        runtime = get_monitoring_runtime()
        try:
            auth_session = runtime.run(runtime.sessions.complete_authorization(
                request.args.get('state'),
                code=request.args.get('code'),
                error=request.args.get('error'),
            ))
            session['oauth_result'] = {'success': True, 'profile_id': auth_session.profile_id}
        except MonitoringError as err:
            session['oauth_result'] = {'success': False, **err.to_dict()}
        return redirect(url_for('main.plants'))

    return jsonify({
        'plants': [p.to_dict() for p in api_user.plants.order_by(Plant.created_at.asc()).all()],
        'oauth_result': session.pop('oauth_result', None),
    })


@bp.route('/api/plants', methods=['POST'])
@api_login_required
def create_plant(api_user=None):
    data = _payload()
    try:
        vendor = Vendor.parse(data.get('vendor'))
    except ValueError:
        raise ValidationError("Missing required fields: vendor", missing_fields=['vendor']) from None
    missing = [f for f in ('name',) if not data.get(f)]
    if vendor is not Vendor.MANUAL and not data.get('vendor_plant_id'):
        missing.append('vendor_plant_id')
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing_fields=missing)

    profile = None
    if data.get('profile_id') is not None:
        profile = profiles.get(_int_arg(data['profile_id'], 'profile_id'), api_user)
        if profile is None or profile.vendor != vendor.value:
            raise ValidationError("Profile does not match this plant", missing_fields=['profile_id'])

    plant = Plant(
        user_id=api_user.id,
        name=data['name'],
        vendor=vendor.value,
        vendor_plant_id=str(data['vendor_plant_id']) if data.get('vendor_plant_id') else None,
        profile_id=profile.id if profile else None,
        capacity_kwp=_float_arg(data.get('capacity_kwp'), 'capacity_kwp'),
        location=data.get('location'),
        sync_enabled=bool(data.get('sync_enabled', True)),
    )
    with db_transaction(logger_context=f"Create plant for user {api_user.id}"):
        db.session.add(plant)
    _track(plant)
    return jsonify(plant.to_dict()), 201


@bp.route('/api/plants/<int:plant_id>', methods=['PATCH'])
@api_login_required
@require_plant
def update_plant(plant, api_user=None):
    data = _payload()
    capacity = _float_arg(data.get('capacity_kwp'), 'capacity_kwp')
    profile = None
    if data.get('profile_id') is not None:
        profile = profiles.get(_int_arg(data['profile_id'], 'profile_id'), api_user)
        if profile is None or profile.vendor != plant.vendor:
            raise ValidationError("Profile does not match this plant", missing_fields=['profile_id'])

    def apply():
        for field in ('name', 'location', 'vendor_plant_id'):
            if field in data:
                setattr(plant, field, data[field])
        if 'capacity_kwp' in data:
            plant.capacity_kwp = capacity
        if 'sync_enabled' in data:
            plant.sync_enabled = bool(data['sync_enabled'])
        if 'profile_id' in data:
            plant.profile_id = profile.id if profile else None

    db_commit_with_retry(apply)
    _track(plant)
    return jsonify(plant.to_dict())


@bp.route('/api/plants/<int:plant_id>', methods=['DELETE'])
@api_login_required
@require_plant
def delete_plant(plant, api_user=None):
    plant_id = plant.id
    plant.sync_enabled = False
    _track(plant)
    with db_transaction(logger_context=f"Delete plant {plant_id}"):
        db.session.delete(plant)
    return jsonify({'deleted': plant_id})


def _track(plant):
    try:
        get_monitoring_runtime().track_plant(plant)
    except MonitoringError:
        logger.debug("Monitoring runtime not running; auto-sync for plant %s not updated", plant.id)


def _context(plant):
    return get_monitoring_runtime().plant_context(plant)


@bp.route('/api/plants/<int:plant_id>/summary', methods=['GET'])
@api_login_required
@require_plant
def plant_summary(plant, api_user=None):
    runtime = get_monitoring_runtime()
    summary = runtime.run(runtime.service.get_summary(_context(plant)))
    return jsonify({'metrics': summarize(summary, plant.capacity_kwp), 'summary': summary.to_dict()})


@bp.route('/api/plants/<int:plant_id>/series', methods=['GET'])
@api_login_required
@require_plant
def plant_series(plant, api_user=None):
    try:
        period = parse_period(request.args.get('period', Period.TODAY.value))
    except ValueError:
        raise ValidationError("Unknown period", missing_fields=['period']) from None
    runtime = get_monitoring_runtime()
    buckets = runtime.run(runtime.service.get_series(_context(plant), period))
    body = {'period': period.value, 'buckets': [b.to_dict() for b in buckets]}
    if period in (Period.TODAY, ChartAxis.DAY):
        body['running_total_wh'] = running_total(buckets)
    return jsonify(body)


@bp.route('/api/plants/<int:plant_id>/chart', methods=['GET'])
@api_login_required
@require_plant
def plant_chart(plant, api_user=None):
    try:
        axis = ChartAxis(request.args.get('axis', ChartAxis.DAY.value).upper())
    except ValueError:
        raise ValidationError("Unknown chart axis", missing_fields=['axis']) from None
    runtime = get_monitoring_runtime()
    points = runtime.run(runtime.service.get_chart(_context(plant), axis))
    return jsonify({'axis': axis.value, 'points': points})


@bp.route('/api/plants/<int:plant_id>/power-flow', methods=['GET'])
@api_login_required
@require_plant
def plant_power_flow(plant, api_user=None):
    runtime = get_monitoring_runtime()
    flow = runtime.run(runtime.service.get_power_flow(_context(plant)))
    if flow is UNSUPPORTED:
        return jsonify({'supported': False, 'power_flow': None})
    return jsonify({'supported': True, 'power_flow': flow.to_dict()})


@bp.route('/api/plants/<int:plant_id>/devices', methods=['GET'])
@api_login_required
@require_plant
def plant_devices(plant, api_user=None):
    runtime = get_monitoring_runtime()
    devices = runtime.run(runtime.service.get_devices(_context(plant)))
    return jsonify({'devices': [d.to_dict() for d in devices]})


@bp.route('/api/plants/<int:plant_id>/readings', methods=['GET'])
@api_login_required
@require_plant
def list_readings(plant, api_user=None):
    limit = min(_int_arg(request.args.get('limit', 96), 'limit'), 1000)
    rows = plant.readings.order_by(Reading.timestamp.desc()).limit(limit).all()
    return jsonify({'readings': [
        {
            'timestamp': r.timestamp.isoformat() + 'Z',
            'power_w': r.power_w,
            'energy_wh': r.energy_wh,
            'source': r.source,
            'provenance': r.provenance,
        }
        for r in rows
    ]})


@bp.route('/api/plants/<int:plant_id>/readings', methods=['POST'])
@api_login_required
@require_plant
def add_reading(plant, api_user=None):
    reading = normalize_manual_reading(_payload(), str(plant.id))
    if reading is None:
        raise ValidationError("Missing required fields: timestamp", missing_fields=['timestamp'])
    if reading.power_w is None and reading.energy_wh is None:
        raise ValidationError("Missing required fields: power_w, energy_wh", missing_fields=['power_w', 'energy_wh'])

    timestamp = to_naive_utc(reading.timestamp)
    with db_transaction(logger_context=f"Manual reading for plant {plant.id}"):
        row = Reading.query.filter_by(plant_id=plant.id, timestamp=timestamp, source='manual').first()
        if row is None:
            row = Reading(plant_id=plant.id, timestamp=timestamp, source='manual')
            db.session.add(row)
        row.power_w = reading.power_w
        row.energy_wh = reading.energy_wh
        row.provenance = 'manual'
    return jsonify(reading.to_dict()), 201


# ============================================================================
# Sync
# ============================================================================

@bp.route('/api/plants/<int:plant_id>/sync', methods=['POST'])
@api_login_required
@require_plant
def sync_plant(plant, api_user=None):
    runtime = get_monitoring_runtime()
    result = runtime.sync_now(_context(plant))
    return jsonify(result.to_dict())


@bp.route('/api/plants/<int:plant_id>/sync/history', methods=['GET'])
@api_login_required
@require_plant
def sync_history(plant, api_user=None):
    limit = min(_int_arg(request.args.get('limit', 20), 'limit'), 200)
    runs = plant.sync_runs.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).all()
    return jsonify({'runs': [r.to_dict() for r in runs]})


@bp.route('/api/plants/<int:plant_id>/sync/status', methods=['GET'])
@api_login_required
@require_plant
def sync_status(plant, api_user=None):
    runtime = get_monitoring_runtime()
    return jsonify(runtime.scheduler.status(_context(plant).sync_target()))


# ============================================================================
# Connector envelope endpoint
# ============================================================================

@bp.route('/api/connectors/<vendor>', methods=['POST'])
@api_login_required
def connector_endpoint(vendor, api_user=None):
    envelope = request.get_json(silent=True)
    if not isinstance(envelope, dict):
        envelope = {}
    action = envelope.pop('action', None)
    config = envelope.pop('config', None)
    envelope.pop('vendor', None)
    if not action or not isinstance(action, str):
        raise ValidationError("Missing required fields: action", missing_fields=['action'])
    if not isinstance(config, dict):
        config = {}
    # vendor hosts always come from app config
    config = {k: v for k, v in config.items() if k not in ('base_url', 'authorize_url')}
    config.update(profiles.server_endpoints(vendor))
    runtime = get_monitoring_runtime()
    response = runtime.run(runtime.gateway.call(vendor, action, config, **envelope))
    emit_audit_event(CONNECTION_TEST if action == 'test_connection' else 'connector_call', api_user.id,
                     response.success, {'vendor': vendor, 'action': action, 'code': response.code})
    return jsonify(response.to_dict())
