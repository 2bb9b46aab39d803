"""Background event loop hosting the async monitoring core.

Flask request handlers are synchronous; vendor I/O, the session cache and the
sync scheduler live on one asyncio loop running in a daemon thread.
Handlers submit coroutines with ``MonitoringRuntime.run`` and wait with a
timeout. Database callbacks run on the loop thread inside an app context.
"""
import asyncio
import concurrent.futures
import json
import logging
import threading
from datetime import timedelta
from typing import Optional

from flask import current_app

from .errors import TransientError, UnsupportedOperation, ValidationError
from .gateway import HttpGateway, LocalGateway
from .readings import Vendor
from .service import MonitoringService, PlantContext
from .sessions import SessionManager
from .sync import RetryPolicy, SyncScheduler, SyncTrigger

_LOGGER = logging.getLogger(__name__)

EXTENSION_KEY = 'monitoring_runtime'


def get_monitoring_runtime(app=None) -> 'MonitoringRuntime':
    """The runtime attached to ``app`` (default: current app)."""
    app = app or current_app
    runtime = app.extensions.get(EXTENSION_KEY)
    if runtime is None or not runtime.running:
        raise UnsupportedOperation("Monitoring runtime is not running", code='runtime_stopped')
    return runtime


class MonitoringRuntime:
    """Owns the loop thread, gateway, session manager, service and scheduler."""

    def __init__(self, app, gateway=None):
        self.app = app
        config = app.config
        timeout = float(config.get('VENDOR_CALL_TIMEOUT_SECONDS', 30))

        if gateway is None:
            if config.get('CONNECTOR_GATEWAY_URL'):
                gateway = HttpGateway(config['CONNECTOR_GATEWAY_URL'], timeout=timeout)
            else:
                gateway = LocalGateway(timeout=timeout)
        self.gateway = gateway
        self.call_timeout = timeout

        self.retry_policy = RetryPolicy(
            max_attempts=int(config.get('SYNC_MAX_ATTEMPTS', 3)),
            base_delay=float(config.get('SYNC_BACKOFF_BASE_SECONDS', 1)),
            max_delay=float(config.get('SYNC_BACKOFF_MAX_SECONDS', 30)),
        )
        self.sessions = SessionManager(
            gateway,
            retry_policy=self.retry_policy,
            audit=self._audit,
            on_saved=self._save_session,
            on_discarded=self._discard_session,
        )
        self.service = MonitoringService(
            gateway,
            self.sessions,
            load_plant=self._load_plant,
            load_readings=self._load_readings,
            store_readings=self._store_readings,
            display_timezone=config.get('DISPLAY_TIMEZONE', 'UTC'),
            staleness=timedelta(hours=float(config.get('MONITORING_STALENESS_HOURS', 2))),
        )
        self.scheduler = SyncScheduler(
            self.service.sync_plant,
            recorder=self._record_run,
            policy=self.retry_policy,
            interval=timedelta(minutes=int(config.get('AUTO_SYNC_INTERVAL_MINUTES', 15))),
            initial_delay=timedelta(seconds=int(config.get('AUTO_SYNC_INITIAL_DELAY_SECONDS', 30))),
            failure_threshold=int(config.get('MANUAL_SYNC_FAILURE_THRESHOLD', 3)),
            cooldown=timedelta(seconds=int(config.get('MANUAL_SYNC_COOLDOWN_SECONDS', 30))),
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.is_running()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, restore=True):
        """Start the loop thread, restore OAuth2 sessions and auto-sync."""
        if self.running:
            _LOGGER.warning("Monitoring runtime already running")
            return
        self._loop = asyncio.new_event_loop()
        ready = threading.Event()
        self._thread = threading.Thread(target=self._run_loop, args=(ready,), name='monitoring-loop', daemon=True)
        self._thread.start()
        ready.wait(timeout=5)
        _LOGGER.info("Monitoring runtime started (%s)", type(self.gateway).__name__)
        if restore:
            self.run(self._startup())

    def _run_loop(self, ready):
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(ready.set)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    def stop(self):
        if not self.running:
            return
        _LOGGER.info("Stopping monitoring runtime...")
        try:
            self.run(self._shutdown(), timeout=10)
        except TransientError:
            _LOGGER.warning("Monitoring runtime shutdown timed out")
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=5)
        self._loop = None
        self._thread = None

    async def _startup(self):
        for profile, token in self._persisted_sessions():
            self.sessions.restore(
                profile,
                token['access_token'],
                token['refresh_token'],
                token['expires_at'],
                token['plant_ids'],
            )
        if self.app.config.get('AUTO_SYNC_ENABLED'):
            for target in self._auto_sync_targets():
                self.scheduler.start_auto_sync(target)

    async def _shutdown(self):
        await self.scheduler.shutdown()
        await self.sessions.close()
        await self.gateway.close()

    # ------------------------------------------------------------------
    # Submitting work
    # ------------------------------------------------------------------

    def run(self, coro, timeout=None):
        """Run ``coro`` on the monitoring loop and wait for its result."""
        if not self.running:
            coro.close()
            raise UnsupportedOperation("Monitoring runtime is not running", code='runtime_stopped')
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        wait = timeout if timeout is not None else self._default_wait()
        try:
            return future.result(timeout=wait)
        except concurrent.futures.TimeoutError as err:
            future.cancel()
            raise TransientError("Monitoring operation timed out", code='timeout') from err

    def _default_wait(self):
        # Room for every retry attempt plus backoff
        policy = self.retry_policy
        backoff = sum(policy.delay_for(n) for n in range(1, policy.max_attempts))
        return self.call_timeout * policy.max_attempts * 2 + backoff

    def call_soon(self, callback, *args):
        if self.running:
            self._loop.call_soon_threadsafe(callback, *args)

    def invalidate_profile(self, profile_id):
        self.call_soon(self.sessions.invalidate, profile_id)

    def track_plant(self, plant):
        """Start or stop auto-sync for a plant after it changed."""
        if self.app.config.get('AUTO_SYNC_ENABLED') and plant.sync_enabled and plant.vendor != 'manual':
            self.call_soon(self.scheduler.start_auto_sync, self.plant_context(plant).sync_target())
        else:
            self.call_soon(self.scheduler.stop_auto_sync, plant.id)

    def sync_now(self, plant_ctx: PlantContext, trigger=SyncTrigger.MANUAL):
        return self.run(self.scheduler.sync_now(plant_ctx.sync_target(), trigger))

    # ------------------------------------------------------------------
    # Database callbacks (loop thread)
    # ------------------------------------------------------------------

    def plant_context(self, plant) -> PlantContext:
        from app.profiles import resolve_for_plant, to_profile_config

        profile = resolve_for_plant(plant)
        return PlantContext(
            plant_id=plant.id,
            vendor=Vendor.parse(plant.vendor),
            vendor_plant_id=plant.vendor_plant_id,
            capacity_kwp=plant.capacity_kwp,
            profile=to_profile_config(profile) if profile is not None else None,
        )

    def _load_plant(self, plant_id):
        from app import db
        from app.models import Plant

        with self.app.app_context():
            plant = db.session.get(Plant, int(plant_id))
            if plant is None:
                raise ValidationError(f"Plant {plant_id} not found", missing_fields=['plant_id'])
            return self.plant_context(plant)

    def _load_readings(self, plant_ref, date_range, manual_only=False):
        from app.models import Reading
        from app.utils import to_naive_utc

        with self.app.app_context():
            query = Reading.query.filter(Reading.plant_id == int(plant_ref.plant_id))
            if manual_only:
                query = query.filter(Reading.source == 'manual')
            if date_range is not None:
                query = query.filter(
                    Reading.timestamp >= to_naive_utc(date_range.start),
                    Reading.timestamp < to_naive_utc(date_range.end),
                )
            return [
                {'timestamp': r.timestamp, 'power_w': r.power_w, 'energy_wh': r.energy_wh}
                for r in query.order_by(Reading.timestamp.asc()).all()
            ]

    def _store_readings(self, plant_id, readings):
        from app import db
        from app.models import Plant, Reading
        from app.route_helpers import db_commit_with_retry
        from app.utils import naive_utcnow, to_naive_utc

        def stage():
            stored = 0
            for reading in readings:
                if reading.power_w is None and reading.energy_wh is None:
                    continue
                timestamp = to_naive_utc(reading.timestamp)
                source = reading.vendor.value
                row = Reading.query.filter_by(plant_id=plant_id, timestamp=timestamp, source=source).first()
                if row is None:
                    row = Reading(plant_id=plant_id, timestamp=timestamp, source=source)
                    db.session.add(row)
                row.power_w = reading.power_w
                row.energy_wh = reading.energy_wh
                row.provenance = reading.provenance.value
                stored += 1
            plant = db.session.get(Plant, plant_id)
            if plant is not None:
                plant.last_sync = naive_utcnow()
            return stored

        with self.app.app_context():
            return db_commit_with_retry(stage)

    def _record_run(self, record):
        from app import db
        from app.models import SyncRun
        from app.route_helpers import db_commit_with_retry
        from app.utils import to_naive_utc

        def stage():
            db.session.add(SyncRun(
                plant_id=record.plant_id,
                vendor=record.vendor,
                trigger=record.trigger.value,
                started_at=to_naive_utc(record.started_at),
                finished_at=to_naive_utc(record.finished_at),
                outcome=record.outcome.value,
                error_class=record.error_class,
                error_message=record.error_message,
                attempts=record.attempts,
                readings_synced=record.readings_synced,
            ))

        with self.app.app_context():
            db_commit_with_retry(stage)

    def _save_session(self, session):
        from app import db
        from app.models import OAuthToken
        from app.route_helpers import db_commit_with_retry
        from app.utils import encrypt_token, to_naive_utc

        def stage():
            token = OAuthToken.query.filter_by(profile_id=session.profile_id).first()
            if token is None:
                token = OAuthToken(profile_id=session.profile_id)
                db.session.add(token)
            token.access_token_encrypted = encrypt_token(session.access_token)
            token.refresh_token_encrypted = encrypt_token(session.refresh_token)
            token.expires_at = to_naive_utc(session.expires_at)
            token.authorized_plant_ids = json.dumps(list(session.authorized_plant_ids))
            token.secrets_version = session.secrets_version

        with self.app.app_context():
            db_commit_with_retry(stage)

    def _discard_session(self, profile_id):
        from app.models import OAuthToken
        from app.route_helpers import db_commit_with_retry

        with self.app.app_context():
            db_commit_with_retry(lambda: OAuthToken.query.filter_by(profile_id=profile_id).delete())

    def _persisted_sessions(self):
        from app.models import OAuthToken
        from app.profiles import to_profile_config
        from app.utils import as_utc

        with self.app.app_context():
            restored = []
            for token in OAuthToken.query.all():
                profile = token.profile
                if profile is None or profile.auth_mode != 'oauth2':
                    continue
                if token.secrets_version != profile.secrets_version or not token.refresh_token:
                    _LOGGER.info("Skipping stale OAuth2 token for profile %s", token.profile_id)
                    continue
                restored.append((to_profile_config(profile), {
                    'access_token': token.access_token,
                    'refresh_token': token.refresh_token,
                    'expires_at': as_utc(token.expires_at),
                    'plant_ids': token.plant_ids(),
                }))
            return restored

    def _auto_sync_targets(self):
        from app.models import Plant

        with self.app.app_context():
            plants = Plant.query.filter(Plant.sync_enabled.is_(True), Plant.vendor != 'manual').all()
            return [self.plant_context(p).sync_target() for p in plants]

    def _audit(self, action, user_id, success, details):
        from app.audit import emit_audit_event

        with self.app.app_context():
            emit_audit_event(action, user_id, success, details)


def start_monitoring_runtime(app, gateway=None) -> MonitoringRuntime:
    """Create, start and attach the runtime to ``app``."""
    from app.profiles import register_invalidation_listener

    runtime = MonitoringRuntime(app, gateway=gateway)
    app.extensions[EXTENSION_KEY] = runtime
    runtime.start()
    register_invalidation_listener(runtime.invalidate_profile)
    return runtime


def stop_monitoring_runtime(app):
    from app.profiles import unregister_invalidation_listener

    runtime = app.extensions.pop(EXTENSION_KEY, None)
    if runtime is not None:
        unregister_invalidation_listener(runtime.invalidate_profile)
        runtime.stop()
