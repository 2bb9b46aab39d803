"""Authenticated vendor sessions derived from credential profiles.

Direct profiles are validated with one probe call. OAuth2 profiles go
through ``idle -> authorizing -> exchanging -> success`` (or ``error``) and
are kept fresh by an expiry timer; refresh is single-flight per profile and
mutates the session in place.
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from app.utils import SensitiveDataFilter

from .errors import AuthError, MonitoringError, ValidationError
from .sync import RetryPolicy, run_with_retry

_LOGGER = logging.getLogger(__name__)
_LOGGER.addFilter(SensitiveDataFilter())

PENDING_AUTHORIZATION_TTL = timedelta(minutes=10)


def _utcnow():
    return datetime.now(timezone.utc)


class AuthMode(Enum):
    DIRECT = "direct"
    OAUTH2 = "oauth2"


class OAuthState(Enum):
    IDLE = "idle"
    AUTHORIZING = "authorizing"
    EXCHANGING = "exchanging"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ProfileConfig:
    """Detached snapshot of a credential profile, safe to hand to the event loop."""
    profile_id: int
    user_id: Optional[int]
    vendor: str
    auth_mode: str
    secrets: dict = field(default_factory=dict)
    base_url: Optional[str] = None
    secrets_version: int = 1
    extra: dict = field(default_factory=dict)

    @property
    def mode(self) -> AuthMode:
        return AuthMode(self.auth_mode)

    def vendor_config(self) -> dict:
        config = dict(self.extra)
        config.update(self.secrets)
        config["auth_mode"] = self.auth_mode
        if self.base_url:
            config["base_url"] = self.base_url
        return config


@dataclass(eq=False)
class AuthSession:
    profile: ProfileConfig
    mode: AuthMode
    state: OAuthState = OAuthState.IDLE
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    authorized_plant_ids: list = field(default_factory=list)
    validated_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def profile_id(self):
        return self.profile.profile_id

    @property
    def vendor(self):
        return self.profile.vendor

    @property
    def secrets_version(self):
        return self.profile.secrets_version

    def time_to_expiry(self, now: datetime) -> float:
        """Seconds until the access token expires; infinite for direct sessions."""
        if self.mode is AuthMode.DIRECT or self.expires_at is None:
            return float("inf")
        return (self.expires_at - now).total_seconds()

    def vendor_config(self) -> dict:
        config = self.profile.vendor_config()
        if self.mode is AuthMode.OAUTH2:
            config["access_token"] = self.access_token
            config["refresh_token"] = self.refresh_token
            config["authorized_plant_ids"] = list(self.authorized_plant_ids)
        return config

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        now = now or _utcnow()
        ttl = self.time_to_expiry(now)
        return {
            "profile_id": self.profile_id,
            "vendor": self.vendor,
            "mode": self.mode.value,
            "state": self.state.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "expires_in": None if ttl == float("inf") else max(0, int(ttl)),
            "authorized_plant_ids": list(self.authorized_plant_ids),
            "validated_at": self.validated_at.isoformat() if self.validated_at else None,
            "last_error": self.last_error,
        }


@dataclass
class PendingAuthorization:
    profile: ProfileConfig
    state_token: str
    redirect_uri: str
    auth_url: str
    created_at: datetime
    state: OAuthState = OAuthState.AUTHORIZING

    def expired(self, now: datetime) -> bool:
        return now - self.created_at > PENDING_AUTHORIZATION_TTL


class SessionManager:
    """Process-wide AuthSession cache keyed by profile id.

    Runs on the monitoring event loop. ``audit(action, user_id, success,
    details)`` receives one event per authentication attempt; ``on_saved``
    and ``on_discarded`` persist OAuth2 token state.
    """

    def __init__(
        self,
        gateway,
        retry_policy: Optional[RetryPolicy] = None,
        audit: Optional[Callable[..., None]] = None,
        on_saved: Optional[Callable[[AuthSession], None]] = None,
        on_discarded: Optional[Callable[[Any], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._gateway = gateway
        self._retry_policy = retry_policy or RetryPolicy()
        self._audit_fn = audit
        self._on_saved = on_saved
        self._on_discarded = on_discarded
        self._clock = clock
        self._sleep = sleep

        self._sessions = {}
        self._pending = {}
        self._refresh_tasks = {}  # profile_id -> (session, task)
        self._expiry_tasks = {}

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def get_cached(self, profile_id) -> Optional[AuthSession]:
        return self._sessions.get(profile_id)

    def status(self, profile_id) -> dict:
        session = self._sessions.get(profile_id)
        if session is None:
            return {"profile_id": profile_id, "state": OAuthState.IDLE.value}
        return session.to_dict(self._clock())

    def invalidate(self, profile_id) -> None:
        """Drop any session and pending authorization for ``profile_id``."""
        self._cancel_expiry(profile_id)
        session = self._sessions.pop(profile_id, None)
        for token, pending in list(self._pending.items()):
            if pending.profile.profile_id == profile_id:
                del self._pending[token]
        if session is not None:
            _LOGGER.info("Invalidated %s session for profile %s", session.vendor, profile_id)

    def restore(self, profile: ProfileConfig, access_token, refresh_token, expires_at, plant_ids=None) -> AuthSession:
        """Re-create a persisted OAuth2 session (e.g. at startup)."""
        session = AuthSession(
            profile=profile,
            mode=AuthMode.OAUTH2,
            state=OAuthState.SUCCESS,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            authorized_plant_ids=list(plant_ids or []),
            validated_at=self._clock(),
        )
        self._sessions[profile.profile_id] = session
        self._schedule_expiry(session)
        _LOGGER.debug("Restored OAuth2 session for profile %s", profile.profile_id)
        return session

    def _store(self, session: AuthSession) -> None:
        self._sessions[session.profile_id] = session
        if session.mode is AuthMode.OAUTH2:
            self._notify(self._on_saved, session)
            self._schedule_expiry(session)

    def _discard(self, session: AuthSession) -> None:
        if self._sessions.get(session.profile_id) is not session:
            return
        del self._sessions[session.profile_id]
        self._cancel_expiry(session.profile_id)
        if session.mode is AuthMode.OAUTH2:
            self._notify(self._on_discarded, session.profile_id)

    def _notify(self, callback, arg) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Session persistence callback failed")

    def _audit(self, action, profile: ProfileConfig, success: bool, **details) -> None:
        if self._audit_fn is None:
            return
        details = {"profile_id": profile.profile_id, "vendor": profile.vendor, **details}
        try:
            self._audit_fn(action, profile.user_id, success, details)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Audit emission failed for %s", action)

    # ------------------------------------------------------------------
    # Direct mode
    # ------------------------------------------------------------------

    async def test_connection(self, profile: ProfileConfig) -> AuthSession:
        """Probe the vendor with the profile's credentials.

        Transient failures are retried per the retry policy; credential
        errors are raised immediately. An OAuth2 profile is probed with its
        current session.
        """
        if profile.mode is AuthMode.OAUTH2:
            session = await self.get_valid_session(profile)
            config = session.vendor_config()
        else:
            session = None
            config = profile.vendor_config()

        async def probe():
            response = await self._gateway.call(profile.vendor, "test_connection", config)
            return response.unwrap()

        try:
            _, attempts = await run_with_retry(probe, self._retry_policy, self._sleep)
        except MonitoringError as err:
            self._audit("connection_test", profile, False, code=err.code, error_class=type(err).__name__)
            if session is not None:
                session.last_error = err.message
            raise

        if session is None:
            session = AuthSession(profile=profile, mode=AuthMode.DIRECT, state=OAuthState.SUCCESS)
            self._store(session)
        session.validated_at = self._clock()
        session.last_error = None
        self._audit("connection_test", profile, True, attempts=attempts)
        _LOGGER.info("Connection test for profile %s (%s) succeeded", profile.profile_id, profile.vendor)
        return session

    # ------------------------------------------------------------------
    # OAuth2
    # ------------------------------------------------------------------

    async def begin_authorization(self, profile: ProfileConfig, redirect_uri: str) -> PendingAuthorization:
        if profile.mode is not AuthMode.OAUTH2:
            raise ValidationError("Profile is not configured for OAuth2", missing_fields=["auth_mode"])
        state_token = secrets.token_urlsafe(24)
        response = await self._gateway.call(
            profile.vendor, "generate_oauth_url", profile.vendor_config(),
            redirect_uri=redirect_uri, state=state_token,
        )
        data = response.unwrap() or {}
        auth_url = data.get("auth_url") or data.get("authUrl")
        if not auth_url:
            raise AuthError("Vendor did not return an authorization URL")
        now = self._clock()
        for token, pending in list(self._pending.items()):
            if pending.expired(now):
                del self._pending[token]
        pending = PendingAuthorization(
            profile=profile,
            state_token=state_token,
            redirect_uri=redirect_uri,
            auth_url=auth_url,
            created_at=now,
        )
        self._pending[state_token] = pending
        _LOGGER.info("Started OAuth2 authorization for profile %s", profile.profile_id)
        return pending

    async def complete_authorization(self, state_token, code=None, error=None) -> AuthSession:
        """Exchange the authorization code for tokens. Never retried."""
        pending = self._pending.pop(state_token, None) if state_token else None
        if pending is None or pending.expired(self._clock()):
            _LOGGER.warning("OAuth2 callback with unknown or expired state")
            raise AuthError("Authorization attempt is unknown or has expired; start again", code="invalid_state")

        profile = pending.profile
        if error or not code:
            pending.state = OAuthState.ERROR
            self._audit("oauth_exchange", profile, False, code=error or "missing_code")
            raise AuthError(f"Authorization was not granted: {error or 'no code returned'}", code=error or "missing_code")

        pending.state = OAuthState.EXCHANGING
        try:
            response = await self._gateway.call(
                profile.vendor, "exchange_code", profile.vendor_config(),
                code=code, redirect_uri=pending.redirect_uri,
            )
            tokens = (response.unwrap() or {}).get("tokens") or {}
            if not tokens.get("access_token"):
                raise AuthError("Token exchange returned no access token")
        except MonitoringError as err:
            pending.state = OAuthState.ERROR
            self._audit("oauth_exchange", profile, False, code=err.code, error_class=type(err).__name__)
            raise

        self.invalidate(profile.profile_id)
        session = AuthSession(profile=profile, mode=AuthMode.OAUTH2)
        self._apply_tokens(session, tokens)
        session.state = OAuthState.SUCCESS
        session.validated_at = self._clock()
        self._store(session)
        self._audit("oauth_exchange", profile, True, plants=len(session.authorized_plant_ids))
        _LOGGER.info("OAuth2 authorization completed for profile %s", profile.profile_id)
        return session

    def _apply_tokens(self, session: AuthSession, tokens: dict) -> None:
        session.access_token = tokens.get("access_token")
        session.refresh_token = tokens.get("refresh_token") or session.refresh_token
        expires_in = tokens.get("expires_in")
        try:
            expires_in = float(expires_in)
        except (TypeError, ValueError):
            expires_in = 3600.0
        session.expires_at = self._clock() + timedelta(seconds=expires_in)
        if tokens.get("authorized_plant_ids"):
            session.authorized_plant_ids = [str(p) for p in tokens["authorized_plant_ids"]]
        session.last_error = None

    async def refresh(self, profile_id) -> AuthSession:
        """Refresh the OAuth2 session; concurrent callers share one refresh."""
        session = self._sessions.get(profile_id)
        if session is None or session.mode is not AuthMode.OAUTH2:
            raise AuthError("No active OAuth2 session; authorize again", code="authorization_required")
        running = self._refresh_tasks.get(profile_id)
        if running is not None and running[0] is session:
            task = running[1]
        else:
            task = asyncio.ensure_future(self._do_refresh(session))
            self._refresh_tasks[profile_id] = (session, task)
            task.add_done_callback(lambda t, pid=profile_id: self._refresh_finished(pid, t))
        return await asyncio.shield(task)

    def _refresh_finished(self, profile_id, task) -> None:
        running = self._refresh_tasks.get(profile_id)
        if running is not None and running[1] is task:
            del self._refresh_tasks[profile_id]

    async def _do_refresh(self, session: AuthSession) -> AuthSession:
        profile = session.profile
        session.state = OAuthState.EXCHANGING
        try:
            response = await self._gateway.call(
                profile.vendor, "refresh_token", session.vendor_config(),
                refresh_token=session.refresh_token,
            )
            tokens = (response.unwrap() or {}).get("tokens") or {}
            if not tokens.get("access_token"):
                raise AuthError("Token refresh returned no access token")
        except MonitoringError as err:
            session.state = OAuthState.ERROR
            session.last_error = err.message
            self._discard(session)
            self._audit("oauth_refresh", profile, False, code=err.code, error_class=type(err).__name__)
            _LOGGER.warning("Token refresh failed for profile %s: %s", profile.profile_id, err.message)
            raise AuthError("Session refresh failed; authorize again", code=err.code or "refresh_failed") from err

        self._apply_tokens(session, tokens)
        session.state = OAuthState.SUCCESS
        if self._sessions.get(session.profile_id) is session:
            self._store(session)
        self._audit("oauth_refresh", profile, True)
        _LOGGER.info("Refreshed OAuth2 token for profile %s", profile.profile_id)
        return session

    def _schedule_expiry(self, session: AuthSession) -> None:
        self._cancel_expiry(session.profile_id)
        if session.mode is not AuthMode.OAUTH2 or session.state is not OAuthState.SUCCESS:
            return
        if session.expires_at is None:
            return
        delay = max(0.0, session.time_to_expiry(self._clock()))
        self._expiry_tasks[session.profile_id] = asyncio.ensure_future(self._expiry_watch(session, delay))

    def _cancel_expiry(self, profile_id) -> None:
        task = self._expiry_tasks.pop(profile_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expiry_watch(self, session: AuthSession, delay: float) -> None:
        await self._sleep(delay)
        if self._expiry_tasks.get(session.profile_id) is asyncio.current_task():
            del self._expiry_tasks[session.profile_id]
        if self._sessions.get(session.profile_id) is not session:
            return
        remaining = session.time_to_expiry(self._clock())
        if remaining > 0:
            self._schedule_expiry(session)
            return
        try:
            await self.refresh(session.profile_id)
        except AuthError:
            _LOGGER.info("Scheduled refresh for profile %s failed; re-authorization required", session.profile_id)

    # ------------------------------------------------------------------
    # Session use
    # ------------------------------------------------------------------

    async def get_valid_session(self, profile: ProfileConfig) -> AuthSession:
        session = self._sessions.get(profile.profile_id)
        if session is not None and session.secrets_version != profile.secrets_version:
            self.invalidate(profile.profile_id)
            session = None

        if profile.mode is AuthMode.DIRECT:
            if session is None:
                session = await self.test_connection(profile)
            return session

        if session is None:
            raise AuthError("Authorization required for this profile", code="authorization_required")
        running = self._refresh_tasks.get(profile.profile_id)
        if (running is not None and running[0] is session) or session.time_to_expiry(self._clock()) <= 0:
            return await self.refresh(profile.profile_id)
        return session

    async def with_session(self, profile: ProfileConfig, operation):
        """Run ``operation(session)``; on AuthError an OAuth2 session is refreshed once and retried."""
        session = await self.get_valid_session(profile)
        try:
            return await operation(session)
        except AuthError:
            if session.mode is not AuthMode.OAUTH2:
                if self._sessions.get(profile.profile_id) is session:
                    self.invalidate(profile.profile_id)
                raise
            _LOGGER.info("Vendor rejected token for profile %s; refreshing once", profile.profile_id)
        session = await self.refresh(profile.profile_id)
        return await operation(session)

    async def close(self) -> None:
        tasks = list(self._expiry_tasks.values()) + [task for _, task in self._refresh_tasks.values()]
        self._expiry_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
