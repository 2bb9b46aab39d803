import asyncio
import unittest
from datetime import timedelta

from app.monitoring.errors import AuthError, TransientError, ValidationError
from app.monitoring.sessions import (
    AuthMode,
    OAuthState,
    ProfileConfig,
    SessionManager,
)
from app.monitoring.sync import RetryPolicy

from tests.fakes import FakeClock, FakeGateway, ManualSleep, drain, failure, ok, tokens

OAUTH_PROFILE = ProfileConfig(
    profile_id=1, user_id=7, vendor="sungrow", auth_mode="oauth2",
    secrets={"app_key": "k", "access_key": "s"},
)
DIRECT_PROFILE = ProfileConfig(
    profile_id=2, user_id=7, vendor="solaredge", auth_mode="direct",
    secrets={"api_key": "abc"},
)


class SessionTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.sleep = ManualSleep()
        self.audits = []
        self.saved = []
        self.discarded = []
        self.refresh_counter = 0
        self.gateway = FakeGateway({
            "generate_oauth_url": ok({"auth_url": "https://vendor.example/authorize"}),
            "exchange_code": tokens(),
            "refresh_token": self._refreshed,
            "test_connection": ok({"ok": True}),
        })
        self.manager = SessionManager(
            self.gateway,
            retry_policy=RetryPolicy(max_attempts=3),
            audit=lambda action, user_id, success, details: self.audits.append((action, success)),
            on_saved=self.saved.append,
            on_discarded=self.discarded.append,
            clock=self.clock,
            sleep=self.sleep,
        )

    async def asyncTearDown(self):
        await self.manager.close()

    def _refreshed(self, config, fields):
        self.refresh_counter += 1
        return tokens(access=f"access-{self.refresh_counter + 1}", refresh=f"refresh-{self.refresh_counter + 1}")

    async def authorize(self):
        pending = await self.manager.begin_authorization(OAUTH_PROFILE, "https://app.example/plants")
        return await self.manager.complete_authorization(pending.state_token, code="the-code")


class TestAuthorization(SessionTestCase):

    async def test_full_authorization_flow(self):
        pending = await self.manager.begin_authorization(OAUTH_PROFILE, "https://app.example/plants")
        self.assertEqual(pending.auth_url, "https://vendor.example/authorize")
        self.assertEqual(pending.state, OAuthState.AUTHORIZING)
        sent = self.gateway.calls["generate_oauth_url"][0][2]
        self.assertEqual(sent["state"], pending.state_token)

        session = await self.manager.complete_authorization(pending.state_token, code="the-code")
        self.assertEqual(session.state, OAuthState.SUCCESS)
        self.assertEqual(session.mode, AuthMode.OAUTH2)
        self.assertEqual(session.access_token, "access-1")
        self.assertEqual(session.expires_at, self.clock.now + timedelta(seconds=7200))
        self.assertEqual(session.authorized_plant_ids, ["123"])
        self.assertIs(self.manager.get_cached(1), session)
        self.assertEqual(self.saved, [session])
        self.assertIn(("oauth_exchange", True), self.audits)

    async def test_direct_profile_cannot_start_oauth(self):
        with self.assertRaises(ValidationError):
            await self.manager.begin_authorization(DIRECT_PROFILE, "https://app.example/plants")

    async def test_unknown_state_is_rejected(self):
        with self.assertRaises(AuthError) as ctx:
            await self.manager.complete_authorization("forged", code="x")
        self.assertEqual(ctx.exception.code, "invalid_state")
        self.assertEqual(self.gateway.count("exchange_code"), 0)

    async def test_expired_state_is_rejected(self):
        pending = await self.manager.begin_authorization(OAUTH_PROFILE, "https://app.example/plants")
        self.clock.advance(11 * 60)
        with self.assertRaises(AuthError) as ctx:
            await self.manager.complete_authorization(pending.state_token, code="x")
        self.assertEqual(ctx.exception.code, "invalid_state")

    async def test_state_is_single_use(self):
        pending = await self.manager.begin_authorization(OAUTH_PROFILE, "https://app.example/plants")
        await self.manager.complete_authorization(pending.state_token, code="the-code")
        with self.assertRaises(AuthError):
            await self.manager.complete_authorization(pending.state_token, code="the-code")

    async def test_denied_authorization(self):
        pending = await self.manager.begin_authorization(OAUTH_PROFILE, "https://app.example/plants")
        with self.assertRaises(AuthError) as ctx:
            await self.manager.complete_authorization(pending.state_token, error="access_denied")
        self.assertEqual(ctx.exception.code, "access_denied")
        self.assertEqual(pending.state, OAuthState.ERROR)
        self.assertIn(("oauth_exchange", False), self.audits)

    async def test_exchange_is_never_retried(self):
        self.gateway.handlers["exchange_code"] = failure("upstream 503", "TransientError")
        pending = await self.manager.begin_authorization(OAUTH_PROFILE, "https://app.example/plants")
        with self.assertRaises(TransientError):
            await self.manager.complete_authorization(pending.state_token, code="the-code")
        self.assertEqual(self.gateway.count("exchange_code"), 1)
        self.assertEqual(pending.state, OAuthState.ERROR)
        self.assertIsNone(self.manager.get_cached(1))


class TestRefresh(SessionTestCase):

    async def test_concurrent_refreshes_share_one_call(self):
        await self.authorize()
        results = await asyncio.gather(*(self.manager.refresh(1) for _ in range(5)))
        self.assertEqual(self.gateway.count("refresh_token"), 1)
        self.assertTrue(all(result is results[0] for result in results))
        self.assertEqual(results[0].access_token, "access-2")

    async def test_refresh_mutates_the_cached_session(self):
        session = await self.authorize()
        refreshed = await self.manager.refresh(1)
        self.assertIs(refreshed, session)
        self.assertEqual(session.refresh_token, "refresh-2")
        self.assertEqual(session.state, OAuthState.SUCCESS)

    async def test_expiry_timer_refreshes_once(self):
        await self.authorize()
        await drain()
        self.assertEqual(self.sleep.delays, [7200.0])

        self.clock.advance(7200)
        self.sleep.release_all()
        await drain()

        self.assertEqual(self.gateway.count("refresh_token"), 1)
        self.assertEqual(self.manager.get_cached(1).access_token, "access-2")
        # A new timer is armed for the refreshed token
        self.assertEqual(self.sleep.delays, [7200.0])

    async def test_refresh_failure_discards_session(self):
        await self.authorize()
        self.gateway.handlers["refresh_token"] = failure("invalid_grant", "AuthError", code="invalid_grant")
        with self.assertRaises(AuthError):
            await self.manager.refresh(1)
        self.assertIsNone(self.manager.get_cached(1))
        self.assertEqual(self.discarded, [1])
        self.assertIn(("oauth_refresh", False), self.audits)

        with self.assertRaises(AuthError) as ctx:
            await self.manager.get_valid_session(OAUTH_PROFILE)
        self.assertEqual(ctx.exception.code, "authorization_required")

    async def test_expired_session_is_refreshed_on_use(self):
        await self.authorize()
        self.clock.advance(7300)
        session = await self.manager.get_valid_session(OAUTH_PROFILE)
        self.assertEqual(session.access_token, "access-2")
        self.assertEqual(self.gateway.count("refresh_token"), 1)

    async def test_with_session_refreshes_once_on_rejection(self):
        await self.authorize()
        seen = []

        async def operation(session):
            seen.append(session.access_token)
            if len(seen) == 1:
                raise AuthError("token expired")
            return "data"

        result = await self.manager.with_session(OAUTH_PROFILE, operation)
        self.assertEqual(result, "data")
        self.assertEqual(seen, ["access-1", "access-2"])
        self.assertEqual(self.gateway.count("refresh_token"), 1)

    async def test_with_session_gives_up_after_second_rejection(self):
        await self.authorize()

        async def operation(session):
            raise AuthError("still rejected")

        with self.assertRaises(AuthError):
            await self.manager.with_session(OAUTH_PROFILE, operation)
        self.assertEqual(self.gateway.count("refresh_token"), 1)


    async def test_reauthorization_does_not_join_stale_refresh(self):
        old = await self.authorize()
        gate = asyncio.get_running_loop().create_future()
        self.gateway.handlers["refresh_token"] = lambda config, fields: gate
        stale = asyncio.ensure_future(self.manager.refresh(1))
        await drain()

        self.manager.invalidate(1)
        self.gateway.handlers["exchange_code"] = tokens(access="fresh-access", refresh="fresh-refresh")
        fresh = await self.authorize()
        self.assertIsNot(fresh, old)

        session = await self.manager.get_valid_session(OAUTH_PROFILE)
        self.assertIs(session, fresh)
        self.assertEqual(session.access_token, "fresh-access")

        gate.set_result(failure("invalid_grant", "AuthError", code="invalid_grant"))
        with self.assertRaises(AuthError):
            await stale
        self.assertIs(self.manager.get_cached(1), fresh)
        self.assertEqual(self.discarded, [])


class TestDirectSessions(SessionTestCase):

    async def test_direct_session_is_validated_once(self):
        first = await self.manager.get_valid_session(DIRECT_PROFILE)
        second = await self.manager.get_valid_session(DIRECT_PROFILE)
        self.assertIs(first, second)
        self.assertEqual(first.mode, AuthMode.DIRECT)
        self.assertEqual(self.gateway.count("test_connection"), 1)
        self.assertEqual(self.saved, [])

    async def test_secret_change_invalidates_cached_session(self):
        first = await self.manager.get_valid_session(DIRECT_PROFILE)
        rotated = ProfileConfig(
            profile_id=2, user_id=7, vendor="solaredge", auth_mode="direct",
            secrets={"api_key": "new"}, secrets_version=2,
        )
        second = await self.manager.get_valid_session(rotated)
        self.assertIsNot(first, second)
        self.assertEqual(self.gateway.count("test_connection"), 2)
        self.assertEqual(self.gateway.calls["test_connection"][1][1]["api_key"], "new")

    async def test_connection_test_retries_transient_failures(self):
        replies = [failure("busy", "TransientError"), ok({"ok": True})]
        self.gateway.handlers["test_connection"] = lambda config, fields: replies.pop(0)
        task = asyncio.ensure_future(self.manager.test_connection(DIRECT_PROFILE))
        await drain()
        self.sleep.release_all()
        session = await task
        self.assertEqual(session.state, OAuthState.SUCCESS)
        self.assertEqual(self.gateway.count("test_connection"), 2)
        self.assertIn(("connection_test", True), self.audits)

    async def test_rejected_credentials_are_not_retried(self):
        self.gateway.handlers["test_connection"] = failure("Invalid API key", "AuthError")
        with self.assertRaises(AuthError):
            await self.manager.test_connection(DIRECT_PROFILE)
        self.assertEqual(self.gateway.count("test_connection"), 1)
        self.assertIn(("connection_test", False), self.audits)
        self.assertIsNone(self.manager.get_cached(2))

    async def test_with_session_invalidates_rejected_direct_session(self):
        await self.manager.get_valid_session(DIRECT_PROFILE)

        async def operation(session):
            raise AuthError("key revoked")

        with self.assertRaises(AuthError):
            await self.manager.with_session(DIRECT_PROFILE, operation)
        self.assertIsNone(self.manager.get_cached(2))


if __name__ == '__main__':
    unittest.main()
