import unittest
from urllib.parse import parse_qs, urlparse

from app.monitoring.errors import AuthError, MonitoringError, TransientError, ValidationError
from app.monitoring.gateway import LocalGateway
from app.vendors.endpoints import (
    SolarEdgeEndpoint,
    SungrowEndpoint,
    get_connector_endpoint,
)
from app.vendors.sungrow_api import classify_result


class TestEnvelopeDispatch(unittest.IsolatedAsyncioTestCase):

    async def test_unknown_action(self):
        reply = await SolarEdgeEndpoint(None).handle({"action": "reboot", "config": {}})
        self.assertFalse(reply["success"])
        self.assertEqual(reply["error_class"], "UnsupportedOperation")
        self.assertEqual(reply["code"], "unsupported_action")

    async def test_missing_credentials_are_listed(self):
        reply = await SolarEdgeEndpoint(None).handle({"action": "test_connection", "config": {}})
        self.assertFalse(reply["success"])
        self.assertEqual(reply["error_class"], "ValidationError")
        self.assertEqual(reply["missing_fields"], ["api_key", "site_id"])
        self.assertEqual(reply["remediation"], "fix_credentials")

    async def test_sungrow_direct_login_needs_username_and_password(self):
        reply = await SungrowEndpoint(None).handle({
            "action": "test_connection",
            "config": {"app_key": "k", "auth_mode": "direct"},
        })
        self.assertEqual(reply["missing_fields"], ["username", "password"])

    async def test_sungrow_oauth_without_token(self):
        reply = await SungrowEndpoint(None).handle({
            "action": "get_station_real_kpi",
            "config": {"app_key": "k", "auth_mode": "oauth2"},
            "plant_id": "1",
        })
        self.assertEqual(reply["error_class"], "AuthError")

    async def test_generate_oauth_url(self):
        reply = await SungrowEndpoint(None).handle({
            "action": "generate_oauth_url",
            "config": {"app_key": "my-app", "authorize_url": "https://auth.example/authorized-app"},
            "redirect_uri": "https://app.example/plants?oauth=callback",
            "state": "xyz",
        })
        self.assertTrue(reply["success"])
        url = urlparse(reply["data"]["auth_url"])
        self.assertEqual(f"{url.scheme}://{url.netloc}{url.path}", "https://auth.example/authorized-app")
        params = parse_qs(url.query)
        self.assertEqual(params["applicationId"], ["my-app"])
        self.assertEqual(params["state"], ["xyz"])
        self.assertEqual(params["redirectUrl"], ["https://app.example/plants?oauth=callback"])

    async def test_oauth_discovery_uses_authorized_plants(self):
        reply = await SungrowEndpoint(None).handle({
            "action": "discover_plants",
            "config": {"app_key": "k", "auth_mode": "oauth2", "access_token": "t",
                       "authorized_plant_ids": ["11", "12"]},
        })
        self.assertEqual([p["vendor_plant_id"] for p in reply["data"]["plants"]], ["11", "12"])

    def test_endpoint_factory(self):
        self.assertIsInstance(get_connector_endpoint("SUNGROW", None), SungrowEndpoint)
        with self.assertRaises(MonitoringError):
            get_connector_endpoint("fronius", None)


class TestLocalGateway(unittest.IsolatedAsyncioTestCase):

    async def test_envelope_round_trip_through_endpoint(self):
        gateway = LocalGateway(timeout=5)
        try:
            response = await gateway.call("solaredge", "test_connection", {"api_key": "k"})
            self.assertFalse(response.success)
            with self.assertRaises(ValidationError) as ctx:
                response.unwrap()
            self.assertEqual(ctx.exception.missing_fields, ["site_id"])
        finally:
            await gateway.close()

    async def test_unknown_vendor(self):
        gateway = LocalGateway(timeout=5)
        try:
            response = await gateway.call("fronius", "test_connection", {})
            self.assertEqual(response.error_class, "UnsupportedOperation")
        finally:
            await gateway.close()


class TestSungrowResultCodes(unittest.TestCase):

    def test_classification(self):
        self.assertIsInstance(classify_result("1002", None, "KPI"), AuthError)
        self.assertIsInstance(classify_result("E900", None, "Login"), AuthError)
        self.assertIsInstance(classify_result("1006", None, "KPI"), TransientError)
        self.assertIsInstance(classify_result("1001", None, "KPI"), ValidationError)
        error = classify_result("9999", "odd", "KPI")
        self.assertIs(type(error), MonitoringError)
        self.assertEqual(error.message, "KPI: odd (9999)")


if __name__ == '__main__':
    unittest.main()
