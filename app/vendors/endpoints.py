"""Connector endpoints: execute one vendor-call envelope against a vendor API.

An envelope is ``{"action": str, "config": VendorConfig, ...fields}`` and the
reply is always ``{"success": bool, "data"?, "error"?, "message"?, "code"?,
"error_class"?}``. Errors never escape as exceptions; they are encoded in the
reply so the caller can classify them.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

import aiohttp

from app.monitoring.errors import (
    AuthError,
    MonitoringError,
    UnsupportedOperation,
    ValidationError,
)
from app.monitoring.normalizer import normalize_sungrow_station
from app.utils import SensitiveDataFilter

from .solaredge_api import SolarEdgeClient
from .sungrow_api import SungrowClient

_LOGGER = logging.getLogger(__name__)
_LOGGER.addFilter(SensitiveDataFilter())


def success_reply(data: Any = None, message: str | None = None) -> dict[str, Any]:
    reply = {"success": True, "data": data}
    if message:
        reply["message"] = message
    return reply


def failure_reply(err: MonitoringError) -> dict[str, Any]:
    reply = {
        "success": False,
        "error": err.message,
        "code": err.code,
        "error_class": type(err).__name__,
        "remediation": err.remediation,
    }
    if isinstance(err, ValidationError):
        reply["missing_fields"] = err.missing_fields
    return reply


def require_fields(config: dict[str, Any], *names: str) -> None:
    missing = [name for name in names if not config.get(name)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing_fields=missing)


class ConnectorEndpoint:
    """Dispatches envelope actions to ``action_<name>`` coroutines."""

    vendor = ""

    def __init__(self, http_session: aiohttp.ClientSession, timeout: float = 30) -> None:
        self.http_session = http_session
        self.timeout = timeout

    def actions(self) -> list[str]:
        return sorted(name[len("action_"):] for name in dir(self) if name.startswith("action_"))

    async def handle(self, envelope: dict[str, Any]) -> dict[str, Any]:
        action = (envelope or {}).get("action")
        config = (envelope or {}).get("config") or {}
        handler: Callable[..., Awaitable[Any]] | None = getattr(self, f"action_{action}", None) if action else None
        started = time.monotonic()
        try:
            if handler is None:
                raise UnsupportedOperation(f"Unsupported action for {self.vendor}: {action}", code="unsupported_action")
            result = await handler(config, envelope)
        except MonitoringError as err:
            _LOGGER.warning("%s %s failed: %s", self.vendor, action, err.message)
            return failure_reply(err)
        _LOGGER.debug("%s %s completed in %.0fms", self.vendor, action, (time.monotonic() - started) * 1000)
        if isinstance(result, dict) and "data" in result and "success" in result:
            return result
        return success_reply(result)


class SolarEdgeEndpoint(ConnectorEndpoint):
    """SolarEdge monitoring API actions."""

    vendor = "solaredge"

    def _client(self, config: dict[str, Any]) -> SolarEdgeClient:
        require_fields(config, "api_key")
        return SolarEdgeClient(self.http_session, config["api_key"], config.get("base_url"), timeout=self.timeout)

    async def action_test_connection(self, config, envelope):
        require_fields(config, "api_key", "site_id")
        details = await self._client(config).get_site_details(config["site_id"])
        return success_reply({"site": details}, message="Connection established")

    async def action_get_site_details(self, config, envelope):
        require_fields(config, "api_key", "site_id")
        return await self._client(config).get_site_details(config["site_id"])

    async def action_discover_plants(self, config, envelope):
        client = self._client(config)
        if config.get("site_id") and not envelope.get("all_sites"):
            sites = [await client.get_site_details(config["site_id"])]
        else:
            sites = await client.list_sites()
        plants = []
        for site in sites:
            if not isinstance(site, dict) or site.get("id") is None:
                continue
            location = site.get("location") or {}
            plants.append({
                "vendor_plant_id": str(site["id"]),
                "name": site.get("name") or f"Site {site['id']}",
                "capacity_kw": site.get("peakPower"),
                "location": ", ".join(p for p in (location.get("city"), location.get("country")) if p) or None,
                "status_text": site.get("status"),
            })
        return {"plants": plants}

    async def action_get_overview(self, config, envelope):
        return await self._client(config).get_overview(self._plant(config, envelope))

    async def action_get_power_flow(self, config, envelope):
        return await self._client(config).get_power_flow(self._plant(config, envelope))

    async def action_get_equipment_list(self, config, envelope):
        return await self._client(config).get_equipment_list(self._plant(config, envelope))

    async def action_get_inverter_telemetry(self, config, envelope):
        require_fields(envelope, "serial", "start_time", "end_time")
        return await self._client(config).get_inverter_telemetry(
            self._plant(config, envelope), envelope["serial"], envelope["start_time"], envelope["end_time"],
        )

    async def action_get_energy_details(self, config, envelope):
        require_fields(envelope, "start_date", "end_date")
        return await self._client(config).get_energy(
            self._plant(config, envelope),
            envelope["start_date"],
            envelope["end_date"],
            envelope.get("time_unit") or "QUARTER_OF_AN_HOUR",
        )

    async def action_get_power_details(self, config, envelope):
        require_fields(envelope, "start_time", "end_time")
        return await self._client(config).get_power(
            self._plant(config, envelope), envelope["start_time"], envelope["end_time"],
        )

    @staticmethod
    def _plant(config, envelope) -> str:
        plant_id = envelope.get("plant_id") or config.get("site_id")
        if not plant_id:
            raise ValidationError("Missing required fields: site_id", missing_fields=["site_id"])
        return str(plant_id)


class SungrowEndpoint(ConnectorEndpoint):
    """iSolarCloud OpenAPI actions (direct login and OAuth2)."""

    vendor = "sungrow"

    def __init__(self, http_session: aiohttp.ClientSession, timeout: float = 30) -> None:
        super().__init__(http_session, timeout)
        # (appkey, username) -> (token, monotonic expiry) for direct-login sessions
        self._direct_tokens: dict[tuple[str, str], tuple[str, float]] = {}

    async def handle(self, envelope: dict[str, Any]) -> dict[str, Any]:
        reply = await super().handle(envelope)
        if not reply["success"] and reply.get("error_class") == "AuthError":
            config = (envelope or {}).get("config") or {}
            self._direct_tokens.pop((config.get("app_key"), config.get("username")), None)
        return reply

    def _client(self, config: dict[str, Any]) -> SungrowClient:
        require_fields(config, "app_key")
        return SungrowClient(
            self.http_session,
            appkey=config["app_key"],
            access_key=config.get("access_key"),
            base_url=config.get("base_url"),
            timeout=self.timeout,
        )

    async def _authenticated(self, config: dict[str, Any], force_login: bool = False) -> SungrowClient:
        client = self._client(config)
        if config.get("auth_mode") == "oauth2":
            if not config.get("access_token"):
                raise AuthError("OAuth2 session has no access token; authorize again", code="401")
            client.token = config["access_token"]
            return client

        require_fields(config, "username", "password")
        key = (config["app_key"], config["username"])
        cached = self._direct_tokens.get(key)
        if cached and not force_login and time.monotonic() < cached[1]:
            client.token = cached[0]
            return client
        login = await client.login(config["username"], config["password"])
        # Renew a minute early
        self._direct_tokens[key] = (login["token"], time.monotonic() + float(login["expire_time"]) - 60)
        return client

    @staticmethod
    def _plant(config, envelope) -> str:
        plant_id = envelope.get("plant_id") or config.get("plant_id")
        if not plant_id:
            raise ValidationError("Missing required fields: plant_id", missing_fields=["plant_id"])
        return str(plant_id)

    async def action_test_connection(self, config, envelope):
        client = await self._authenticated(config, force_login=True)
        stations = await client.get_station_list(page_size=1)
        return success_reply({"stations": len(stations)}, message="Connection established")

    async def action_generate_oauth_url(self, config, envelope):
        require_fields(envelope, "redirect_uri", "state")
        client = self._client(config)
        return {"auth_url": client.build_authorize_url(
            envelope["redirect_uri"], envelope["state"], config.get("authorize_url"),
        )}

    async def action_exchange_code(self, config, envelope):
        require_fields(envelope, "code", "redirect_uri")
        return {"tokens": await self._client(config).exchange_code(envelope["code"], envelope["redirect_uri"])}

    async def action_refresh_token(self, config, envelope):
        refresh_token = envelope.get("refresh_token") or config.get("refresh_token")
        if not refresh_token:
            raise ValidationError("Missing required fields: refresh_token", missing_fields=["refresh_token"])
        return {"tokens": await self._client(config).refresh_token(refresh_token)}

    async def action_discover_plants(self, config, envelope):
        authorized = config.get("authorized_plant_ids") or []
        if config.get("auth_mode") == "oauth2" and authorized:
            return {"plants": [
                {"vendor_plant_id": str(ps_id), "name": f"Plant {ps_id}", "capacity_kw": None}
                for ps_id in authorized
            ]}
        client = await self._authenticated(config)
        stations = await client.get_station_list(page_no=1, page_size=50)
        return {"plants": [normalize_sungrow_station(s) for s in stations]}

    async def action_get_station_real_kpi(self, config, envelope):
        client = await self._authenticated(config)
        return await client.get_station_real_kpi(self._plant(config, envelope))

    async def action_get_station_energy(self, config, envelope):
        client = await self._authenticated(config)
        return await client.get_station_energy(self._plant(config, envelope), envelope.get("period") or "day")

    async def action_get_device_list(self, config, envelope):
        client = await self._authenticated(config)
        return await client.get_device_list(self._plant(config, envelope))

    async def action_get_device_real_time_data(self, config, envelope):
        client = await self._authenticated(config)
        return await client.get_device_real_time_data(
            self._plant(config, envelope), str(envelope.get("device_type") or "1"),
        )


CONNECTOR_ENDPOINTS = {
    "solaredge": SolarEdgeEndpoint,
    "sungrow": SungrowEndpoint,
}


def get_connector_endpoint(vendor: str, http_session: aiohttp.ClientSession, timeout: float = 30) -> ConnectorEndpoint:
    """Factory function to get the endpoint for a vendor tag."""
    endpoint_cls = CONNECTOR_ENDPOINTS.get((vendor or "").lower())
    if endpoint_cls is None:
        raise UnsupportedOperation(f"No connector endpoint for vendor: {vendor}", code="unknown_vendor")
    return endpoint_cls(http_session, timeout=timeout)
