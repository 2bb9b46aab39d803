"""iSolarCloud (Sungrow) OpenAPI client.

Every call is a JSON POST carrying ``appkey``, ``token`` and ``lang``.
A ``result_code`` of "1" means success; anything else is classified into
the monitoring error taxonomy via SUNGROW_ERROR_CODES.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any
from urllib.parse import urlencode

import aiohttp

from app.monitoring.errors import (
    AuthError,
    MonitoringError,
    TransientError,
    ValidationError,
)
from app.utils import SensitiveDataFilter

_LOGGER = logging.getLogger(__name__)
_LOGGER.addFilter(SensitiveDataFilter())

SUNGROW_DEFAULT_BASE_URL = "https://gateway.isolarcloud.com.hk"
SUNGROW_DEFAULT_AUTHORIZE_URL = "https://web3.isolarcloud.com.hk/#/authorized-app"

ENDPOINTS = {
    "login": "/openapi/login",
    "station_list": "/openapi/getStationList",
    "station_real_kpi": "/openapi/getStationRealKpi",
    "station_energy": "/openapi/getStationEnergy",
    "device_list": "/openapi/getDeviceList",
    "device_real_time_data": "/openapi/getDeviceRealTimeData",
    "token": "/openapi/apiManage/token",
    "refresh_token": "/openapi/apiManage/refreshToken",
}

# query_type for getStationEnergy
ENERGY_QUERY_TYPES = {"day": 1, "month": 2, "year": 3}

SUNGROW_ERROR_CODES = {
    "0": "General failure",
    "401": "Unauthorized - invalid token",
    "403": "Access denied",
    "500": "Internal server error",
    "1001": "Invalid parameters",
    "1002": "Token expired",
    "1003": "User not found",
    "1004": "Incorrect password",
    "1005": "Account locked",
    "1006": "Session limit exceeded",
    "E900": "Unauthorized - check credentials",
}

_AUTH_CODES = {"401", "403", "1002", "1003", "1004", "1005", "E900"}
_TRANSIENT_CODES = {"500", "1006"}
_VALIDATION_CODES = {"1001"}

DEFAULT_TOKEN_TTL = 3600
REQUEST_TIMEOUT = 45


def classify_result(result_code: str | None, result_msg: str | None, context: str) -> MonitoringError:
    """Build the typed error for a non-success iSolarCloud result code."""
    code = str(result_code) if result_code is not None else None
    description = SUNGROW_ERROR_CODES.get(code or "", result_msg or "Unknown error")
    message = f"{context}: {description} ({code})"
    if code in _AUTH_CODES:
        return AuthError(message, code=code)
    if code in _TRANSIENT_CODES:
        return TransientError(message, code=code)
    if code in _VALIDATION_CODES:
        return ValidationError(message, code=code)
    return MonitoringError(message, code=code)


class SungrowClient:
    """Client for the iSolarCloud OpenAPI."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        appkey: str,
        access_key: str | None = None,
        base_url: str | None = None,
        token: str | None = None,
        lang: str = "_en_US",
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.session = session
        self.appkey = appkey
        self.access_key = access_key
        self.base_url = (base_url or SUNGROW_DEFAULT_BASE_URL).rstrip("/")
        self.token = token
        self.token_expires = 0.0
        self.lang = lang
        self.timeout = timeout

    @property
    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": "Sungrow-Monitor/1.0"}
        if self.access_key:
            headers["x-access-key"] = self.access_key
        return headers

    async def _post(self, endpoint: str, data: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{ENDPOINTS[endpoint]}"
        body = {"appkey": self.appkey, "lang": self.lang, **data}
        _LOGGER.debug("iSolarCloud request %s (keys=%s)", endpoint, sorted(body))

        try:
            async with self.session.post(
                url,
                json=body,
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status == 429 or response.status >= 500:
                    raise TransientError(f"iSolarCloud HTTP {response.status}", code=str(response.status))
                if response.status in (401, 403):
                    raise AuthError(f"iSolarCloud HTTP {response.status}", code=str(response.status))
                if response.status != 200:
                    text = (await response.text())[:200]
                    raise MonitoringError(f"iSolarCloud HTTP {response.status}: {text}", code=str(response.status))
                result = await response.json(content_type=None)
        except asyncio.TimeoutError as err:
            raise TransientError(f"iSolarCloud request {endpoint} timed out") from err
        except aiohttp.ClientError as err:
            raise TransientError(f"iSolarCloud network error: {err}") from err
        except ValueError as err:
            raise MonitoringError(f"iSolarCloud returned an unreadable response: {err}") from err

        if not isinstance(result, dict):
            raise MonitoringError(f"iSolarCloud returned an unexpected payload for {endpoint}")

        _LOGGER.debug(
            "iSolarCloud response %s: result_code=%s has_data=%s",
            endpoint, result.get("result_code"), bool(result.get("result_data")),
        )
        return result

    def _check(self, result: dict[str, Any], context: str) -> Any:
        if str(result.get("result_code")) != "1":
            raise classify_result(result.get("result_code"), result.get("result_msg"), context)
        return result.get("result_data")

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self, username: str, password: str) -> dict[str, Any]:
        """Direct login. Returns {token, expire_time} and stores the token."""
        result = await self._post("login", {"user_account": username, "user_password": password})
        if str(result.get("result_code")) != "1":
            raise classify_result(result.get("result_code"), result.get("result_msg"), "Authentication failed")
        data = result.get("result_data") or {}
        token = result.get("token") or data.get("token")
        if not token:
            raise AuthError("Authentication failed: no token returned", code=str(result.get("result_code")))
        expire_time = result.get("expire_time") or data.get("expire_time") or DEFAULT_TOKEN_TTL
        self.token = token
        self.token_expires = time.monotonic() + float(expire_time)
        return {"token": token, "expire_time": expire_time}

    @property
    def has_valid_token(self) -> bool:
        return bool(self.token) and time.monotonic() < self.token_expires

    def build_authorize_url(self, redirect_uri: str, state: str, authorize_url: str | None = None) -> str:
        params = {
            "applicationId": self.appkey,
            "redirectUrl": redirect_uri,
            "state": state,
        }
        return f"{authorize_url or SUNGROW_DEFAULT_AUTHORIZE_URL}?{urlencode(params)}"

    @staticmethod
    def _token_payload(data: dict[str, Any]) -> dict[str, Any]:
        return {
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token"),
            "token_type": data.get("token_type"),
            "expires_in": data.get("expires_in") or DEFAULT_TOKEN_TTL,
            "authorized_plant_ids": [str(ps) for ps in (data.get("auth_ps_list") or [])],
        }

    async def exchange_code(self, code: str, redirect_uri: str) -> dict[str, Any]:
        result = await self._post("token", {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        })
        data = self._check(result, "Authorization code exchange failed") or {}
        if not data.get("access_token"):
            raise AuthError("Authorization code exchange returned no access token")
        return self._token_payload(data)

    async def refresh_token(self, refresh_token: str) -> dict[str, Any]:
        result = await self._post("refresh_token", {"refresh_token": refresh_token})
        data = self._check(result, "Token refresh failed") or {}
        if not data.get("access_token"):
            raise AuthError("Token refresh returned no access token")
        payload = self._token_payload(data)
        if not payload["refresh_token"]:
            payload["refresh_token"] = refresh_token
        return payload

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    def _auth(self) -> dict[str, Any]:
        if not self.token:
            raise AuthError("No iSolarCloud token available")
        return {"token": self.token}

    async def get_station_list(self, page_no: int = 1, page_size: int = 50) -> list[dict[str, Any]]:
        result = await self._post("station_list", {**self._auth(), "page_no": page_no, "page_size": page_size})
        data = self._check(result, "Station list failed") or {}
        return data.get("page_list") or []

    async def get_station_real_kpi(self, ps_id: str) -> dict[str, Any]:
        result = await self._post("station_real_kpi", {**self._auth(), "ps_id": ps_id})
        return self._check(result, "Station KPI failed") or {}

    async def get_station_energy(self, ps_id: str, period: str = "day") -> dict[str, Any]:
        query_type = ENERGY_QUERY_TYPES.get(period)
        if query_type is None:
            raise ValidationError(f"Unsupported energy period: {period}", missing_fields=["period"])
        result = await self._post("station_energy", {**self._auth(), "ps_id": ps_id, "query_type": query_type})
        return self._check(result, "Station energy failed") or {}

    async def get_device_list(self, ps_id: str) -> dict[str, Any]:
        result = await self._post("device_list", {**self._auth(), "ps_id": ps_id})
        return self._check(result, "Device list failed") or {}

    async def get_device_real_time_data(self, ps_id: str, device_type: str = "1") -> dict[str, Any]:
        result = await self._post(
            "device_real_time_data",
            {**self._auth(), "ps_id": ps_id, "device_type": device_type},
        )
        return self._check(result, "Device realtime data failed") or {}
