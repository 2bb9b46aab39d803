"""SolarEdge Monitoring API client.

All calls are GETs authenticated with an ``api_key`` query parameter.
Responses are returned raw; app.monitoring.normalizer turns them into
canonical readings.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from app.monitoring.errors import AuthError, TransientError, ValidationError, MonitoringError
from app.utils import SensitiveDataFilter

_LOGGER = logging.getLogger(__name__)
_LOGGER.addFilter(SensitiveDataFilter())

SOLAREDGE_DEFAULT_BASE_URL = "https://monitoringapi.solaredge.com"

# SolarEdge accepts these time units for energy queries
TIME_UNITS = ("QUARTER_OF_AN_HOUR", "HOUR", "DAY", "WEEK", "MONTH", "YEAR")


class SolarEdgeClient:
    """Client for the SolarEdge Monitoring API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: str,
        base_url: str | None = None,
        timeout: float = 30,
    ) -> None:
        self.session = session
        self.api_key = api_key
        self.base_url = (base_url or SOLAREDGE_DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        query = {"api_key": self.api_key}
        if params:
            query.update({k: v for k, v in params.items() if v is not None})
        url = f"{self.base_url}{path}"

        try:
            async with self.session.get(
                url,
                params=query,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status == 200:
                    return await response.json(content_type=None)

                error_text = (await response.text())[:200]
                _LOGGER.warning("SolarEdge API error %s on %s: %s", response.status, path, error_text)

                if response.status in (401, 403):
                    raise AuthError(
                        "SolarEdge rejected the API key or site id",
                        code=str(response.status),
                    )
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise TransientError(
                        "SolarEdge rate limit reached",
                        code="429",
                        retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                    )
                if response.status >= 500:
                    raise TransientError(f"SolarEdge server error {response.status}", code=str(response.status))
                if response.status in (400, 404):
                    raise ValidationError(
                        f"SolarEdge request rejected ({response.status}): {error_text}",
                        code=str(response.status),
                    )
                raise MonitoringError(f"SolarEdge API error {response.status}", code=str(response.status))

        except asyncio.TimeoutError as err:
            raise TransientError(f"SolarEdge request to {path} timed out") from err
        except aiohttp.ClientError as err:
            raise TransientError(f"SolarEdge network error: {err}") from err
        except ValueError as err:
            raise MonitoringError(f"SolarEdge returned an unreadable response: {err}") from err

    async def get_site_details(self, site_id: str) -> dict[str, Any]:
        data = await self._get(f"/site/{site_id}/details")
        return data.get("details") or {}

    async def list_sites(self, size: int = 100) -> list[dict[str, Any]]:
        data = await self._get("/sites/list", {"size": size})
        sites = (data.get("sites") or {}).get("site") or []
        return sites if isinstance(sites, list) else [sites]

    async def get_overview(self, site_id: str) -> dict[str, Any]:
        return await self._get(f"/site/{site_id}/overview")

    async def get_power_flow(self, site_id: str) -> dict[str, Any]:
        return await self._get(f"/site/{site_id}/currentPowerFlow")

    async def get_equipment_list(self, site_id: str) -> dict[str, Any]:
        return await self._get(f"/equipment/{site_id}/list")

    async def get_inverter_telemetry(
        self, site_id: str, serial: str, start_time: str, end_time: str
    ) -> dict[str, Any]:
        return await self._get(
            f"/equipment/{site_id}/{serial}/data",
            {"startTime": start_time, "endTime": end_time},
        )

    async def get_energy(
        self, site_id: str, start_date: str, end_date: str, time_unit: str = "QUARTER_OF_AN_HOUR"
    ) -> dict[str, Any]:
        if time_unit not in TIME_UNITS:
            raise ValidationError(f"Unsupported SolarEdge time unit: {time_unit}", missing_fields=["timeUnit"])
        return await self._get(
            f"/site/{site_id}/energy",
            {"timeUnit": time_unit, "startDate": start_date, "endDate": end_date},
        )

    async def get_power(self, site_id: str, start_time: str, end_time: str) -> dict[str, Any]:
        return await self._get(
            f"/site/{site_id}/power",
            {"startTime": start_time, "endTime": end_time},
        )
