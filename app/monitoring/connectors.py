"""Provider connectors: one per vendor, chosen once per plant.

A connector turns capability calls (overview, power flow, devices,
realtime, history, discovery) into vendor-call envelopes sent through a
VendorGateway and hands back raw vendor payloads. The ``summary``/``series``
helpers combine a raw fetch with the matching normalizer.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from .errors import MonitoringError, ValidationError
from .normalizer import (
    apply_current_power_fallback,
    as_float,
    merge_power_and_energy,
    normalize_manual_reading,
    normalize_solaredge_energy,
    normalize_solaredge_equipment,
    normalize_solaredge_overview,
    normalize_solaredge_power,
    normalize_solaredge_power_flow,
    normalize_sungrow_devices,
    normalize_sungrow_energy,
    normalize_sungrow_kpi,
    SUNGROW_CURRENT_POWER,
    SUNGROW_DAILY_ENERGY,
)
from .readings import PlantStatus, PlantSummary, Vendor

_LOGGER = logging.getLogger(__name__)

DISCOVERY_CONCURRENCY = 5


class Unsupported:
    """Marker returned when a vendor does not offer a capability."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "UNSUPPORTED"


UNSUPPORTED = Unsupported()


class Granularity(Enum):
    QUARTER_HOUR = "quarter_hour"
    HOUR = "hour"
    DAY = "day"
    MONTH = "month"
    YEAR = "year"


@dataclass(frozen=True)
class PlantRef:
    """Identifies a plant at the vendor and locally."""
    plant_id: str
    vendor_plant_id: Optional[str] = None
    capacity_kwp: Optional[float] = None


@dataclass(frozen=True)
class DateRange:
    """Half-open UTC range [start, end)."""
    start: datetime
    end: datetime

    @classmethod
    def last(cls, duration: timedelta, now: Optional[datetime] = None) -> "DateRange":
        now = now or datetime.now(timezone.utc)
        return cls(start=now - duration, end=now)


@dataclass
class DiscoveredPlant:
    vendor_plant_id: str
    name: str
    capacity_kw: Optional[float] = None
    location: Optional[str] = None
    status_text: Optional[str] = None
    connectivity: PlantStatus = PlantStatus.TESTING
    current_power_w: Optional[float] = None
    probe_error: Optional[str] = None

    @classmethod
    def from_listing(cls, item: dict) -> "DiscoveredPlant":
        return cls(
            vendor_plant_id=str(item.get("vendor_plant_id", "")),
            name=item.get("name") or f"Plant {item.get('vendor_plant_id', '')}",
            capacity_kw=as_float(item.get("capacity_kw")),
            location=item.get("location"),
            status_text=item.get("status_text"),
        )

    def to_dict(self) -> dict:
        return {
            "vendor_plant_id": self.vendor_plant_id,
            "name": self.name,
            "capacity_kw": self.capacity_kw,
            "location": self.location,
            "status_text": self.status_text,
            "connectivity": self.connectivity.value,
            "current_power_w": self.current_power_w,
            "probe_error": self.probe_error,
        }


@dataclass
class DiscoveryResult:
    vendor: Vendor
    plants: list = field(default_factory=list)

    @property
    def statistics(self) -> dict:
        """Counts and capacity totals, recomputed from ``plants`` on every access."""
        total = len(self.plants)
        capacities = [p.capacity_kw for p in self.plants if p.capacity_kw]
        total_capacity = sum(capacities)
        return {
            "total": total,
            "online": sum(1 for p in self.plants if p.connectivity is PlantStatus.ONLINE),
            "offline": sum(1 for p in self.plants if p.connectivity is PlantStatus.OFFLINE),
            "testing": sum(1 for p in self.plants if p.connectivity is PlantStatus.TESTING),
            "total_capacity_kw": round(total_capacity, 2),
            "average_capacity_kw": round(total_capacity / total, 2) if total else 0.0,
        }

    def to_dict(self) -> dict:
        return {
            "vendor": self.vendor.value,
            "plants": [p.to_dict() for p in self.plants],
            "statistics": self.statistics,
        }


class ProviderConnector(ABC):
    """Vendor capability set. ``session`` is the AuthSession the call runs under."""

    vendor: Vendor
    supports_power_flow = False

    def __init__(self, gateway, tz=timezone.utc, discovery_concurrency: int = DISCOVERY_CONCURRENCY):
        self.gateway = gateway
        self.tz = tz
        self.discovery_concurrency = discovery_concurrency

    async def _call(self, session, action: str, **fields):
        config = session.vendor_config() if session is not None else {}
        response = await self.gateway.call(self.vendor.value, action, config, **fields)
        return response.unwrap()

    @staticmethod
    def _vendor_plant_id(plant_ref: PlantRef) -> str:
        if not plant_ref.vendor_plant_id:
            raise ValidationError("Plant has no vendor plant id", missing_fields=["vendor_plant_id"])
        return plant_ref.vendor_plant_id

    @abstractmethod
    async def get_overview(self, session, plant_ref: PlantRef):
        """Raw overview payload."""

    async def get_power_flow(self, session, plant_ref: PlantRef):
        return UNSUPPORTED

    @abstractmethod
    async def get_devices(self, session, plant_ref: PlantRef):
        """Raw device inventory payload."""

    @abstractmethod
    async def get_realtime(self, session, plant_ref: PlantRef, device_type: Optional[str] = None):
        """Raw realtime payload, also used as the discovery probe."""

    @abstractmethod
    async def get_historical_series(self, session, plant_ref: PlantRef, date_range: DateRange, granularity: Granularity):
        """Raw history payload."""

    @abstractmethod
    async def discover_plants(self, session) -> DiscoveryResult:
        """Enumerate and probe the plants reachable with ``session``."""

    # ------------------------------------------------------------------
    # Normalized helpers
    # ------------------------------------------------------------------

    @abstractmethod
    def normalize_overview(self, raw, plant_ref: PlantRef) -> PlantSummary:
        """Map a raw overview to a PlantSummary."""

    @abstractmethod
    def normalize_series(self, raw, plant_ref: PlantRef) -> list:
        """Map a raw history payload to canonical readings."""

    @abstractmethod
    def normalize_devices(self, raw) -> list:
        """Map a raw inventory payload to DeviceInfo entries."""

    def normalize_power_flow(self, raw):
        return UNSUPPORTED

    def has_live_data(self, raw) -> bool:
        return bool(raw)

    async def summary(self, session, plant_ref: PlantRef) -> PlantSummary:
        return self.normalize_overview(await self.get_overview(session, plant_ref), plant_ref)

    async def series(self, session, plant_ref: PlantRef, date_range: DateRange, granularity: Granularity) -> list:
        raw = await self.get_historical_series(session, plant_ref, date_range, granularity)
        return self.normalize_series(raw, plant_ref)

    async def devices(self, session, plant_ref: PlantRef) -> list:
        return self.normalize_devices(await self.get_devices(session, plant_ref))

    async def power_flow(self, session, plant_ref: PlantRef):
        raw = await self.get_power_flow(session, plant_ref)
        if raw is UNSUPPORTED:
            return UNSUPPORTED
        return self.normalize_power_flow(raw)

    async def _probe_all(self, session, plants: list) -> None:
        semaphore = asyncio.Semaphore(self.discovery_concurrency)

        async def probe(plant: DiscoveredPlant):
            async with semaphore:
                ref = PlantRef(plant_id=plant.vendor_plant_id, vendor_plant_id=plant.vendor_plant_id)
                try:
                    raw = await self.get_realtime(session, ref)
                except MonitoringError as err:
                    _LOGGER.info("Discovery probe for %s plant %s failed: %s",
                                 self.vendor.value, plant.vendor_plant_id, err.message)
                    plant.connectivity = PlantStatus.OFFLINE
                    plant.probe_error = err.message
                    return
                if self.has_live_data(raw):
                    plant.connectivity = PlantStatus.ONLINE
                    plant.current_power_w = self.normalize_overview(raw, ref).current_power_w
                else:
                    plant.connectivity = PlantStatus.OFFLINE

        await asyncio.gather(*(probe(plant) for plant in plants))

    async def _discover_listed(self, session) -> DiscoveryResult:
        listing = await self._call(session, "discover_plants") or {}
        plants = [
            DiscoveredPlant.from_listing(item)
            for item in listing.get("plants") or []
            if isinstance(item, dict) and item.get("vendor_plant_id")
        ]
        await self._probe_all(session, plants)
        result = DiscoveryResult(vendor=self.vendor, plants=plants)
        _LOGGER.info("Discovered %d %s plant(s): %s", len(plants), self.vendor.value, result.statistics)
        return result


class SolarEdgeConnector(ProviderConnector):
    """SolarEdge monitoring API. Overview doubles as the realtime probe."""

    vendor = Vendor.SOLAREDGE
    supports_power_flow = True

    _TIME_UNITS = {
        Granularity.QUARTER_HOUR: "QUARTER_OF_AN_HOUR",
        Granularity.HOUR: "HOUR",
        Granularity.DAY: "DAY",
        Granularity.MONTH: "MONTH",
        Granularity.YEAR: "YEAR",
    }

    async def get_overview(self, session, plant_ref):
        return await self._call(session, "get_overview", plant_id=self._vendor_plant_id(plant_ref))

    async def get_power_flow(self, session, plant_ref):
        return await self._call(session, "get_power_flow", plant_id=self._vendor_plant_id(plant_ref))

    async def get_devices(self, session, plant_ref):
        return await self._call(session, "get_equipment_list", plant_id=self._vendor_plant_id(plant_ref))

    async def get_realtime(self, session, plant_ref, device_type=None):
        return await self.get_overview(session, plant_ref)

    async def get_historical_series(self, session, plant_ref, date_range, granularity):
        """Energy for the range, plus power when the granularity is quarter-hourly.

        A failed power fetch is reported in ``errors`` rather than raised.
        """
        granularity = Granularity(granularity)
        plant_id = self._vendor_plant_id(plant_ref)
        local_start = date_range.start.astimezone(self.tz)
        local_end = date_range.end.astimezone(self.tz)
        energy = await self._call(
            session,
            "get_energy_details",
            plant_id=plant_id,
            start_date=local_start.strftime("%Y-%m-%d"),
            end_date=local_end.strftime("%Y-%m-%d"),
            time_unit=self._TIME_UNITS[granularity],
        )
        result = {"energy": energy, "power": None, "errors": []}
        if granularity is Granularity.QUARTER_HOUR:
            try:
                result["power"] = await self._call(
                    session,
                    "get_power_details",
                    plant_id=plant_id,
                    start_time=local_start.strftime("%Y-%m-%d %H:%M:%S"),
                    end_time=local_end.strftime("%Y-%m-%d %H:%M:%S"),
                )
            except MonitoringError as err:
                _LOGGER.warning("SolarEdge power details for %s failed: %s", plant_id, err.message)
                result["errors"].append(err.message)
        return result

    async def discover_plants(self, session):
        return await self._discover_listed(session)

    def normalize_overview(self, raw, plant_ref):
        return normalize_solaredge_overview(raw, plant_ref.plant_id, self.tz)

    def normalize_series(self, raw, plant_ref):
        raw = raw or {}
        energy = normalize_solaredge_energy(raw.get("energy"), plant_ref.plant_id, self.tz)
        power = normalize_solaredge_power(raw.get("power"), plant_ref.plant_id, self.tz) if raw.get("power") else []
        return merge_power_and_energy(energy, power)

    def normalize_devices(self, raw):
        return normalize_solaredge_equipment(raw)

    def normalize_power_flow(self, raw):
        return normalize_solaredge_power_flow(raw)

    def has_live_data(self, raw):
        summary = normalize_solaredge_overview(raw, "", self.tz)
        return summary.current_power_w is not None or summary.daily_energy_wh is not None


class SungrowConnector(ProviderConnector):
    """iSolarCloud OpenAPI. No power-flow endpoint."""

    vendor = Vendor.SUNGROW

    _ENERGY_PERIODS = {
        Granularity.QUARTER_HOUR: "day",
        Granularity.HOUR: "day",
        Granularity.DAY: "month",
        Granularity.MONTH: "year",
        Granularity.YEAR: "year",
    }

    def __init__(self, gateway, tz=timezone.utc, discovery_concurrency=DISCOVERY_CONCURRENCY,
                 clock: Callable[[], datetime] = None):
        super().__init__(gateway, tz, discovery_concurrency)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_overview(self, session, plant_ref):
        return await self._call(session, "get_station_real_kpi", plant_id=self._vendor_plant_id(plant_ref))

    async def get_devices(self, session, plant_ref):
        return await self._call(session, "get_device_list", plant_id=self._vendor_plant_id(plant_ref))

    async def get_realtime(self, session, plant_ref, device_type=None):
        if device_type is None:
            return await self.get_overview(session, plant_ref)
        return await self._call(
            session, "get_device_real_time_data",
            plant_id=self._vendor_plant_id(plant_ref), device_type=str(device_type),
        )

    async def get_historical_series(self, session, plant_ref, date_range, granularity):
        """Station energy for the current day, month or year.

        getStationEnergy takes no date, so only the period containing today
        is available. Days of a range that fall in an earlier period come
        back as empty buckets.
        """
        granularity = Granularity(granularity)
        raw = await self._call(
            session, "get_station_energy",
            plant_id=self._vendor_plant_id(plant_ref), period=self._ENERGY_PERIODS[granularity],
        )
        return {"energy": raw, "errors": [], "range": date_range}

    async def discover_plants(self, session):
        return await self._discover_listed(session)

    def normalize_overview(self, raw, plant_ref):
        return normalize_sungrow_kpi(raw, plant_ref.plant_id, now=self._clock())

    def normalize_series(self, raw, plant_ref):
        raw = raw or {}
        readings = normalize_sungrow_energy(raw.get("energy"), plant_ref.plant_id, self.tz)
        date_range = raw.get("range")
        if date_range is not None:
            readings = [r for r in readings if date_range.start <= r.timestamp < date_range.end]
        return readings

    def normalize_devices(self, raw):
        return normalize_sungrow_devices(raw)

    def has_live_data(self, raw):
        kpi = raw if isinstance(raw, dict) else {}
        return as_float(kpi.get(SUNGROW_CURRENT_POWER)) is not None or as_float(kpi.get(SUNGROW_DAILY_ENERGY)) is not None


class ManualConnector(ProviderConnector):
    """Locally stored readings; never calls a vendor.

    ``reading_source(plant_ref, date_range)`` returns stored reading rows
    (dicts or objects with timestamp/power_w/energy_wh), newest last.
    """

    vendor = Vendor.MANUAL

    def __init__(self, gateway=None, tz=timezone.utc, discovery_concurrency=DISCOVERY_CONCURRENCY,
                 reading_source=None, clock: Callable[[], datetime] = None, staleness=None):
        super().__init__(gateway, tz, discovery_concurrency)
        self._reading_source = reading_source or (lambda plant_ref, date_range: [])
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._staleness = staleness

    def _rows(self, plant_ref, date_range=None):
        return list(self._reading_source(plant_ref, date_range) or [])

    async def get_overview(self, session, plant_ref):
        now = self._clock()
        midnight = now.astimezone(self.tz).replace(hour=0, minute=0, second=0, microsecond=0)
        return {"rows": self._rows(plant_ref, DateRange(midnight.astimezone(timezone.utc), now)), "now": now}

    async def get_devices(self, session, plant_ref):
        return []

    async def get_realtime(self, session, plant_ref, device_type=None):
        return await self.get_overview(session, plant_ref)

    async def get_historical_series(self, session, plant_ref, date_range, granularity):
        return {"rows": self._rows(plant_ref, date_range)}

    async def discover_plants(self, session):
        return DiscoveryResult(vendor=self.vendor)

    def normalize_overview(self, raw, plant_ref):
        raw = raw or {}
        readings = [r for r in (normalize_manual_reading(row, plant_ref.plant_id) for row in raw.get("rows") or []) if r]
        now = raw.get("now") or self._clock()
        energies = [r.energy_wh for r in readings if r.energy_wh is not None]
        summary = PlantSummary(
            plant_id=plant_ref.plant_id,
            vendor=Vendor.MANUAL,
            daily_energy_wh=sum(energies) if energies else None,
            status=PlantStatus.ONLINE if readings else PlantStatus.OFFLINE,
        )
        if self._staleness is not None:
            return apply_current_power_fallback(summary, readings, now, self._staleness)
        return apply_current_power_fallback(summary, readings, now)

    def normalize_series(self, raw, plant_ref):
        readings = [normalize_manual_reading(row, plant_ref.plant_id) for row in (raw or {}).get("rows") or []]
        return sorted((r for r in readings if r is not None), key=lambda r: r.timestamp)

    def normalize_devices(self, raw):
        return []


CONNECTORS = {
    Vendor.SOLAREDGE: SolarEdgeConnector,
    Vendor.SUNGROW: SungrowConnector,
    Vendor.MANUAL: ManualConnector,
}


def get_connector(vendor, gateway, **kwargs) -> ProviderConnector:
    """Factory function to get the connector for a vendor tag."""
    try:
        vendor = Vendor.parse(vendor)
    except ValueError as err:
        raise ValidationError(str(err), missing_fields=["vendor"]) from None
    return CONNECTORS[vendor](gateway, **kwargs)
