"""Monitoring service: the boundary between the HTTP layer and the async core.

Picks a plant's connector once, runs vendor calls under a valid session,
applies the manual current-power fallback and feeds readings to the
aggregation engine. Database access goes through injected callbacks so
the service can run on the monitoring loop without Flask state.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .aggregation import (
    ChartAxis,
    DAY,
    HOUR,
    aggregate,
    parse_period,
    resolve_timezone,
    series_range,
    to_chart_points,
)
from .connectors import UNSUPPORTED, DateRange, Granularity, PlantRef, get_connector
from .errors import ValidationError
from .normalizer import DEFAULT_STALENESS, apply_current_power_fallback, normalize_manual_reading
from .readings import PlantSummary, Vendor
from .sessions import ProfileConfig, SessionManager
from .sync import SyncReport, SyncTarget

_LOGGER = logging.getLogger(__name__)

SYNC_WINDOW = timedelta(days=1)


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PlantContext:
    """A plant with everything needed to reach its vendor."""
    plant_id: int
    vendor: Vendor
    vendor_plant_id: Optional[str] = None
    capacity_kwp: Optional[float] = None
    profile: Optional[ProfileConfig] = None

    @property
    def ref(self) -> PlantRef:
        return PlantRef(
            plant_id=str(self.plant_id),
            vendor_plant_id=self.vendor_plant_id,
            capacity_kwp=self.capacity_kwp,
        )

    def sync_target(self) -> SyncTarget:
        return SyncTarget(
            plant_id=self.plant_id,
            vendor=self.vendor.value,
            profile_id=self.profile.profile_id if self.profile else None,
            vendor_plant_id=self.vendor_plant_id,
            capacity_kwp=self.capacity_kwp,
        )


class MonitoringService:
    """Unified metrics for any plant regardless of vendor.

    ``load_plant(plant_id)`` returns a PlantContext, ``load_readings(plant_ref,
    date_range, manual_only)`` returns stored reading rows and
    ``store_readings(plant_id, readings)`` upserts canonical readings,
    returning how many were written.
    """

    def __init__(
        self,
        gateway,
        sessions: SessionManager,
        load_plant: Optional[Callable[[int], PlantContext]] = None,
        load_readings: Optional[Callable] = None,
        store_readings: Optional[Callable] = None,
        display_timezone="UTC",
        staleness: timedelta = DEFAULT_STALENESS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.gateway = gateway
        self.sessions = sessions
        self._load_plant = load_plant
        self._load_readings = load_readings or (lambda plant_ref, date_range, manual_only=False: [])
        self._store_readings = store_readings or (lambda plant_id, readings: 0)
        self.tz = resolve_timezone(display_timezone)
        self.staleness = staleness
        self._clock = clock
        self._connectors = {}

    def connector_for(self, vendor):
        vendor = Vendor.parse(vendor)
        connector = self._connectors.get(vendor)
        if connector is None:
            kwargs = {"tz": self.tz}
            if vendor is Vendor.MANUAL:
                kwargs.update(
                    reading_source=lambda ref, date_range: self._load_readings(ref, date_range, manual_only=True),
                    clock=self._clock,
                    staleness=self.staleness,
                )
            elif vendor is Vendor.SUNGROW:
                kwargs["clock"] = self._clock
            connector = get_connector(vendor, self.gateway, **kwargs)
            self._connectors[vendor] = connector
        return connector

    async def _run(self, plant: PlantContext, operation):
        """Run ``operation(connector, session)`` for ``plant``."""
        connector = self.connector_for(plant.vendor)
        if plant.vendor is Vendor.MANUAL:
            return await operation(connector, None)
        if plant.profile is None:
            raise ValidationError(
                f"No {plant.vendor.value} credential profile configured for this plant",
                missing_fields=["profile_id"],
            )
        return await self.sessions.with_session(plant.profile, lambda session: operation(connector, session))

    def resolve(self, plant_or_id) -> PlantContext:
        if isinstance(plant_or_id, PlantContext):
            return plant_or_id
        if self._load_plant is None:
            raise ValidationError("Plant lookup is not available")
        return self._load_plant(plant_or_id)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def get_summary(self, plant) -> PlantSummary:
        """Current plant snapshot, with the manual current-power fallback applied."""
        plant = self.resolve(plant)
        summary = await self._run(plant, lambda connector, session: connector.summary(session, plant.ref))
        if plant.vendor is not Vendor.MANUAL and summary.current_power_w is None:
            now = self._clock()
            rows = self._load_readings(plant.ref, DateRange(now - self.staleness, now), manual_only=True)
            manual = [r for r in (normalize_manual_reading(row, plant.ref.plant_id) for row in rows or []) if r]
            apply_current_power_fallback(summary, manual, now, self.staleness)
            _LOGGER.debug("Plant %s current power fallback: provenance=%s", plant.plant_id, summary.provenance.value)
        return summary

    async def get_readings(self, plant, period, now: Optional[datetime] = None) -> list:
        plant = self.resolve(plant)
        now = now or self._clock()
        start, end, width = series_range(period, now, self.tz)
        granularity = {HOUR: Granularity.QUARTER_HOUR, DAY: Granularity.DAY}.get(width, Granularity.MONTH)
        date_range = DateRange(start, end)
        return await self._run(
            plant,
            lambda connector, session: connector.series(session, plant.ref, date_range, granularity),
        )

    async def get_series(self, plant, period, now: Optional[datetime] = None) -> list:
        """Aggregated buckets for a dashboard period or chart axis."""
        now = now or self._clock()
        readings = await self.get_readings(plant, period, now)
        return aggregate(readings, period, now=now, tz=self.tz)

    async def get_chart(self, plant, axis=ChartAxis.DAY, now: Optional[datetime] = None) -> list:
        axis = parse_period(axis)
        buckets = await self.get_series(plant, axis, now)
        return to_chart_points(buckets, axis)

    async def get_power_flow(self, plant):
        plant = self.resolve(plant)
        connector = self.connector_for(plant.vendor)
        if not connector.supports_power_flow:
            return UNSUPPORTED
        return await self._run(plant, lambda connector, session: connector.power_flow(session, plant.ref))

    async def get_devices(self, plant) -> list:
        plant = self.resolve(plant)
        return await self._run(plant, lambda connector, session: connector.devices(session, plant.ref))

    async def discover(self, profile: ProfileConfig):
        connector = self.connector_for(profile.vendor)
        return await self.sessions.with_session(profile, connector.discover_plants)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_plant(self, target: SyncTarget) -> SyncReport:
        """One sync attempt: fetch the last day at quarter-hour granularity and upsert it."""
        plant = self.resolve(target.plant_id)
        if plant.vendor is Vendor.MANUAL:
            return SyncReport()
        date_range = DateRange.last(SYNC_WINDOW, self._clock())

        async def fetch(connector, session):
            return connector, await connector.get_historical_series(
                session, plant.ref, date_range, Granularity.QUARTER_HOUR,
            )

        connector, raw = await self._run(plant, fetch)
        readings = connector.normalize_series(raw, plant.ref)
        stored = self._store_readings(plant.plant_id, readings)
        return SyncReport(readings_synced=stored, errors=list((raw or {}).get("errors") or []))
