"""Vendor payload normalization.

Every function here is pure and total: a missing, null or garbled numeric
field becomes None (or 0 where a number is always expected) instead of
raising. Output is always in canonical units (W, Wh, UTC).

SolarEdge reports energy in Wh and overview power in W; power flow carries
its own unit (usually kW). iSolarCloud KPIs are kW for power, kWh for
daily/monthly energy and Wh for lifetime energy.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .readings import (
    CanonicalReading,
    DeviceInfo,
    DeviceReading,
    PlantStatus,
    PlantSummary,
    PowerFlow,
    Provenance,
    Vendor,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_STALENESS = timedelta(hours=2)

_POWER_FACTORS = {"w": 1.0, "kw": 1_000.0, "mw": 1_000_000.0}
_ENERGY_FACTORS = {"wh": 1.0, "kwh": 1_000.0, "mwh": 1_000_000.0}

# iSolarCloud station KPI points
SUNGROW_CURRENT_POWER = "p83022"  # kW
SUNGROW_DAILY_ENERGY = "p83025"  # kWh
SUNGROW_MONTHLY_ENERGY = "p83030"  # kWh
SUNGROW_LIFETIME_ENERGY = "p83106"  # Wh


# ---------------------------------------------------------------------------
# Primitive conversions
# ---------------------------------------------------------------------------

def as_float(value) -> Optional[float]:
    """Parse a vendor number. Returns None for missing or unparseable values."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    else:
        text = str(value).strip().replace(",", ".")
        if not text or text in ("--", "-", "null", "N/A"):
            return None
        try:
            result = float(text)
        except ValueError:
            return None
    if result != result or result in (float("inf"), float("-inf")):
        return None
    return result


def to_watts(value, unit: str = "W") -> Optional[float]:
    number = as_float(value)
    if number is None:
        return None
    factor = _POWER_FACTORS.get(str(unit or "W").strip().lower())
    if factor is None:
        _LOGGER.debug("Unknown power unit %r, assuming W", unit)
        factor = 1.0
    return number * factor


def to_watt_hours(value, unit: str = "Wh") -> Optional[float]:
    number = as_float(value)
    if number is None:
        return None
    factor = _ENERGY_FACTORS.get(str(unit or "Wh").strip().lower())
    if factor is None:
        _LOGGER.debug("Unknown energy unit %r, assuming Wh", unit)
        factor = 1.0
    return number * factor


def _non_negative(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return max(0.0, value)


def parse_timestamp(value, tz=timezone.utc) -> Optional[datetime]:
    """Parse a vendor timestamp into aware UTC.

    Naive vendor timestamps ("2024-05-01 12:15:00") are site-local; ``tz`` is
    the timezone they are interpreted in.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        parsed = None
        # iSolarCloud sends compact digit-only stamps (20240501101500)
        if not text.isdigit():
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                parsed = None
        if parsed is None:
            for fmt in ("%Y%m%d%H%M%S", "%Y%m%d%H%M", "%Y%m%d", "%Y-%m", "%Y%m", "%Y"):
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed.astimezone(timezone.utc)


def _get(data, *path, default=None):
    current = data
    for key in path:
        if not isinstance(current, dict):
            return default
        current = current.get(key)
        if current is None:
            return default
    return current


def _as_list(value) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# SolarEdge
# ---------------------------------------------------------------------------

def normalize_solaredge_overview(raw, plant_id: str, tz=timezone.utc) -> PlantSummary:
    """Map /site/{id}/overview to a PlantSummary."""
    overview = _as_dict(_get(raw, "overview", default=raw))
    current_power = _non_negative(to_watts(_get(overview, "currentPower", "power"), "W"))
    summary = PlantSummary(
        plant_id=str(plant_id),
        vendor=Vendor.SOLAREDGE,
        current_power_w=current_power,
        daily_energy_wh=_non_negative(to_watt_hours(_get(overview, "lastDayData", "energy"))),
        monthly_energy_wh=_non_negative(to_watt_hours(_get(overview, "lastMonthData", "energy"))),
        yearly_energy_wh=_non_negative(to_watt_hours(_get(overview, "lastYearData", "energy"))),
        lifetime_energy_wh=_non_negative(to_watt_hours(_get(overview, "lifeTimeData", "energy"))),
        last_update=parse_timestamp(_get(overview, "lastUpdateTime"), tz),
    )
    summary.status = PlantStatus.ONLINE if current_power is not None else PlantStatus.OFFLINE
    return summary


def normalize_solaredge_power_flow(raw) -> PowerFlow:
    """Map /site/{id}/currentPowerFlow. Values are converted using the payload's unit."""
    flow = _as_dict(_get(raw, "siteCurrentPowerFlow", default=raw))
    unit = flow.get("unit") or "kW"

    def _power(section):
        return _non_negative(to_watts(_get(flow, section, "currentPower"), unit))

    connections = [
        {"from": str(c.get("from", "")).lower(), "to": str(c.get("to", "")).lower()}
        for c in _as_list(flow.get("connections"))
        if isinstance(c, dict)
    ]
    return PowerFlow(
        pv_w=_power("PV"),
        load_w=_power("LOAD"),
        grid_w=_power("GRID"),
        storage_w=_power("STORAGE"),
        storage_level_percent=as_float(_get(flow, "STORAGE", "chargeLevel")),
        connections=connections,
    )


def normalize_solaredge_energy(raw, plant_id: str, tz=timezone.utc) -> list:
    """Map /site/{id}/energy (or energyDetails) values to interval-energy readings."""
    block = _as_dict(_get(raw, "energy") or _get(raw, "energyDetails"))
    unit = block.get("unit") or "Wh"
    values = _as_list(block.get("values"))
    if not values:
        # energyDetails nests values per meter; use the Production meter
        for meter in _as_list(block.get("meters")):
            if isinstance(meter, dict) and str(meter.get("type", "")).lower() == "production":
                values = _as_list(meter.get("values"))
                break
    readings = []
    for point in values:
        if not isinstance(point, dict):
            continue
        timestamp = parse_timestamp(point.get("date"), tz)
        if timestamp is None:
            continue
        readings.append(CanonicalReading(
            plant_id=str(plant_id),
            timestamp=timestamp,
            vendor=Vendor.SOLAREDGE,
            energy_wh=_non_negative(to_watt_hours(point.get("value"), unit)),
        ))
    return readings


def normalize_solaredge_power(raw, plant_id: str, tz=timezone.utc) -> list:
    """Map /site/{id}/power values to power readings."""
    block = _as_dict(_get(raw, "power"))
    unit = block.get("unit") or "W"
    readings = []
    for point in _as_list(block.get("values")):
        if not isinstance(point, dict):
            continue
        timestamp = parse_timestamp(point.get("date"), tz)
        if timestamp is None:
            continue
        readings.append(CanonicalReading(
            plant_id=str(plant_id),
            timestamp=timestamp,
            vendor=Vendor.SOLAREDGE,
            power_w=_non_negative(to_watts(point.get("value"), unit)),
        ))
    return readings


def normalize_solaredge_equipment(raw) -> list:
    """Map /equipment/{id}/list reporters to DeviceInfo entries."""
    reporters = _get(raw, "reporters", "list") or _as_list(_get(raw, "reporters"))
    devices = []
    for item in _as_list(reporters):
        if not isinstance(item, dict):
            continue
        serial = item.get("serialNumber") or item.get("name") or ""
        devices.append(DeviceInfo(
            device_id=str(serial),
            name=str(item.get("name") or serial),
            device_type="inverter",
            model=item.get("model"),
            manufacturer=item.get("manufacturer"),
            status=item.get("status"),
        ))
    return devices


def normalize_solaredge_telemetry(raw, device_id: str) -> Optional[DeviceReading]:
    """Map the newest inverter telemetry sample to a DeviceReading."""
    telemetries = _as_list(_get(raw, "data", "telemetries"))
    samples = [t for t in telemetries if isinstance(t, dict)]
    if not samples:
        return None
    latest = samples[-1]
    return DeviceReading(
        device_id=str(device_id),
        power_w=_non_negative(to_watts(latest.get("totalActivePower"), "W")),
        temperature_c=as_float(latest.get("temperature")),
        voltage_v=as_float(_get(latest, "L1Data", "acVoltage")) or as_float(latest.get("dcVoltage")),
        current_a=as_float(_get(latest, "L1Data", "acCurrent")),
    )


def to_solaredge_overview(summary: PlantSummary) -> dict:
    """Inverse of normalize_solaredge_overview (vendor units: W and Wh)."""
    overview = {
        "lifeTimeData": {"energy": summary.lifetime_energy_wh},
        "lastYearData": {"energy": summary.yearly_energy_wh},
        "lastMonthData": {"energy": summary.monthly_energy_wh},
        "lastDayData": {"energy": summary.daily_energy_wh},
        "currentPower": {"power": summary.current_power_w},
    }
    if summary.last_update is not None:
        overview["lastUpdateTime"] = summary.last_update.isoformat()
    return {"overview": overview}


# ---------------------------------------------------------------------------
# Sungrow / iSolarCloud
# ---------------------------------------------------------------------------

def normalize_sungrow_kpi(raw, plant_id: str, now: Optional[datetime] = None) -> PlantSummary:
    """Map getStationRealKpi result_data to a PlantSummary."""
    kpi = _as_dict(_get(raw, "result_data", default=raw))
    current_power = _non_negative(to_watts(kpi.get(SUNGROW_CURRENT_POWER), "kW"))
    daily = _non_negative(to_watt_hours(kpi.get(SUNGROW_DAILY_ENERGY), "kWh"))
    has_live_data = current_power is not None or daily is not None
    return PlantSummary(
        plant_id=str(plant_id),
        vendor=Vendor.SUNGROW,
        current_power_w=current_power,
        daily_energy_wh=daily,
        monthly_energy_wh=_non_negative(to_watt_hours(kpi.get(SUNGROW_MONTHLY_ENERGY), "kWh")),
        lifetime_energy_wh=_non_negative(to_watt_hours(kpi.get(SUNGROW_LIFETIME_ENERGY), "Wh")),
        last_update=now if has_live_data else None,
        status=PlantStatus.ONLINE if has_live_data else PlantStatus.OFFLINE,
    )


def to_sungrow_kpi(summary: PlantSummary) -> dict:
    """Inverse of normalize_sungrow_kpi (vendor units: kW, kWh, Wh)."""

    def _scaled(value, factor):
        return None if value is None else value / factor

    return {
        "result_code": "1",
        "result_data": {
            SUNGROW_CURRENT_POWER: _scaled(summary.current_power_w, 1_000.0),
            SUNGROW_DAILY_ENERGY: _scaled(summary.daily_energy_wh, 1_000.0),
            SUNGROW_MONTHLY_ENERGY: _scaled(summary.monthly_energy_wh, 1_000.0),
            SUNGROW_LIFETIME_ENERGY: summary.lifetime_energy_wh,
        },
    }


def normalize_sungrow_energy(raw, plant_id: str, tz=timezone.utc) -> list:
    """Map getStationEnergy points ({time|time_str, power kW, energy|energy_yield kWh})."""
    points = _as_list(_get(raw, "result_data", "list")) or _as_list(raw)
    readings = []
    for point in points:
        if not isinstance(point, dict):
            continue
        timestamp = parse_timestamp(point.get("time") or point.get("time_str") or point.get("date"), tz)
        if timestamp is None:
            continue
        energy = point.get("energy_yield", point.get("energy"))
        readings.append(CanonicalReading(
            plant_id=str(plant_id),
            timestamp=timestamp,
            vendor=Vendor.SUNGROW,
            power_w=_non_negative(to_watts(point.get("power"), "kW")),
            energy_wh=_non_negative(to_watt_hours(energy, "kWh")),
        ))
    return readings


def normalize_sungrow_devices(raw) -> list:
    """Map getDeviceList result_data.list to DeviceInfo entries."""
    devices = []
    for item in _as_list(_get(raw, "result_data", "list")) or _as_list(_get(raw, "list")):
        if not isinstance(item, dict):
            continue
        device_id = item.get("device_id") or item.get("device_sn") or item.get("device_code") or ""
        devices.append(DeviceInfo(
            device_id=str(device_id),
            name=str(item.get("device_name") or device_id),
            device_type=item.get("device_type_text") or item.get("device_type_name") or "inverter",
            model=item.get("device_code"),
            manufacturer="Sungrow",
            status=item.get("device_status_text"),
        ))
    return devices


def normalize_sungrow_realtime(raw) -> dict:
    """Map getDeviceRealTimeData to {device_id: DeviceReading}, classified by point unit."""
    result = {}
    for device in _as_list(_get(raw, "result_data", "list")) or _as_list(_get(raw, "list")):
        if not isinstance(device, dict):
            continue
        reading = DeviceReading(device_id=str(device.get("device_id", "")))
        for point in _as_list(device.get("data_list")):
            if not isinstance(point, dict):
                continue
            unit = str(point.get("unit") or "").strip()
            lowered = unit.lower()
            value = point.get("value")
            if lowered in _POWER_FACTORS and reading.power_w is None:
                reading.power_w = _non_negative(to_watts(value, unit))
            elif lowered in ("°c", "℃", "c") and reading.temperature_c is None:
                reading.temperature_c = as_float(value)
            elif lowered == "v" and reading.voltage_v is None:
                reading.voltage_v = as_float(value)
            elif lowered == "a" and reading.current_a is None:
                reading.current_a = as_float(value)
        result[reading.device_id] = reading
    return result


def normalize_sungrow_station(station) -> dict:
    """Basic plant entry from a getStationList page_list item."""
    station = station if isinstance(station, dict) else {}
    ps_id = str(station.get("ps_id", ""))
    return {
        "vendor_plant_id": ps_id,
        "name": station.get("ps_name") or f"Plant {ps_id}",
        "capacity_kw": as_float(station.get("ps_capacity_kw")) or 0.0,
        "location": station.get("ps_location") or None,
        "status_text": station.get("ps_status_text") or None,
    }


# ---------------------------------------------------------------------------
# Manual readings
# ---------------------------------------------------------------------------

def normalize_manual_reading(row, plant_id: str) -> Optional[CanonicalReading]:
    """Map a stored/entered manual reading ({timestamp, power_w, energy_wh}) to canonical form."""
    if row is None:
        return None
    getter = row.get if isinstance(row, dict) else (lambda key: getattr(row, key, None))
    timestamp = parse_timestamp(getter("timestamp"))
    if timestamp is None:
        return None
    return CanonicalReading(
        plant_id=str(plant_id),
        timestamp=timestamp,
        vendor=Vendor.MANUAL,
        power_w=_non_negative(as_float(getter("power_w"))),
        energy_wh=_non_negative(as_float(getter("energy_wh"))),
        provenance=Provenance.MANUAL,
    )


def apply_current_power_fallback(
    summary: PlantSummary,
    manual_readings: Iterable[CanonicalReading],
    now: datetime,
    staleness: timedelta = DEFAULT_STALENESS,
) -> PlantSummary:
    """Fill a missing vendor current power from a recent manual reading.

    If the vendor omitted current power, the newest manual reading with a
    power value younger than ``staleness`` is substituted and the summary is
    marked with manual provenance. Otherwise current power becomes 0 and the
    summary is flagged stale.
    """
    if summary.current_power_w is not None:
        return summary
    candidates = [
        r for r in manual_readings
        if r is not None and r.power_w is not None and r.timestamp <= now
    ]
    latest = max(candidates, key=lambda r: r.timestamp, default=None)
    if latest is not None and now - latest.timestamp < staleness:
        summary.current_power_w = latest.power_w
        summary.provenance = Provenance.MANUAL
        summary.last_update = latest.timestamp
        summary.stale = False
    else:
        summary.current_power_w = 0.0
        summary.provenance = Provenance.STALE
        summary.stale = True
    return summary


def merge_power_and_energy(energy_readings, power_readings) -> list:
    """Join energy and power series on identical timestamps."""
    merged = {}
    for reading in energy_readings:
        merged[reading.timestamp] = reading
    for reading in power_readings:
        existing = merged.get(reading.timestamp)
        if existing is None:
            merged[reading.timestamp] = reading
        elif existing.power_w is None:
            existing.power_w = reading.power_w
    return [merged[key] for key in sorted(merged)]


# ---------------------------------------------------------------------------
# Presentation units
# ---------------------------------------------------------------------------

def display_kw(watts: Optional[float], digits: int = 2) -> Optional[float]:
    return None if watts is None else round(watts / 1_000.0, digits)


def display_kwh(watt_hours: Optional[float], digits: int = 1) -> Optional[float]:
    return None if watt_hours is None else round(watt_hours / 1_000.0, digits)


def display_mwh(watt_hours: Optional[float], digits: int = 1) -> Optional[float]:
    return None if watt_hours is None else round(watt_hours / 1_000_000.0, digits)
