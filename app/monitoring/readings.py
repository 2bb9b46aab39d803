"""Canonical reading model shared by every vendor.

All power values are watts and all energy values are watt-hours. Timestamps
are timezone-aware UTC. Display units (kW, kWh, MWh) only appear at the
presentation boundary.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class Vendor(Enum):
    """Monitoring data source."""
    SOLAREDGE = "solaredge"
    SUNGROW = "sungrow"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value) -> "Vendor":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown vendor: {value}") from None


class Provenance(Enum):
    """Where a reading's value came from."""
    VENDOR = "vendor"
    MANUAL = "manual"
    STALE = "stale"


class PlantStatus(Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    TESTING = "testing"


@dataclass
class DeviceReading:
    """Per-device telemetry attached to a reading."""
    device_id: str
    power_w: Optional[float] = None
    temperature_c: Optional[float] = None
    voltage_v: Optional[float] = None
    current_a: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "power_w": self.power_w,
            "temperature_c": self.temperature_c,
            "voltage_v": self.voltage_v,
            "current_a": self.current_a,
        }


@dataclass
class CanonicalReading:
    """A single vendor-neutral measurement for one plant."""
    plant_id: str
    timestamp: datetime
    vendor: Vendor
    power_w: Optional[float] = None
    energy_wh: Optional[float] = None
    provenance: Provenance = Provenance.VENDOR
    devices: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "plant_id": self.plant_id,
            "timestamp": self.timestamp.isoformat(),
            "vendor": self.vendor.value,
            "power_w": self.power_w,
            "energy_wh": self.energy_wh,
            "provenance": self.provenance.value,
            "devices": {key: device.to_dict() for key, device in self.devices.items()},
        }


@dataclass
class PlantSummary:
    """Scalar snapshot of a plant, normalized from a vendor overview."""
    plant_id: str
    vendor: Vendor
    current_power_w: Optional[float] = None
    daily_energy_wh: Optional[float] = None
    monthly_energy_wh: Optional[float] = None
    yearly_energy_wh: Optional[float] = None
    lifetime_energy_wh: Optional[float] = None
    last_update: Optional[datetime] = None
    status: PlantStatus = PlantStatus.OFFLINE
    provenance: Provenance = Provenance.VENDOR
    stale: bool = False

    def to_dict(self) -> dict:
        return {
            "plant_id": self.plant_id,
            "vendor": self.vendor.value,
            "current_power_w": self.current_power_w,
            "daily_energy_wh": self.daily_energy_wh,
            "monthly_energy_wh": self.monthly_energy_wh,
            "yearly_energy_wh": self.yearly_energy_wh,
            "lifetime_energy_wh": self.lifetime_energy_wh,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "status": self.status.value,
            "provenance": self.provenance.value,
            "stale": self.stale,
        }


@dataclass
class PowerFlow:
    """Instantaneous flow between PV, load, grid and storage (W)."""
    pv_w: Optional[float] = None
    load_w: Optional[float] = None
    grid_w: Optional[float] = None
    storage_w: Optional[float] = None
    storage_level_percent: Optional[float] = None
    connections: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "pv_w": self.pv_w,
            "load_w": self.load_w,
            "grid_w": self.grid_w,
            "storage_w": self.storage_w,
            "storage_level_percent": self.storage_level_percent,
            "connections": list(self.connections),
        }


@dataclass
class DeviceInfo:
    """Inventory entry for an inverter, meter or other device."""
    device_id: str
    name: str
    device_type: Optional[str] = None
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "device_type": self.device_type,
            "model": self.model,
            "manufacturer": self.manufacturer,
            "status": self.status,
        }


@dataclass
class AggregatedBucket:
    """One time bucket of an aggregated series. Empty buckets hold None."""
    key: str
    label: str
    start: datetime
    energy_wh: Optional[float] = None
    power_w: Optional[float] = None
    count: int = 0

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "label": self.label,
            "energy_wh": self.energy_wh,
            "power_w": self.power_w,
            "count": self.count,
        }
