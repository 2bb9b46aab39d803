import unittest
from datetime import datetime, timedelta, timezone

from app.monitoring.normalizer import (
    apply_current_power_fallback,
    as_float,
    display_kw,
    display_kwh,
    display_mwh,
    merge_power_and_energy,
    normalize_manual_reading,
    normalize_solaredge_energy,
    normalize_solaredge_overview,
    normalize_solaredge_power_flow,
    normalize_sungrow_energy,
    normalize_sungrow_kpi,
    parse_timestamp,
    to_solaredge_overview,
    to_sungrow_kpi,
)
from app.monitoring.readings import (
    CanonicalReading,
    PlantStatus,
    PlantSummary,
    Provenance,
    Vendor,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestPrimitives(unittest.TestCase):

    def test_as_float_accepts_numbers_and_numeric_strings(self):
        self.assertEqual(as_float(3), 3.0)
        self.assertEqual(as_float("4.5"), 4.5)
        self.assertEqual(as_float("4,5"), 4.5)

    def test_as_float_rejects_garbage(self):
        for value in (None, "", "--", "abc", True, float("nan"), float("inf"), [], {}):
            self.assertIsNone(as_float(value), value)

    def test_parse_timestamp_naive_is_site_local(self):
        plus_two = timezone(timedelta(hours=2))
        parsed = parse_timestamp("2024-05-01 12:15:00", plus_two)
        self.assertEqual(parsed, datetime(2024, 5, 1, 10, 15, tzinfo=timezone.utc))

    def test_parse_timestamp_compact_formats(self):
        self.assertEqual(parse_timestamp("20240501"), datetime(2024, 5, 1, tzinfo=timezone.utc))
        self.assertIsNone(parse_timestamp("not a date"))
        self.assertIsNone(parse_timestamp(""))


class TestSolarEdge(unittest.TestCase):

    def test_overview_in_canonical_units(self):
        raw = {"overview": {
            "lastUpdateTime": "2024-05-01 11:55:00",
            "lifeTimeData": {"energy": 12_500_000},
            "lastYearData": {"energy": 3_000_000},
            "lastMonthData": {"energy": 400_000},
            "lastDayData": {"energy": 21_000},
            "currentPower": {"power": 4200.0},
        }}
        summary = normalize_solaredge_overview(raw, "7")
        self.assertEqual(summary.vendor, Vendor.SOLAREDGE)
        self.assertEqual(summary.current_power_w, 4200.0)
        self.assertEqual(summary.daily_energy_wh, 21_000)
        self.assertEqual(summary.lifetime_energy_wh, 12_500_000)
        self.assertEqual(summary.status, PlantStatus.ONLINE)
        self.assertEqual(summary.last_update, datetime(2024, 5, 1, 11, 55, tzinfo=timezone.utc))

    def test_overview_is_total_on_garbage(self):
        for raw in (None, {}, [], "oops", {"overview": "x"}, {"overview": {"currentPower": {"power": "--"}}}):
            summary = normalize_solaredge_overview(raw, "1")
            self.assertIsNone(summary.current_power_w)
            self.assertEqual(summary.status, PlantStatus.OFFLINE)

    def test_overview_round_trip(self):
        summary = PlantSummary(
            plant_id="1", vendor=Vendor.SOLAREDGE, current_power_w=1500.0,
            daily_energy_wh=8000.0, monthly_energy_wh=90_000.0,
            yearly_energy_wh=900_000.0, lifetime_energy_wh=5_000_000.0,
        )
        again = normalize_solaredge_overview(to_solaredge_overview(summary), "1")
        self.assertEqual(again.current_power_w, 1500.0)
        self.assertEqual(again.daily_energy_wh, 8000.0)
        self.assertEqual(again.lifetime_energy_wh, 5_000_000.0)

    def test_power_flow_converts_payload_unit(self):
        raw = {"siteCurrentPowerFlow": {
            "unit": "kW",
            "PV": {"currentPower": 3.5},
            "LOAD": {"currentPower": 1.25},
            "GRID": {"currentPower": 2.25},
            "connections": [{"from": "PV", "to": "Load"}],
        }}
        flow = normalize_solaredge_power_flow(raw)
        self.assertEqual(flow.pv_w, 3500.0)
        self.assertEqual(flow.load_w, 1250.0)
        self.assertIsNone(flow.storage_w)
        self.assertEqual(flow.connections, [{"from": "pv", "to": "load"}])

    def test_energy_skips_points_without_dates(self):
        raw = {"energy": {"unit": "kWh", "values": [
            {"date": "2024-05-01 10:00:00", "value": 1.5},
            {"date": None, "value": 2},
            {"date": "2024-05-01 11:00:00", "value": None},
            "junk",
        ]}}
        readings = normalize_solaredge_energy(raw, "1")
        self.assertEqual(len(readings), 2)
        self.assertEqual(readings[0].energy_wh, 1500.0)
        self.assertIsNone(readings[1].energy_wh)


class TestSungrow(unittest.TestCase):

    def test_kpi_units(self):
        raw = {"result_data": {"p83022": "3.5", "p83025": 12.0, "p83030": 300, "p83106": 12_500_000}}
        summary = normalize_sungrow_kpi(raw, "9", now=NOW)
        self.assertEqual(summary.current_power_w, 3500.0)
        self.assertEqual(summary.daily_energy_wh, 12_000.0)
        self.assertEqual(summary.monthly_energy_wh, 300_000.0)
        self.assertEqual(summary.lifetime_energy_wh, 12_500_000)
        self.assertEqual(summary.status, PlantStatus.ONLINE)
        self.assertEqual(display_mwh(summary.lifetime_energy_wh), 12.5)

    def test_kpi_without_live_points_is_offline(self):
        summary = normalize_sungrow_kpi({"result_data": {"p83106": 100}}, "9", now=NOW)
        self.assertEqual(summary.status, PlantStatus.OFFLINE)
        self.assertIsNone(summary.last_update)

    def test_kpi_round_trip(self):
        summary = PlantSummary(plant_id="9", vendor=Vendor.SUNGROW, current_power_w=2500.0,
                               daily_energy_wh=7000.0, monthly_energy_wh=150_000.0, lifetime_energy_wh=9_000_000.0)
        again = normalize_sungrow_kpi(to_sungrow_kpi(summary), "9", now=NOW)
        self.assertEqual(again.current_power_w, 2500.0)
        self.assertEqual(again.daily_energy_wh, 7000.0)
        self.assertEqual(again.monthly_energy_wh, 150_000.0)
        self.assertEqual(again.lifetime_energy_wh, 9_000_000.0)

    def test_energy_points(self):
        raw = {"result_data": {"list": [
            {"time_str": "20240501100000", "power": 2.0, "energy_yield": "0.5"},
            {"time": "garbage"},
        ]}}
        readings = normalize_sungrow_energy(raw, "9")
        self.assertEqual(len(readings), 1)
        self.assertEqual(readings[0].power_w, 2000.0)
        self.assertEqual(readings[0].energy_wh, 500.0)


class TestManualAndFallback(unittest.TestCase):

    def _manual(self, minutes_ago, power_w):
        return CanonicalReading(
            plant_id="1", timestamp=NOW - timedelta(minutes=minutes_ago), vendor=Vendor.MANUAL,
            power_w=power_w, provenance=Provenance.MANUAL,
        )

    def test_manual_reading_from_dict(self):
        reading = normalize_manual_reading({"timestamp": "2024-05-01T10:00:00Z", "power_w": "800", "energy_wh": -5}, "1")
        self.assertEqual(reading.power_w, 800.0)
        self.assertEqual(reading.energy_wh, 0.0)
        self.assertEqual(reading.provenance, Provenance.MANUAL)
        self.assertIsNone(normalize_manual_reading({"power_w": 1}, "1"))

    def test_fallback_uses_recent_manual_power(self):
        summary = PlantSummary(plant_id="1", vendor=Vendor.SOLAREDGE)
        result = apply_current_power_fallback(summary, [self._manual(90, 500.0), self._manual(30, 900.0)], NOW)
        self.assertEqual(result.current_power_w, 900.0)
        self.assertEqual(result.provenance, Provenance.MANUAL)
        self.assertFalse(result.stale)

    def test_fallback_marks_stale_when_manual_too_old(self):
        summary = PlantSummary(plant_id="1", vendor=Vendor.SOLAREDGE)
        result = apply_current_power_fallback(summary, [self._manual(180, 900.0)], NOW)
        self.assertEqual(result.current_power_w, 0.0)
        self.assertEqual(result.provenance, Provenance.STALE)
        self.assertTrue(result.stale)

    def test_fallback_keeps_vendor_value(self):
        summary = PlantSummary(plant_id="1", vendor=Vendor.SOLAREDGE, current_power_w=10.0)
        result = apply_current_power_fallback(summary, [self._manual(5, 900.0)], NOW)
        self.assertEqual(result.current_power_w, 10.0)
        self.assertEqual(result.provenance, Provenance.VENDOR)

    def test_merge_power_and_energy(self):
        t1 = NOW - timedelta(minutes=15)
        energy = [CanonicalReading("1", t1, Vendor.SOLAREDGE, energy_wh=100.0)]
        power = [CanonicalReading("1", t1, Vendor.SOLAREDGE, power_w=400.0),
                 CanonicalReading("1", NOW, Vendor.SOLAREDGE, power_w=500.0)]
        merged = merge_power_and_energy(energy, power)
        self.assertEqual([r.timestamp for r in merged], [t1, NOW])
        self.assertEqual(merged[0].energy_wh, 100.0)
        self.assertEqual(merged[0].power_w, 400.0)


class TestDisplayUnits(unittest.TestCase):

    def test_display_conversions(self):
        self.assertEqual(display_kw(4250.0), 4.25)
        self.assertEqual(display_kwh(21_040.0), 21.0)
        self.assertEqual(display_mwh(12_500_000.0), 12.5)
        self.assertIsNone(display_kw(None))


if __name__ == '__main__':
    unittest.main()
