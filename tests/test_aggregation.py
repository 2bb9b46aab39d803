import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from app.monitoring.aggregation import (
    ChartAxis,
    DAY,
    HOUR,
    MONTH,
    Period,
    aggregate,
    bucket_starts,
    efficiency_percent,
    parse_period,
    running_total,
    series_range,
    summarize,
    to_chart_points,
)
from app.monitoring.readings import CanonicalReading, PlantSummary, Provenance, Vendor

NOW = datetime(2024, 5, 15, 20, 30, tzinfo=timezone.utc)


def reading(hour, energy_wh=None, power_w=None, day=15):
    return CanonicalReading(
        plant_id="1",
        timestamp=datetime(2024, 5, day, hour, 0, tzinfo=timezone.utc),
        vendor=Vendor.SOLAREDGE,
        energy_wh=energy_wh,
        power_w=power_w,
    )


class TestBuckets(unittest.TestCase):

    def test_today_without_readings_yields_all_hours(self):
        buckets = aggregate([], Period.TODAY, now=NOW)
        self.assertEqual(len(buckets), 24)
        self.assertEqual(buckets[0].label, "00:00")
        self.assertEqual(buckets[23].label, "23:00")
        self.assertTrue(all(b.energy_wh is None and b.power_w is None for b in buckets))

    def test_today_sums_energy_and_averages_power(self):
        readings = [
            reading(8, energy_wh=500.0, power_w=1000.0),
            reading(12, energy_wh=1500.0, power_w=4000.0),
            reading(12, energy_wh=500.0, power_w=2000.0),
            reading(18, energy_wh=250.0),
        ]
        buckets = aggregate(readings, "today", now=NOW)
        by_label = {b.label: b for b in buckets}
        self.assertEqual(by_label["08:00"].energy_wh, 500.0)
        self.assertEqual(by_label["12:00"].energy_wh, 2000.0)
        self.assertEqual(by_label["12:00"].power_w, 3000.0)
        self.assertEqual(by_label["12:00"].count, 2)
        self.assertEqual(by_label["18:00"].energy_wh, 250.0)
        self.assertIsNone(by_label["18:00"].power_w)
        self.assertIsNone(by_label["10:00"].energy_wh)

    def test_readings_outside_range_are_ignored(self):
        buckets = aggregate([reading(12, energy_wh=100.0, day=14)], Period.TODAY, now=NOW)
        self.assertTrue(all(b.energy_wh is None for b in buckets))

    def test_bucket_counts(self):
        self.assertEqual(len(aggregate([], Period.WEEK, now=NOW)), 7)
        self.assertEqual(len(aggregate([], Period.MONTH, now=NOW)), 31)
        self.assertEqual(len(aggregate([], ChartAxis.YEAR, now=NOW)), 12)
        february = datetime(2024, 2, 10, tzinfo=timezone.utc)
        self.assertEqual(len(aggregate([], ChartAxis.MONTH, now=february)), 29)

    def test_week_ends_today(self):
        width, starts = bucket_starts(Period.WEEK, NOW)
        self.assertEqual(width, DAY)
        self.assertEqual(starts[-1].date(), NOW.date())
        self.assertEqual(starts[0].date(), (NOW - timedelta(days=6)).date())

    def test_buckets_follow_display_timezone(self):
        tz = ZoneInfo("America/Sao_Paulo")
        # 02:00 UTC on the 16th is 23:00 on the 15th in Sao Paulo
        late = CanonicalReading("1", datetime(2024, 5, 16, 2, 0, tzinfo=timezone.utc), Vendor.SOLAREDGE, energy_wh=10.0)
        buckets = aggregate([late], Period.TODAY, now=NOW, tz=tz)
        self.assertEqual(buckets[23].energy_wh, 10.0)

    def test_series_range(self):
        start, end, width = series_range(Period.TODAY, NOW)
        self.assertEqual(width, HOUR)
        self.assertEqual(start, datetime(2024, 5, 15, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2024, 5, 16, tzinfo=timezone.utc))
        start, end, width = series_range(ChartAxis.YEAR, NOW)
        self.assertEqual(width, MONTH)
        self.assertEqual(end, datetime(2025, 1, 1, tzinfo=timezone.utc))

    def test_parse_period(self):
        self.assertIs(parse_period("week"), Period.WEEK)
        self.assertIs(parse_period("YEAR"), ChartAxis.YEAR)
        with self.assertRaises(ValueError):
            parse_period("fortnight")


class TestDerived(unittest.TestCase):

    def test_running_total_is_non_decreasing(self):
        buckets = aggregate([reading(8, energy_wh=500.0), reading(12, energy_wh=1500.0)], Period.TODAY, now=NOW)
        totals = running_total(buckets)
        self.assertEqual(len(totals), 24)
        self.assertEqual(totals, sorted(totals))
        self.assertEqual(totals[7], 0.0)
        self.assertEqual(totals[8], 500.0)
        self.assertEqual(totals[-1], 2000.0)

    def test_intraday_chart_points(self):
        generation = aggregate([reading(12, power_w=2500.0)], Period.TODAY, now=NOW)
        consumption = aggregate([reading(12, power_w=1000.0)], Period.TODAY, now=NOW)
        points = to_chart_points(generation, ChartAxis.DAY, consumption=consumption)
        self.assertEqual(len(points), 24)
        self.assertEqual(points[12], {"time": "12:00", "geracao": 2.5, "consumo": 1.0})
        self.assertEqual(points[0], {"time": "00:00", "geracao": None, "consumo": None})

    def test_bar_chart_points(self):
        buckets = aggregate([reading(12, energy_wh=12_340.0)], ChartAxis.MONTH, now=NOW)
        points = to_chart_points(buckets, "MONTH")
        self.assertEqual(points[14], {"date": "15/05", "energy": 12.34})

    def test_efficiency(self):
        self.assertEqual(efficiency_percent(5000.0, 10.0), 50.0)
        self.assertIsNone(efficiency_percent(5000.0, None))
        self.assertIsNone(efficiency_percent(None, 10.0))

    def test_summarize_display_units(self):
        summary = PlantSummary(
            plant_id="1", vendor=Vendor.SUNGROW, current_power_w=4250.0,
            daily_energy_wh=21_000.0, monthly_energy_wh=450_000.0, lifetime_energy_wh=12_500_000.0,
            provenance=Provenance.MANUAL,
        )
        metrics = summarize(summary, capacity_kwp=8.5)
        self.assertEqual(metrics["current_power_kw"], 4.25)
        self.assertEqual(metrics["daily_energy_kwh"], 21.0)
        self.assertEqual(metrics["monthly_energy_mwh"], 0.45)
        self.assertEqual(metrics["lifetime_energy_mwh"], 12.5)
        self.assertEqual(metrics["efficiency_percent"], 50.0)
        self.assertEqual(metrics["provenance"], "manual")


if __name__ == '__main__':
    unittest.main()
