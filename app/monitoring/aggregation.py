"""Time-bucketed series and scalar metrics from canonical readings."""
import calendar
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from .normalizer import display_kw, display_kwh, display_mwh
from .readings import AggregatedBucket, CanonicalReading, PlantSummary

HOUR = "hour"
DAY = "day"
MONTH = "month"

_LABEL_FORMATS = {
    HOUR: "%H:00",
    DAY: "%d/%m",
    MONTH: "%m/%Y",
}


class Period(Enum):
    """Dashboard periods."""
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"


class ChartAxis(Enum):
    """Production chart axes."""
    DAY = "DAY"
    MONTH = "MONTH"
    YEAR = "YEAR"


def resolve_timezone(name):
    if name is None:
        return timezone.utc
    if isinstance(name, str):
        return timezone.utc if name.upper() == "UTC" else ZoneInfo(name)
    return name


def _truncate(moment: datetime, width: str) -> datetime:
    if width == HOUR:
        return moment.replace(minute=0, second=0, microsecond=0)
    if width == DAY:
        return moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def bucket_starts(period, now: datetime, tz=timezone.utc):
    """Return (width, [bucket starts]) for a Period or ChartAxis, ascending.

    Starts are local wall-clock times in ``tz``.
    """
    local_now = now.astimezone(tz)
    midnight = _truncate(local_now, DAY)

    if period in (Period.TODAY, ChartAxis.DAY):
        return HOUR, [midnight.replace(hour=h) for h in range(24)]

    if period is Period.WEEK:
        first = midnight.date() - timedelta(days=6)
        days = [first + timedelta(days=offset) for offset in range(7)]
        return DAY, [midnight.replace(year=d.year, month=d.month, day=d.day) for d in days]

    if period in (Period.MONTH, ChartAxis.MONTH):
        days_in_month = calendar.monthrange(local_now.year, local_now.month)[1]
        return DAY, [midnight.replace(day=d) for d in range(1, days_in_month + 1)]

    if period is ChartAxis.YEAR:
        first_of_month = _truncate(local_now, MONTH)
        return MONTH, [first_of_month.replace(month=m) for m in range(1, 13)]

    raise ValueError(f"Unknown period: {period}")


def parse_period(value):
    """Accept 'today'/'week'/'month' or 'DAY'/'MONTH'/'YEAR'."""
    if isinstance(value, (Period, ChartAxis)):
        return value
    text = str(value or "").strip()
    for enum_cls in (Period, ChartAxis):
        try:
            return enum_cls(text)
        except ValueError:
            continue
    raise ValueError(f"Unknown period: {value}")


def aggregate(
    readings: Iterable[CanonicalReading],
    period,
    now: Optional[datetime] = None,
    tz=timezone.utc,
) -> list:
    """Fold readings into the full set of buckets for ``period``.

    Energy is summed and power averaged per bucket. Buckets without any
    contributing value keep their key with None. Readings outside the range
    are ignored.
    """
    period = parse_period(period)
    tz = resolve_timezone(tz)
    now = now or datetime.now(timezone.utc)
    width, starts = bucket_starts(period, now, tz)
    label_format = _LABEL_FORMATS[width]

    buckets = {}
    for start in starts:
        key = start.isoformat()
        buckets[key] = AggregatedBucket(key=key, label=start.strftime(label_format), start=start)

    power_sums = {}
    power_counts = {}
    for reading in readings:
        if reading is None or reading.timestamp is None:
            continue
        key = _truncate(reading.timestamp.astimezone(tz), width).isoformat()
        bucket = buckets.get(key)
        if bucket is None:
            continue
        bucket.count += 1
        if reading.energy_wh is not None:
            bucket.energy_wh = (bucket.energy_wh or 0.0) + reading.energy_wh
        if reading.power_w is not None:
            power_sums[key] = power_sums.get(key, 0.0) + reading.power_w
            power_counts[key] = power_counts.get(key, 0) + 1

    for key, total in power_sums.items():
        buckets[key].power_w = total / power_counts[key]

    return [buckets[start.isoformat()] for start in starts]


def running_total(buckets) -> list:
    """Cumulative energy per bucket (Wh); empty buckets carry the previous total."""
    totals = []
    total = 0.0
    for bucket in buckets:
        if bucket.energy_wh is not None:
            total += bucket.energy_wh
        totals.append(total)
    return totals


def to_chart_points(buckets, axis=ChartAxis.DAY, consumption=None) -> list:
    """Re-label buckets into chart export records.

    Intraday (``DAY``) yields {time, geracao[, consumo]} in kW; bar axes
    yield {date, energy} in kWh.
    """
    axis = parse_period(axis)
    points = []
    if axis in (ChartAxis.DAY, Period.TODAY):
        consumption_by_key = {b.key: b for b in (consumption or [])}
        for bucket in buckets:
            point = {"time": bucket.label, "geracao": display_kw(bucket.power_w)}
            if consumption is not None:
                other = consumption_by_key.get(bucket.key)
                point["consumo"] = display_kw(other.power_w) if other else None
            points.append(point)
        return points
    for bucket in buckets:
        points.append({"date": bucket.label, "energy": display_kwh(bucket.energy_wh, digits=2)})
    return points


def efficiency_percent(current_power_w, capacity_kwp) -> Optional[float]:
    """Instantaneous output as a share of installed peak capacity."""
    if current_power_w is None or not capacity_kwp:
        return None
    return round((current_power_w / 1_000.0) / capacity_kwp * 100.0, 1)


def summarize(summary: PlantSummary, capacity_kwp=None) -> dict:
    """Scalar metric cards in display units."""
    return {
        "plant_id": summary.plant_id,
        "vendor": summary.vendor.value,
        "current_power_kw": display_kw(summary.current_power_w),
        "daily_energy_kwh": display_kwh(summary.daily_energy_wh),
        "monthly_energy_mwh": display_mwh(summary.monthly_energy_wh, digits=2),
        "lifetime_energy_mwh": display_mwh(summary.lifetime_energy_wh),
        "efficiency_percent": efficiency_percent(summary.current_power_w, capacity_kwp),
        "status": summary.status.value,
        "provenance": summary.provenance.value,
        "stale": summary.stale,
        "last_update": summary.last_update.isoformat() if summary.last_update else None,
    }


def series_range(period, now: datetime, tz=timezone.utc):
    """UTC [start, end) covered by ``period``; used to fetch vendor history."""
    period = parse_period(period)
    tz = resolve_timezone(tz)
    width, starts = bucket_starts(period, now, tz)
    last = starts[-1]
    if width == HOUR:
        end = last + timedelta(hours=1)
    elif width == DAY:
        end = last + timedelta(days=1)
    else:
        end = last.replace(year=last.year + 1, month=1) if last.month == 12 else last.replace(month=last.month + 1)
    return starts[0].astimezone(timezone.utc), end.astimezone(timezone.utc), width
