#!/usr/bin/env python3
"""
Windowed aggregation of inverter samples.
Produces production totals, peak power, best day and uptime for a window,
plus a bucketed series at the window's granularity.

Production is read from the cumulative ``yield_today`` counter: for each
inverter and local calendar day the largest observed value is that day's
production. Sub-day samples are never summed, so the sampling rate has no
influence on the totals.

A window that opens after local midnight only counts what the counter
gained inside the window on that first day.
"""

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

import pandas as pd

from solarview.errors import ValidationError
from solarview.models import AggregateResult, AggregationWindow, BestDay, Granularity, PowerSample, SeriesBucket
from solarview.timezone_utils import (TzLike, days_in_window, ensure_utc, local_date, local_midnight,
                                      resolve_timezone)

log = logging.getLogger(__name__)


def _in_window(samples: Iterable[PowerSample], window: AggregationWindow) -> List[PowerSample]:
    start, end = ensure_utc(window.start), ensure_utc(window.end)
    return [s for s in samples if s.timestamp is not None and start <= ensure_utc(s.timestamp) < end]


def samples_to_frame(samples: List[PowerSample], tz: TzLike = None) -> pd.DataFrame:
    """
    Tabulate samples for grouping.

    Columns: ts (UTC), inverter_id, ac_power, yield_today, day (local date),
    hour (UTC hour start).
    """
    zone = resolve_timezone(tz)
    ts = pd.to_datetime([ensure_utc(s.timestamp) for s in samples], utc=True)
    df = pd.DataFrame({
        'ts': ts,
        'inverter_id': [s.inverter_id or "" for s in samples],
        'ac_power': [float(s.ac_power) for s in samples],
        'yield_today': [float(s.yield_today) for s in samples],
    })
    local = pd.DatetimeIndex(df['ts']).tz_convert(zone)
    df['day'] = local.date
    df['hour'] = df['ts'].dt.floor('h')
    return df


def cut_day_start(window: AggregationWindow, tz: TzLike = None) -> Optional[datetime]:
    """
    Local midnight of the day the window opens on, when the window opens
    after it. None when the window starts exactly at a local midnight.
    """
    zone = resolve_timezone(tz)
    midnight = local_midnight(local_date(window.start, zone), zone)
    if ensure_utc(midnight) == ensure_utc(window.start):
        return None
    return midnight


def _net_of_baseline(df: pd.DataFrame, cut_day: Optional[date], baselines: Dict[str, float]) -> pd.DataFrame:
    """
    Remove production reached before the window opened from the cut day.

    The baseline per inverter is the stored pre-window counter value, or the
    first in-window value when nothing earlier was recorded that day.
    """
    if cut_day is None or df.empty:
        return df
    on_cut = df['day'] == cut_day
    if not on_cut.any():
        return df
    cut = df[on_cut].sort_values('ts')
    first = cut.groupby('inverter_id')['yield_today'].transform('first')
    base = cut['inverter_id'].map(baselines).astype(float).fillna(first)
    net = df['yield_today'].copy()
    net.loc[base.index] = (cut['yield_today'] - base).clip(lower=0.0)
    return df.assign(yield_today=net)


def _daily_from_frame(df: pd.DataFrame) -> Dict[date, float]:
    if df.empty:
        return {}
    per_inverter = df.groupby(['inverter_id', 'day'])['yield_today'].max()
    per_day = per_inverter.groupby(level='day').sum()
    return {d: float(v) for d, v in per_day.items()}


def daily_production(samples: Iterable[PowerSample], tz: TzLike = None) -> Dict[date, float]:
    """Production per local date (kWh), summed across inverters."""
    samples = [s for s in samples if s.timestamp is not None]
    if not samples:
        return {}
    return _daily_from_frame(samples_to_frame(samples, tz))


def _hour_series(df: pd.DataFrame, window: AggregationWindow, zone) -> List[SeriesBucket]:
    first = pd.Timestamp(ensure_utc(window.start)).floor('h')
    hours = pd.date_range(start=first, end=pd.Timestamp(ensure_utc(window.end)), freq='h', inclusive='left')
    production: Dict[pd.Timestamp, float] = {}
    peaks: Dict[pd.Timestamp, float] = {}
    if not df.empty:
        df = df.sort_values(['inverter_id', 'ts'])
        df = df.assign(cum=df.groupby(['inverter_id', 'day'])['yield_today'].cummax())
        hourly = df.groupby(['inverter_id', 'day', 'hour'])['cum'].last()
        increase = hourly.groupby(level=['inverter_id', 'day']).diff().fillna(hourly)
        production = {h: float(v) for h, v in increase.groupby(level='hour').sum().items()}
        peaks = {h: float(v) for h, v in df.groupby('hour')['ac_power'].max().items()}
    buckets = []
    for hour in hours:
        local = hour.tz_convert(zone)
        buckets.append(SeriesBucket(
            label=local.strftime('%Y-%m-%d %H:%M'),
            start=local.to_pydatetime(),
            production_kwh=production.get(hour, 0.0),
            peak_ac_power_w=peaks.get(hour, 0.0),
        ))
    return buckets


def _day_series(days: List[date], daily: Dict[date, float], peaks: Dict[date, float], zone) -> List[SeriesBucket]:
    return [
        SeriesBucket(
            label=d.isoformat(),
            start=local_midnight(d, zone),
            production_kwh=daily.get(d, 0.0),
            peak_ac_power_w=peaks.get(d, 0.0),
        )
        for d in days
    ]


def _month_series(days: List[date], daily: Dict[date, float], peaks: Dict[date, float], zone) -> List[SeriesBucket]:
    buckets: List[SeriesBucket] = []
    current: Optional[tuple] = None
    for d in days:
        key = (d.year, d.month)
        if key != current:
            buckets.append(SeriesBucket(
                label=f"{d.year:04d}-{d.month:02d}",
                start=local_midnight(d, zone),
                production_kwh=0.0,
                peak_ac_power_w=0.0,
            ))
            current = key
        bucket = buckets[-1]
        bucket.production_kwh += daily.get(d, 0.0)
        bucket.peak_ac_power_w = max(bucket.peak_ac_power_w, peaks.get(d, 0.0))
    return buckets


def aggregate(samples: Iterable[PowerSample], window: AggregationWindow, tz: TzLike = None,
              baselines: Optional[Dict[str, float]] = None) -> AggregateResult:
    """
    Aggregate samples over a half-open window.

    Args:
        samples: samples in ascending timestamp order (others outside the window are ignored)
        window: the [start, end) interval and bucketing granularity
        tz: owner timezone used for calendar-day bucketing
        baselines: per inverter, the last ``yield_today`` stored earlier on the
            local day the window opens in (see ``SampleStore.yield_baselines``)

    Returns:
        AggregateResult; an empty sample set yields zeros and ``best_day=None``.
    """
    zone = resolve_timezone(tz)
    days = days_in_window(window.start, window.end, zone)
    total_days = len(days)
    selected = _in_window(samples, window)

    if selected:
        df = samples_to_frame(selected, zone)
        if cut_day_start(window, zone) is not None:
            df = _net_of_baseline(df, local_date(window.start, zone), baselines or {})
        daily = _daily_from_frame(df)
        day_peaks = {d: float(v) for d, v in df.groupby('day')['ac_power'].max().items()}
        peak = float(df['ac_power'].max())
    else:
        df = samples_to_frame([], zone) if window.granularity == Granularity.HOUR else None
        daily, day_peaks, peak = {}, {}, 0.0

    total = 0.0
    best: Optional[BestDay] = None
    for d in sorted(daily):
        production = daily[d]
        total += production
        # strict comparison keeps the earliest date on ties
        if best is None or production > best.production_kwh:
            best = BestDay(date=d, production_kwh=production)

    online_days = len(daily)
    uptime = online_days / total_days if total_days else 0.0
    average = total / total_days if total_days else 0.0

    if window.granularity == Granularity.HOUR:
        series = _hour_series(df, window, zone)
    elif window.granularity == Granularity.MONTH:
        series = _month_series(days, daily, day_peaks, zone)
    else:
        series = _day_series(days, daily, day_peaks, zone)

    log.debug(f"Aggregated {len(selected)} samples over {total_days} days: {total:.3f} kWh, peak {peak} W")
    return AggregateResult(
        total_production_kwh=total,
        peak_ac_power_w=peak,
        average_daily_production_kwh=average,
        best_day=best,
        total_days=total_days,
        online_days=online_days,
        uptime_ratio=uptime,
        daily_production=daily,
        series=series,
    )


def make_window(start: datetime, end: datetime, granularity: str = "day") -> AggregationWindow:
    """Build a validated window from API-level values."""
    try:
        gran = Granularity(granularity)
    except ValueError:
        raise ValidationError(f"Unknown granularity: {granularity!r} (expected hour, day or month)")
    if ensure_utc(end) < ensure_utc(start):
        raise ValidationError("Window end must not be before its start")
    return AggregationWindow(start=ensure_utc(start), end=ensure_utc(end), granularity=gran)
