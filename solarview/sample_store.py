"""
Sample Store Adapter.

Append-only storage of PowerSample rows in SQLite. Writes are validated
against configured physical bounds and against the per-inverter ordering
rule before anything touches the database:

- a sample whose (inverter, second) already exists is rejected;
- a sample older than the newest stored sample for that inverter is rejected.

Reads never mutate and may run concurrently with a writer (WAL journal).
"""
import sqlite3
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from solarview.config import SampleBoundsConfig
from solarview.database import connect
from solarview.errors import NotFoundError, ValidationError
from solarview.models import AggregationWindow, DcChannel, ImportResult, PollEvent, PowerSample
from solarview.timezone_utils import format_utc_iso, parse_iso_utc, truncate_to_second

log = logging.getLogger(__name__)

MAX_DC_CHANNELS = 4

_SAMPLE_COLUMNS = (
    "inverter_id, owner_id, ts, ac_power, ac_voltage, ac_current, "
    "dc_power_1, dc_voltage_1, dc_current_1, dc_power_2, dc_voltage_2, dc_current_2, "
    "dc_power_3, dc_voltage_3, dc_current_3, dc_power_4, dc_voltage_4, dc_current_4, "
    "dc_channel_count, temperature, yield_today, yield_total"
)


def validate_sample(sample: PowerSample, bounds: SampleBoundsConfig) -> None:
    """Raise ValidationError describing the first implausible value in ``sample``."""
    if sample.timestamp is None:
        raise ValidationError("Sample timestamp is required")
    if len(sample.dc_channels) > MAX_DC_CHANNELS:
        raise ValidationError(f"At most {MAX_DC_CHANNELS} DC channels are supported, got {len(sample.dc_channels)}")

    checks = [
        ("acPower", sample.ac_power, 0.0, bounds.max_power_w),
        ("acVoltage", sample.ac_voltage, 0.0, bounds.max_voltage_v),
        ("acCurrent", sample.ac_current, 0.0, bounds.max_current_a),
        ("yieldToday", sample.yield_today, 0.0, bounds.max_yield_today_kwh),
        ("yieldTotal", sample.yield_total, 0.0, None),
    ]
    for idx, ch in enumerate(sample.dc_channels, start=1):
        checks.append((f"dcPower{idx}", ch.power, 0.0, bounds.max_power_w))
        checks.append((f"dcVoltage{idx}", ch.voltage, 0.0, bounds.max_voltage_v))
        checks.append((f"dcCurrent{idx}", ch.current, 0.0, bounds.max_current_a))
    if sample.temperature is not None:
        checks.append(("temperature", sample.temperature, bounds.min_temperature_c, bounds.max_temperature_c))

    for name, value, low, high in checks:
        if not np.isfinite(value):
            raise ValidationError(f"{name} is not a finite number")
        if value < low:
            raise ValidationError(f"{name}={value} is below the allowed minimum {low}")
        if high is not None and value > high:
            raise ValidationError(f"{name}={value} exceeds the allowed maximum {high}")


def _sample_params(inverter_id: str, owner_id: str, sample: PowerSample) -> tuple:
    dc_values: List[Optional[float]] = []
    for idx in range(1, MAX_DC_CHANNELS + 1):
        if idx <= len(sample.dc_channels):
            ch = sample.dc_channels[idx - 1]
            dc_values.extend([ch.power, ch.voltage, ch.current])
        else:
            dc_values.extend([None, None, None])
    return (
        inverter_id, owner_id, format_utc_iso(sample.timestamp),
        sample.ac_power, sample.ac_voltage, sample.ac_current,
        *dc_values,
        len(sample.dc_channels), sample.temperature, sample.yield_today, sample.yield_total,
    )


def _row_to_sample(row: sqlite3.Row) -> PowerSample:
    channels = []
    for idx in range(1, row["dc_channel_count"] + 1):
        channels.append(DcChannel(
            power=row[f"dc_power_{idx}"] or 0.0,
            voltage=row[f"dc_voltage_{idx}"] or 0.0,
            current=row[f"dc_current_{idx}"] or 0.0,
        ))
    return PowerSample(
        timestamp=parse_iso_utc(row["ts"]),
        inverter_id=row["inverter_id"],
        owner_id=row["owner_id"],
        ac_power=row["ac_power"] or 0.0,
        ac_voltage=row["ac_voltage"] or 0.0,
        ac_current=row["ac_current"] or 0.0,
        dc_channels=channels,
        temperature=row["temperature"],
        yield_today=row["yield_today"] or 0.0,
        yield_total=row["yield_total"] or 0.0,
    )


def _scope_clause(inverter_id: Optional[str], owner_id: Optional[str],
                  inverter_ids: Optional[Iterable[str]]) -> Optional[Tuple[str, List]]:
    """
    SQL filter selecting one inverter, or an owner's inverters optionally
    narrowed to ``inverter_ids``. None when the narrowing list is empty.
    """
    if (inverter_id is None) == (owner_id is None):
        raise ValidationError("Query needs exactly one of inverter_id or owner_id")
    if inverter_id is not None:
        return " AND inverter_id = ?", [inverter_id]
    clause, params = " AND owner_id = ?", [owner_id]
    if inverter_ids is not None:
        ids = list(inverter_ids)
        if not ids:
            return None
        clause += f" AND inverter_id IN ({','.join('?' * len(ids))})"
        params.extend(ids)
    return clause, params


class SampleStore:
    """Reads and writes telemetry samples for all inverters."""

    def __init__(self, db_path: str, bounds: Optional[SampleBoundsConfig] = None, busy_timeout_ms: int = 5000):
        self.path = db_path
        self.bounds = bounds or SampleBoundsConfig()
        self.busy_timeout_ms = busy_timeout_ms

    def _connect(self) -> sqlite3.Connection:
        return connect(self.path, self.busy_timeout_ms)

    @staticmethod
    def _owner_of(cur: sqlite3.Cursor, inverter_id: str) -> str:
        cur.execute("SELECT owner_id FROM inverters WHERE id = ?", (inverter_id,))
        row = cur.fetchone()
        if row is None:
            raise NotFoundError(f"Inverter {inverter_id} not found")
        return row["owner_id"]

    @staticmethod
    def _newest_ts(cur: sqlite3.Cursor, inverter_id: str) -> Optional[str]:
        cur.execute("SELECT MAX(ts) AS ts FROM power_samples WHERE inverter_id = ?", (inverter_id,))
        row = cur.fetchone()
        return row["ts"] if row else None

    @staticmethod
    def _check_order(ts: str, newest: Optional[str], inverter_id: str) -> None:
        if newest is None:
            return
        if ts == newest:
            raise ValidationError(f"Duplicate sample for inverter {inverter_id} at {ts}")
        if ts < newest:
            raise ValidationError(f"Sample at {ts} is older than the newest stored sample ({newest}) for inverter {inverter_id}")

    def append(self, inverter_id: str, sample: PowerSample) -> PowerSample:
        """
        Validate and persist one sample.

        Returns:
            The stored sample with inverter/owner ids filled and the timestamp
            truncated to whole seconds in UTC.
        """
        validate_sample(sample, self.bounds)
        stored_ts = truncate_to_second(sample.timestamp)
        con = self._connect()
        cur = con.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            owner_id = self._owner_of(cur, inverter_id)
            stored = sample.model_copy(update={
                "timestamp": stored_ts,
                "inverter_id": inverter_id,
                "owner_id": owner_id,
            })
            ts = format_utc_iso(stored_ts)
            self._check_order(ts, self._newest_ts(cur, inverter_id), inverter_id)
            cur.execute(
                f"INSERT INTO power_samples ({_SAMPLE_COLUMNS}) VALUES ({','.join('?' * 22)})",
                _sample_params(inverter_id, owner_id, stored),
            )
            con.commit()
            log.debug(f"Stored sample for {inverter_id} at {ts}")
            return stored
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def append_many(self, inverter_id: str, samples: Sequence[PowerSample]) -> ImportResult:
        """
        Bulk import. Each record is validated on its own; accepted records are
        committed together, rejected ones are reported by index.
        """
        result = ImportResult()
        con = self._connect()
        cur = con.cursor()
        try:
            cur.execute("BEGIN IMMEDIATE")
            owner_id = self._owner_of(cur, inverter_id)
            newest = self._newest_ts(cur, inverter_id)
            for index, sample in enumerate(samples):
                try:
                    validate_sample(sample, self.bounds)
                    stored = sample.model_copy(update={
                        "timestamp": truncate_to_second(sample.timestamp),
                        "inverter_id": inverter_id,
                        "owner_id": owner_id,
                    })
                    ts = format_utc_iso(stored.timestamp)
                    self._check_order(ts, newest, inverter_id)
                except ValidationError as e:
                    result.rejected.append({"index": index, "error": e.kind, "message": e.message})
                    continue
                cur.execute(
                    f"INSERT INTO power_samples ({_SAMPLE_COLUMNS}) VALUES ({','.join('?' * 22)})",
                    _sample_params(inverter_id, owner_id, stored),
                )
                newest = ts
                result.accepted += 1
            con.commit()
            log.info(f"Imported {result.accepted} samples for {inverter_id}, rejected {len(result.rejected)}")
            return result
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def query(self, window: AggregationWindow, inverter_id: Optional[str] = None,
              owner_id: Optional[str] = None, inverter_ids: Optional[Iterable[str]] = None) -> List[PowerSample]:
        """
        Samples with timestamp in [window.start, window.end), ascending.

        Exactly one of ``inverter_id`` / ``owner_id`` selects the stream; with
        ``owner_id`` the result may be narrowed to ``inverter_ids``.
        """
        scope = _scope_clause(inverter_id, owner_id, inverter_ids)
        if scope is None:
            return []
        clause, scope_params = scope
        sql = f"SELECT {_SAMPLE_COLUMNS} FROM power_samples WHERE ts >= ? AND ts < ?{clause}"
        sql += " ORDER BY ts ASC, inverter_id ASC"
        params = [format_utc_iso(window.start), format_utc_iso(window.end), *scope_params]

        con = self._connect()
        try:
            rows = con.execute(sql, params).fetchall()
            return [_row_to_sample(r) for r in rows]
        finally:
            con.close()

    def yield_baselines(self, since: datetime, before: datetime, inverter_id: Optional[str] = None,
                        owner_id: Optional[str] = None,
                        inverter_ids: Optional[Iterable[str]] = None) -> Dict[str, float]:
        """
        Last stored ``yield_today`` per inverter with timestamp in [since, before).

        Used when a window cuts a local day: the counter value reached before
        the window opens is subtracted from that day's in-window production.
        Inverters without a sample in the range are absent from the result.
        """
        scope = _scope_clause(inverter_id, owner_id, inverter_ids)
        if scope is None:
            return {}
        clause, scope_params = scope
        # SQLite takes the bare yield_today from the row that holds MAX(ts)
        sql = (f"SELECT inverter_id, yield_today, MAX(ts) AS ts FROM power_samples "
               f"WHERE ts >= ? AND ts < ?{clause} GROUP BY inverter_id")
        params = [format_utc_iso(since), format_utc_iso(before), *scope_params]

        con = self._connect()
        try:
            rows = con.execute(sql, params).fetchall()
            return {r["inverter_id"]: float(r["yield_today"] or 0.0) for r in rows}
        finally:
            con.close()

    def latest(self, inverter_id: str) -> Optional[PowerSample]:
        con = self._connect()
        try:
            row = con.execute(
                f"SELECT {_SAMPLE_COLUMNS} FROM power_samples WHERE inverter_id = ? ORDER BY ts DESC LIMIT 1",
                (inverter_id,),
            ).fetchone()
            return _row_to_sample(row) if row else None
        finally:
            con.close()

    def prune_before(self, cutoff: datetime) -> int:
        """Delete samples older than ``cutoff``. Returns the number of rows removed."""
        con = self._connect()
        try:
            cur = con.execute("DELETE FROM power_samples WHERE ts < ?", (format_utc_iso(cutoff),))
            con.commit()
            if cur.rowcount:
                log.info(f"Pruned {cur.rowcount} samples older than {format_utc_iso(cutoff)}")
            return cur.rowcount
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def record_poll_event(self, event: PollEvent) -> None:
        con = self._connect()
        try:
            con.execute("""
                INSERT INTO poll_events (inverter_id, ts, ok, consecutive_failures, error_kind, message)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (event.inverter_id, format_utc_iso(event.timestamp), int(event.ok),
                  event.consecutive_failures, event.error_kind, event.message))
            con.commit()
        finally:
            con.close()

    def recent_poll_events(self, inverter_id: str, limit: int = 20) -> List[PollEvent]:
        con = self._connect()
        try:
            rows = con.execute("""
                SELECT inverter_id, ts, ok, consecutive_failures, error_kind, message
                FROM poll_events WHERE inverter_id = ? ORDER BY id DESC LIMIT ?
            """, (inverter_id, limit)).fetchall()
            return [
                PollEvent(
                    inverter_id=r["inverter_id"],
                    timestamp=parse_iso_utc(r["ts"]),
                    ok=bool(r["ok"]),
                    consecutive_failures=r["consecutive_failures"],
                    error_kind=r["error_kind"],
                    message=r["message"],
                )
                for r in rows
            ]
        finally:
            con.close()
