"""
Export Pipeline.

Samples are turned into one ExportTable (ordered columns plus rows) and a
serializer from the registry encodes that table as CSV, XLSX or JSON.
Serializers never see samples, and row construction never knows about
output formats.

Identical input gives byte-identical output in every format.
"""
import asyncio
import csv
import io
import json
import logging
import re
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from solarview.errors import ValidationError
from solarview.job_coordinator import Stage, StageOutcome
from solarview.models import AggregationWindow, Artifact, ExportRequest, PowerSample
from solarview.sample_store import MAX_DC_CHANNELS, SampleStore
from solarview.timezone_utils import TzLike, days_in_window, ensure_utc, format_utc_iso, local_date

log = logging.getLogger(__name__)


def _dc_columns() -> List[str]:
    cols = []
    for idx in range(1, MAX_DC_CHANNELS + 1):
        cols.extend([f"dcPower{idx}", f"dcVoltage{idx}", f"dcCurrent{idx}"])
    return cols


# Selectable field groups in canonical column order.
FIELD_GROUPS: Dict[str, List[str]] = {
    "timestamp": ["timestamp"],
    "inverterId": ["inverterId"],
    "acPower": ["acPower"],
    "acVoltage": ["acVoltage"],
    "acCurrent": ["acCurrent"],
    "dcChannels": _dc_columns(),
    "temperature": ["temperature"],
    "yield": ["yieldToday", "yieldTotal"],
}


def _column_value(sample: PowerSample, column: str) -> Any:
    if column == "timestamp":
        return format_utc_iso(sample.timestamp)
    if column == "inverterId":
        return sample.inverter_id
    if column == "acPower":
        return sample.ac_power
    if column == "acVoltage":
        return sample.ac_voltage
    if column == "acCurrent":
        return sample.ac_current
    if column == "temperature":
        return sample.temperature
    if column == "yieldToday":
        return sample.yield_today
    if column == "yieldTotal":
        return sample.yield_total
    m = re.match(r"^dc(Power|Voltage|Current)(\d)$", column)
    if m:
        channel = sample.dc(int(m.group(2)))
        return getattr(channel, m.group(1).lower())
    raise KeyError(column)


@dataclass
class ExportTable:
    columns: List[str]
    rows: List[List[Any]] = field(default_factory=list)

    def records(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


def resolve_fields(selection: Iterable[str]) -> List[str]:
    """
    Expand a field selection into output columns in canonical order.

    Raises:
        ValidationError: the selection is empty or names an unknown field.
    """
    selected = list(selection or [])
    if not selected:
        raise ValidationError("Select at least one field to export")
    unknown = [f for f in selected if f not in FIELD_GROUPS]
    if unknown:
        raise ValidationError(f"Unknown export field(s): {', '.join(unknown)} "
                              f"(expected any of {', '.join(FIELD_GROUPS)})")
    columns: List[str] = []
    for group, group_columns in FIELD_GROUPS.items():
        if group in selected:
            columns.extend(group_columns)
    return columns


def build_table(samples: Sequence[PowerSample], selection: Iterable[str]) -> ExportTable:
    """One row per sample, in input order."""
    columns = resolve_fields(selection)
    rows = [[_column_value(s, c) for c in columns] for s in samples]
    return ExportTable(columns=columns, rows=rows)


# --- serializers ---

def write_csv(table: ExportTable) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=",", quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(table.columns)
    for row in table.rows:
        writer.writerow(["" if v is None else v for v in row])
    return buf.getvalue().encode("utf-8")


def write_json(table: ExportTable) -> bytes:
    doc = {"columns": table.columns, "rows": table.records()}
    return json.dumps(doc, indent=2, ensure_ascii=False).encode("utf-8")


# 1980-01-01 is the earliest timestamp a zip entry can hold.
_PINNED_ZIP_TIME = (1980, 1, 1, 0, 0, 0)
_PINNED_DOC_TIME = datetime(2000, 1, 1)
_CORE_TIMES = re.compile(rb"(<dcterms:(created|modified)[^>]*>)[^<]*(</dcterms:\2>)")


def _pin_archive(data: bytes) -> bytes:
    """Rewrite an xlsx archive with fixed entry timestamps and document dates."""
    src = zipfile.ZipFile(io.BytesIO(data))
    out = io.BytesIO()
    with zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as dst:
        for info in src.infolist():
            content = src.read(info.filename)
            if info.filename == "docProps/core.xml":
                content = _CORE_TIMES.sub(rb"\g<1>2000-01-01T00:00:00Z\g<3>", content)
            entry = zipfile.ZipInfo(info.filename, date_time=_PINNED_ZIP_TIME)
            entry.compress_type = zipfile.ZIP_DEFLATED
            entry.external_attr = 0o600 << 16
            dst.writestr(entry, content)
    return out.getvalue()


def write_xlsx(table: ExportTable) -> bytes:
    df = pd.DataFrame(table.rows, columns=table.columns)
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="Solar Data")
        props = writer.book.properties
        props.created = _PINNED_DOC_TIME
        props.modified = _PINNED_DOC_TIME
        props.creator = "SolarView"
    return _pin_archive(buf.getvalue())


@dataclass
class Serializer:
    extension: str
    media_type: str
    write: Callable[[ExportTable], bytes]


SERIALIZERS: Dict[str, Serializer] = {}
FORMAT_ALIASES = {"excel": "xlsx"}


def register_serializer(name: str, serializer: Serializer) -> None:
    SERIALIZERS[name] = serializer


register_serializer("csv", Serializer("csv", "text/csv", write_csv))
register_serializer("xlsx", Serializer("xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet", write_xlsx))
register_serializer("json", Serializer("json", "application/json", write_json))


def get_serializer(fmt: str) -> Serializer:
    name = FORMAT_ALIASES.get((fmt or "").lower(), (fmt or "").lower())
    serializer = SERIALIZERS.get(name)
    if serializer is None:
        raise ValidationError(f"Unsupported export format: {fmt!r} (expected one of {', '.join(SERIALIZERS)})")
    return serializer


def export_filename(window: AggregationWindow, extension: str, tz: TzLike = None) -> str:
    days = days_in_window(window.start, window.end, tz)
    first = days[0] if days else local_date(window.start, tz)
    last = days[-1] if days else first
    return f"solar_data_{first.isoformat()}_to_{last.isoformat()}.{extension}"


def export(samples: Sequence[PowerSample], field_selection: Iterable[str], fmt: str,
           window: AggregationWindow, tz: TzLike = None) -> Artifact:
    """Build the table once and serialize it in the requested format."""
    serializer = get_serializer(fmt)
    table = build_table(samples, field_selection)
    content = serializer.write(table)
    log.info(f"Exported {len(table.rows)} rows x {len(table.columns)} columns as {serializer.extension} ({len(content)} bytes)")
    return Artifact(content=content, media_type=serializer.media_type,
                    filename=export_filename(window, serializer.extension, tz))


def validate_request(request: ExportRequest) -> AggregationWindow:
    """Synchronous checks done before a job is started."""
    get_serializer(request.format)
    resolve_fields(request.fields)
    if ensure_utc(request.end) <= ensure_utc(request.start):
        raise ValidationError("Export end must be after start")
    if request.inverter_ids is not None and not request.inverter_ids:
        raise ValidationError("Select at least one inverter to export data from")
    return AggregationWindow(start=ensure_utc(request.start), end=ensure_utc(request.end))


def export_stages(store: SampleStore, owner_id: str, request: ExportRequest, tz: TzLike = None) -> List[Stage]:
    """Stages of an export job: querying, building-rows, serializing, finalizing."""
    window = validate_request(request)
    serializer = get_serializer(request.format)

    async def querying(ctx: Dict[str, Any]) -> StageOutcome:
        ctx["samples"] = await asyncio.to_thread(store.query, window, owner_id=owner_id,
                                                 inverter_ids=request.inverter_ids)
        return StageOutcome(25, f"Loaded {len(ctx['samples'])} samples")

    async def building_rows(ctx: Dict[str, Any]) -> StageOutcome:
        ctx["table"] = build_table(ctx.pop("samples"), request.fields)
        return StageOutcome(50, f"Built {len(ctx['table'].rows)} rows")

    async def serializing(ctx: Dict[str, Any]) -> StageOutcome:
        ctx["content"] = await asyncio.to_thread(serializer.write, ctx.pop("table"))
        return StageOutcome(75, f"Encoded {serializer.extension.upper()} file")

    async def finalizing(ctx: Dict[str, Any]) -> StageOutcome:
        ctx["artifact"] = Artifact(content=ctx.pop("content"), media_type=serializer.media_type,
                                   filename=export_filename(window, serializer.extension, tz))
        return StageOutcome(100, "Export ready")

    return [
        Stage("querying", querying),
        Stage("building-rows", building_rows),
        Stage("serializing", serializing),
        Stage("finalizing", finalizing),
    ]


def daily_table(daily_production: Dict[Any, float], rate: Optional[float] = None) -> ExportTable:
    """Date / production (/ savings) table used for report details."""
    columns = ["date", "productionKwh"] + (["savings"] if rate is not None else [])
    rows = []
    for day in sorted(daily_production):
        kwh = daily_production[day]
        row = [day.isoformat(), round(kwh, 2)]
        if rate is not None:
            row.append(round(kwh * rate, 2))
        rows.append(row)
    return ExportTable(columns=columns, rows=rows)
