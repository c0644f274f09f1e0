"""
Monthly report pipeline.

    collecting          query the month's samples               -> 25
    aggregating         aggregate, savings, environmental impact -> 50
    rendering-charts    matplotlib PNGs (when requested)         -> 75
    composing-document  ReportLab PDF                            -> 100

Stages hand their results to the next one through the job context. A
failing stage fails the job; nothing composed before the failure is kept.
"""
import asyncio
import calendar
import io
import logging
from typing import Any, Dict, List, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from solarview import charts
from solarview.aggregator import aggregate
from solarview.config import EmissionFactorsConfig
from solarview.cost_engine import costs, environmental_impact, validate_cost_settings
from solarview.errors import ValidationError
from solarview.export_pipeline import ExportTable, daily_table
from solarview.job_coordinator import Stage, StageOutcome
from solarview.models import (AggregateResult, AggregationWindow, Artifact, CostAmount, CostSettings,
                              EnvironmentalImpact, Granularity, ReportRequest)
from solarview.sample_store import SampleStore
from solarview.timezone_utils import month_window

log = logging.getLogger(__name__)

HEADER_BG = colors.HexColor("#f59e0b")


def period_label(month: int, year: int) -> str:
    return f"{calendar.month_name[month]} {year}"


def report_filename(month: int, year: int) -> str:
    return f"Solar Report - {period_label(month, year)}.pdf"


def validate_request(request: ReportRequest) -> None:
    if not 1 <= request.month <= 12:
        raise ValidationError(f"Month must be between 1 and 12, got {request.month}")
    if not 2000 <= request.year <= 2100:
        raise ValidationError(f"Year out of range: {request.year}")


def summary_rows(result: AggregateResult, cost: CostAmount, impact: EnvironmentalImpact) -> List[List[str]]:
    best = "-" if result.best_day is None else \
        f"{result.best_day.date.isoformat()} ({result.best_day.production_kwh:.2f} kWh)"
    return [
        ["Total production", f"{result.total_production_kwh:.2f} kWh"],
        ["Peak power", f"{result.peak_ac_power_w:.0f} W"],
        ["Average daily production", f"{result.average_daily_production_kwh:.2f} kWh"],
        ["Best day", best],
        ["Online days", f"{result.online_days} / {result.total_days}"],
        ["Uptime", f"{result.uptime_ratio * 100:.1f} %"],
        ["Savings", f"{cost.amount:.2f} {cost.currency}"],
        ["CO2 saved", f"{impact.co2_saved_kg:.2f} kg"],
        ["Trees equivalent", f"{impact.trees_equivalent:.2f}"],
        ["Coal avoided", f"{impact.coal_avoided_kg:.2f} kg"],
    ]


def _styled_table(rows: List[List[Any]], header: bool, col_widths=None) -> Table:
    table = Table(rows, colWidths=col_widths)
    style = [
        ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]
    if header:
        style += [
            ("BACKGROUND", (0, 0), (-1, 0), HEADER_BG),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ]
    table.setStyle(TableStyle(style))
    return table


def compose_pdf(title: str, result: AggregateResult, cost: CostAmount, impact: EnvironmentalImpact,
                chart_images: Optional[Dict[str, bytes]] = None, details: Optional[ExportTable] = None) -> bytes:
    """Render the report document and return the PDF bytes."""
    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A4, title=title, author="SolarView",
                            leftMargin=2 * cm, rightMargin=2 * cm, topMargin=2 * cm, bottomMargin=2 * cm)
    styles = getSampleStyleSheet()
    story: List[Any] = [
        Paragraph(title, styles["Title"]),
        Spacer(1, 0.4 * cm),
        Paragraph("Summary", styles["Heading2"]),
        _styled_table(summary_rows(result, cost, impact), header=False, col_widths=[7 * cm, 8 * cm]),
    ]
    for png in (chart_images or {}).values():
        story.append(Spacer(1, 0.5 * cm))
        story.append(Image(io.BytesIO(png), width=17 * cm, height=6.8 * cm))
    if details is not None and details.rows:
        story.append(Spacer(1, 0.5 * cm))
        story.append(Paragraph("Daily details", styles["Heading2"]))
        header = {"date": "Date", "productionKwh": "Production (kWh)", "savings": f"Savings ({cost.currency})"}
        rows = [[header.get(c, c) for c in details.columns]] + [[str(v) for v in row] for row in details.rows]
        story.append(_styled_table(rows, header=True))
    doc.build(story)
    return buf.getvalue()


def report_stages(store: SampleStore, owner_id: str, request: ReportRequest, settings: CostSettings,
                  factors: Optional[EmissionFactorsConfig] = None) -> List[Stage]:
    """Stages of a monthly report job. Request and tariff are validated before any stage runs."""
    validate_request(request)
    validate_cost_settings(settings)
    factors = factors or EmissionFactorsConfig()
    start, end = month_window(request.year, request.month, settings.timezone)
    window = AggregationWindow(start=start, end=end, granularity=Granularity.DAY)
    title = f"Solar Report - {period_label(request.month, request.year)}"

    async def collecting(ctx: Dict[str, Any]) -> StageOutcome:
        if request.inverter_id is not None:
            ctx["samples"] = await asyncio.to_thread(store.query, window, owner_id=owner_id,
                                                     inverter_ids=[request.inverter_id])
        else:
            ctx["samples"] = await asyncio.to_thread(store.query, window, owner_id=owner_id)
        return StageOutcome(25, "Collecting production data...")

    async def aggregating(ctx: Dict[str, Any]) -> StageOutcome:
        result = aggregate(ctx.pop("samples"), window, settings.timezone)
        ctx["result"] = result
        ctx["cost"] = costs(result, settings)
        ctx["impact"] = environmental_impact(result.total_production_kwh, factors)
        return StageOutcome(50, "Calculating statistics...")

    async def rendering_charts(ctx: Dict[str, Any]) -> StageOutcome:
        if request.include_charts:
            ctx["charts"] = await asyncio.to_thread(charts.report_charts, ctx["result"])
            return StageOutcome(75, "Generating charts...")
        ctx["charts"] = {}
        return StageOutcome(75, "Charts skipped")

    async def composing_document(ctx: Dict[str, Any]) -> StageOutcome:
        details = None
        if request.include_details:
            rate = settings.price_per_kwh * (1.0 + settings.tax_rate)
            details = daily_table(ctx["result"].daily_production, rate)
        pdf = await asyncio.to_thread(compose_pdf, title, ctx.pop("result"), ctx.pop("cost"), ctx.pop("impact"),
                                      ctx.pop("charts"), details)
        ctx["artifact"] = Artifact(content=pdf, media_type="application/pdf",
                                   filename=report_filename(request.month, request.year))
        log.info(f"Composed report '{title}' for owner {owner_id} ({len(pdf)} bytes)")
        return StageOutcome(100, "Report generated successfully!")

    return [
        Stage("collecting", collecting),
        Stage("aggregating", aggregating),
        Stage("rendering-charts", rendering_charts),
        Stage("composing-document", composing_document),
    ]
