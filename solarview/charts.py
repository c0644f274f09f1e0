"""
PNG chart rendering for reports (matplotlib, Agg backend).

Figures are built with the object API rather than pyplot so rendering is
safe from worker threads.
"""
import io
import logging
from typing import Dict

import matplotlib
matplotlib.use("Agg")
from matplotlib.figure import Figure

from solarview.models import AggregateResult

log = logging.getLogger(__name__)

PRODUCTION_COLOR = "#f59e0b"
PEAK_COLOR = "#2563eb"


def _to_png(fig: Figure, dpi: int = 110) -> bytes:
    buf = io.BytesIO()
    fig.savefig(buf, format="png", dpi=dpi, bbox_inches="tight")
    return buf.getvalue()


def _day_labels(result: AggregateResult):
    # series labels are YYYY-MM-DD for day buckets; show the day of month
    return [b.label[-2:] if len(b.label) == 10 else b.label for b in result.series]


def production_chart(result: AggregateResult, title: str = "Daily production") -> bytes:
    fig = Figure(figsize=(8, 3.2))
    ax = fig.add_subplot(111)
    labels = _day_labels(result)
    values = [b.production_kwh for b in result.series]
    ax.bar(range(len(values)), values, color=PRODUCTION_COLOR)
    ax.set_xticks(range(len(labels)))
    ax.set_xticklabels(labels, fontsize=7)
    ax.set_ylabel("kWh")
    ax.set_title(title)
    ax.grid(axis="y", alpha=0.3)
    return _to_png(fig)


def peak_power_chart(result: AggregateResult, title: str = "Peak AC power") -> bytes:
    fig = Figure(figsize=(8, 3.2))
    ax = fig.add_subplot(111)
    labels = _day_labels(result)
    values = [b.peak_ac_power_w for b in result.series]
    ax.plot(range(len(values)), values, color=PEAK_COLOR, marker="o", markersize=3)
    ax.set_xticks(range(len(labels)))
    ax.set_xticklabels(labels, fontsize=7)
    ax.set_ylabel("W")
    ax.set_title(title)
    ax.grid(alpha=0.3)
    return _to_png(fig)


def report_charts(result: AggregateResult) -> Dict[str, bytes]:
    charts = {
        "production": production_chart(result),
        "peak_power": peak_power_chart(result),
    }
    log.debug(f"Rendered {len(charts)} report charts")
    return charts
