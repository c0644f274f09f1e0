"""
Cost & environmental impact engine.

Converts aggregated production into monetary savings using an owner's
tariff, and into environmental equivalents using configurable emission
factors. Figures are kept unrounded here; rounding happens only where
results are presented (``to_dict``).
"""

import re
import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Union

import pytz

from .config import EmissionFactorsConfig
from .errors import ConfigurationError
from .models import AggregateResult, CostAmount, CostSettings, EnvironmentalImpact

log = logging.getLogger(__name__)

_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")
_MONTH_LABELS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


@dataclass
class SavingsSummary:
    today: float
    this_month: float
    this_year: float
    total: float
    currency: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "today": round(self.today, 2),
            "this_month": round(self.this_month, 2),
            "this_year": round(self.this_year, 2),
            "total": round(self.total, 2),
            "currency": self.currency,
        }


def validate_cost_settings(settings: CostSettings) -> None:
    """Raise ConfigurationError if the tariff cannot be used."""
    if settings.price_per_kwh is None or settings.price_per_kwh != settings.price_per_kwh:
        raise ConfigurationError("Electricity price is required")
    if settings.price_per_kwh < 0:
        raise ConfigurationError(f"Electricity price must not be negative, got {settings.price_per_kwh}")
    if not (0.0 <= settings.tax_rate <= 1.0):
        raise ConfigurationError(f"Tax rate must be a fraction between 0 and 1, got {settings.tax_rate}")
    if not _CURRENCY_RE.match(settings.currency or ""):
        raise ConfigurationError(f"Currency must be a 3-letter ISO code, got {settings.currency!r}")
    if settings.timezone is not None:
        try:
            pytz.timezone(settings.timezone)
        except pytz.UnknownTimeZoneError:
            raise ConfigurationError(f"Unknown timezone: {settings.timezone}")


def validate_emission_factors(factors: EmissionFactorsConfig) -> None:
    for name in ("co2_kg_per_kwh", "co2_kg_per_tree_year", "coal_kg_per_kwh"):
        value = getattr(factors, name)
        if value is None or value <= 0:
            raise ConfigurationError(f"Emission factor {name} must be positive, got {value}")


def _effective_rate(settings: CostSettings) -> float:
    return settings.price_per_kwh * (1.0 + settings.tax_rate)


def costs(source: Union[AggregateResult, float], settings: CostSettings) -> CostAmount:
    """
    Savings for a production figure: kWh x price x (1 + tax).

    Args:
        source: an AggregateResult (its total production is used) or a kWh value
        settings: the owner's cost settings
    """
    validate_cost_settings(settings)
    kwh = source.total_production_kwh if isinstance(source, AggregateResult) else float(source)
    return CostAmount(amount=kwh * _effective_rate(settings), currency=settings.currency.upper())


def environmental_impact(total_kwh: float, factors: Optional[EmissionFactorsConfig] = None) -> EnvironmentalImpact:
    factors = factors or EmissionFactorsConfig()
    validate_emission_factors(factors)
    co2 = total_kwh * factors.co2_kg_per_kwh
    return EnvironmentalImpact(
        co2_saved_kg=co2,
        trees_equivalent=co2 / factors.co2_kg_per_tree_year,
        coal_avoided_kg=total_kwh * factors.coal_kg_per_kwh,
    )


def savings_summary(daily_production: Dict[date, float], settings: CostSettings, today: date,
                    lifetime_kwh: Optional[float] = None) -> SavingsSummary:
    """
    Savings for today, the current month, the current year and overall.

    ``daily_production`` maps local dates to kWh. When the devices report a
    lifetime counter, pass it as ``lifetime_kwh`` so the overall figure covers
    production from before the stored history.
    """
    validate_cost_settings(settings)
    rate = _effective_rate(settings)
    day_kwh = daily_production.get(today, 0.0)
    month_kwh = sum(v for d, v in daily_production.items() if d.year == today.year and d.month == today.month and d <= today)
    year_kwh = sum(v for d, v in daily_production.items() if d.year == today.year and d <= today)
    total_kwh = lifetime_kwh if lifetime_kwh is not None else sum(daily_production.values())
    return SavingsSummary(
        today=day_kwh * rate,
        this_month=month_kwh * rate,
        this_year=year_kwh * rate,
        total=total_kwh * rate,
        currency=settings.currency.upper(),
    )


def monthly_savings(daily_production: Dict[date, float], settings: CostSettings, last_month: date,
                    months: int = 12) -> List[Dict[str, object]]:
    """Production and savings per calendar month, oldest first, ending at ``last_month``'s month."""
    validate_cost_settings(settings)
    rate = _effective_rate(settings)
    totals: Dict[tuple, float] = {}
    for d, kwh in daily_production.items():
        totals[(d.year, d.month)] = totals.get((d.year, d.month), 0.0) + kwh

    result = []
    year, month = last_month.year, last_month.month
    keys = []
    for _ in range(months):
        keys.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    for year, month in reversed(keys):
        production = totals.get((year, month), 0.0)
        result.append({
            "month": f"{year:04d}-{month:02d}",
            "label": _MONTH_LABELS[month - 1],
            "production_kwh": round(production, 2),
            "savings": round(production * rate, 2),
        })
    return result
