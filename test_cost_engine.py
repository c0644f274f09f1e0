"""
Tests for savings and environmental impact calculations
"""

from datetime import date

import pytest

from solarview.config import EmissionFactorsConfig
from solarview.cost_engine import (costs, environmental_impact, monthly_savings, savings_summary,
                                   validate_emission_factors)
from solarview.errors import ConfigurationError
from solarview.models import AggregateResult, CostSettings


def result_with_total(kwh):
    return AggregateResult(total_production_kwh=kwh, peak_ac_power_w=0.0, average_daily_production_kwh=0.0,
                           best_day=None, total_days=0, online_days=0, uptime_ratio=0.0)


class TestCosts:
    """Savings = kWh x price x (1 + tax)"""

    def test_savings_from_aggregate(self):
        amount = costs(result_with_total(35.0), CostSettings(price_per_kwh=0.25))
        assert amount.amount == pytest.approx(8.75)
        assert amount.currency == "USD"
        assert amount.to_dict() == {"amount": 8.75, "currency": "USD"}

    def test_tax_applied(self):
        amount = costs(10.0, CostSettings(price_per_kwh=0.2, tax_rate=0.17, currency="pkr"))
        assert amount.amount == pytest.approx(2.34)
        assert amount.currency == "PKR"

    def test_unrounded_until_presented(self):
        amount = costs(1.0 / 3, CostSettings(price_per_kwh=0.1))
        assert amount.amount == pytest.approx(1.0 / 30)
        assert amount.to_dict()["amount"] == 0.03

    def test_free_electricity(self):
        assert costs(50.0, CostSettings(price_per_kwh=0.0)).amount == 0.0

    @pytest.mark.parametrize("settings", [
        CostSettings(price_per_kwh=-0.1),
        CostSettings(price_per_kwh=float("nan")),
        CostSettings(price_per_kwh=0.25, tax_rate=-0.1),
        CostSettings(price_per_kwh=0.25, currency=""),
        CostSettings(price_per_kwh=0.25, timezone="Atlantis/Capital"),
    ])
    def test_invalid_settings(self, settings):
        with pytest.raises(ConfigurationError):
            costs(10.0, settings)


class TestEnvironmentalImpact:
    """Emission-factor conversions"""

    def test_default_factors(self):
        impact = environmental_impact(100.0)
        assert impact.co2_saved_kg == pytest.approx(40.0)
        assert impact.trees_equivalent == pytest.approx(40.0 / 21.0)
        assert impact.coal_avoided_kg == pytest.approx(50.0)

    def test_custom_factors(self):
        factors = EmissionFactorsConfig(co2_kg_per_kwh=0.7, co2_kg_per_tree_year=20.0, coal_kg_per_kwh=0.4)
        impact = environmental_impact(10.0, factors)
        assert impact.to_dict() == {"co2_saved_kg": 7.0, "trees_equivalent": 0.35, "coal_avoided_kg": 4.0}

    def test_non_positive_factor_rejected(self):
        factors = EmissionFactorsConfig().model_copy(update={"coal_kg_per_kwh": 0.0})
        with pytest.raises(ConfigurationError):
            validate_emission_factors(factors)
        with pytest.raises(ConfigurationError):
            environmental_impact(10.0, factors)


class TestSavingsSummary:
    """Today / month / year / lifetime savings"""

    DAILY = {
        date(2023, 12, 31): 10.0,
        date(2024, 5, 20): 8.0,
        date(2024, 6, 1): 12.0,
        date(2024, 6, 2): 4.0,
    }

    def test_periods(self):
        summary = savings_summary(self.DAILY, CostSettings(price_per_kwh=0.5), today=date(2024, 6, 2))
        assert summary.today == pytest.approx(2.0)
        assert summary.this_month == pytest.approx(8.0)
        assert summary.this_year == pytest.approx(12.0)
        assert summary.total == pytest.approx(17.0)

    def test_lifetime_counter_overrides_total(self):
        summary = savings_summary(self.DAILY, CostSettings(price_per_kwh=0.5), today=date(2024, 6, 2),
                                  lifetime_kwh=1000.0)
        assert summary.total == pytest.approx(500.0)

    def test_monthly_history_oldest_first(self):
        months = monthly_savings(self.DAILY, CostSettings(price_per_kwh=0.5), date(2024, 6, 2), months=3)
        assert [m["month"] for m in months] == ["2024-04", "2024-05", "2024-06"]
        assert [m["production_kwh"] for m in months] == [0.0, 8.0, 16.0]
        assert months[-1]["savings"] == 8.0
        assert months[-1]["label"] == "Jun"

    def test_monthly_history_crosses_year(self):
        months = monthly_savings(self.DAILY, CostSettings(price_per_kwh=1.0), date(2024, 1, 15), months=2)
        assert [(m["month"], m["production_kwh"]) for m in months] == [("2023-12", 10.0), ("2024-01", 0.0)]
