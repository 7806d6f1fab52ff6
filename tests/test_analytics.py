"""
test_analytics.py
------------------
Tests for spending aggregates, trend and forecast, category drift and the
spending profile.

Run from the project root:
    python -m pytest tests/test_analytics.py -v
"""

import sys
import os
import pytest
from datetime import datetime

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config
from core.models import UnifiedTransaction
from analytics.spending import (
    calculate_monthly_totals,
    calculate_rolling_average,
    calculate_spending_summary,
    calculate_volatility,
    identify_spending_clusters,
    monthly_spend_series,
)
from analytics.trends import INSUFFICIENT_DATA, analyse_trend, forecast_monthly_spending
from analytics.profile import calculate_seasonality_factors, generate_spending_profile
from monitoring.drift_monitor import DriftMonitor


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears the config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


_ids = iter(range(1_000_000))


def _make_tx(
    when,
    amount,
    category="Food & Dining",
    merchant="Woolworths",
    direction="OUT",
    user_id="u1",
) -> UnifiedTransaction:
    """Helper: a categorised transaction."""
    return UnifiedTransaction(
        id=f"t{next(_ids)}",
        user_id=user_id,
        account_id="acc1",
        date=when,
        amount=amount,
        direction=direction,
        description=(merchant or "UNKNOWN").upper(),
        merchant_standardised=merchant,
        category_level1=category,
    )


def _monthly_spend(values, year=2024, **kwargs):
    """One transaction per month starting in January with the given amounts."""
    return [_make_tx(datetime(year, i + 1, 10), v, **kwargs) for i, v in enumerate(values)]


# =============================================================================
# SPENDING
# =============================================================================

class TestSpendingSummary:
    def _txs(self):
        return [
            _make_tx(datetime(2024, 1, 5), 100.0),
            _make_tx(datetime(2024, 1, 6), 50.0, category="Transport", merchant="Shell"),
            _make_tx(datetime(2024, 1, 7), 1000.0, category="Income", merchant="Acme", direction="IN"),
        ]

    def test_totals(self):
        summary = calculate_spending_summary(self._txs())
        assert summary.total_spend == pytest.approx(150.0)
        assert summary.total_income == pytest.approx(1000.0)
        assert summary.net_cashflow == pytest.approx(850.0)
        assert summary.transaction_count == 3
        assert summary.average_transaction == pytest.approx(75.0)

    def test_top_categories_and_merchants(self):
        summary = calculate_spending_summary(self._txs())
        assert [c.category for c in summary.top_categories] == ["Food & Dining", "Transport"]
        assert summary.top_categories[0].percentage == pytest.approx(66.667, abs=1e-3)
        assert summary.top_merchants[0].merchant == "Woolworths"
        assert summary.top_merchants[0].count == 1

    def test_uncategorised_label(self):
        summary = calculate_spending_summary([_make_tx(datetime(2024, 1, 5), 10.0, category=None)])
        assert summary.top_categories[0].category == "Uncategorised"

    def test_date_bounds_inclusive(self):
        summary = calculate_spending_summary(
            self._txs(), start_date=datetime(2024, 1, 6), end_date=datetime(2024, 1, 6)
        )
        assert summary.transaction_count == 1
        assert summary.total_spend == pytest.approx(50.0)

    def test_empty(self):
        summary = calculate_spending_summary([])
        assert summary.total_spend == 0
        assert summary.average_transaction == 0
        assert summary.top_categories == []


class TestMonthlyAggregates:
    def test_monthly_totals_chronological_and_sparse(self):
        txs = [
            _make_tx(datetime(2024, 3, 1), 30.0),
            _make_tx(datetime(2024, 1, 1), 10.0),
            _make_tx(datetime(2024, 1, 2), 500.0, direction="IN"),
        ]
        totals = calculate_monthly_totals(txs)
        assert list(totals) == ["2024-01", "2024-03"]
        assert totals["2024-01"].spend == pytest.approx(10.0)
        assert totals["2024-01"].income == pytest.approx(500.0)
        assert totals["2024-01"].count == 2

    def test_series_trailing_window(self):
        series = monthly_spend_series(_monthly_spend([10, 20, 30, 40]), months=2)
        assert list(series.index) == ["2024-03", "2024-04"]

    def test_rolling_average(self):
        assert calculate_rolling_average(_monthly_spend([100, 200, 300, 400])) == pytest.approx(300.0)
        assert calculate_rolling_average([]) == 0.0

    def test_volatility(self):
        assert calculate_volatility([100, 100]) == 0.0
        assert calculate_volatility([100]) == 0.0
        assert calculate_volatility([0, 0]) == 0.0
        assert calculate_volatility([50, 150]) == pytest.approx(0.5)


class TestClusters:
    def test_repeat_merchants_only(self):
        txs = [
            _make_tx(datetime(2024, 1, 5), 100.0),
            _make_tx(datetime(2024, 2, 5), 100.0),
            _make_tx(datetime(2024, 2, 6), 500.0, merchant="Harvey Norman", category="Shopping"),
        ]
        clusters = identify_spending_clusters(txs)
        assert [c.name for c in clusters] == ["Woolworths"]
        assert clusters[0].merchants == ["Woolworths"]
        assert clusters[0].avg_monthly == pytest.approx(100.0)

    def test_empty(self):
        assert identify_spending_clusters([]) == []


# =============================================================================
# TREND AND FORECAST
# =============================================================================

class TestTrend:
    def test_insufficient_months(self):
        trend = analyse_trend(_monthly_spend([100]))
        assert trend.direction == "STABLE"
        assert trend.change_percent == 0.0
        assert trend.confidence == 0.0

    def test_increasing(self):
        trend = analyse_trend(_monthly_spend([100, 200, 300]))
        assert trend.direction == "INCREASING"
        assert trend.change_percent == pytest.approx(50.0)
        assert trend.confidence == pytest.approx(1.0)

    def test_decreasing(self):
        assert analyse_trend(_monthly_spend([300, 200, 100])).direction == "DECREASING"

    def test_stable(self):
        trend = analyse_trend(_monthly_spend([100, 101, 100]))
        assert trend.direction == "STABLE"
        assert trend.change_percent == pytest.approx(0.0)

    def test_flat_series_has_zero_confidence(self):
        trend = analyse_trend(_monthly_spend([100, 100, 100]))
        assert trend.direction == "STABLE"
        assert 0.0 <= trend.confidence <= 1.0

    def test_window_limits_months(self):
        trend = analyse_trend(_monthly_spend([900, 100, 100, 100]), months=3)
        assert trend.direction == "STABLE"


class TestForecast:
    def test_insufficient_data(self):
        forecast = forecast_monthly_spending(_monthly_spend([100]))
        assert forecast.predicted_spend == 0.0
        assert forecast.confidence == 0.0
        assert forecast.factors == [INSUFFICIENT_DATA]

    def test_weighted_baseline_with_trend(self):
        forecast = forecast_monthly_spending(_monthly_spend([100, 200, 300]))
        baseline = (100 * 1 + 200 * 2 + 300 * 3) / 6
        assert forecast.predicted_spend == pytest.approx(baseline * (1 + 0.5 / 12))
        assert forecast.confidence == pytest.approx(0.5 * (1 - 0.408248), abs=1e-4)
        assert forecast.factors == [
            "Upward spending trend detected",
            "High spending variability observed",
            "Limited historical data available",
        ]

    def test_breakdown_uses_recent_months(self):
        txs = _monthly_spend([100, 100, 100, 100])
        txs += [_make_tx(datetime(2024, 4, 11), 60.0, category="Transport", merchant="Shell")]
        forecast = forecast_monthly_spending(txs)
        breakdown = {b.category: b.predicted for b in forecast.breakdown}
        assert breakdown["Food & Dining"] == pytest.approx(100.0)
        assert breakdown["Transport"] == pytest.approx(20.0)

    def test_never_negative(self):
        forecast = forecast_monthly_spending(_monthly_spend([1000, 10, 1]))
        assert forecast.predicted_spend >= 0.0
        assert 0.0 <= forecast.confidence <= 1.0


# =============================================================================
# DRIFT
# =============================================================================

class TestDriftMonitor:
    def _history(self):
        txs = []
        for month in (1, 2, 3):
            txs.append(_make_tx(datetime(2024, month, 5), 300.0))
            txs.append(_make_tx(datetime(2024, month, 6), 100.0, category="Transport", merchant="Opal"))
            txs.append(_make_tx(datetime(2024, month, 7), 60.0, category="Entertainment", merchant="Hoyts"))
        for month in (4, 5, 6):
            txs.append(_make_tx(datetime(2024, month, 5), 450.0))
            txs.append(_make_tx(datetime(2024, month, 6), 100.0, category="Transport", merchant="Opal"))
            txs.append(_make_tx(datetime(2024, month, 8), 30.0, category="Health", merchant="Priceline"))
        return txs

    def test_detects_significant_moves(self):
        drifts = DriftMonitor().detect_category_drift(self._history(), as_of=datetime(2024, 7, 15))
        by_category = {d.category: d for d in drifts}

        assert set(by_category) == {"Food & Dining", "Entertainment", "Health"}
        food = by_category["Food & Dining"]
        assert food.previous_average == pytest.approx(300.0)
        assert food.current_average == pytest.approx(450.0)
        assert food.change_percent == pytest.approx(50.0)
        assert food.trend == "INCREASING"

        assert by_category["Health"].change_percent == pytest.approx(100.0)
        assert by_category["Entertainment"].change_percent == pytest.approx(-100.0)
        assert by_category["Entertainment"].trend == "DECREASING"

    def test_sorted_by_absolute_change(self):
        drifts = DriftMonitor().detect_category_drift(self._history(), as_of=datetime(2024, 7, 15))
        assert drifts[-1].category == "Food & Dining"
        assert {d.category for d in drifts[:2]} == {"Entertainment", "Health"}

    def test_threshold_override(self):
        drifts = DriftMonitor(overrides={"drift_threshold_pct": 60.0}).detect_category_drift(
            self._history(), as_of=datetime(2024, 7, 15)
        )
        assert "Food & Dining" not in {d.category for d in drifts}

    def test_incoming_ignored_and_empty(self):
        assert DriftMonitor().detect_category_drift([]) == []
        income = [_make_tx(datetime(2024, 6, 1), 5000.0, category="Income", direction="IN")]
        assert DriftMonitor().detect_category_drift(income, as_of=datetime(2024, 7, 1)) == []


# =============================================================================
# PROFILE
# =============================================================================

class TestSpendingProfile:
    def test_profile_contents(self):
        txs = _monthly_spend([100, 200, 300])
        txs += [_make_tx(datetime(2024, 2, 1), 999.0, user_id="u2")]
        txs += [_make_tx(datetime(2024, 2, 2), 2000.0, category="Income", merchant="Acme", direction="IN")]

        profile = generate_spending_profile(txs, "u1")

        assert profile.user_id == "u1"
        assert profile.data_point_count == 4
        assert list(profile.monthly_patterns) == ["2024-01", "2024-02", "2024-03"]
        assert profile.monthly_patterns["2024-02"].total_spend == pytest.approx(200.0)
        assert profile.monthly_patterns["2024-02"].categories == {"Food & Dining": pytest.approx(200.0)}

        food = profile.category_averages["Food & Dining"]
        assert food.avg_monthly == pytest.approx(200.0)
        assert food.trend == "INCREASING"
        assert food.transaction_count == 3
        assert "Income" not in profile.category_averages

        assert profile.overall_volatility == pytest.approx(0.408248, abs=1e-5)
        assert profile.category_volatility["Food & Dining"] == pytest.approx(food.volatility)
        assert profile.predicted_monthly_spend > 0
        assert profile.seasonality_factors is None
        assert [c.name for c in profile.spending_clusters] == ["Woolworths"]

    def test_empty_profile(self):
        profile = generate_spending_profile([], "u1")
        assert profile.data_point_count == 0
        assert profile.category_averages == {}
        assert profile.predicted_monthly_spend == 0.0

    def test_seasonality_factors(self):
        txs = _monthly_spend([100] * 11 + [200], year=2023)
        factors = calculate_seasonality_factors(txs)
        groceries = factors["Food & Dining"]
        assert sorted(groceries) == [f"{m:02d}" for m in range(1, 13)]
        assert groceries["12"] == pytest.approx(200 / (1300 / 12), abs=1e-3)
        assert groceries["01"] == pytest.approx(100 / (1300 / 12), abs=1e-3)

    def test_seasonality_needs_a_year(self):
        assert calculate_seasonality_factors(_monthly_spend([100] * 11)) is None
        assert calculate_seasonality_factors(_monthly_spend([100] * 6), min_months=6) is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
