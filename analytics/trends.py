"""
trends.py
----------
Spending trend and next-month forecast.

Trend: ordinary least squares of monthly spend on month index over the
trailing window (scipy.stats.linregress). The slope is expressed as a
percentage of mean monthly spend; R² is the confidence.

Forecast: linearly weighted mean of recent months (newest heaviest), nudged by
one month's share of the trend, with a per-category breakdown from the last
few months.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

import numpy as np
from scipy import stats

from core.models import UnifiedTransaction
from analytics.spending import calculate_volatility, monthly_spend_series, transactions_to_frame
from config.config_loader import get_analytics_config

logger = logging.getLogger(__name__)

INSUFFICIENT_DATA = "Insufficient data for prediction"


@dataclass
class TrendAnalysis:
    direction: str                   # "INCREASING" | "STABLE" | "DECREASING"
    change_percent: float            # Monthly slope as % of mean monthly spend
    confidence: float                # R², clamped to [0, 1]


@dataclass
class CategoryForecast:
    category: str
    predicted: float


@dataclass
class MonthlyForecast:
    predicted_spend: float
    confidence: float
    breakdown: List[CategoryForecast] = field(default_factory=list)
    factors: List[str] = field(default_factory=list)


def classify_change(change_percent: float, threshold: float) -> str:
    if abs(change_percent) < threshold:
        return "STABLE"
    return "INCREASING" if change_percent > 0 else "DECREASING"


def analyse_trend(transactions: Iterable[UnifiedTransaction], months: int | None = None) -> TrendAnalysis:
    """
    Fits a line through monthly spend for the trailing `months` months that
    have data. Fewer than two months gives STABLE with zero change and zero
    confidence.
    """
    cfg = get_analytics_config()
    if months is None:
        months = cfg["trend_window_months"]

    values = monthly_spend_series(transactions, months).to_numpy(dtype=float)
    if len(values) < 2:
        return TrendAnalysis(direction="STABLE", change_percent=0.0, confidence=0.0)

    fit = stats.linregress(np.arange(len(values), dtype=float), values)
    slope = 0.0 if np.isnan(fit.slope) else float(fit.slope)
    r_squared = 0.0 if np.isnan(fit.rvalue) else float(fit.rvalue) ** 2

    mean = float(np.mean(values))
    change_percent = (slope / mean) * 100 if mean != 0 else 0.0

    return TrendAnalysis(
        direction=classify_change(change_percent, cfg["trend_stable_threshold_pct"]),
        change_percent=change_percent,
        confidence=min(max(r_squared, 0.0), 1.0),
    )


def forecast_monthly_spending(
    transactions: Iterable[UnifiedTransaction], historical_months: int | None = None
) -> MonthlyForecast:
    """
    Predicts next month's spend.

    Confidence grows with the number of months (full at
    forecast_full_confidence_months) and shrinks with month-to-month
    volatility. The prediction is never negative.
    """
    cfg = get_analytics_config()
    if historical_months is None:
        historical_months = cfg["forecast_window_months"]

    transactions = list(transactions)
    series = monthly_spend_series(transactions, historical_months)
    if len(series) < 2:
        return MonthlyForecast(predicted_spend=0.0, confidence=0.0, factors=[INSUFFICIENT_DATA])

    values = series.to_numpy(dtype=float)
    weights = np.arange(1, len(values) + 1, dtype=float)
    baseline = float(np.average(values, weights=weights))

    trend = analyse_trend(transactions, historical_months)
    predicted = baseline + baseline * (trend.change_percent / 100 / 12)

    # Category breakdown from the trailing months
    recent_months = list(series.index[-cfg["forecast_breakdown_months"]:])
    df = transactions_to_frame(transactions)
    recent = df[(df["direction"] == "OUT") & (df["month"].isin(recent_months))]
    by_category = (
        recent.groupby("category", sort=False)["amount"].sum()
        .div(len(recent_months))
        .sort_values(ascending=False, kind="stable")
        .head(cfg["top_n"])
    )
    breakdown = [CategoryForecast(category=c, predicted=float(v)) for c, v in by_category.items()]

    volatility = calculate_volatility(values)
    data_points = len(values)
    confidence = min(1.0, data_points / cfg["forecast_full_confidence_months"]) * max(0.0, 1.0 - volatility)

    factors = []
    if trend.direction != "STABLE":
        factors.append(
            f"{'Upward' if trend.direction == 'INCREASING' else 'Downward'} spending trend detected"
        )
    if volatility > cfg["high_volatility_threshold"]:
        factors.append("High spending variability observed")
    if data_points < cfg["limited_data_months"]:
        factors.append("Limited historical data available")

    return MonthlyForecast(
        predicted_spend=max(0.0, predicted),
        confidence=confidence,
        breakdown=breakdown,
        factors=factors,
    )
