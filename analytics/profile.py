"""
profile.py
-----------
Per-user spending profile.

The profile is a snapshot recomputed from the full history on every call:
category averages and trends, monthly patterns, volatility, seasonality,
merchant clusters and the next-month forecast. Nothing is carried over from a
previous profile.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, Optional

import pandas as pd

from core.models import CategoryAverage, MonthlyPattern, SpendingProfile, UnifiedTransaction
from analytics.spending import (
    calculate_monthly_totals,
    calculate_volatility,
    identify_spending_clusters,
    transactions_to_frame,
)
from analytics.trends import analyse_trend, forecast_monthly_spending
from config.config_loader import get_analytics_config

logger = logging.getLogger(__name__)


def generate_spending_profile(transactions: Iterable[UnifiedTransaction], user_id: str) -> SpendingProfile:
    """
    Builds the SpendingProfile for one user.

    Only transactions belonging to user_id are considered.
    """
    cfg = get_analytics_config()
    txs = [tx for tx in transactions if tx.user_id == user_id]
    outgoing = [tx for tx in txs if tx.direction == "OUT"]

    # --- Category averages ---
    by_category: Dict[str, list] = {}
    for tx in outgoing:
        by_category.setdefault(tx.category_level1 or "Uncategorised", []).append(tx)

    category_averages: Dict[str, CategoryAverage] = {}
    for category, cat_txs in by_category.items():
        amounts = [tx.amount for tx in cat_txs]
        months = len({(tx.date.year, tx.date.month) for tx in cat_txs})
        category_averages[category] = CategoryAverage(
            avg_monthly=sum(amounts) / months if months else 0.0,
            trend=analyse_trend(cat_txs, cfg["trend_window_months"]).direction,
            volatility=calculate_volatility(amounts),
            transaction_count=len(cat_txs),
        )

    # --- Monthly patterns ---
    monthly_totals = calculate_monthly_totals(txs)
    month_categories: Dict[str, Dict[str, float]] = defaultdict(dict)
    df = transactions_to_frame(outgoing)
    if not df.empty:
        for (month, category), amount in df.groupby(["month", "category"], sort=False)["amount"].sum().items():
            month_categories[month][category] = float(amount)

    monthly_patterns: Dict[str, MonthlyPattern] = {
        month: MonthlyPattern(total_spend=totals.spend, categories=dict(month_categories.get(month, {})))
        for month, totals in monthly_totals.items()
    }

    forecast = forecast_monthly_spending(txs, cfg["forecast_window_months"])

    profile = SpendingProfile(
        user_id=user_id,
        category_averages=category_averages,
        monthly_patterns=monthly_patterns,
        overall_volatility=calculate_volatility([t.spend for t in monthly_totals.values()]),
        category_volatility={cat: avg.volatility for cat, avg in category_averages.items()},
        predicted_monthly_spend=forecast.predicted_spend,
        prediction_confidence=forecast.confidence,
        data_point_count=len(txs),
        seasonality_factors=calculate_seasonality_factors(txs),
        spending_clusters=identify_spending_clusters(txs),
        last_calculated=datetime.now(),
    )

    logger.info(
        f"Profile for {user_id}: {len(txs)} transactions, {len(monthly_patterns)} months, "
        f"predicted spend {profile.predicted_monthly_spend:.2f}."
    )
    return profile


def calculate_seasonality_factors(
    transactions: Iterable[UnifiedTransaction], min_months: int | None = None
) -> Optional[Dict[str, Dict[str, float]]]:
    """
    Per-category month-of-year factors.

    For each category, the mean spend in a given calendar month ("01".."12")
    divided by the category's mean monthly spend across every month in the
    data (months without that category count as zero). A factor of 1.2 means
    that month typically runs 20% above the category's norm.

    Returns None when the data spans fewer than min_months distinct months.
    """
    if min_months is None:
        min_months = get_analytics_config()["seasonality_min_months"]

    df = transactions_to_frame(transactions)
    if df.empty or df["month"].nunique() < min_months:
        return None

    all_months = sorted(df["month"].unique())
    out = df[df["direction"] == "OUT"]
    if out.empty:
        return {}
    grid = (
        out.pivot_table(index="month", columns="category", values="amount", aggfunc="sum")
        .reindex(all_months)
        .fillna(0.0)
    )
    month_of_year = pd.Index([m[-2:] for m in grid.index], name="moy")

    factors: Dict[str, Dict[str, float]] = {}
    for category in grid.columns:
        series = grid[category]
        mean = float(series.mean())
        if mean == 0:
            continue
        by_moy = series.groupby(month_of_year.to_numpy()).mean() / mean
        factors[category] = {moy: round(float(v), 4) for moy, v in by_moy.items()}
    return factors
