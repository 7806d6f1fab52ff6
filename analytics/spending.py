"""
spending.py
------------
Spending aggregates over a transaction collection.

All functions are pure: they build a working DataFrame from the input and
never mutate the transactions. Months are calendar months keyed "YYYY-MM";
months with no transactions do not appear in monthly series.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from core.models import SpendingCluster, UnifiedTransaction
from config.config_loader import get_analytics_config

UNCATEGORISED = "Uncategorised"

FRAME_COLUMNS = ["id", "user_id", "date", "month", "amount", "direction", "category", "merchant"]


@dataclass
class CategoryTotal:
    category: str
    amount: float
    percentage: float                # Share of total spend, 0-100


@dataclass
class MerchantTotal:
    merchant: str
    amount: float
    count: int


@dataclass
class SpendingSummary:
    total_spend: float
    total_income: float
    net_cashflow: float
    transaction_count: int
    average_transaction: float       # Mean outgoing amount
    top_categories: List[CategoryTotal] = field(default_factory=list)
    top_merchants: List[MerchantTotal] = field(default_factory=list)


@dataclass
class MonthlyTotal:
    spend: float
    income: float
    count: int


def month_key(value: datetime) -> str:
    return f"{value.year}-{value.month:02d}"


def transactions_to_frame(transactions: Iterable[UnifiedTransaction]) -> pd.DataFrame:
    """
    Flattens transactions into the analytics working frame.

    category is level 1 or "Uncategorised"; merchant is the standardised
    name or the description.
    """
    df = pd.DataFrame(
        [
            (
                tx.id,
                tx.user_id,
                tx.date,
                month_key(tx.date),
                float(tx.amount),
                tx.direction,
                tx.category_level1 or UNCATEGORISED,
                tx.merchant_standardised or tx.description,
            )
            for tx in transactions
        ],
        columns=FRAME_COLUMNS,
    )
    if not df.empty:
        df["date"] = pd.to_datetime(df["date"])
    return df


# -----------------------------------------------------------------------------
# SUMMARIES
# -----------------------------------------------------------------------------

def calculate_spending_summary(
    transactions: Iterable[UnifiedTransaction],
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> SpendingSummary:
    """
    Totals, cashflow and top categories/merchants for a period.

    start_date and end_date are inclusive.
    """
    top_n = get_analytics_config()["top_n"]
    df = transactions_to_frame(transactions)
    if not df.empty:
        if start_date is not None:
            df = df[df["date"] >= pd.Timestamp(start_date)]
        if end_date is not None:
            df = df[df["date"] <= pd.Timestamp(end_date)]

    out = df[df["direction"] == "OUT"]
    total_spend = float(out["amount"].sum())
    total_income = float(df.loc[df["direction"] == "IN", "amount"].sum())

    by_category = (
        out.groupby("category", sort=False)["amount"].sum()
        .sort_values(ascending=False, kind="stable")
        .head(top_n)
    )
    top_categories = [
        CategoryTotal(
            category=cat,
            amount=float(amount),
            percentage=(float(amount) / total_spend * 100) if total_spend > 0 else 0.0,
        )
        for cat, amount in by_category.items()
    ]

    by_merchant = (
        out.groupby("merchant", sort=False)["amount"].agg(["sum", "count"])
        .sort_values("sum", ascending=False, kind="stable")
        .head(top_n)
    )
    top_merchants = [
        MerchantTotal(merchant=m, amount=float(row["sum"]), count=int(row["count"]))
        for m, row in by_merchant.iterrows()
    ]

    return SpendingSummary(
        total_spend=total_spend,
        total_income=total_income,
        net_cashflow=total_income - total_spend,
        transaction_count=len(df),
        average_transaction=total_spend / len(out) if len(out) > 0 else 0.0,
        top_categories=top_categories,
        top_merchants=top_merchants,
    )


def calculate_monthly_totals(transactions: Iterable[UnifiedTransaction]) -> Dict[str, MonthlyTotal]:
    """Returns {YYYY-MM: MonthlyTotal} in chronological order."""
    df = transactions_to_frame(transactions)
    if df.empty:
        return {}

    df["spend"] = np.where(df["direction"] == "OUT", df["amount"], 0.0)
    df["income"] = np.where(df["direction"] == "OUT", 0.0, df["amount"])
    grouped = df.groupby("month", sort=True).agg(
        spend=("spend", "sum"), income=("income", "sum"), count=("id", "size")
    )
    return {
        month: MonthlyTotal(spend=float(row["spend"]), income=float(row["income"]), count=int(row["count"]))
        for month, row in grouped.iterrows()
    }


def monthly_spend_series(transactions: Iterable[UnifiedTransaction], months: int | None = None) -> pd.Series:
    """Spend per month (chronological), optionally only the trailing `months`."""
    totals = calculate_monthly_totals(transactions)
    series = pd.Series({m: t.spend for m, t in totals.items()}, dtype=float)
    return series.iloc[-months:] if months else series


def calculate_rolling_average(transactions: Iterable[UnifiedTransaction], window_months: int | None = None) -> float:
    """Mean monthly spend over the trailing window of months that have data."""
    if window_months is None:
        window_months = get_analytics_config()["rolling_window_months"]
    series = monthly_spend_series(transactions, window_months)
    return float(series.mean()) if len(series) else 0.0


def calculate_volatility(values: Sequence[float]) -> float:
    """Coefficient of variation (population std / mean). 0 with < 2 points or a zero mean."""
    if len(values) < 2:
        return 0.0
    arr = np.asarray(values, dtype=float)
    mean = float(np.mean(arr))
    if mean == 0:
        return 0.0
    return float(np.std(arr)) / mean


def identify_spending_clusters(transactions: Iterable[UnifiedTransaction]) -> List[SpendingCluster]:
    """
    Merchant clusters: the biggest merchants by outgoing spend that were paid
    more than once, with spend averaged over the months present in the data.
    """
    cfg = get_analytics_config()
    df = transactions_to_frame(transactions)
    if df.empty:
        return []

    months = df["month"].nunique() or 1
    out = df[df["direction"] == "OUT"]
    merchants = (
        out.groupby("merchant", sort=False)["amount"].agg(["sum", "count"])
        .sort_values("sum", ascending=False, kind="stable")
        .head(cfg["cluster_candidate_merchants"])
    )
    merchants = merchants[merchants["count"] >= cfg["cluster_min_transactions"]]

    return [
        SpendingCluster(name=m, merchants=[m], avg_monthly=float(row["sum"]) / months)
        for m, row in merchants.head(cfg["cluster_limit"]).iterrows()
    ]
