"""
drift_monitor.py
------------------
Category drift monitoring.

Compares average monthly outgoing spend per category between two back-to-back
windows of equal length:

    previous window    [start - 2N months, start - N months)
    current window     [start - N months, ...)

where `start` is the first day of the as_of month. Categories whose average
moved by at least the drift threshold are reported, largest move first.

All thresholds and window sizes come from config.yaml.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List

import pandas as pd

from core.models import UnifiedTransaction
from analytics.spending import transactions_to_frame
from analytics.trends import classify_change
from config.config_loader import get_drift_monitoring_config, merge_overrides

logger = logging.getLogger(__name__)


@dataclass
class CategoryDrift:
    category: str
    previous_average: float
    current_average: float
    change_percent: float
    trend: str                       # "INCREASING" | "STABLE" | "DECREASING"


class DriftMonitor:
    """
    Usage:
        monitor = DriftMonitor()
        drifts = monitor.detect_category_drift(transactions)
    """

    def __init__(self, overrides: Dict[str, Any] | None = None):
        self.config = merge_overrides(get_drift_monitoring_config(), overrides)
        self.comparison_months = self.config["comparison_months"]
        self.drift_threshold_pct = self.config["drift_threshold_pct"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def detect_category_drift(
        self,
        transactions: Iterable[UnifiedTransaction],
        comparison_months: int | None = None,
        as_of: date | datetime | None = None,
    ) -> List[CategoryDrift]:
        """
        Args:
            transactions: Transaction history.
            comparison_months: Window length in months. Defaults to config.
            as_of: Reference date. Defaults to today.

        Returns:
            Significant drifts sorted by absolute change, descending.
        """
        n = comparison_months or self.comparison_months
        current_start, previous_start = self._window_bounds(as_of, n)

        df = transactions_to_frame(transactions)
        if df.empty:
            return []
        df = df[df["direction"] == "OUT"]

        current = df[df["date"] >= current_start].groupby("category", sort=False)["amount"].sum() / n
        previous = (
            df[(df["date"] >= previous_start) & (df["date"] < current_start)]
            .groupby("category", sort=False)["amount"].sum() / n
        )

        drifts: List[CategoryDrift] = []
        for category in list(dict.fromkeys(list(current.index) + list(previous.index))):
            cur = float(current.get(category, 0.0))
            prev = float(previous.get(category, 0.0))
            if cur == 0 and prev == 0:
                continue

            if prev != 0:
                change = (cur - prev) / prev * 100
            else:
                change = 100.0 if cur > 0 else 0.0

            if abs(change) >= self.drift_threshold_pct:
                drifts.append(CategoryDrift(
                    category=category,
                    previous_average=prev,
                    current_average=cur,
                    change_percent=change,
                    trend=classify_change(change, self.drift_threshold_pct),
                ))

        drifts.sort(key=lambda d: abs(d.change_percent), reverse=True)
        if drifts:
            logger.info(f"Category drift: {len(drifts)} categories moved >= {self.drift_threshold_pct}%.")
        return drifts

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _window_bounds(as_of: date | datetime | None, months: int) -> tuple[pd.Timestamp, pd.Timestamp]:
        """(current window start, previous window start), both on the first of a month."""
        anchor = pd.Timestamp(as_of or datetime.now()).normalize().replace(day=1)
        current_start = anchor - pd.DateOffset(months=months)
        previous_start = anchor - pd.DateOffset(months=2 * months)
        return current_start, previous_start
