"""
anomaly_detector.py
--------------------
Per-transaction anomaly checks.

Each check is independent and answers yes/no for one flag:

    DUPLICATE        same merchant and amount within the duplicate window
    UNUSUAL_AMOUNT   amount far outside this merchant's history
    NEW_MERCHANT     first time the user has paid this merchant
    PRICE_INCREASE   linked recurring payment charged above its expected amount
    TIMING_ANOMALY   timestamp in the small hours

detect() runs all checks against a prepared AnomalyContext. A check that
raises is logged and skipped, so one bad input never hides the other flags.
detect_all() builds the context for every transaction in a collection.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from core.models import RecurringPayment, UnifiedTransaction
from config.config_loader import get_anomaly_detection_config, merge_overrides

logger = logging.getLogger(__name__)


@dataclass
class PriceChange:
    is_increase: bool
    percent_change: float            # Fractional: 0.10 = +10%


@dataclass
class AnomalyContext:
    """History a single transaction is judged against."""
    recent_transactions: List[UnifiedTransaction] = field(default_factory=list)
    merchant_history: List[UnifiedTransaction] = field(default_factory=list)   # Prior, same merchant
    all_user_transactions: List[UnifiedTransaction] = field(default_factory=list)
    recurring_payment: Optional[RecurringPayment] = None


class AnomalyDetector:
    """
    Usage:
        detector = AnomalyDetector()
        flags = detector.detect_all(transactions, recurring_payments)
        flags[tx.id]    # e.g. ["DUPLICATE", "NEW_MERCHANT"]
    """

    def __init__(self, overrides: Dict[str, Any] | None = None):
        self.config = merge_overrides(get_anomaly_detection_config(), overrides)
        self.std_devs = self.config["unusual_amount_std_devs"]
        self.min_history = self.config["min_transactions_for_stats"]
        self.price_increase_threshold = self.config["price_increase_threshold"]
        self.duplicate_window = timedelta(hours=self.config["duplicate_window_hours"])
        self.amount_tolerance = self.config["duplicate_amount_tolerance"]
        self.unusual_hour_start = self.config["unusual_hour_start"]
        self.unusual_hour_end = self.config["unusual_hour_end"]

        self._checks = [
            ("DUPLICATE", lambda tx, ctx: self.detect_duplicates(tx, ctx.recent_transactions)),
            ("UNUSUAL_AMOUNT", lambda tx, ctx: self.detect_unusual_amount(tx, ctx.merchant_history)),
            ("NEW_MERCHANT", lambda tx, ctx: self.is_new_merchant(tx, ctx.all_user_transactions)),
            ("PRICE_INCREASE", lambda tx, ctx: (
                ctx.recurring_payment is not None
                and self.detect_price_increase(tx, ctx.recurring_payment).is_increase
            )),
            ("TIMING_ANOMALY", lambda tx, ctx: self.detect_timing_anomaly(tx)),
        ]

    # -------------------------------------------------------------------------
    # INDIVIDUAL CHECKS
    # -------------------------------------------------------------------------

    def detect_duplicates(self, tx: UnifiedTransaction, recent: Iterable[UnifiedTransaction]) -> bool:
        """Another transaction within the window with the same merchant and (near) same amount."""
        key = tx.merchant_key
        for other in recent:
            if other.id == tx.id:
                continue
            if abs(tx.date - other.date) > self.duplicate_window:
                continue
            if abs(tx.amount - other.amount) < self.amount_tolerance and other.merchant_key == key:
                return True
        return False

    def detect_unusual_amount(self, tx: UnifiedTransaction, merchant_history: List[UnifiedTransaction]) -> bool:
        """
        True when the amount deviates from the merchant mean by more than
        std_devs population standard deviations. Needs min_history prior
        transactions.
        """
        if len(merchant_history) < self.min_history:
            return False
        amounts = np.array([h.amount for h in merchant_history], dtype=float)
        mean = float(np.mean(amounts))
        std = float(np.std(amounts))
        return abs(tx.amount - mean) > std * self.std_devs

    @staticmethod
    def is_new_merchant(tx: UnifiedTransaction, all_user_transactions: Iterable[UnifiedTransaction]) -> bool:
        """No strictly earlier transaction from the same merchant."""
        key = tx.merchant_key
        return not any(
            other.id != tx.id and other.merchant_key == key and other.date < tx.date
            for other in all_user_transactions
        )

    def detect_price_increase(self, tx: UnifiedTransaction, payment: RecurringPayment) -> PriceChange:
        if not payment.expected_amount:
            return PriceChange(is_increase=False, percent_change=0.0)
        change = (tx.amount - payment.expected_amount) / payment.expected_amount
        return PriceChange(is_increase=change > self.price_increase_threshold, percent_change=change)

    def detect_timing_anomaly(self, tx: UnifiedTransaction) -> bool:
        return self.unusual_hour_start <= tx.date.hour <= self.unusual_hour_end

    # -------------------------------------------------------------------------
    # AGGREGATE
    # -------------------------------------------------------------------------

    def detect(self, tx: UnifiedTransaction, context: AnomalyContext) -> List[str]:
        """Runs every check; returns the raised flags in a fixed order."""
        flags = []
        for flag, check in self._checks:
            try:
                if check(tx, context):
                    flags.append(flag)
            except Exception as e:
                logger.warning(f"Anomaly check {flag} failed for {tx.id}: {e}")
        return flags

    def build_context(
        self,
        tx: UnifiedTransaction,
        user_transactions: List[UnifiedTransaction],
        recurring_payment: RecurringPayment | None = None,
    ) -> AnomalyContext:
        """
        Derives the context for one transaction from the user's history.

        merchant_history holds strictly earlier transactions from the same
        merchant; recent_transactions those within the duplicate window.
        """
        key = tx.merchant_key
        return AnomalyContext(
            recent_transactions=[
                o for o in user_transactions if abs(o.date - tx.date) <= self.duplicate_window
            ],
            merchant_history=[
                o for o in user_transactions if o.id != tx.id and o.merchant_key == key and o.date < tx.date
            ],
            all_user_transactions=user_transactions,
            recurring_payment=recurring_payment,
        )

    def detect_all(
        self,
        transactions: Iterable[UnifiedTransaction],
        recurring_payments: Iterable[RecurringPayment] = (),
        history: Iterable[UnifiedTransaction] = (),
    ) -> Dict[str, List[str]]:
        """
        Flags every transaction in `transactions`.

        Args:
            transactions: Transactions to flag.
            recurring_payments: Known recurring payments; linked by
                (user, merchant, account).
            history: Extra context transactions that are not themselves flagged.

        Returns:
            {tx.id: [flags]}
        """
        transactions = list(transactions)
        by_user: Dict[str, List[UnifiedTransaction]] = defaultdict(list)
        seen_ids = set()
        for tx in list(history) + transactions:
            if tx.id in seen_ids:
                continue
            seen_ids.add(tx.id)
            by_user[tx.user_id].append(tx)

        payments = {p.key: p for p in recurring_payments}

        results: Dict[str, List[str]] = {}
        for tx in transactions:
            payment = payments.get((tx.user_id, tx.merchant_key, tx.account_id))
            context = self.build_context(tx, by_user[tx.user_id], payment)
            results[tx.id] = self.detect(tx, context)
        return results
