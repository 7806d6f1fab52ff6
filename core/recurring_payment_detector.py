"""
recurring_payment_detector.py
------------------------------
Recurring payment detection.

Answers one question per (user, merchant, account) triple:

    "Is there a repeating outgoing payment here, and on what schedule?"

Design decisions:
    - Grouping key is (user_id, merchant key, account_id). The merchant key is
      the standardised merchant name, falling back to the description.
    - Only outgoing transactions are considered.
    - Cadence comes from inter-transaction gap analysis: the average gap picks
      a named window, then most individual gaps must agree with it.
    - Amount consistency uses the coefficient of variation (population std /
      mean). Groups above twice the configured tolerance are not recurring.
    - All thresholds and windows are read from config.yaml.
"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from core.models import (
    RecurringDetectionResult,
    RecurringPayment,
    RecurringPaymentUpdate,
    UnifiedTransaction,
)
from core.repository import RecurringPaymentStore, StaleRecordError
from config.config_loader import get_recurring_detection_config, merge_overrides

logger = logging.getLogger(__name__)

GroupKey = tuple[str, str, str]

MAX_SYNC_ATTEMPTS = 3


def generate_recurrence_group_id(user_id: str, merchant: str, account_id: str) -> str:
    """Stable id shared by every transaction of one recurring payment."""
    key = f"{user_id}_{(merchant or '').lower().strip()}_{account_id}"
    return "rg_" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]


class RecurringPaymentDetector:
    """
    Detects recurring payment patterns in transaction history.

    Usage:
        detector = RecurringPaymentDetector()
        result = detector.detect(transactions, existing=store.find_all(user_id))
        # or, reconciling directly against a store:
        result = detector.sync(transactions, store)
    """

    def __init__(self, overrides: Dict[str, Any] | None = None):
        self.config = merge_overrides(get_recurring_detection_config(), overrides)
        self.min_occurrences = self.config["min_occurrences"]
        self.irregular_min_occurrences = self.config["irregular_min_occurrences"]
        self.amount_variance = self.config["amount_variance"]
        self.day_variance = self.config["day_variance"]
        self.pattern_match_ratio = self.config["pattern_match_ratio"]
        self.patterns = self.config["patterns"]
        self.next_occurrence_days = self.config["next_occurrence_days"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def group_transactions(
        self, transactions: Iterable[UnifiedTransaction], lookback_days: int | None = None
    ) -> Dict[GroupKey, List[UnifiedTransaction]]:
        """
        Groups outgoing transactions by (user, merchant key, account).

        Only transactions within lookback_days of the latest transaction are
        kept. Each group is sorted oldest first.
        """
        transactions = list(transactions)
        df = self._prepare(transactions, lookback_days)
        if df.empty:
            return {}

        groups: Dict[GroupKey, List[UnifiedTransaction]] = {}
        for key, group in df.groupby(["user_id", "merchant_key", "account_id"], sort=True):
            groups[tuple(key)] = [transactions[pos] for pos in group["pos"]]
        return groups

    def detect_pattern(self, dates: Sequence[datetime]) -> Optional[str]:
        """
        Classifies a series of payment dates.

        Returns:
            A pattern name from config, "IRREGULAR", or None when there are
            too few occurrences.
        """
        if len(dates) < self.min_occurrences:
            return None

        stamps = np.sort(pd.to_datetime(pd.Series(list(dates))).to_numpy())
        gaps = np.floor(np.diff(stamps) / np.timedelta64(1, "D") + 0.5)
        if len(gaps) == 0:
            return None

        avg_gap = float(np.mean(gaps))

        for name, window in self.patterns.items():
            lo, hi = window["min_gap_days"], window["max_gap_days"]
            if not (lo <= avg_gap <= hi):
                continue
            in_window = np.sum((gaps >= lo - self.day_variance) & (gaps <= hi + self.day_variance))
            if in_window / len(gaps) >= self.pattern_match_ratio:
                return name

        if len(dates) >= self.irregular_min_occurrences:
            return "IRREGULAR"
        return None

    @staticmethod
    def calculate_expected_amount(amounts: Sequence[float]) -> tuple[float, float]:
        """
        Returns (mean amount, coefficient of variation capped at 1.0).

        The population standard deviation is used. A zero mean gives a
        variance of 0.
        """
        if len(amounts) == 0:
            return 0.0, 0.0
        values = np.asarray(amounts, dtype=float)
        mean = float(np.mean(values))
        if mean == 0:
            return mean, 0.0
        variance = float(np.std(values)) / mean
        return mean, min(variance, 1.0)

    def predict_next_occurrence(self, last_date: datetime | None, pattern: str) -> Optional[datetime]:
        if last_date is None:
            return None
        if pattern not in self.next_occurrence_days:
            raise KeyError(f"Unknown recurrence pattern: {pattern}")
        return last_date + timedelta(days=self.next_occurrence_days[pattern])

    def detect(
        self,
        transactions: Iterable[UnifiedTransaction],
        existing: Iterable[RecurringPayment] = (),
        lookback_days: int | None = None,
    ) -> RecurringDetectionResult:
        """
        Detects recurring payments and reconciles them with known records.

        Args:
            transactions: Transaction history (any direction; IN is ignored).
            existing: Previously detected payments. A match on
                (user, merchant, account) produces an update instead of a new record.
            lookback_days: Override the default lookback window.

        Returns:
            RecurringDetectionResult with new records and updates.
        """
        known = {p.key: p for p in existing}
        result = RecurringDetectionResult()

        for key, group in self.group_transactions(transactions, lookback_days).items():
            candidate = self._build_payment(key, group)
            if candidate is None:
                continue

            match = known.get(key)
            if match is not None and match.id:
                result.updated.append(self._build_update(match, candidate))
            else:
                result.detected.append(candidate)

        logger.debug(f"Recurring detection: {len(result.detected)} new, {len(result.updated)} updated.")
        return result

    def sync(
        self,
        transactions: Iterable[UnifiedTransaction],
        store: RecurringPaymentStore,
        lookback_days: int | None = None,
        isolate_failures: bool = False,
    ) -> RecurringDetectionResult:
        """
        Detects recurring payments and writes them through to a store.

        Each group is reconciled under the store's per-key lock: read the
        current record, compute the next state, write it back with the version
        that was read. A stale write is retried against a fresh read.

        Args:
            isolate_failures: When True a group that still fails (e.g. stale
                after MAX_SYNC_ATTEMPTS) is logged and recorded in
                `result.failed` and the remaining groups carry on. When False
                the error propagates.

        Returns:
            RecurringDetectionResult whose `detected` entries are the stored
            records (with ids).
        """
        result = RecurringDetectionResult()

        for key, group in self.group_transactions(transactions, lookback_days).items():
            candidate = self._build_payment(key, group)
            if candidate is None:
                continue
            try:
                self._reconcile(key, candidate, store, result)
            except Exception as e:
                if not isolate_failures:
                    raise
                logger.warning(f"Recurring sync failed for {key}: {e}")
                result.failed[key] = e

        logger.info(
            f"Recurring sync: {len(result.detected)} created, {len(result.updated)} updated, "
            f"{len(result.failed)} failed."
        )
        return result

    def _reconcile(
        self,
        key: tuple[str, str, str],
        candidate: RecurringPayment,
        store: RecurringPaymentStore,
        result: RecurringDetectionResult,
    ) -> None:
        with store.key_lock(key):
            for attempt in range(1, MAX_SYNC_ATTEMPTS + 1):
                current = store.find(*key)
                try:
                    if current is None:
                        result.detected.append(store.create(candidate))
                    else:
                        update = self._build_update(current, candidate)
                        store.update(current.id, update.as_changes(), current.version)
                        result.updated.append(update)
                    return
                except StaleRecordError:
                    if attempt == MAX_SYNC_ATTEMPTS:
                        raise
                    logger.warning(f"Stale recurring payment for {key}; retrying ({attempt}).")

    @staticmethod
    def link_to_recurrence_group(
        transactions: Iterable[UnifiedTransaction], payments: Iterable[RecurringPayment]
    ) -> Dict[str, str]:
        """Returns {tx.id: recurrence_group_id} for transactions belonging to a known payment."""
        by_key = {p.key: p for p in payments}
        links: Dict[str, str] = {}
        for tx in transactions:
            payment = by_key.get((tx.user_id, tx.merchant_key, tx.account_id))
            if payment is not None:
                links[tx.id] = payment.recurrence_group_id or generate_recurrence_group_id(
                    tx.user_id, payment.merchant_standardised, tx.account_id
                )
        return links

    def summarise_recurring_payments(self, payments: Iterable[RecurringPayment]) -> Dict[str, Any]:
        """
        Portfolio summary: counts plus the monthly-equivalent cost of the
        active payments, rounded to cents.
        """
        payments = list(payments)
        factors = self.config["monthly_equivalent_factors"]
        active = [p for p in payments if p.is_active]
        monthly_total = sum(p.expected_amount * factors.get(p.pattern, 1.0) for p in active)

        return {
            "total": len(payments),
            "active": len(active),
            "paused": sum(1 for p in payments if p.is_paused),
            "price_alerts": sum(1 for p in payments if p.price_increase_alert),
            "monthly_total": round(monthly_total, 2),
        }

    # -------------------------------------------------------------------------
    # INTERNAL: DATA PREPARATION
    # -------------------------------------------------------------------------

    def _prepare(self, transactions: List[UnifiedTransaction], lookback_days: int | None) -> pd.DataFrame:
        """
        Builds the working frame, applies the lookback window and keeps
        outgoing rows only.
        """
        columns = ["pos", "user_id", "account_id", "merchant_key", "date", "amount", "direction"]
        df = pd.DataFrame(
            [
                (i, tx.user_id, tx.account_id, tx.merchant_key, tx.date, tx.amount, tx.direction)
                for i, tx in enumerate(transactions)
            ],
            columns=columns,
        )
        if df.empty:
            return df

        df["date"] = pd.to_datetime(df["date"])

        if lookback_days is None:
            lookback_days = self.config["default_lookback_days"]
        cutoff = df["date"].max() - pd.Timedelta(days=lookback_days)

        df = df[(df["date"] >= cutoff) & (df["direction"] == "OUT") & (df["merchant_key"] != "")]
        return df.sort_values(["user_id", "merchant_key", "account_id", "date"], kind="stable")

    # -------------------------------------------------------------------------
    # INTERNAL: RECORD CONSTRUCTION
    # -------------------------------------------------------------------------

    def _build_payment(self, key: GroupKey, group: List[UnifiedTransaction]) -> Optional[RecurringPayment]:
        """
        Builds a RecurringPayment candidate for one group.

        Returns None if the group is too small, has no pattern, or its amounts
        vary too much.
        """
        if len(group) < self.min_occurrences:
            return None

        pattern = self.detect_pattern([tx.date for tx in group])
        if pattern is None:
            return None

        expected, variance = self.calculate_expected_amount([tx.amount for tx in group])
        if variance > self.amount_variance * 2:
            return None

        user_id, _, account_id = key
        last = max(tx.date for tx in group)
        merchant = group[0].merchant_standardised or group[0].description

        return RecurringPayment(
            user_id=user_id,
            merchant_standardised=merchant,
            account_id=account_id,
            pattern=pattern,
            expected_amount=expected,
            amount_variance=variance,
            last_occurrence=last,
            next_expected=self.predict_next_occurrence(last, pattern),
            occurrence_count=len(group),
            recurrence_group_id=generate_recurrence_group_id(user_id, merchant, account_id),
            transaction_ids=[tx.id for tx in group],
        )

    @staticmethod
    def _build_update(current: RecurringPayment, candidate: RecurringPayment) -> RecurringPaymentUpdate:
        return RecurringPaymentUpdate(
            payment_id=current.id,
            last_occurrence=candidate.last_occurrence,
            occurrence_count=candidate.occurrence_count,
            expected_amount=candidate.expected_amount,
            amount_variance=candidate.amount_variance,
            next_expected=candidate.next_expected,
            transaction_ids=list(candidate.transaction_ids),
        )
