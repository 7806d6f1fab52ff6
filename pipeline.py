"""
pipeline.py
------------
Main orchestration layer. Wires together:
    1. CSV importer / normaliser     ->  unenriched UnifiedTransactions
    2. CategorisationEngine          ->  category levels + confidence
    3. RecurringPaymentDetector      ->  recurring payments (synced to store)
    4. AnomalyDetector               ->  anomaly flags
    5. Spending profile              ->  per-user analytics snapshot

This is the single entry point for running the engine. Stores are injected;
the in-memory stores are used when none are given.

Usage:
    from pipeline import TransactionIntelligencePipeline

    pipeline = TransactionIntelligencePipeline()
    batch = pipeline.import_csv(content, account_id="acc-1", user_id="u-1")
    result = pipeline.process(batch.transactions, history=previous_transactions)
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List

from core.models import (
    ImportBatchResult,
    ImportErrorDetail,
    MerchantMapping,
    RecurringPayment,
    SpendingProfile,
    TIEBatchProcessingResult,
    TIEProcessingResult,
    UnifiedTransaction,
)
from core.anomaly_detector import AnomalyDetector
from core.recurring_payment_detector import RecurringPaymentDetector
from core.repository import (
    InMemoryMerchantMappingStore,
    InMemoryRecurringPaymentStore,
    MerchantMappingStore,
    RecurringPaymentStore,
)
from categorisation.ai_classifier import AIClassifierConfig
from categorisation.engine import CategorisationEngine
from ingestion.csv_importer import import_from_csv
from analytics.profile import generate_spending_profile
from config.config_loader import load_config

logger = logging.getLogger(__name__)


class TransactionIntelligencePipeline:
    """
    End-to-end enrichment pipeline.

    Orchestrates categorisation -> recurring detection -> anomaly detection
    without exposing internal objects to callers.
    """

    def __init__(
        self,
        mapping_store: MerchantMappingStore | None = None,
        recurring_store: RecurringPaymentStore | None = None,
        ai_classifier: Callable | None = None,
        ai_config: AIClassifierConfig | None = None,
        lookback_days: int | None = None,
    ):
        """
        Args:
            mapping_store: Merchant mapping persistence.
            recurring_store: Recurring payment persistence.
            ai_classifier: Optional AI categoriser (see BaseAIClassifier).
            ai_config: AI settings. Defaults to config.yaml.
            lookback_days: Override the recurring detection lookback window.
        """
        self.config = load_config()
        self.mapping_store = mapping_store or InMemoryMerchantMappingStore()
        self.recurring_store = recurring_store or InMemoryRecurringPaymentStore()
        self.ai_classifier = ai_classifier
        self.ai_config = ai_config or AIClassifierConfig.from_config()
        self.lookback_days = lookback_days
        self.recurring_detector = RecurringPaymentDetector()
        self.anomaly_detector = AnomalyDetector()

        logger.info(
            f"Pipeline initialized. AI categorisation: "
            f"{'on' if self.ai_config.enabled and ai_classifier else 'off'}. "
            f"Lookback: {lookback_days or self.config['recurring_detection']['default_lookback_days']} days."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def import_csv(
        self,
        content: str,
        account_id: str,
        user_id: str,
        has_header: bool = True,
        existing_hashes: Iterable[str] | None = None,
    ) -> ImportBatchResult:
        return import_from_csv(content, account_id, user_id, has_header, existing_hashes)

    def process(
        self,
        transactions: Iterable[UnifiedTransaction],
        history: Iterable[UnifiedTransaction] = (),
        max_workers: int = 1,
    ) -> TIEBatchProcessingResult:
        """
        Enriches a batch of new transactions in place.

        Args:
            transactions: New, unenriched transactions.
            history: Previously processed transactions for the same users.
                Used as context for recurring and anomaly detection only.
            max_workers: Thread count for categorisation.

        Returns:
            TIEBatchProcessingResult. A transaction that fails is counted in
            `errors` and left out of later stages; the batch continues.
        """
        batch = list(transactions)
        history = list(history)
        result = TIEBatchProcessingResult()
        logger.info(f"Pipeline starting. Batch: {len(batch):,} transactions, history: {len(history):,}.")

        # --- Stage 1: Categorisation ---
        engine = self._categorisation_engine(batch)
        outcomes: Dict[str, TIEProcessingResult] = {}
        pending = [tx for tx in batch if not tx.user_corrected_category]
        categorised = engine.categorise_batch(pending, max_workers=max_workers)

        ok: List[UnifiedTransaction] = []
        for i, tx in enumerate(batch):
            try:
                applied = tx.id in categorised
                mapped = False
                if applied:
                    cat = categorised[tx.id]
                    engine.apply_categorisation(tx, cat)
                    mapped = cat.source == "USER" or (cat.source == "RULE" and cat.rule_matched is None)
                    result.categorised += 1
                outcomes[tx.id] = TIEProcessingResult(
                    transaction=tx,
                    categorisation_applied=applied,
                    anomalies_detected=[],
                    recurring_detected=False,
                    merchant_mapped=mapped,
                    confidence_score=tx.confidence_score,
                )
                ok.append(tx)
            except Exception as e:
                self._record_error(result, i, tx, e)
        logger.info(f"Stage 1 complete. Categorised: {result.categorised:,}.")

        # --- Stage 2: Recurring payments ---
        sync = self.recurring_detector.sync(
            history + ok, self.recurring_store, self.lookback_days, isolate_failures=True
        )
        if sync.failed:
            ok = self._drop_failed(
                result, batch, ok, lambda tx: sync.failed.get((tx.user_id, tx.merchant_key, tx.account_id))
            )
        payments = self._payments_for(ok)
        by_key = {p.key: p for p in payments}
        links = self.recurring_detector.link_to_recurrence_group(ok, payments)
        for tx in ok:
            if tx.id not in links:
                continue
            payment = by_key[(tx.user_id, tx.merchant_key, tx.account_id)]
            tx.is_recurring = True
            tx.recurrence_pattern = payment.pattern
            tx.recurrence_group_id = links[tx.id]
            outcomes[tx.id].recurring_detected = True
            result.recurring_found += 1
        logger.info(f"Stage 2 complete. Recurring transactions: {result.recurring_found:,}.")

        # --- Stage 3: Anomalies ---
        flags = self.anomaly_detector.detect_all(ok, payments, history)
        price_errors: Dict[str, Exception] = {}
        for tx in ok:
            tx_flags = flags.get(tx.id, [])
            if "PRICE_INCREASE" in tx_flags:
                try:
                    self._flag_price_change(tx, by_key[(tx.user_id, tx.merchant_key, tx.account_id)])
                except Exception as e:
                    price_errors[tx.id] = e
                    continue
            tx.anomaly_flags = list(dict.fromkeys(tx.anomaly_flags + tx_flags))
            outcomes[tx.id].anomalies_detected = tx_flags
            result.anomalies_found += len(tx_flags)
        if price_errors:
            ok = self._drop_failed(result, batch, ok, lambda tx: price_errors.get(tx.id))
        logger.info(f"Stage 3 complete. Anomaly flags raised: {result.anomalies_found:,}.")

        # --- Stage 4: Stamp ---
        now = datetime.now()
        for tx in ok:
            tx.processed_at = now
            result.results.append(outcomes[tx.id])
        result.processed = len(ok)

        logger.info(f"Pipeline complete. Processed: {result.processed:,}, errors: {result.errors:,}.")
        return result

    def build_profile(self, transactions: Iterable[UnifiedTransaction], user_id: str) -> SpendingProfile:
        return generate_spending_profile(transactions, user_id)

    def record_correction(
        self,
        tx: UnifiedTransaction,
        level1: str,
        level2: str | None = None,
        subcategory: str | None = None,
    ) -> MerchantMapping:
        """Applies a user's category correction and teaches the mapping store."""
        engine = self._categorisation_engine([tx])
        return engine.record_correction(tx, level1, level2, subcategory, self.mapping_store)

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    def _categorisation_engine(self, batch: List[UnifiedTransaction]) -> CategorisationEngine:
        """Engine over one mapping snapshot covering every user in the batch."""
        mappings: Dict[str, MerchantMapping] = {}
        for user_id in dict.fromkeys(tx.user_id for tx in batch):
            for m in self.mapping_store.find_all(user_id):
                mappings[m.id or f"{m.user_id}:{m.merchant_raw}"] = m
        return CategorisationEngine(
            mappings=mappings.values(),
            ai_classifier=self.ai_classifier,
            ai_config=self.ai_config,
        )

    def _payments_for(self, transactions: List[UnifiedTransaction]) -> List[RecurringPayment]:
        payments = []
        for user_id in dict.fromkeys(tx.user_id for tx in transactions):
            payments.extend(self.recurring_store.find_all(user_id))
        return payments

    def _flag_price_change(self, tx: UnifiedTransaction, payment: RecurringPayment) -> None:
        change = self.anomaly_detector.detect_price_increase(tx, payment)
        with self.recurring_store.key_lock(payment.key):
            current = self.recurring_store.find(*payment.key)
            if current is None:
                return
            self.recurring_store.flag_price_change(current.id, change.percent_change, tx.date, current.version)
        logger.info(
            f"Price increase on {payment.merchant_standardised} for user {tx.user_id}: "
            f"{change.percent_change:+.1%}."
        )

    def _drop_failed(
        self,
        result: TIEBatchProcessingResult,
        batch: List[UnifiedTransaction],
        ok: List[UnifiedTransaction],
        error_for: Callable[[UnifiedTransaction], Exception | None],
    ) -> List[UnifiedTransaction]:
        """Records an error for each failed transaction and returns the survivors."""
        index = {tx.id: i for i, tx in enumerate(batch)}
        survivors = []
        for tx in ok:
            error = error_for(tx)
            if error is None:
                survivors.append(tx)
            else:
                self._record_error(result, index[tx.id], tx, error)
        return survivors

    @staticmethod
    def _record_error(result: TIEBatchProcessingResult, index: int, tx: UnifiedTransaction, error: Exception) -> None:
        logger.warning(f"Transaction {tx.id} failed: {error}")
        result.errors += 1
        result.error_details.append(ImportErrorDetail(row=index + 1, message=str(error), raw_data={"id": tx.id}))
