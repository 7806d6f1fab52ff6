"""
engine.py
----------
Hybrid categorisation engine.

Chain of steps, first non-None answer wins:
    1. user mapping     user-scoped merchant mapping (learned corrections)
    2. global mapping   merchant mapping with no user; confidence discounted
    3. rules            deterministic rule table, highest priority first
    4. ai               injected classifier, only when enabled
    5. fallback         Other / Uncategorised

Every step has the same (tx, context) -> CategorisationResult | None shape so
steps can be reordered or extended without special cases. A step that raises
is logged and skipped; categorise() always returns a result.

The mapping snapshot is read-only during a run, so categorise_batch() can fan
out over a thread pool.
"""

import asyncio
import inspect
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from core.models import CategorisationResult, MerchantMapping, UnifiedTransaction
from core.repository import MerchantMappingStore, mapping_key
from core.taxonomy import CategoryTaxonomy
from categorisation.ai_classifier import AIClassifierConfig
from categorisation.rules import SORTED_RULES, CategorisationRule, categorise_by_rules, sort_rules
from config.config_loader import get_categorisation_config, merge_overrides

logger = logging.getLogger(__name__)

Step = Callable[[UnifiedTransaction, Dict[str, Any]], Optional[CategorisationResult]]


async def _await(awaitable):
    return await awaitable


class CategorisationEngine:
    """
    Usage:
        engine = CategorisationEngine(mappings=store.find_all(user_id))
        result = engine.categorise(tx)
        engine.apply_categorisation(tx, result)

    ai_classifier is called as ai_classifier(tx, ai_config). It returns a
    CategorisationResult or None, directly or as an awaitable.
    """

    def __init__(
        self,
        mappings: Iterable[MerchantMapping] | None = None,
        rules: Sequence[CategorisationRule] | None = None,
        ai_classifier: Callable | None = None,
        ai_config: AIClassifierConfig | None = None,
        overrides: Dict[str, Any] | None = None,
    ):
        self.config = merge_overrides(get_categorisation_config(), overrides)
        self.taxonomy = CategoryTaxonomy(self.config["category_hierarchy"])
        self.rules = sort_rules(rules) if rules is not None else SORTED_RULES
        self.ai_classifier = ai_classifier
        self.ai_config = ai_config or AIClassifierConfig.from_config()
        self._mapping_index: Dict[tuple, MerchantMapping] = {}
        self.set_mappings(mappings or [])

        self._steps: List[tuple[str, Step]] = [
            ("user_mapping", self._by_user_mapping),
            ("global_mapping", self._by_global_mapping),
            ("rules", self._by_rules),
            ("ai", self._by_ai),
        ]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def set_mappings(self, mappings: Iterable[MerchantMapping]) -> None:
        """Replaces the mapping snapshot. The first mapping per (user, merchant) wins."""
        index: Dict[tuple, MerchantMapping] = {}
        for m in mappings:
            index.setdefault((m.user_id, mapping_key(m.merchant_raw)), m)
        self._mapping_index = index

    @property
    def mappings(self) -> List[MerchantMapping]:
        return list(self._mapping_index.values())

    def categorise(self, tx: UnifiedTransaction) -> CategorisationResult:
        context = self._context()
        for name, step in self._steps:
            result = self._run_step(name, step, tx, context)
            if result is not None:
                return result
        return self._fallback(tx, context)

    async def categorise_async(self, tx: UnifiedTransaction) -> CategorisationResult:
        """Same chain as categorise(), awaiting the AI classifier on the caller's loop."""
        context = self._context()
        for name, step in self._steps:
            if name == "ai":
                result = await self._by_ai_async(tx, context)
            else:
                result = self._run_step(name, step, tx, context)
            if result is not None:
                return result
        return self._fallback(tx, context)

    def categorise_batch(
        self, transactions: Iterable[UnifiedTransaction], max_workers: int = 1
    ) -> Dict[str, CategorisationResult]:
        """Returns {tx.id: result}. Input order is preserved."""
        transactions = list(transactions)
        if max_workers > 1 and len(transactions) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                results = list(pool.map(self.categorise, transactions))
        else:
            results = [self.categorise(tx) for tx in transactions]
        return {tx.id: r for tx, r in zip(transactions, results)}

    @staticmethod
    def apply_categorisation(tx: UnifiedTransaction, result: CategorisationResult) -> UnifiedTransaction:
        """Writes a result onto the transaction in place."""
        tx.category_level1 = result.category_level1
        tx.category_level2 = result.category_level2
        tx.subcategory = result.subcategory
        tx.confidence_score = result.confidence
        return tx

    # -------------------------------------------------------------------------
    # LEARNING LOOP
    # -------------------------------------------------------------------------

    def create_mapping_from_correction(
        self,
        tx: UnifiedTransaction,
        level1: str,
        level2: str | None = None,
        subcategory: str | None = None,
        existing: MerchantMapping | None = None,
    ) -> MerchantMapping:
        """
        Builds the user-scoped mapping implied by a correction.

        With `existing`, returns an updated copy (usage_count incremented).

        Raises:
            ValueError: If level1 is not in the category hierarchy.
        """
        canonical = self.taxonomy.canonical_level1(level1)
        if canonical is None:
            raise ValueError(f"Unknown category '{level1}'. Available: {self.taxonomy.level1_categories()}")

        confidence = self.config["user_correction_confidence"]
        if existing is not None:
            return replace(
                existing,
                category_level1=canonical,
                category_level2=level2 or None,
                subcategory=subcategory or None,
                confidence=confidence,
                source="USER",
                usage_count=existing.usage_count + 1,
                updated_at=datetime.now(),
            )

        merchant = tx.best_merchant
        return MerchantMapping(
            user_id=tx.user_id,
            merchant_raw=mapping_key(merchant),
            merchant_standardised=tx.merchant_standardised or merchant,
            merchant_category_code=tx.merchant_category_code,
            category_level1=canonical,
            category_level2=level2 or None,
            subcategory=subcategory or None,
            confidence=confidence,
            source="USER",
            usage_count=1,
        )

    def record_correction(
        self,
        tx: UnifiedTransaction,
        level1: str,
        level2: str | None,
        subcategory: str | None,
        store: MerchantMappingStore,
    ) -> MerchantMapping:
        """
        Persists a user correction and marks the transaction as corrected.

        The read-modify-write runs under the store's lock for the
        (user, merchant) key. The engine's snapshot is refreshed so later
        categorise() calls in this run see the new mapping.
        """
        key = mapping_key(tx.best_merchant)
        with store.key_lock((tx.user_id, key)):
            existing = store.find(key, tx.user_id)
            mapping = self.create_mapping_from_correction(tx, level1, level2, subcategory, existing)
            if existing is None:
                stored = store.create(mapping)
            else:
                stored = store.update(existing.id, {
                    "category_level1": mapping.category_level1,
                    "category_level2": mapping.category_level2,
                    "subcategory": mapping.subcategory,
                    "confidence": mapping.confidence,
                    "source": mapping.source,
                    "usage_count": mapping.usage_count,
                })

        self._mapping_index[(tx.user_id, key)] = stored

        tx.category_level1 = stored.category_level1
        tx.category_level2 = stored.category_level2
        tx.subcategory = stored.subcategory
        tx.confidence_score = stored.confidence
        tx.user_corrected_category = True

        logger.info(
            f"Correction recorded for user {tx.user_id}: '{key}' -> {stored.category_level1}"
            f" (usage {stored.usage_count})."
        )
        return stored

    # -------------------------------------------------------------------------
    # INTERNAL: CHAIN STEPS
    # -------------------------------------------------------------------------

    def _context(self) -> Dict[str, Any]:
        return {"mappings": self._mapping_index}

    @staticmethod
    def _run_step(name: str, step: Step, tx: UnifiedTransaction, context: Dict[str, Any]):
        try:
            return step(tx, context)
        except Exception as e:
            logger.warning(f"Categorisation step '{name}' failed for {tx.id}: {e}")
            return None

    def _by_user_mapping(self, tx, context):
        mapping = context["mappings"].get((tx.user_id, mapping_key(tx.best_merchant)))
        if mapping is None:
            return None
        return CategorisationResult(
            category_level1=mapping.category_level1,
            category_level2=mapping.category_level2,
            subcategory=mapping.subcategory,
            confidence=mapping.confidence,
            source="USER",
        )

    def _by_global_mapping(self, tx, context):
        mapping = context["mappings"].get((None, mapping_key(tx.best_merchant)))
        if mapping is None:
            return None
        return CategorisationResult(
            category_level1=mapping.category_level1,
            category_level2=mapping.category_level2,
            subcategory=mapping.subcategory,
            confidence=mapping.confidence * self.config["global_mapping_discount"],
            source="RULE",
        )

    def _by_rules(self, tx, context):
        return categorise_by_rules(tx, self.rules)

    def _ai_ready(self) -> bool:
        return bool(self.ai_config.enabled and self.ai_classifier is not None)

    def _by_ai(self, tx, context):
        if not self._ai_ready():
            return None
        try:
            outcome = self.ai_classifier(tx, self.ai_config)
            if inspect.isawaitable(outcome):
                outcome = asyncio.run(_await(outcome))
            return self._validate_ai_result(tx, outcome)
        except Exception as e:
            logger.warning(f"AI classifier failed for {tx.id}: {e}")
            return None

    async def _by_ai_async(self, tx, context):
        if not self._ai_ready():
            return None
        try:
            outcome = self.ai_classifier(tx, self.ai_config)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return self._validate_ai_result(tx, outcome)
        except Exception as e:
            logger.warning(f"AI classifier failed for {tx.id}: {e}")
            return None

    def _validate_ai_result(self, tx, outcome) -> Optional[CategorisationResult]:
        if outcome is None:
            return None
        if not isinstance(outcome, CategorisationResult):
            logger.warning(f"AI classifier returned {type(outcome).__name__} for {tx.id}; ignored.")
            return None

        level1 = self.taxonomy.canonical_level1(outcome.category_level1)
        if level1 is None:
            logger.warning(f"AI classifier proposed unknown category '{outcome.category_level1}' for {tx.id}.")
            return None

        level2 = outcome.category_level2 if self.taxonomy.is_valid(level1, outcome.category_level2) else None
        return CategorisationResult(
            category_level1=level1,
            category_level2=level2,
            subcategory=outcome.subcategory,
            confidence=min(max(float(outcome.confidence), 0.0), 1.0),
            source="AI",
        )

    def _fallback(self, tx, context) -> CategorisationResult:
        fb = self.config["fallback"]
        return CategorisationResult(
            category_level1=fb["category_level1"],
            category_level2=fb["category_level2"],
            subcategory=None,
            confidence=fb["confidence"],
            source="FALLBACK",
        )
