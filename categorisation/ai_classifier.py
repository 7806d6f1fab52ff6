"""
ai_classifier.py
-----------------
Plug-in point for an AI/LLM categoriser.

No concrete classifier ships with the engine. Integrators subclass
BaseAIClassifier and inject an instance into CategorisationEngine; the engine
only calls it when AI is enabled in config and rules and mappings gave no
answer.

Shared helpers for plug-in authors:
    - build_categorisation_prompt(): prompt text listing the taxonomy.
    - parse_ai_response(): JSON reply -> CategorisationResult.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from core.models import CategorisationResult, UnifiedTransaction
from core.taxonomy import CategoryTaxonomy
from config.config_loader import get_categorisation_config

logger = logging.getLogger(__name__)


@dataclass
class AIClassifierConfig:
    enabled: bool = False
    model: str = "gpt-4o-mini"
    max_tokens: int = 100
    api_key: Optional[str] = None

    @classmethod
    def from_config(cls) -> "AIClassifierConfig":
        """Builds from the categorisation.ai block; the key is read from the configured env var."""
        ai = get_categorisation_config()["ai"]
        return cls(
            enabled=bool(ai["enabled"]),
            model=ai["model"],
            max_tokens=int(ai["max_tokens"]),
            api_key=os.environ.get(ai["api_key_env"]) or None,
        )


class BaseAIClassifier(ABC):
    """
    Abstract base for AI categorisers.

    Subclasses implement classify(tx, config). The engine passes its own
    AIClassifierConfig on every call; a direct call without one uses the
    instance config. Returning None means "no opinion" and the
    chain moves on to the fallback. Raising is tolerated: the engine logs the
    error and treats it as None.
    """

    def __init__(self, config: AIClassifierConfig | None = None):
        self.config = config or AIClassifierConfig.from_config()

    @abstractmethod
    async def classify(
        self, tx: UnifiedTransaction, config: AIClassifierConfig
    ) -> Optional[CategorisationResult]:
        ...

    async def __call__(
        self, tx: UnifiedTransaction, config: AIClassifierConfig | None = None
    ) -> Optional[CategorisationResult]:
        return await self.classify(tx, config or self.config)


# -----------------------------------------------------------------------------
# PROMPT HELPERS
# -----------------------------------------------------------------------------

def build_categorisation_prompt(tx: UnifiedTransaction, taxonomy: CategoryTaxonomy | None = None) -> str:
    taxonomy = taxonomy or CategoryTaxonomy()
    categories = ", ".join(taxonomy.level1_categories())
    kind = "(debit)" if tx.direction == "OUT" else "(credit)"

    return (
        "Categorise this Australian bank transaction:\n\n"
        f"Description: {tx.description}\n"
        f"Merchant: {tx.merchant_standardised or tx.merchant_raw or 'Unknown'}\n"
        f"Amount: ${tx.amount:.2f} {kind}\n"
        f"Date: {tx.date.strftime('%Y-%m-%d')}\n\n"
        f"Available categories: {categories}\n\n"
        "Respond in JSON format:\n"
        "{\n"
        '  "categoryLevel1": "Category Name",\n'
        '  "categoryLevel2": "Subcategory Name or null",\n'
        '  "confidence": 0.0-1.0\n'
        "}"
    )


def parse_ai_response(text: str) -> Optional[CategorisationResult]:
    """
    Parses the JSON reply described in build_categorisation_prompt().

    Tolerates prose around the JSON object. Returns None when no usable
    object is found.
    """
    if not text:
        return None

    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None

    try:
        payload = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        logger.warning(f"Unparseable AI response: {e}")
        return None

    level1 = payload.get("categoryLevel1")
    if not level1:
        return None

    level2 = payload.get("categoryLevel2")
    if isinstance(level2, str) and level2.strip().lower() in ("", "null", "none"):
        level2 = None

    try:
        confidence = float(payload.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5

    return CategorisationResult(
        category_level1=str(level1),
        category_level2=level2,
        subcategory=payload.get("subcategory"),
        confidence=min(max(confidence, 0.0), 1.0),
        source="AI",
    )
