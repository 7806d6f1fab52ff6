"""
taxonomy.py
------------
Category taxonomy lookup layer.

Loads the three-level category hierarchy from config.yaml and builds a fast
lookup index keyed on the lower-cased level1 / level2 names. Categorisation
results (rules, mappings, AI) are validated against this index.

Taxonomy updates happen in config.yaml.
"""

from typing import Dict, Optional

from config.config_loader import get_category_hierarchy


class CategoryTaxonomy:
    """
    Lookup from category names to their canonical spelling.

    Built once at init from the config hierarchy. Thread-safe for reads.
    """

    def __init__(self, hierarchy: Dict[str, list[str]] | None = None):
        self._hierarchy: Dict[str, list[str]] = hierarchy or get_category_hierarchy()
        self._level1_index: Dict[str, str] = {}
        self._level2_index: Dict[str, Dict[str, str]] = {}
        self._load_taxonomy()

    def _load_taxonomy(self) -> None:
        """Builds the lookup index from the hierarchy."""
        for level1, level2s in self._hierarchy.items():
            key = level1.lower().strip()
            self._level1_index[key] = level1
            self._level2_index[key] = {l2.lower().strip(): l2 for l2 in (level2s or [])}

    def canonical_level1(self, level1: str | None) -> Optional[str]:
        """Returns the configured spelling of a level1 category, or None."""
        if not level1:
            return None
        return self._level1_index.get(level1.lower().strip())

    def is_valid(self, level1: str | None, level2: str | None = None) -> bool:
        """
        True when level1 exists and, if given, level2 sits under it.
        """
        canonical = self.canonical_level1(level1)
        if canonical is None:
            return False
        if level2 is None:
            return True
        return level2.lower().strip() in self._level2_index[canonical.lower()]

    def level1_categories(self) -> list[str]:
        return list(self._hierarchy.keys())

    def level2_categories(self, level1: str) -> list[str]:
        canonical = self.canonical_level1(level1)
        return list(self._hierarchy[canonical]) if canonical else []

    def all_categories(self) -> list[tuple[str, str]]:
        """Flattened (level1, level2) pairs."""
        return [(l1, l2) for l1, l2s in self._hierarchy.items() for l2 in l2s]

    def __len__(self) -> int:
        return len(self.all_categories())

    def __repr__(self) -> str:
        return f"CategoryTaxonomy(level1={len(self._hierarchy)}, pairs={len(self)})"
