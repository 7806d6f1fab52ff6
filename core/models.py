"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- RawTransactionInput / NormalisedTransaction: ingestion input and output.
- UnifiedTransaction: the canonical, fully-enriched record. Created by the
  normaliser, enriched in place by categorisation and behavioural detection.
- MerchantMapping: learned merchant -> category association (user or global).
- RecurringPayment: detected repeating obligation for one
  (user, merchant, account) triple, plus the update delta used to reconcile it.
- CategorisationResult: outcome of classifying one transaction.
- SpendingProfile: per-user analytics snapshot, recomputed wholesale.

Enumerations are plain strings validated against the tuples below.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional


TRANSACTION_SOURCES = ("BANK", "CSV", "OFX", "MANUAL")
DIRECTIONS = ("IN", "OUT")
RECURRENCE_PATTERNS = ("WEEKLY", "FORTNIGHTLY", "MONTHLY", "QUARTERLY", "ANNUALLY", "IRREGULAR")
ANOMALY_TYPES = (
    "DUPLICATE",
    "UNUSUAL_AMOUNT",
    "NEW_MERCHANT",
    "PRICE_INCREASE",
    "UNEXPECTED_CATEGORY",  # Reserved; no check emits it yet.
    "TIMING_ANOMALY",
)
CATEGORISATION_SOURCES = ("RULE", "AI", "USER", "FALLBACK")
MAPPING_SOURCES = ("RULE", "USER", "AI")
TREND_DIRECTIONS = ("INCREASING", "STABLE", "DECREASING")


# =============================================================================
# INGESTION
# =============================================================================

@dataclass
class RawTransactionInput:
    """One record as received from a feed, CSV row or manual entry."""

    date: str | date | datetime
    amount: float
    description: str
    source: str = "MANUAL"           # "BANK" | "CSV" | "OFX" | "MANUAL"

    external_id: Optional[str] = None
    account_id: Optional[str] = None
    merchant_raw: Optional[str] = None
    merchant_category_code: Optional[str] = None
    post_date: str | date | datetime | None = None
    direction: Optional[str] = None  # Only needed when the sign is not meaningful
    import_batch_id: Optional[str] = None


@dataclass
class NormalisedTransaction:
    """
    Validated, cleaned form of a RawTransactionInput.

    Carries no creation timestamps: normalising the same raw record twice
    yields an equal object.
    """

    date: datetime
    post_date: Optional[datetime]
    amount: float                    # Always >= 0; sign lives in direction
    direction: str
    currency: str
    description: str

    merchant_raw: Optional[str]
    merchant_cleaned: Optional[str]
    merchant_category_code: Optional[str]

    source: str
    external_id: Optional[str]
    import_batch_id: Optional[str]

    deduplication_hash: str
    is_transfer: bool = False


@dataclass
class UnifiedTransaction:
    """The canonical, fully-enriched transaction record."""

    # Identity
    id: str
    user_id: str
    account_id: str

    # Core data
    date: datetime
    amount: float                    # Always >= 0
    direction: str                   # "IN" | "OUT"
    description: str
    post_date: Optional[datetime] = None
    currency: str = "AUD"

    # Merchant
    merchant_raw: Optional[str] = None
    merchant_standardised: Optional[str] = None
    merchant_category_code: Optional[str] = None

    # Category hierarchy
    category_level1: Optional[str] = None
    category_level2: Optional[str] = None
    subcategory: Optional[str] = None

    # User interaction
    tags: list[str] = field(default_factory=list)
    user_corrected_category: bool = False
    confidence_score: Optional[float] = None

    # Recurrence
    is_recurring: bool = False
    recurrence_pattern: Optional[str] = None
    recurrence_group_id: Optional[str] = None

    # Anomalies
    anomaly_flags: list[str] = field(default_factory=list)

    # Source tracking
    source: str = "MANUAL"
    external_id: Optional[str] = None
    import_batch_id: Optional[str] = None
    deduplication_hash: Optional[str] = None

    # Metadata
    created_at: datetime = field(default_factory=datetime.now)
    processed_at: Optional[datetime] = None

    @property
    def best_merchant(self) -> str:
        """Most specific merchant string known: standardised, raw, then description."""
        return self.merchant_standardised or self.merchant_raw or self.description

    @property
    def merchant_key(self) -> str:
        """Grouping key used by behavioural detection."""
        return (self.merchant_standardised or self.description or "").lower().strip()


@dataclass
class ImportErrorDetail:
    """A single row-level ingestion failure."""
    row: int
    message: str
    field: Optional[str] = None
    raw_data: Optional[dict[str, Any]] = None


@dataclass
class ImportBatchResult:
    """Outcome of one batch import. Bad rows are reported, never raised."""
    batch_id: str
    source: str
    total_rows: int
    imported: int
    duplicates: int
    errors: int
    error_details: list[ImportErrorDetail] = field(default_factory=list)
    transactions: list[UnifiedTransaction] = field(default_factory=list)


# =============================================================================
# CATEGORISATION
# =============================================================================

@dataclass
class CategorisationResult:
    category_level1: str
    category_level2: Optional[str]
    subcategory: Optional[str]
    confidence: float                # 0.0 - 1.0
    source: str                      # "RULE" | "AI" | "USER" | "FALLBACK"
    rule_matched: Optional[str] = None


@dataclass
class MerchantMapping:
    """
    Learned merchant -> category association.

    user_id=None mappings are global. A user-scoped mapping always outranks a
    global one for the same merchant key.
    """

    merchant_raw: str                # Lower-cased lookup key
    merchant_standardised: str
    category_level1: str
    category_level2: Optional[str] = None
    subcategory: Optional[str] = None
    user_id: Optional[str] = None
    merchant_category_code: Optional[str] = None
    confidence: float = 1.0
    source: str = "USER"             # "RULE" | "USER" | "AI"
    usage_count: int = 1
    id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


# =============================================================================
# RECURRING PAYMENTS
# =============================================================================

@dataclass
class RecurringPayment:
    """
    Detected recurring obligation for one (user, merchant, account) triple.

    Created once >= 2 occurrences form a pattern; updated, never recreated,
    on later matching occurrences.
    """

    user_id: str
    merchant_standardised: str
    account_id: str
    pattern: str                     # One of RECURRENCE_PATTERNS
    expected_amount: float
    amount_variance: float           # Coefficient of variation, capped at 1.0
    last_occurrence: datetime
    next_expected: Optional[datetime]
    occurrence_count: int

    price_increase_alert: bool = False
    last_price_change: Optional[float] = None
    last_price_change_date: Optional[datetime] = None
    is_active: bool = True
    is_paused: bool = False

    recurrence_group_id: Optional[str] = None
    transaction_ids: list[str] = field(default_factory=list)

    id: Optional[str] = None
    version: int = 0                 # Optimistic concurrency token
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.user_id, self.merchant_standardised.lower().strip(), self.account_id)


@dataclass
class RecurringPaymentUpdate:
    """In-place update for an existing RecurringPayment."""
    payment_id: str
    last_occurrence: datetime
    occurrence_count: int
    expected_amount: float
    amount_variance: float
    next_expected: Optional[datetime]
    transaction_ids: list[str] = field(default_factory=list)

    def as_changes(self) -> dict[str, Any]:
        return {
            "last_occurrence": self.last_occurrence,
            "occurrence_count": self.occurrence_count,
            "expected_amount": self.expected_amount,
            "amount_variance": self.amount_variance,
            "next_expected": self.next_expected,
            "transaction_ids": list(self.transaction_ids),
        }


@dataclass
class RecurringDetectionResult:
    detected: list[RecurringPayment] = field(default_factory=list)
    updated: list[RecurringPaymentUpdate] = field(default_factory=list)
    failed: dict[tuple, Exception] = field(default_factory=dict)   # key -> error, isolated sync only


# =============================================================================
# SPENDING PROFILE
# =============================================================================

@dataclass
class CategoryAverage:
    avg_monthly: float
    trend: str                       # "INCREASING" | "STABLE" | "DECREASING"
    volatility: float
    transaction_count: int


@dataclass
class MonthlyPattern:
    total_spend: float
    categories: dict[str, float] = field(default_factory=dict)


@dataclass
class SpendingCluster:
    name: str
    merchants: list[str]
    avg_monthly: float


@dataclass
class SpendingProfile:
    """Per-user behaviour rollup. Recomputed from the full history each run."""

    user_id: str
    category_averages: dict[str, CategoryAverage]
    monthly_patterns: dict[str, MonthlyPattern]
    overall_volatility: float
    category_volatility: dict[str, float]
    predicted_monthly_spend: float
    prediction_confidence: float
    data_point_count: int
    seasonality_factors: Optional[dict[str, dict[str, float]]] = None
    spending_clusters: list[SpendingCluster] = field(default_factory=list)
    last_calculated: datetime = field(default_factory=datetime.now)


# =============================================================================
# PROCESSING RESULTS
# =============================================================================

@dataclass
class TIEProcessingResult:
    transaction: UnifiedTransaction
    categorisation_applied: bool
    anomalies_detected: list[str]
    recurring_detected: bool
    merchant_mapped: bool
    confidence_score: Optional[float]


@dataclass
class TIEBatchProcessingResult:
    processed: int = 0
    categorised: int = 0
    anomalies_found: int = 0
    recurring_found: int = 0
    errors: int = 0
    results: list[TIEProcessingResult] = field(default_factory=list)
    error_details: list[ImportErrorDetail] = field(default_factory=list)
