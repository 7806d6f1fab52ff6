"""
normaliser.py
--------------
Ingestion normaliser. Turns heterogeneous raw input (feed records, CSV rows,
manual entries) into the canonical transaction shape.

Responsibilities:
    - Date parsing (ISO first, then day-first local formats from config).
    - Amount sign convention: amount stored as an absolute value, sign
      carried by direction.
    - Merchant cleaning: alias table first, otherwise noise stripping and
      title-casing.
    - Deduplication fingerprint over (account, day, amount, description).

Errors are per record: a bad field raises NormalisationError, which batch
callers collect as a row-level error without aborting the batch.
"""

import hashlib
import logging
import math
import re
import time
import uuid
from dataclasses import asdict, replace
from datetime import date, datetime
from typing import Iterable, Optional

from core.models import (
    DIRECTIONS,
    TRANSACTION_SOURCES,
    ImportBatchResult,
    ImportErrorDetail,
    NormalisedTransaction,
    RawTransactionInput,
    UnifiedTransaction,
)
from config.config_loader import get_ingestion_config

logger = logging.getLogger(__name__)


class NormalisationError(ValueError):
    """A single record could not be normalised. Carries the offending field."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


# =============================================================================
# COMPILED LOOKUP TABLES
# =============================================================================

_PATTERN_CACHE: dict[str, list] = {}


def _alias_patterns() -> list[tuple[re.Pattern, str]]:
    """
    Alias regexes, longest alias first so "uber eats" wins over "uber".
    Aliases match as case-insensitive substrings. Short aliases (up to
    alias_boundary_max_length characters) must also sit on token boundaries.
    """
    if "aliases" not in _PATTERN_CACHE:
        cfg = get_ingestion_config()
        boundary_max = cfg.get("alias_boundary_max_length", 0)
        ordered = sorted(cfg["merchant_aliases"].items(), key=lambda kv: len(str(kv[0])), reverse=True)
        patterns = []
        for alias, standard in ordered:
            alias = str(alias).lower()
            if len(alias) <= boundary_max:
                regex = rf"(?<![a-z0-9]){re.escape(alias)}(?![a-z0-9])"
            else:
                regex = re.escape(alias)
            patterns.append((re.compile(regex), standard))
        _PATTERN_CACHE["aliases"] = patterns
    return _PATTERN_CACHE["aliases"]


def _noise_patterns() -> list[re.Pattern]:
    if "noise" not in _PATTERN_CACHE:
        _PATTERN_CACHE["noise"] = [
            re.compile(p, re.IGNORECASE) for p in get_ingestion_config()["merchant_noise_patterns"]
        ]
    return _PATTERN_CACHE["noise"]


def _transfer_patterns() -> list[re.Pattern]:
    if "transfer" not in _PATTERN_CACHE:
        _PATTERN_CACHE["transfer"] = [
            re.compile(p, re.IGNORECASE) for p in get_ingestion_config()["transfer_patterns"]
        ]
    return _PATTERN_CACHE["transfer"]


def reset_pattern_cache() -> None:
    """Clears compiled patterns. Call after reset_config() in tests."""
    _PATTERN_CACHE.clear()


# =============================================================================
# FIELD NORMALISATION
# =============================================================================

def parse_transaction_date(value: str | date | datetime) -> datetime:
    """
    Parse a transaction date from a datetime, date or string.

    Strings are tried as ISO 8601 first, then against the day-first local
    formats in config (e.g. 31/01/2024). Timezone-aware values keep their
    wall-clock time and drop the offset.

    Raises:
        NormalisationError: If the value cannot be parsed.
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str) or not value.strip():
        raise NormalisationError(f"Unable to parse date: {value!r}", field="date")

    text = value.strip()
    iso_text = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed = datetime.fromisoformat(iso_text)
        return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed
    except ValueError:
        pass

    for fmt in get_ingestion_config()["date_formats"]:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    raise NormalisationError(f"Unable to parse date: {text}", field="date")


def normalise_amount(amount: float, direction: str | None = None) -> tuple[float, str]:
    """
    Split a signed amount into (absolute amount, direction).

    An explicit direction wins. Otherwise negative means money out and
    zero or positive means money in.
    """
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise NormalisationError(f"Invalid amount: {amount!r}", field="amount")
    if math.isnan(value) or math.isinf(value):
        raise NormalisationError(f"Invalid amount: {amount!r}", field="amount")

    if direction:
        direction = direction.strip().upper()
        if direction not in DIRECTIONS:
            raise NormalisationError(f"Invalid direction: {direction}", field="direction")
        return abs(value), direction

    if value < 0:
        return abs(value), "OUT"
    return value, "IN"


def parse_amount_text(text: str) -> float:
    """
    Parse a bank-export amount string such as "-$1,234.50" or "(12.00)".

    Raises:
        NormalisationError: If the text is not a number.
    """
    cleaned = re.sub(r"[$,\s]", "", str(text))
    negative = cleaned.startswith("(") and cleaned.endswith(")")
    if negative:
        cleaned = cleaned[1:-1]
    try:
        value = float(cleaned)
    except ValueError:
        raise NormalisationError("Invalid amount format", field="amount")
    if math.isnan(value) or math.isinf(value):
        raise NormalisationError("Invalid amount format", field="amount")
    return -value if negative else value


def clean_merchant_name(raw_merchant: str | None) -> Optional[str]:
    """
    Clean and standardise a merchant string.

    Known aliases return their standard name outright. Anything else has noise
    tokens stripped and is title-cased when it arrived all upper or all lower.
    """
    if not raw_merchant or not raw_merchant.strip():
        return None

    cleaned = raw_merchant.strip()
    lower = cleaned.lower()

    for pattern, standard in _alias_patterns():
        if pattern.search(lower):
            return standard

    for pattern in _noise_patterns():
        cleaned = pattern.sub(" ", cleaned)

    cleaned = re.sub(r"\s+", " ", cleaned).strip()

    if cleaned == cleaned.upper() or cleaned == cleaned.lower():
        cleaned = " ".join(word[:1].upper() + word[1:].lower() for word in cleaned.split(" "))

    return cleaned or None


def generate_deduplication_hash(
    account_id: str, txn_date: date | datetime, amount: float, description: str
) -> str:
    """
    Stable fingerprint of a transaction.

    Pure function of (account, calendar day, amount to 2dp, description
    lower-cased with all whitespace removed). Identical fingerprints are
    treated as the same transaction regardless of source.
    """
    day = txn_date.date() if isinstance(txn_date, datetime) else txn_date
    normalised = "|".join([
        str(account_id),
        day.isoformat(),
        f"{abs(float(amount)):.2f}",
        re.sub(r"\s+", "", (description or "").lower()),
    ])
    length = get_ingestion_config()["dedup_hash_length"]
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()[:length]


def is_transfer_transaction(description: str | None) -> bool:
    """True when the description looks like a transfer between accounts."""
    if not description:
        return False
    text = description.strip()
    return any(p.search(text) for p in _transfer_patterns())


# =============================================================================
# RECORD NORMALISATION
# =============================================================================

def normalise_transaction(raw: RawTransactionInput, account_id: str | None = None) -> NormalisedTransaction:
    """
    Normalise one raw record.

    Args:
        raw: The raw input record.
        account_id: Account the record belongs to. Falls back to raw.account_id.

    Raises:
        NormalisationError: On a missing or malformed field.
    """
    account_id = account_id or raw.account_id
    if not account_id:
        raise NormalisationError("Missing account id", field="account_id")

    description = (raw.description or "").strip() if isinstance(raw.description, str) else ""
    if not description:
        raise NormalisationError("Missing description", field="description")

    source = raw.source or "MANUAL"
    if not isinstance(source, str) or source.upper() not in TRANSACTION_SOURCES:
        raise NormalisationError(f"Unknown source: {raw.source}", field="source")
    source = source.upper()

    txn_date = parse_transaction_date(raw.date)
    post_date = parse_transaction_date(raw.post_date) if raw.post_date else None

    amount, direction = normalise_amount(raw.amount, raw.direction)

    merchant_raw = raw.merchant_raw or description
    merchant_cleaned = clean_merchant_name(merchant_raw)

    return NormalisedTransaction(
        date=txn_date,
        post_date=post_date,
        amount=amount,
        direction=direction,
        currency=get_ingestion_config()["default_currency"],
        description=description,
        merchant_raw=merchant_raw or None,
        merchant_cleaned=merchant_cleaned,
        merchant_category_code=raw.merchant_category_code or None,
        source=source,
        external_id=raw.external_id or None,
        import_batch_id=raw.import_batch_id or None,
        deduplication_hash=generate_deduplication_hash(account_id, txn_date, amount, description),
        is_transfer=is_transfer_transaction(description),
    )


def to_unified_transaction(
    normalised: NormalisedTransaction,
    user_id: str,
    account_id: str,
    transaction_id: str,
) -> UnifiedTransaction:
    """Wraps a NormalisedTransaction in an unenriched UnifiedTransaction."""
    return UnifiedTransaction(
        id=transaction_id,
        user_id=user_id,
        account_id=account_id,
        date=normalised.date,
        post_date=normalised.post_date,
        amount=normalised.amount,
        currency=normalised.currency,
        direction=normalised.direction,
        merchant_raw=normalised.merchant_raw,
        merchant_standardised=normalised.merchant_cleaned,
        merchant_category_code=normalised.merchant_category_code,
        description=normalised.description,
        source=normalised.source,
        external_id=normalised.external_id,
        import_batch_id=normalised.import_batch_id,
        deduplication_hash=normalised.deduplication_hash,
    )


def create_manual_transaction(
    txn_date: str | date | datetime,
    amount: float,
    description: str,
    account_id: str,
    user_id: str,
    direction: str | None = None,
    merchant_raw: str | None = None,
    category_level1: str | None = None,
    category_level2: str | None = None,
) -> UnifiedTransaction:
    """
    Build a transaction from manual entry.

    A category supplied by the user counts as a correction: the record is
    marked user_corrected_category with confidence 1.0.
    """
    normalised = normalise_transaction(
        RawTransactionInput(
            date=txn_date,
            amount=amount,
            description=description,
            source="MANUAL",
            merchant_raw=merchant_raw,
            direction=direction,
        ),
        account_id,
    )
    txn = to_unified_transaction(
        normalised, user_id, account_id, f"pending_manual_{uuid.uuid4().hex[:12]}"
    )
    if category_level1:
        txn.category_level1 = category_level1
        txn.category_level2 = category_level2
        txn.user_corrected_category = True
        txn.confidence_score = 1.0
    return txn


def new_batch_id(prefix: str) -> str:
    """Batch identifier: <prefix>_<epoch ms>_<random>."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def normalise_batch(
    raws: Iterable[RawTransactionInput],
    account_id: str,
    user_id: str,
    existing_hashes: Iterable[str] | None = None,
    batch_id: str | None = None,
) -> ImportBatchResult:
    """
    Normalise a batch of feed records.

    Bad records become row-level errors (rows numbered from 1). Records whose
    fingerprint is already in existing_hashes, or repeats one seen earlier in
    this batch, are counted as duplicates and skipped.
    """
    raws = list(raws)
    batch_id = batch_id or new_batch_id("batch")
    seen = set(existing_hashes or ())
    errors: list[ImportErrorDetail] = []
    transactions: list[UnifiedTransaction] = []
    duplicates = 0
    sources: set[str] = set()

    for i, raw in enumerate(raws):
        row_num = i + 1
        try:
            tagged = replace(raw, import_batch_id=raw.import_batch_id or batch_id)
            normalised = normalise_transaction(tagged, account_id)
        except NormalisationError as e:
            errors.append(ImportErrorDetail(row=row_num, field=e.field, message=e.message, raw_data=asdict(raw)))
            continue
        sources.add(normalised.source)

        if normalised.deduplication_hash in seen:
            duplicates += 1
            continue
        seen.add(normalised.deduplication_hash)

        transactions.append(
            to_unified_transaction(normalised, user_id, account_id, f"pending_{batch_id}_{i}")
        )

    if errors:
        logger.warning(f"Batch {batch_id}: {len(errors)} of {len(raws)} records rejected.")

    return ImportBatchResult(
        batch_id=batch_id,
        source=sources.pop() if len(sources) == 1 else "BANK",
        total_rows=len(raws),
        imported=len(transactions),
        duplicates=duplicates,
        errors=len(errors),
        error_details=errors,
        transactions=transactions,
    )
