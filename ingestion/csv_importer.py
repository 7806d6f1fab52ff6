"""
csv_importer.py
----------------
Bank-export CSV import.

Column order is fixed: date, amount, description, reference, balance, category.
Only the first three are required. Every row is validated independently and
failures are reported per row; a bad row never aborts the import.

Usage:
    result = import_from_csv(content, account_id="acc-1", user_id="u-1")
    result.transactions     # list[UnifiedTransaction], unenriched
    result.error_details    # list[ImportErrorDetail]
"""

import io
import logging
from collections import defaultdict
from typing import Iterable, List, Optional

import pandas as pd
from pandas.errors import ParserError

from core.models import ImportBatchResult, ImportErrorDetail, RawTransactionInput, UnifiedTransaction
from ingestion.normaliser import (
    NormalisationError,
    generate_deduplication_hash,
    new_batch_id,
    normalise_transaction,
    parse_amount_text,
    to_unified_transaction,
)

logger = logging.getLogger(__name__)

CSV_COLUMNS = ["date", "amount", "description", "reference", "balance", "category"]
REQUIRED_CSV_FIELDS = ["date", "amount", "description"]


# -----------------------------------------------------------------------------
# PARSING
# -----------------------------------------------------------------------------

def _read_frame(lines: List[str]) -> pd.DataFrame:
    # Upper bound on field count; quoted commas only add empty trailing columns.
    n_cols = max(len(CSV_COLUMNS), max(line.count(",") + 1 for line in lines))
    df = pd.read_csv(
        io.StringIO("\n".join(lines)),
        header=None,
        names=list(range(n_cols)),
        dtype=str,
        keep_default_na=False,
        skipinitialspace=True,
    )
    df = df.iloc[:, : len(CSV_COLUMNS)].fillna("")
    df.columns = CSV_COLUMNS
    return df


def _to_records(df: pd.DataFrame) -> List[dict]:
    for col in CSV_COLUMNS:
        df[col] = df[col].astype(str).str.strip().str.strip("\"'")

    rows = []
    for record in df.to_dict(orient="records"):
        for col in ("reference", "balance", "category"):
            record[col] = record[col] or None
        rows.append(record)
    return rows


def _parse_rows(content: str, has_header: bool) -> List[Optional[dict]]:
    """
    One entry per non-blank data line. A line the CSV tokenizer rejects
    (e.g. an unclosed quote) comes back as None in its position.
    """
    lines = [line for line in (content or "").splitlines() if line.strip()]
    if has_header:
        lines = lines[1:]
    if not lines:
        return []

    try:
        df = _read_frame(lines)
        if len(df) == len(lines):
            return _to_records(df)
    except ParserError as e:
        logger.warning(f"CSV content did not parse as a whole ({e}); parsing line by line.")

    # A stray quote can swallow the lines after it, so re-read each line alone.
    rows: List[Optional[dict]] = []
    for line in lines:
        try:
            rows.extend(_to_records(_read_frame([line])))
        except ParserError:
            rows.append(None)
    return rows


def parse_csv_content(content: str, has_header: bool = True) -> List[dict]:
    """
    Parse CSV text into row dicts keyed by CSV_COLUMNS.

    Blank lines are ignored. Short rows are padded with empty values and
    columns beyond the sixth are dropped. Optional columns come back as None
    when empty. Lines that cannot be tokenised are skipped; import_from_csv
    reports them as row errors.
    """
    return [row for row in _parse_rows(content, has_header) if row is not None]


# -----------------------------------------------------------------------------
# IMPORT
# -----------------------------------------------------------------------------

def import_from_csv(
    content: str,
    account_id: str,
    user_id: str,
    has_header: bool = True,
    existing_hashes: Iterable[str] | None = None,
) -> ImportBatchResult:
    """
    Import a CSV export into unenriched UnifiedTransactions.

    Args:
        content: Raw CSV text.
        account_id: Account the rows belong to.
        user_id: Owner of the account.
        has_header: Whether the first non-blank line is a header.
        existing_hashes: Fingerprints already persisted for this user. When
            given, matching rows (and repeats within the file) are counted
            as duplicates and skipped. When None no deduplication happens.

    Returns:
        ImportBatchResult. Row numbers in error_details count the header line.
    """
    batch_id = new_batch_id("csv")
    rows = _parse_rows(content, has_header)

    dedupe = existing_hashes is not None
    seen = set(existing_hashes or ())
    errors: List[ImportErrorDetail] = []
    transactions: List[UnifiedTransaction] = []
    duplicates = 0

    for i, row in enumerate(rows):
        row_num = i + 2 if has_header else i + 1

        if row is None:
            errors.append(ImportErrorDetail(row=row_num, message="Malformed CSV row"))
            continue

        missing = next((f for f in REQUIRED_CSV_FIELDS if not row[f]), None)
        if missing:
            errors.append(ImportErrorDetail(row=row_num, field=missing, message=f"Missing {missing}"))
            continue

        try:
            amount = parse_amount_text(row["amount"])
            normalised = normalise_transaction(
                RawTransactionInput(
                    date=row["date"],
                    amount=amount,
                    description=row["description"],
                    source="CSV",
                    import_batch_id=batch_id,
                ),
                account_id,
            )
        except NormalisationError as e:
            errors.append(ImportErrorDetail(row=row_num, field=e.field, message=e.message, raw_data=row))
            continue

        if dedupe:
            if normalised.deduplication_hash in seen:
                duplicates += 1
                continue
            seen.add(normalised.deduplication_hash)

        transactions.append(
            to_unified_transaction(normalised, user_id, account_id, f"pending_{batch_id}_{i}")
        )

    logger.info(
        f"CSV import {batch_id}: {len(rows)} rows, {len(transactions)} imported, "
        f"{duplicates} duplicates, {len(errors)} errors."
    )

    return ImportBatchResult(
        batch_id=batch_id,
        source="CSV",
        total_rows=len(rows),
        imported=len(transactions),
        duplicates=duplicates,
        errors=len(errors),
        error_details=errors,
        transactions=transactions,
    )


def find_duplicates_in_batch(transactions: Iterable[UnifiedTransaction]) -> dict[str, List[UnifiedTransaction]]:
    """
    Groups transactions by fingerprint and returns only groups with more than
    one member. Resolution is left to the caller.
    """
    clusters: dict[str, List[UnifiedTransaction]] = defaultdict(list)
    for tx in transactions:
        fingerprint = generate_deduplication_hash(tx.account_id, tx.date, tx.amount, tx.description)
        clusters[fingerprint].append(tx)
    return {h: txs for h, txs in clusters.items() if len(txs) > 1}
