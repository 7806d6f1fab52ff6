"""
test_ingestion.py
------------------
Tests for the ingestion normaliser and CSV importer.

Run from the project root:
    python -m pytest tests/test_ingestion.py -v
"""

import sys
import os
import pytest
from datetime import date, datetime

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import load_config, reset_config
from core.models import RawTransactionInput
from ingestion.normaliser import (
    NormalisationError,
    clean_merchant_name,
    create_manual_transaction,
    generate_deduplication_hash,
    is_transfer_transaction,
    normalise_amount,
    normalise_batch,
    normalise_transaction,
    parse_amount_text,
    parse_transaction_date,
    reset_pattern_cache,
    to_unified_transaction,
)
from ingestion.csv_importer import find_duplicates_in_batch, import_from_csv, parse_csv_content


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config and compiled pattern caches before each test for isolation."""
    reset_config()
    reset_pattern_cache()
    yield
    reset_config()
    reset_pattern_cache()


def _make_raw(
    txn_date="2024-01-15",
    amount=-42.10,
    description="WOOLWORTHS 1234 SYDNEY",
    source="BANK",
    **kwargs,
) -> RawTransactionInput:
    """Helper: a raw feed record."""
    return RawTransactionInput(date=txn_date, amount=amount, description=description, source=source, **kwargs)


CSV_HEADER = "Date,Amount,Description,Reference,Balance,Category\n"


# =============================================================================
# FIELD NORMALISATION
# =============================================================================

class TestParseTransactionDate:
    def test_iso_date(self):
        assert parse_transaction_date("2024-01-15") == datetime(2024, 1, 15)

    def test_day_first_formats(self):
        expected = datetime(2024, 1, 15)
        assert parse_transaction_date("15/01/2024") == expected
        assert parse_transaction_date("15-01-2024") == expected
        assert parse_transaction_date("15.01.2024") == expected
        assert parse_transaction_date("15 Jan 2024") == expected

    def test_timezone_keeps_wall_clock(self):
        parsed = parse_transaction_date("2024-01-15T10:30:00+10:00")
        assert parsed == datetime(2024, 1, 15, 10, 30)
        assert parsed.tzinfo is None

    def test_date_and_datetime_objects(self):
        assert parse_transaction_date(date(2024, 1, 15)) == datetime(2024, 1, 15)
        stamp = datetime(2024, 1, 15, 8, 0)
        assert parse_transaction_date(stamp) == stamp

    def test_unparseable_raises_with_field(self):
        with pytest.raises(NormalisationError) as exc:
            parse_transaction_date("not a date")
        assert exc.value.field == "date"


class TestNormaliseAmount:
    def test_negative_is_outgoing(self):
        assert normalise_amount(-42.5) == (42.5, "OUT")

    def test_non_negative_is_incoming(self):
        assert normalise_amount(100) == (100.0, "IN")
        assert normalise_amount(0) == (0.0, "IN")

    def test_explicit_direction_wins(self):
        assert normalise_amount(-10, "IN") == (10.0, "IN")
        assert normalise_amount(10, "out") == (10.0, "OUT")

    def test_invalid_amount_raises(self):
        with pytest.raises(NormalisationError) as exc:
            normalise_amount("abc")
        assert exc.value.field == "amount"

    def test_invalid_direction_raises(self):
        with pytest.raises(NormalisationError) as exc:
            normalise_amount(10, "SIDEWAYS")
        assert exc.value.field == "direction"

    def test_parse_amount_text(self):
        assert parse_amount_text("-$1,234.50") == pytest.approx(-1234.5)
        assert parse_amount_text("(12.00)") == pytest.approx(-12.0)
        assert parse_amount_text(" 99 ") == pytest.approx(99.0)
        with pytest.raises(NormalisationError):
            parse_amount_text("twelve")


class TestCleanMerchantName:
    def test_alias_match(self):
        assert clean_merchant_name("WOOLWORTHS 1234 SYDNEY") == "Woolworths"
        assert clean_merchant_name("NETFLIX.COM") == "Netflix"

    def test_longest_alias_wins(self):
        assert clean_merchant_name("UBER EATS SYDNEY") == "Uber Eats"
        assert clean_merchant_name("UBER TRIP 1234") == "Uber"

    def test_alias_matches_inside_words(self):
        assert clean_merchant_name("SPOTIFYAU 1234") == "Spotify"
        assert clean_merchant_name("WOOLWORTHSMETRO 1234") == "Woolworths"
        assert clean_merchant_name("NETFLIXCOM") == "Netflix"

    def test_short_alias_needs_token_boundary(self):
        # "bp" must not match inside "bpay"
        assert clean_merchant_name("BPAY BILLER 12345") == "Bpay Biller"
        assert clean_merchant_name("BP CONNECT 1234") == "BP"

    def test_short_alias_boundary_configurable(self):
        load_config()["ingestion"]["alias_boundary_max_length"] = 0
        assert clean_merchant_name("BPAY BILLER 12345") == "BP"

    def test_noise_stripped_and_title_cased(self):
        assert clean_merchant_name("SQ *JOES BAKERY 0001234 AU") == "Sq Joes Bakery"

    def test_mixed_case_preserved(self):
        assert clean_merchant_name("Joe's Cafe") == "Joe's Cafe"

    def test_empty_returns_none(self):
        assert clean_merchant_name(None) is None
        assert clean_merchant_name("   ") is None


class TestDeduplicationHash:
    def test_deterministic(self):
        h1 = generate_deduplication_hash("acc1", datetime(2024, 1, 15), 42.10, "WOOLWORTHS 1234")
        h2 = generate_deduplication_hash("acc1", datetime(2024, 1, 15), 42.10, "WOOLWORTHS 1234")
        assert h1 == h2
        assert len(h1) == 16
        assert all(c in "0123456789abcdef" for c in h1)

    def test_ignores_case_whitespace_and_time(self):
        h1 = generate_deduplication_hash("acc1", datetime(2024, 1, 15, 9, 0), 42.1, "  Woolworths  1234 ")
        h2 = generate_deduplication_hash("acc1", date(2024, 1, 15), 42.10, "woolworths1234")
        assert h1 == h2

    def test_account_changes_hash(self):
        h1 = generate_deduplication_hash("acc1", date(2024, 1, 15), 42.10, "x")
        h2 = generate_deduplication_hash("acc2", date(2024, 1, 15), 42.10, "x")
        assert h1 != h2


class TestIsTransfer:
    def test_transfer_patterns(self):
        assert is_transfer_transaction("Transfer to savings")
        assert is_transfer_transaction("OSKO PAYMENT TO J SMITH")
        assert is_transfer_transaction("BPAY 12345")
        assert is_transfer_transaction("Direct Debit Gym")

    def test_non_transfers(self):
        assert not is_transfer_transaction("WOOLWORTHS 1234")
        assert not is_transfer_transaction(None)


# =============================================================================
# RECORD NORMALISATION
# =============================================================================

class TestNormaliseTransaction:
    def test_normalises_fields(self):
        n = normalise_transaction(_make_raw(), "acc1")
        assert n.date == datetime(2024, 1, 15)
        assert n.amount == pytest.approx(42.10)
        assert n.direction == "OUT"
        assert n.currency == "AUD"
        assert n.merchant_raw == "WOOLWORTHS 1234 SYDNEY"
        assert n.merchant_cleaned == "Woolworths"
        assert n.source == "BANK"
        assert n.is_transfer is False

    def test_idempotent(self):
        raw = _make_raw()
        assert normalise_transaction(raw, "acc1") == normalise_transaction(raw, "acc1")

    def test_account_from_raw(self):
        n = normalise_transaction(_make_raw(account_id="acc9"))
        assert n.deduplication_hash == generate_deduplication_hash(
            "acc9", datetime(2024, 1, 15), 42.10, "WOOLWORTHS 1234 SYDNEY"
        )

    def test_missing_description_raises(self):
        with pytest.raises(NormalisationError) as exc:
            normalise_transaction(_make_raw(description="  "), "acc1")
        assert exc.value.field == "description"

    def test_missing_account_raises(self):
        with pytest.raises(NormalisationError) as exc:
            normalise_transaction(_make_raw())
        assert exc.value.field == "account_id"

    def test_to_unified_transaction(self):
        n = normalise_transaction(_make_raw(external_id="ext-1"), "acc1")
        tx = to_unified_transaction(n, "u1", "acc1", "tx-1")
        assert tx.id == "tx-1"
        assert tx.user_id == "u1"
        assert tx.merchant_standardised == "Woolworths"
        assert tx.external_id == "ext-1"
        assert tx.deduplication_hash == n.deduplication_hash
        assert tx.category_level1 is None
        assert tx.anomaly_flags == []

    def test_manual_transaction_with_category_is_correction(self):
        tx = create_manual_transaction(
            "2024-02-01", -20.0, "Cash lunch", "acc1", "u1",
            category_level1="Food & Dining", category_level2="Restaurants",
        )
        assert tx.id.startswith("pending_manual_")
        assert tx.source == "MANUAL"
        assert tx.user_corrected_category is True
        assert tx.confidence_score == 1.0
        assert tx.direction == "OUT"

    def test_manual_transaction_without_category(self):
        tx = create_manual_transaction("2024-02-01", 20.0, "Gift from mum", "acc1", "u1")
        assert tx.user_corrected_category is False
        assert tx.category_level1 is None


class TestNormaliseBatch:
    def test_collects_row_errors(self):
        raws = [_make_raw(), _make_raw(txn_date="garbage"), _make_raw(description="NETFLIX.COM")]
        result = normalise_batch(raws, "acc1", "u1")
        assert result.total_rows == 3
        assert result.imported == 2
        assert result.errors == 1
        assert result.error_details[0].row == 2
        assert result.error_details[0].field == "date"
        assert result.source == "BANK"

    def test_skips_existing_and_repeated_hashes(self):
        first = normalise_transaction(_make_raw(), "acc1")
        raws = [_make_raw(), _make_raw(description="NETFLIX.COM"), _make_raw(description="NETFLIX.COM")]
        result = normalise_batch(raws, "acc1", "u1", existing_hashes={first.deduplication_hash})
        assert result.duplicates == 2
        assert result.imported == 1
        assert result.transactions[0].merchant_standardised == "Netflix"

    def test_input_records_left_untouched(self):
        raws = [_make_raw()]
        first = normalise_batch(raws, "acc1", "u1")
        second = normalise_batch(raws, "acc1", "u1")
        assert raws[0].import_batch_id is None
        assert first.transactions[0].import_batch_id == first.batch_id
        assert second.transactions[0].import_batch_id == second.batch_id
        assert first.batch_id != second.batch_id

    def test_caller_batch_id_kept(self):
        result = normalise_batch([_make_raw(import_batch_id="feed_7")], "acc1", "u1")
        assert result.transactions[0].import_batch_id == "feed_7"

    def test_non_string_source_is_row_error(self):
        raws = [_make_raw(source=42), _make_raw(description="NETFLIX.COM")]
        result = normalise_batch(raws, "acc1", "u1")
        assert result.errors == 1
        assert result.error_details[0].row == 1
        assert result.error_details[0].field == "source"
        assert result.imported == 1
        assert result.source == "BANK"


# =============================================================================
# CSV IMPORT
# =============================================================================

class TestParseCsvContent:
    def test_parses_rows_and_skips_blank_lines(self):
        content = CSV_HEADER + '15/01/2024,-42.10,WOOLWORTHS 1234\n\n16/01/2024,"-1,200.00",RENT PAYMENT,REF1\n'
        rows = parse_csv_content(content)
        assert len(rows) == 2
        assert rows[0]["date"] == "15/01/2024"
        assert rows[0]["reference"] is None
        assert rows[1]["amount"] == "-1,200.00"
        assert rows[1]["reference"] == "REF1"

    def test_without_header(self):
        rows = parse_csv_content("15/01/2024,-42.10,WOOLWORTHS\n", has_header=False)
        assert len(rows) == 1
        assert rows[0]["description"] == "WOOLWORTHS"

    def test_empty_content(self):
        assert parse_csv_content("") == []
        assert parse_csv_content(CSV_HEADER) == []


class TestImportFromCsv:
    def test_row_errors_and_imports(self):
        content = CSV_HEADER + (
            "15/01/2024,-42.10,WOOLWORTHS 1234\n"
            ",-10.00,Missing date\n"
            "17/01/2024,,No amount\n"
            "18/01/2024,abc,Bad amount\n"
            "32/13/2024,-5.00,Bad date\n"
            "20/01/2024,2500.00,SALARY ACME\n"
        )
        result = import_from_csv(content, "acc1", "u1")

        assert result.source == "CSV"
        assert result.batch_id.startswith("csv_")
        assert result.total_rows == 6
        assert result.imported == 2
        assert result.errors == 4
        assert result.duplicates == 0
        assert [e.row for e in result.error_details] == [3, 4, 5, 6]
        assert [e.field for e in result.error_details] == ["date", "amount", "amount", "date"]

        tx = result.transactions[0]
        assert tx.id.startswith(f"pending_{result.batch_id}_")
        assert tx.import_batch_id == result.batch_id
        assert tx.direction == "OUT"
        assert tx.amount == pytest.approx(42.10)
        assert tx.merchant_standardised == "Woolworths"
        assert tx.source == "CSV"
        assert result.transactions[1].direction == "IN"

    def test_unclosed_quote_row_is_reported(self):
        content = CSV_HEADER + (
            "15/01/2024,-42.10,WOOLWORTHS\n"
            '16/01/2024,-5.00,"Unclosed quote\n'
            "17/01/2024,-9.00,COLES\n"
        )
        result = import_from_csv(content, "acc1", "u1")
        assert result.total_rows == 3
        assert result.imported == 2
        assert result.errors == 1
        assert result.error_details[0].row == 3
        assert result.error_details[0].message == "Malformed CSV row"
        assert [tx.merchant_standardised for tx in result.transactions] == ["Woolworths", "Coles"]

    def test_parse_skips_untokenisable_lines(self):
        content = CSV_HEADER + '15/01/2024,-42.10,WOOLWORTHS\n16/01/2024,-5.00,"Unclosed quote\n'
        rows = parse_csv_content(content)
        assert [r["description"] for r in rows] == ["WOOLWORTHS"]

    def test_missing_description_checked_after_amount(self):
        result = import_from_csv(CSV_HEADER + "15/01/2024,,\n", "acc1", "u1")
        assert result.error_details[0].field == "amount"

    def test_row_numbers_without_header(self):
        result = import_from_csv("15/01/2024,-1.00,\n", "acc1", "u1", has_header=False)
        assert result.error_details[0].row == 1
        assert result.error_details[0].field == "description"

    def test_duplicates_only_with_existing_hashes(self):
        content = CSV_HEADER + "15/01/2024,-42.10,WOOLWORTHS 1234\n15/01/2024,-42.10,WOOLWORTHS 1234\n"
        plain = import_from_csv(content, "acc1", "u1")
        assert plain.imported == 2
        assert plain.duplicates == 0

        clusters = find_duplicates_in_batch(plain.transactions)
        assert len(clusters) == 1
        assert len(next(iter(clusters.values()))) == 2

        deduped = import_from_csv(content, "acc1", "u1", existing_hashes=set())
        assert deduped.imported == 1
        assert deduped.duplicates == 1

    def test_no_duplicate_clusters_for_distinct_rows(self):
        content = CSV_HEADER + "15/01/2024,-42.10,WOOLWORTHS\n16/01/2024,-42.10,WOOLWORTHS\n"
        result = import_from_csv(content, "acc1", "u1")
        assert find_duplicates_in_batch(result.transactions) == {}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
