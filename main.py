"""
main.py
--------
Entry point for the Transaction Intelligence Engine.

Imports a bank-export CSV, runs the full enrichment pipeline with in-memory
stores and prints a spending summary.

Usage (from the project root):
    python main.py --input path/to/export.csv

    # With optional arguments:
    python main.py --input export.csv --account-id acc-1 --user-id u-1
    python main.py --input export.csv --no-header --trend-months 12
"""

import sys
import os
import argparse
import logging

# Ensure project root is on path (for runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from pipeline import TransactionIntelligencePipeline
from analytics.spending import calculate_spending_summary
from analytics.trends import analyse_trend, forecast_monthly_spending
from monitoring.drift_monitor import DriftMonitor


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Transaction Intelligence Engine: categorise, detect recurring payments and anomalies."
    )
    parser.add_argument("--input", type=str, required=True, help="Path to a bank-export CSV.")
    parser.add_argument("--account-id", type=str, default="account-1", help="Account the CSV belongs to.")
    parser.add_argument("--user-id", type=str, default="user-1", help="Owner of the account.")
    parser.add_argument(
        "--no-header", action="store_true", default=False,
        help="The CSV has no header line."
    )
    parser.add_argument(
        "--history-months", type=int, default=None,
        help="Forecast window in months. Defaults to config value (6)."
    )
    parser.add_argument(
        "--trend-months", type=int, default=None,
        help="Trend window in months. Defaults to config value (6)."
    )
    return parser.parse_args(argv)


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None):
    args = parse_args(argv)

    logger.info(f"Loading transactions from: {args.input}")
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        sys.exit(1)

    with open(args.input, "r", encoding="utf-8-sig") as f:
        content = f.read()

    pipeline = TransactionIntelligencePipeline()

    batch = pipeline.import_csv(content, args.account_id, args.user_id, has_header=not args.no_header)
    logger.info(
        f"Imported {batch.imported:,} of {batch.total_rows:,} rows "
        f"({batch.errors:,} errors, {batch.duplicates:,} duplicates)."
    )
    for err in batch.error_details:
        logger.warning(f"Row {err.row} [{err.field or '-'}]: {err.message}")

    result = pipeline.process(batch.transactions)

    _print_summary(pipeline, batch.transactions, result, args)


def _print_summary(pipeline, transactions, result, args):
    """Prints a clean summary to the console."""
    if not transactions:
        print("\n  No transactions to display.\n")
        return

    summary = calculate_spending_summary(transactions)
    trend = analyse_trend(transactions, args.trend_months)
    forecast = forecast_monthly_spending(transactions, args.history_months)
    drifts = DriftMonitor().detect_category_drift(transactions)
    payments = pipeline.recurring_store.find_all(args.user_id)
    recurring = pipeline.recurring_detector.summarise_recurring_payments(payments)

    print("\n" + "=" * 80)
    print("  TRANSACTION INTELLIGENCE SUMMARY")
    print("=" * 80)

    print(f"\n  Spend: ${summary.total_spend:,.2f}   Income: ${summary.total_income:,.2f}   "
          f"Net: ${summary.net_cashflow:,.2f}   Transactions: {summary.transaction_count:,}")

    print("\n  Top Categories:")
    print("  " + "-" * 60)
    for c in summary.top_categories:
        print(f"    {c.category:30s}  ${c.amount:>12,.2f}  ({c.percentage:.1f}%)")

    print("\n  Top Merchants:")
    print("  " + "-" * 60)
    for m in summary.top_merchants:
        print(f"    {m.merchant:30s}  ${m.amount:>12,.2f}  ({m.count} txns)")

    print(f"\n  Trend: {trend.direction} ({trend.change_percent:+.1f}%/month, confidence {trend.confidence:.2f})")
    print(f"  Forecast next month: ${forecast.predicted_spend:,.2f} (confidence {forecast.confidence:.2f})")
    for factor in forecast.factors:
        print(f"    - {factor}")

    if drifts:
        print("\n  Category Drift:")
        print("  " + "-" * 60)
        for d in drifts:
            print(f"    {d.category:30s}  {d.change_percent:+.1f}%  {d.trend}")

    print(f"\n  Recurring Payments: {recurring['active']} active, "
          f"${recurring['monthly_total']:,.2f}/month, {recurring['price_alerts']} price alerts")
    for p in payments:
        print(f"    {p.merchant_standardised:30s}  {p.pattern:12s}  ${p.expected_amount:>10,.2f}")

    flag_counts = {}
    for r in result.results:
        for flag in r.anomalies_detected:
            flag_counts[flag] = flag_counts.get(flag, 0) + 1
    print("\n  Anomalies:")
    print("  " + "-" * 60)
    if not flag_counts:
        print("    None")
    for flag, count in sorted(flag_counts.items()):
        print(f"    {flag:30s}  {count:>5,}")

    print("=" * 80 + "\n")


if __name__ == "__main__":
    main()
