"""
rules.py
---------
Deterministic rule layer of the categorisation chain.

Each rule is a named matcher over the transaction's merchant text
(merchant_standardised, falling back to description) plus a target category.
Rules are evaluated highest priority first and the first match wins.

Priority bands:
    100  Specific merchants (supermarkets, fuel, telcos, streaming...)
     90  Broad retailers that overlap a specific rule (Amazon retail)
     80  Pattern rules (utilities, transfers, income, fees)
     50  Generic venue words (restaurant, bar, parking)
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from core.models import CategorisationResult, UnifiedTransaction
from config.config_loader import get_categorisation_config

logger = logging.getLogger(__name__)

Matcher = Callable[[UnifiedTransaction], bool]


@dataclass(frozen=True)
class CategorisationRule:
    id: str
    name: str
    priority: int                    # Higher = checked first
    matcher: Matcher
    level1: str
    level2: Optional[str] = None
    subcategory: Optional[str] = None


def _text(tx: UnifiedTransaction) -> str:
    return tx.merchant_standardised or tx.description or ""


def match(
    pattern: str,
    exclude: str | None = None,
    require: str | None = None,
    direction: str | None = None,
) -> Matcher:
    """
    Builds a case-insensitive matcher.

    Args:
        pattern: Regex that must be found in the merchant text.
        exclude: Regex that must NOT be found.
        require: Second regex that must also be found.
        direction: "IN" or "OUT" constraint on the transaction.
    """
    include_re = re.compile(pattern, re.IGNORECASE)
    exclude_re = re.compile(exclude, re.IGNORECASE) if exclude else None
    require_re = re.compile(require, re.IGNORECASE) if require else None

    def _matcher(tx: UnifiedTransaction) -> bool:
        text = _text(tx)
        if not include_re.search(text):
            return False
        if exclude_re and exclude_re.search(text):
            return False
        if require_re and not require_re.search(text):
            return False
        if direction and tx.direction != direction:
            return False
        return True

    return _matcher


def _rule(rule_id, name, priority, matcher, level1, level2=None, subcategory=None) -> CategorisationRule:
    return CategorisationRule(rule_id, name, priority, matcher, level1, level2, subcategory)


# =============================================================================
# RULE TABLE
# =============================================================================

CATEGORISATION_RULES: list[CategorisationRule] = [
    # --- Supermarkets ---
    _rule("grocery_woolworths", "Woolworths Supermarket", 100,
          match(r"woolworths|woolies", exclude=r"woolworths\s*(petrol|fuel|metro)"),
          "Food & Dining", "Groceries"),
    _rule("grocery_coles", "Coles Supermarket", 100,
          match(r"\bcoles\b", exclude=r"coles\s*(express|fuel)"),
          "Food & Dining", "Groceries"),
    _rule("grocery_aldi", "ALDI", 100, match(r"\baldi\b"), "Food & Dining", "Groceries"),
    _rule("grocery_iga", "IGA", 100, match(r"\biga\b"), "Food & Dining", "Groceries"),

    # --- Fast food ---
    _rule("fastfood_mcdonalds", "McDonald's", 100, match(r"mcdonald|maccas"), "Food & Dining", "Fast Food"),
    _rule("fastfood_kfc", "KFC", 100, match(r"\bkfc\b"), "Food & Dining", "Fast Food"),
    _rule("fastfood_hungryjacks", "Hungry Jack's", 100, match(r"hungry\s*jack"), "Food & Dining", "Fast Food"),
    _rule("fastfood_subway", "Subway", 100, match(r"\bsubway\b"), "Food & Dining", "Fast Food"),

    # --- Coffee ---
    _rule("coffee_starbucks", "Starbucks", 100, match(r"starbucks"), "Food & Dining", "Coffee & Cafes"),

    # --- Food delivery ---
    _rule("delivery_ubereats", "Uber Eats", 100, match(r"uber\s*eats"), "Food & Dining", "Food Delivery"),
    _rule("delivery_doordash", "DoorDash", 100, match(r"doordash"), "Food & Dining", "Food Delivery"),
    _rule("delivery_menulog", "Menulog", 100, match(r"menulog"), "Food & Dining", "Food Delivery"),

    # --- Fuel ---
    _rule("fuel_bp", "BP", 100, match(r"\bbp\b"), "Transport", "Fuel"),
    _rule("fuel_shell", "Shell", 100, match(r"\bshell\b"), "Transport", "Fuel"),
    _rule("fuel_caltex", "Caltex", 100, match(r"caltex|ampol"), "Transport", "Fuel"),
    _rule("fuel_7eleven", "7-Eleven Fuel", 100, match(r"7.?eleven"), "Transport", "Fuel"),

    # --- Rideshare ---
    _rule("rideshare_uber", "Uber", 100, match(r"\buber\b", exclude=r"uber\s*eats"), "Transport", "Rideshare"),
    _rule("rideshare_didi", "DiDi", 100, match(r"\bdidi\b"), "Transport", "Rideshare"),

    # --- Streaming ---
    _rule("streaming_netflix", "Netflix", 100, match(r"netflix"), "Entertainment", "Streaming Services"),
    _rule("streaming_spotify", "Spotify", 100, match(r"spotify"), "Entertainment", "Streaming Services"),
    _rule("streaming_disney", "Disney+", 100, match(r"disney"), "Entertainment", "Streaming Services"),
    _rule("streaming_stan", "Stan", 100, match(r"\bstan\b"), "Entertainment", "Streaming Services"),
    _rule("streaming_amazon", "Amazon Prime", 100, match(r"amazon\s*(prime|video)"),
          "Entertainment", "Streaming Services"),

    # --- Retail ---
    _rule("retail_kmart", "Kmart", 100, match(r"\bkmart\b"), "Shopping", "Department Stores"),
    _rule("retail_target", "Target", 100, match(r"\btarget\b"), "Shopping", "Department Stores"),
    _rule("retail_bigw", "Big W", 100, match(r"big\s*w"), "Shopping", "Department Stores"),
    _rule("retail_jbhifi", "JB Hi-Fi", 100, match(r"jb\s*hi.?fi"), "Shopping", "Electronics"),
    _rule("retail_bunnings", "Bunnings", 100, match(r"bunnings"), "Shopping", "Home & Garden"),
    _rule("retail_amazon", "Amazon", 90, match(r"\bamazon\b", exclude=r"amazon\s*(prime|video)"),
          "Shopping", "Online Shopping"),

    # --- Telcos ---
    _rule("telco_telstra", "Telstra", 100, match(r"telstra"), "Bills & Utilities", "Mobile Phone"),
    _rule("telco_optus", "Optus", 100, match(r"optus"), "Bills & Utilities", "Mobile Phone"),
    _rule("telco_vodafone", "Vodafone", 100, match(r"vodafone"), "Bills & Utilities", "Mobile Phone"),

    # --- Health ---
    _rule("health_medibank", "Medibank", 100, match(r"medibank"), "Health", "Health Insurance"),
    _rule("health_bupa", "Bupa", 100, match(r"\bbupa\b"), "Health", "Health Insurance"),
    _rule("health_hcf", "HCF", 100, match(r"\bhcf\b"), "Health", "Health Insurance"),
    _rule("health_chemistwarehouse", "Chemist Warehouse", 100, match(r"chemist\s*warehouse"), "Health", "Pharmacy"),
    _rule("health_priceline", "Priceline Pharmacy", 100, match(r"priceline"), "Health", "Pharmacy"),
    _rule("fitness_anytime", "Anytime Fitness", 100, match(r"anytime\s*fitness"), "Health", "Fitness & Gym"),
    _rule("fitness_f45", "F45", 100, match(r"\bf45\b"), "Health", "Fitness & Gym"),

    # --- Utilities ---
    _rule("utility_electricity", "Electricity", 80,
          match(r"(energy|power|electricity|agl|origin\s*energy|ergon|ausgrid)"),
          "Bills & Utilities", "Electricity"),
    _rule("utility_gas", "Gas", 80, match(r"\b(gas|alinta)\b", exclude=r"fuel|petrol"),
          "Bills & Utilities", "Gas"),
    _rule("utility_water", "Water", 80,
          match(r"(water\s*corp|sydney\s*water|sa\s*water|urban\s*utilities)"),
          "Bills & Utilities", "Water"),
    _rule("utility_internet", "Internet", 80,
          match(r"(nbn|tpg|iinet|aussie\s*broadband|internode)"),
          "Bills & Utilities", "Internet"),

    # --- Insurance ---
    _rule("insurance_car", "Car Insurance", 80,
          match(r"(nrma|racq|rac|racv|allianz|suncorp|aami|budget\s*direct)", require=r"insurance|motor|car"),
          "Transport", "Registration & Insurance"),
    _rule("insurance_home", "Home Insurance", 80,
          match(r"(nrma|allianz|suncorp|aami|budget\s*direct)", require=r"home|contents|building"),
          "Housing", "Home Insurance"),

    # --- Public transport ---
    _rule("transport_opal", "Opal Card", 80, match(r"opal"), "Transport", "Public Transport"),
    _rule("transport_myki", "Myki", 80, match(r"myki"), "Transport", "Public Transport"),
    _rule("transport_gocard", "Go Card", 80, match(r"go\s*card"), "Transport", "Public Transport"),

    # --- Cash ---
    _rule("atm_withdrawal", "ATM Withdrawal", 80, match(r"\batm\b|cash\s*withdrawal", direction="OUT"),
          "Cash & ATM", "ATM Withdrawal"),

    # --- Transfers ---
    _rule("transfer_bpay", "BPAY", 80, match(r"\bbpay\b"), "Transfers", "BPAY"),
    _rule("transfer_internal", "Internal Transfer", 80, match(r"(transfer|tfr|trf)\s*(to|from|between)"),
          "Transfers", "Internal Transfer"),
    _rule("transfer_osko", "Osko/PayID", 80, match(r"\bosko\b|payid"), "Transfers", "Pay Someone"),

    # --- Interest and fees ---
    _rule("financial_interest", "Interest Payment", 80, match(r"interest\s*(payment|charged|debit)"),
          "Financial", "Interest Payments"),
    _rule("financial_bankfee", "Bank Fee", 80, match(r"(bank|account|monthly|annual)\s*fee"),
          "Financial", "Bank Fees"),

    # --- Income ---
    _rule("income_salary", "Salary", 80, match(r"salary|wages|payroll", direction="IN"), "Income", "Salary"),
    _rule("income_dividend", "Dividend", 80, match(r"dividend|distribution", direction="IN"), "Income", "Dividends"),
    _rule("income_interest", "Interest Earned", 80, match(r"interest\s*(earned|credit|received)", direction="IN"),
          "Income", "Interest Earned"),
    _rule("income_centrelink", "Government Benefits", 80, match(r"centrelink|services\s*australia", direction="IN"),
          "Income", "Government Benefits"),

    # --- Generic ---
    _rule("generic_restaurant", "Restaurant", 50, match(r"(restaurant|bistro|grill|diner|cafe|eatery)"),
          "Food & Dining", "Restaurants"),
    _rule("generic_bar", "Bar/Pub", 50, match(r"\b(bar|pub|tavern|hotel|brewery|bottleshop|liquor)"),
          "Food & Dining", "Alcohol & Bars"),
    _rule("generic_parking", "Parking", 50, match(r"(parking|car\s*park|wilson\s*parking|secure\s*parking)"),
          "Transport", "Parking"),
]


def sort_rules(rules: Sequence[CategorisationRule]) -> list[CategorisationRule]:
    """Highest priority first. Ties keep table order."""
    return sorted(rules, key=lambda r: -r.priority)


SORTED_RULES: list[CategorisationRule] = sort_rules(CATEGORISATION_RULES)


# =============================================================================
# EVALUATION
# =============================================================================

def categorise_by_rules(
    tx: UnifiedTransaction, rules: Sequence[CategorisationRule] = SORTED_RULES
) -> Optional[CategorisationResult]:
    """
    Returns the first matching rule's category, or None.

    `rules` must already be in evaluation order. A matcher that raises is
    treated as no match.
    """
    for rule in rules:
        try:
            matched = rule.matcher(tx)
        except Exception as e:
            logger.debug(f"Rule {rule.id} failed on {tx.id}: {e}")
            continue

        if matched:
            return CategorisationResult(
                category_level1=rule.level1,
                category_level2=rule.level2,
                subcategory=rule.subcategory,
                confidence=get_categorisation_config()["rule_confidence"],
                source="RULE",
                rule_matched=rule.id,
            )

    return None
