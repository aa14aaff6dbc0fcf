"""Raw-text heuristics shared by the decision and learning engines."""
import logging
import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

VAT_INCLUDED_INDICATORS = ("incl", "inkl", "included", "already included")

CURRENCY_PATTERN = re.compile(r"\b(EUR|USD|GBP|CHF)\b", re.IGNORECASE)

# gates the discount handler
SKONTO_PATTERN = re.compile(r"(\d+)%\s*skonto.*?(\d+)\s*days", re.IGNORECASE)

# captured by the learning engine as the vendor's canonical terms
SKONTO_TERMS_PATTERN = re.compile(r"(\d+%\s*skonto.*?\d+\s*days)", re.IGNORECASE)

DOTTED_DATE = r"(\d{1,2}\.\d{1,2}\.(?:\d{4}|\d{2}))(?!\d)"

# two unrelated fallbacks; a date that parses differently under each is partial
PARTIAL_DATE_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))

CENT = Decimal("0.01")


def find_labelled_date(raw_text: str, label: str) -> Optional[str]:
    """Find ``<label>: DD.MM.YYYY`` in raw text and return it as ISO."""
    if not raw_text or not label:
        return None

    match = re.search(re.escape(label) + r":\s*" + DOTTED_DATE, raw_text, re.IGNORECASE)
    if not match:
        return None
    return dotted_to_iso(match.group(1))


def dotted_to_iso(token: str) -> str:
    parts = token.split(".")
    if len(parts) != 3:
        return token

    day, month, year = parts
    if len(year) == 2:
        year = f"20{year}"
    return f"{year}-{month.zfill(2)}-{day.zfill(2)}"


def mentions_vat_included(raw_text: str) -> bool:
    text = (raw_text or "").lower()
    return any(indicator in text for indicator in VAT_INCLUDED_INDICATORS)


def find_currency(raw_text: str) -> Optional[str]:
    match = CURRENCY_PATTERN.search(raw_text or "")
    return match.group(1).upper() if match else None


def has_skonto_terms(raw_text: str) -> bool:
    return SKONTO_PATTERN.search(raw_text or "") is not None


def extract_skonto_terms(raw_text: str) -> Optional[str]:
    match = SKONTO_TERMS_PATTERN.search(raw_text or "")
    return match.group(1) if match else None


def round_cents(value: float) -> float:
    """Round half-up to two decimals (2016.805 -> 2016.81)."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def parse_invoice_date(value: Optional[str]) -> Optional[date]:
    """ISO dates first, then day-first formats such as 15.01.2024 or 05-02-2024.

    Partial dates ("2024", "15", "March") are unusable and return None.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass

    try:
        parsed = {
            date_parser.parse(text, dayfirst=True, default=default).date()
            for default in PARTIAL_DATE_DEFAULTS
        }
    except (ValueError, OverflowError) as e:
        logger.debug(f"Could not parse invoice date {value!r}: {e}")
        return None

    if len(parsed) != 1:
        logger.debug(f"Ignoring partial invoice date {value!r}")
        return None
    return parsed.pop()


def days_between(later: Optional[str], earlier: Optional[str]) -> Optional[int]:
    """Signed day difference ``later - earlier``; None if either date is unusable."""
    later_date = parse_invoice_date(later)
    earlier_date = parse_invoice_date(earlier)
    if later_date is None or earlier_date is None:
        return None
    return (later_date - earlier_date).days
