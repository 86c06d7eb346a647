"""Parsing helpers for extracted field values.

Extracted values arrive as free text ("$137,500.00", "March 3, 2025",
"Acme Corp."). These helpers turn them into comparable numbers, dates and
normalised strings for trigger evaluation, reconciliation and
de-duplication.
"""

import re
from datetime import date, datetime
from typing import Optional

from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

# Characters stripped before numeric parsing
AMOUNT_STRIP_PATTERN = re.compile(r"[,$%€£\s]")
NUMBER_PREFIX_PATTERN = re.compile(r"^[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")

PUNCTUATION_PATTERN = re.compile(r"[.,;:!?'\"()\-/\\]")
WHITESPACE_PATTERN = re.compile(r"\s+")

MONTH_NAMES = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

DATE_PATTERNS = [
    # 2025-03-14, 2025/03/14, optionally followed by a time component
    (re.compile(r"^(\d{4})[-/](\d{1,2})[-/](\d{1,2})(?:[T\s].*)?$"), "ymd"),
    # 03/14/2025, 03-14-2025
    (re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$"), "mdy"),
    # 14 March 2025, 14th Mar 2025
    (re.compile(r"^(\d{1,2})(?:st|nd|rd|th)?\s+([A-Za-z]+)\.?,?\s+(\d{4})$"), "dmy_text"),
    # March 14, 2025, Mar 14th 2025
    (re.compile(r"^([A-Za-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})$"), "mdy_text"),
]


def parse_amount(value: Optional[str]) -> Optional[float]:
    """Parse a numeric value, stripping currency symbols, percent signs and commas.

    Like ``parseFloat`` the leading numeric prefix is used, so
    ``"250000 USD"`` parses as 250000.

    Args:
        value: Raw extracted value

    Returns:
        float or None if no number could be read
    """
    if value is None:
        return None

    cleaned = AMOUNT_STRIP_PATTERN.sub("", str(value))
    match = NUMBER_PREFIX_PATTERN.match(cleaned)
    if not match:
        return None

    try:
        return float(match.group(0))
    except ValueError:
        LOGGER.debug(f"Failed to parse numeric value: {value}")
        return None


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse a calendar date from common written formats.

    Handles:
    - ISO dates and timestamps: 2025-03-14, 2025-03-14T09:00:00Z
    - US numeric dates: 03/14/2025
    - Written dates: 14 March 2025, March 14, 2025

    Args:
        value: Raw extracted value

    Returns:
        date or None if the value is not a recognisable date
    """
    if not value:
        return None

    text = str(value).strip()

    for pattern, format_type in DATE_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue

        try:
            if format_type == "ymd":
                year, month, day = match.groups()
                return date(int(year), int(month), int(day))

            if format_type == "mdy":
                month, day, year = match.groups()
                return date(int(year), int(month), int(day))

            if format_type == "dmy_text":
                day, month_name, year = match.groups()
                month = MONTH_NAMES.get(month_name.lower())
                if month:
                    return date(int(year), month, int(day))

            if format_type == "mdy_text":
                month_name, day, year = match.groups()
                month = MONTH_NAMES.get(month_name.lower())
                if month:
                    return date(int(year), month, int(day))

        except ValueError as e:
            LOGGER.debug(f"Failed to parse date: {text}", extra={"error": str(e)})
            return None

    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        LOGGER.debug(f"Could not parse date: {text}")
        return None


def normalize_text(value: Optional[str]) -> str:
    """Lower-case, strip punctuation and collapse whitespace."""
    if not value:
        return ""
    lowered = str(value).strip().lower()
    return WHITESPACE_PATTERN.sub(" ", PUNCTUATION_PATTERN.sub("", lowered)).strip()
