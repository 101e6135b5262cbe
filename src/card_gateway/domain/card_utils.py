"""Card number helpers: Luhn validation, brand detection, masking."""

import re
from datetime import datetime
from typing import Any

from card_gateway.domain.timeutils import utcnow

_NON_DIGITS = re.compile(r"\D")


def normalize_card_number(card_number: str) -> str:
    """Strip spaces, dashes and any other non-digit characters."""
    return _NON_DIGITS.sub("", card_number or "")


def is_valid_card_number(card_number: str) -> bool:
    """Validate a card number with the Luhn checksum.

    Args:
        card_number: Card number, separators allowed

    Returns:
        True if the number has 13-19 digits and passes the Luhn check
    """
    digits = normalize_card_number(card_number)
    if len(digits) < 13 or len(digits) > 19:
        return False

    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit

    return total % 10 == 0


def detect_card_brand(card_number: str) -> str:
    """Detect card brand from card number.

    Uses industry-standard card number prefixes to detect brand.

    Args:
        card_number: Full card number

    Returns:
        Card brand name (lowercase), "unknown" when no prefix matches
    """
    digits = normalize_card_number(card_number)

    if not digits:
        return "unknown"

    # Visa: starts with 4
    if digits.startswith("4"):
        return "visa"

    # Mastercard: 51-55 or 2221-2720
    if re.match(r"^5[1-5]", digits) or re.match(r"^2(2[2-9][1-9]|[3-6]\d{2}|7[01]\d|720)", digits):
        return "mastercard"

    # Amex: 34 or 37
    if re.match(r"^3[47]", digits):
        return "amex"

    # Diners: 300-305, 36, 38
    if re.match(r"^3(0[0-5]|[68])", digits):
        return "diners"

    # Discover: 6011 or 65
    if re.match(r"^6(011|5)", digits):
        return "discover"

    # JCB: 35, 2131, 1800
    if re.match(r"^(35|2131|1800)", digits):
        return "jcb"

    return "unknown"


def mask_card_number(card_number: str) -> str:
    """Keep only the last four digits visible."""
    digits = normalize_card_number(card_number)
    return f"****{digits[-4:]}"


def is_valid_expiration(month: int, year: int, now: datetime | None = None) -> bool:
    """Check that an expiration date is a real month not in the past.

    Two-digit years are read as 20YY. A card expiring this month is still valid.
    """
    if month < 1 or month > 12:
        return False

    now = now or utcnow()
    full_year = 2000 + year if year < 100 else year

    if full_year < now.year:
        return False
    if full_year == now.year and month < now.month:
        return False
    return True


REDACTED = "[REDACTED]"

# Keys whose values never reach a log sink, matched case-insensitively
SENSITIVE_KEYS = frozenset(
    {
        "card_number",
        "number",
        "card_cvv",
        "cvv",
        "cvc",
        "security_code",
        "security_token",
        "password",
        "secret",
        "secret_key",
        "webhook_secret",
        "api_key",
        "access_token",
        "authorization",
        "tbk-api-key-secret",
    }
)


def sanitize_for_log(data: Any) -> Any:
    """Return a copy of ``data`` with card data and credentials masked at any depth."""
    if isinstance(data, dict):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else sanitize_for_log(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(sanitize_for_log(item) for item in data)
    return data
