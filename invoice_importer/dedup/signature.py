"""Stable identity of an invoice line item.

Two items with the same signature are the same real-world transaction. Signatures are
derived on demand and never stored.
"""

import hashlib
import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

SIGNATURE_DELIMITER = "\x1f"
DEFAULT_AMOUNT = "0.00"
TWO_PLACES = Decimal("0.01")
WHITESPACE_PATTERN = re.compile(r"\s+")

FEE_KEYWORDS = (
    "iof",
    "taxa",
    "tarifa",
    "fee",
    "charge",
    "cobrança",
    "despesa no exterior",
    "foreign transaction",
    "international fee",
    "currency conversion",
)


def normalize_description(description: str | None) -> str:
    """Lower-case, trim and collapse whitespace runs to a single space."""
    if description is None:
        return ""
    return WHITESPACE_PATTERN.sub(" ", description.strip().lower())


def normalize_amount(amount: Decimal | int | str | None) -> str:
    """Render an amount with exactly two decimals, rounding half up; negative zero reads as zero."""
    if amount is None:
        return DEFAULT_AMOUNT
    value = Decimal(amount).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    if value.is_zero():
        value = value.copy_abs()
    return str(value)


def is_fee_like(description: str | None) -> bool:
    """Return True for fees and taxes, which get relaxed duplicate matching."""
    normalized = normalize_description(description)
    if not normalized:
        return False
    return any(keyword in normalized for keyword in FEE_KEYWORDS)


def compute_signature(
    description: str | None,
    amount: Decimal | None,
    purchase_date: date | None,
    installment: int,
    total_installments: int,
) -> str:
    """Hash the normalized identity fields of an item into a hex digest.

    Fee-like items are signed with their (usually defaulted) date like any other item,
    so the same fee charged on different days yields different signatures.
    """
    base = SIGNATURE_DELIMITER.join(
        (
            normalize_description(description),
            normalize_amount(amount),
            purchase_date.isoformat() if purchase_date else "",
            str(int(installment)),
            str(int(total_installments)),
        )
    )
    return hashlib.sha256(base.encode("utf-8")).hexdigest()
