from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from billing.errors import MissingCurrency

logger = logging.getLogger(__name__)

# ISO 4217 codes offered to companies and customers.
SUPPORTED_CURRENCIES = frozenset({
    "USD", "CAD", "MXN",
    "EUR", "GBP", "CHF", "SEK", "NOK", "DKK", "PLN",
    "AUD", "NZD",
    "JPY", "CNY", "KRW", "SGD", "HKD", "INR", "MYR", "THB", "IDR", "PHP", "VND",
    "AED", "SAR", "ILS", "BHD", "KWD", "OMR", "JOD", "TND",
    "BRL", "ARS", "CLP", "COP",
    "ZAR", "NGN", "EGP",
    "RUB", "TRY",
})

ZERO_DECIMAL = frozenset({"JPY", "KRW", "IDR", "VND", "CLP"})
THREE_DECIMAL = frozenset({"BHD", "KWD", "OMR", "JOD", "TND"})


def normalize_currency(code: Optional[str]) -> Optional[str]:
    """Upper-cased code if it is a supported ISO 4217 currency, else None."""
    if not code:
        return None
    code = str(code).strip().upper()
    return code if code in SUPPORTED_CURRENCIES else None


def is_valid_currency(code: Optional[str]) -> bool:
    return normalize_currency(code) is not None


def currency_decimals(code: Optional[str]) -> int:
    code = (code or "").upper()
    if code in ZERO_DECIMAL:
        return 0
    if code in THREE_DECIMAL:
        return 3
    return 2


def round_money(amount: Union[Decimal, int, str], code: Optional[str]) -> Decimal:
    exponent = Decimal(1).scaleb(-currency_decimals(code))
    return Decimal(amount).quantize(exponent, rounding=ROUND_HALF_UP)


def resolve_currency(
    customer_currency: Optional[str] = None,
    company_currency: Optional[str] = None,
    requested_currency: Optional[str] = None,
    current: Optional[str] = None,
) -> str:
    """
    Default-fill the currency of a document.

    requested (if valid) > current value > customer preference > company default.
    A value already on the document is only replaced by an explicit request,
    so resolving again with the same inputs never changes the result.
    """
    if requested_currency:
        requested = normalize_currency(requested_currency)
        if requested:
            return requested
        logger.warning("Ignoring unsupported requested currency %r", requested_currency)

    for candidate in (current, customer_currency, company_currency):
        code = normalize_currency(candidate)
        if code:
            return code

    raise MissingCurrency(
        customer_currency=customer_currency,
        company_currency=company_currency,
        requested_currency=requested_currency,
    )
