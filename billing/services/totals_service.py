from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError

from billing.errors import ValidationError
from billing.models.document import LineItem, TaxBreakdown
from billing.services.currency_service import round_money

HUNDRED = Decimal("100")


class DocumentTotals(NamedTuple):
    subtotal: Decimal
    total_tax: Decimal
    total: Decimal
    tax_breakdown: List[TaxBreakdown]


def parse_items(raw_items: Iterable[Union[LineItem, Mapping[str, Any]]]) -> List[LineItem]:
    """
    Validate caller input into LineItem objects.
    Derived amounts sent by the caller are dropped: they are never authoritative.
    """
    out: List[LineItem] = []
    for idx, raw in enumerate(raw_items or []):
        data = raw.model_dump() if isinstance(raw, LineItem) else dict(raw)
        for derived in ("subtotal", "tax_amount", "total"):
            data.pop(derived, None)
        try:
            out.append(LineItem.model_validate(data))
        except PydanticValidationError as e:
            problems = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ValidationError("Invalid line item", index=idx, problems=problems) from e
    return out


def _exact(item: LineItem) -> tuple:
    subtotal = item.quantity * item.unit_price
    tax = subtotal * item.tax_rate / HUNDRED
    return subtotal, tax


def calculate_line(item: LineItem, currency: Optional[str]) -> LineItem:
    subtotal, tax = _exact(item)
    return item.model_copy(update={
        "subtotal": round_money(subtotal, currency),
        "tax_amount": round_money(tax, currency),
        "total": round_money(subtotal + tax, currency),
    })


def calculate_document(items: Sequence[LineItem], currency: Optional[str]) -> DocumentTotals:
    """
    total = round(sum(qty * price * (1 + rate/100))), rounded once at the end so
    per-line rounding never drifts the document total.
    total_tax is derived as total - subtotal to keep the three figures consistent.
    """
    subtotal = Decimal("0")
    tax = Decimal("0")
    by_rate: Dict[Decimal, Decimal] = {}
    for item in items:
        line_subtotal, line_tax = _exact(item)
        subtotal += line_subtotal
        tax += line_tax
        by_rate[item.tax_rate] = by_rate.get(item.tax_rate, Decimal("0")) + line_tax

    total = round_money(subtotal + tax, currency)
    rounded_subtotal = round_money(subtotal, currency)
    return DocumentTotals(
        subtotal=rounded_subtotal,
        total_tax=total - rounded_subtotal,
        total=total,
        tax_breakdown=[
            TaxBreakdown(rate=rate, amount=round_money(amount, currency))
            for rate, amount in sorted(by_rate.items())
        ],
    )


def price_items(
    raw_items: Iterable[Union[LineItem, Mapping[str, Any]]],
    currency: Optional[str],
) -> tuple[List[LineItem], DocumentTotals]:
    parsed = parse_items(raw_items)
    try:
        items = [calculate_line(it, currency) for it in parsed]
        return items, calculate_document(items, currency)
    except InvalidOperation as e:
        raise ValidationError("Line amounts out of range", currency=currency) from e


def totals_fields(items: List[LineItem], totals: DocumentTotals) -> Dict[str, Any]:
    """Field values to write on a document after pricing."""
    return {
        "items": items,
        "subtotal": totals.subtotal,
        "total_tax": totals.total_tax,
        "total": totals.total,
        "tax_breakdown": totals.tax_breakdown,
    }


def balance_due(
    total: Decimal,
    adjustments: Decimal,
    amount_paid: Decimal,
    currency: Optional[str],
) -> Decimal:
    """Outstanding amount on an invoice; never negative."""
    due = round_money(Decimal(total) + Decimal(adjustments) - Decimal(amount_paid), currency)
    return max(due, Decimal("0"))
