from __future__ import annotations

from typing import Any, Dict, List, Optional

from billing.models.customer import Customer, CustomerSnapshot
from billing.models.document import AuditEntry, Document, FieldChange

# Fields whose change on a non-draft document must go through an amendment.
FINANCIAL_FIELDS = ("items", "currency", "customer_snapshot", "date")

# Item fields a user types in; subtotal/tax_amount/total follow from them.
ITEM_INPUT_FIELDS = ("product_id", "name", "description", "quantity", "unit_price", "tax_rate")


def create_snapshot(customer: Customer) -> CustomerSnapshot:
    return CustomerSnapshot(
        name=customer.name,
        email=customer.email,
        phone=customer.phone,
        address=customer.address.model_copy() if customer.address else None,
        country=customer.country,
        tax_id=customer.tax_id,
    )


def _diff(path: str, old: Any, new: Any, out: List[FieldChange]) -> None:
    if isinstance(old, dict) or isinstance(new, dict):
        old_d = old if isinstance(old, dict) else {}
        new_d = new if isinstance(new, dict) else {}
        if not old_d or not new_d:
            if old != new:
                out.append(FieldChange(field=path, old_value=old, new_value=new))
            return
        for key in list(old_d) + [k for k in new_d if k not in old_d]:
            _diff(f"{path}.{key}", old_d.get(key), new_d.get(key), out)
        return
    if isinstance(old, list) and isinstance(new, list):
        for i in range(max(len(old), len(new))):
            o = old[i] if i < len(old) else None
            n = new[i] if i < len(new) else None
            _diff(f"{path}[{i}]", o, n, out)
        return
    if old != new:
        out.append(FieldChange(field=path, old_value=old, new_value=new))


def _financial_view(doc: Document) -> Dict[str, Any]:
    data = doc.model_dump(mode="json", include=set(FINANCIAL_FIELDS))
    data["items"] = [
        {k: it.get(k) for k in ITEM_INPUT_FIELDS} for it in data.get("items") or []
    ]
    return data


def compare_snapshots(
    old: Optional[CustomerSnapshot], new: Optional[CustomerSnapshot]
) -> List[FieldChange]:
    changes: List[FieldChange] = []
    _diff(
        "customer_snapshot",
        old.model_dump(mode="json") if old else None,
        new.model_dump(mode="json") if new else None,
        changes,
    )
    return changes


def diff_documents(old: Document, new: Document) -> List[FieldChange]:
    """Field-level changes of the financial fields, plus the resulting total."""
    changes: List[FieldChange] = []
    before, after = _financial_view(old), _financial_view(new)
    for field in FINANCIAL_FIELDS:
        _diff(field, before.get(field), after.get(field), changes)
    if changes and old.total != new.total:
        changes.append(FieldChange(field="total", old_value=str(old.total), new_value=str(new.total)))
    return changes


def build_entry(reason: str, changes: List[FieldChange], updated_by: Optional[str] = None) -> AuditEntry:
    return AuditEntry(reason=reason, changes=changes, updated_by=updated_by)
