from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field

from .common import DocumentType, TimeStamped, gen_id, utcnow
from .customer import CustomerSnapshot

QuotationStatus = Literal["draft", "sent", "accepted", "rejected", "expired", "converted"]
InvoiceStatus = Literal["draft", "sent", "paid", "partially_paid", "overdue", "cancelled"]
NoteStatus = Literal["draft", "sent", "applied"]

SnapshotState = Literal["draft", "current", "frozen"]

# Fields a caller may never set: identity, numbering and derived totals.
SYSTEM_FIELDS = frozenset({
    "id", "company_id", "document_type", "document_number", "status", "version",
    "audit_history", "created_at", "updated_at", "created_by",
    "subtotal", "total_tax", "total", "tax_breakdown",
    "payment_status", "converted_invoice_id", "quotation_id",
})


class LineItem(BaseModel):
    product_id: Optional[str] = None
    name: str = ""
    description: str = ""
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)

    # derived, recomputed on every write
    subtotal: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class TaxBreakdown(BaseModel):
    rate: Decimal
    amount: Decimal


class FieldChange(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class AuditEntry(BaseModel):
    id: str = Field(default_factory=gen_id)
    timestamp: dt.datetime = Field(default_factory=utcnow)
    reason: str
    changes: List[FieldChange] = Field(default_factory=list)
    updated_by: Optional[str] = None


class Payment(BaseModel):
    id: str = Field(default_factory=gen_id)
    amount: Decimal = Field(gt=0)
    payment_date: dt.date = Field(default_factory=dt.date.today)
    method: Optional[str] = None  # bank_transfer, card, cash, credit_note...
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentStatus(BaseModel):
    amount_paid: Decimal = Decimal("0")
    amount_due: Decimal = Decimal("0")
    adjustments: Decimal = Decimal("0")  # applied debit notes
    payments: List[Payment] = Field(default_factory=list)


class Document(TimeStamped):
    id: str = Field(default_factory=gen_id)
    company_id: str
    document_type: DocumentType
    document_number: str
    status: str = "draft"

    customer_id: Optional[str] = None
    customer_snapshot: Optional[CustomerSnapshot] = None

    date: dt.date = Field(default_factory=dt.date.today)
    items: List[LineItem] = Field(default_factory=list)
    currency: Optional[str] = None

    subtotal: Decimal = Decimal("0")
    total_tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    tax_breakdown: List[TaxBreakdown] = Field(default_factory=list)

    notes: Optional[str] = None
    audit_history: List[AuditEntry] = Field(default_factory=list)
    created_by: Optional[str] = None

    @property
    def is_draft(self) -> bool:
        return self.status == "draft"

    @property
    def snapshot_state(self) -> SnapshotState:
        # Derived on read: a stored flag would drift from audit_history.
        if self.status == "draft":
            return "draft"
        return "current" if self.audit_history else "frozen"


class Quotation(Document):
    document_type: Literal["quotation"] = "quotation"
    status: QuotationStatus = "draft"
    valid_until: Optional[dt.date] = None
    terms_and_conditions: Optional[str] = None
    converted_invoice_id: Optional[str] = None


class Invoice(Document):
    document_type: Literal["invoice"] = "invoice"
    status: InvoiceStatus = "draft"
    due_date: Optional[dt.date] = None
    terms_and_conditions: Optional[str] = None
    quotation_id: Optional[str] = None
    payment_status: PaymentStatus = Field(default_factory=PaymentStatus)


class CreditNote(Document):
    document_type: Literal["credit_note"] = "credit_note"
    status: NoteStatus = "draft"
    invoice_id: Optional[str] = None
    reason: Optional[str] = None


class DebitNote(Document):
    document_type: Literal["debit_note"] = "debit_note"
    status: NoteStatus = "draft"
    invoice_id: Optional[str] = None
    reason: Optional[str] = None


DOCUMENT_MODELS: Dict[str, Type[Document]] = {
    "quotation": Quotation,
    "invoice": Invoice,
    "credit_note": CreditNote,
    "debit_note": DebitNote,
}

COLLECTION_NAMES: Dict[str, str] = {
    "quotation": "quotations",
    "invoice": "invoices",
    "credit_note": "credit_notes",
    "debit_note": "debit_notes",
}


def document_model(document_type: str) -> Type[Document]:
    try:
        return DOCUMENT_MODELS[document_type]
    except KeyError:
        raise ValueError(f"Unknown document type '{document_type}'") from None


def editable_fields(document_type: str) -> frozenset:
    return frozenset(document_model(document_type).model_fields) - SYSTEM_FIELDS
