from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from billing.errors import InvalidTransition, ValidationError
from billing.models.document import Document, Invoice, Payment, Quotation
from billing.services.currency_service import round_money
from billing.services.document_service import DocumentService
from billing.services.status_service import INVOICE_FLOW, check_transition
from billing.services.totals_service import balance_due

logger = logging.getLogger(__name__)

# Invoice states that still accept money or adjustments.
OPEN_INVOICE_STATES = frozenset({"sent", "partially_paid", "overdue"})


class WorkflowService:
    """Operations spanning several documents: conversion, payments, notes, due dates."""

    def __init__(self, documents: DocumentService) -> None:
        self.documents = documents
        self.store = documents.store

    # ---------- Quotation -> Invoice ---------- #

    def convert_quotation(
        self,
        company_id: str,
        quotation_id: str,
        expected_version: int,
        created_by: Optional[str] = None,
    ) -> Tuple[Quotation, Invoice]:
        """
        Accepted quotation -> new draft invoice carrying the same items,
        currency and customer snapshot. The quotation becomes ``converted``.
        """
        with self.store.atomic():
            q = self.documents.get_document("quotation", company_id, quotation_id)
            self.documents.check_version(q, expected_version)
            check_transition(q, "converted")

            inv = self.documents.create_document(
                "invoice",
                company_id,
                items=[it.model_dump() for it in q.items],
                customer_id=q.customer_id,
                requested_currency=q.currency,
                customer_snapshot=q.customer_snapshot,
                quotation_id=q.id,
                created_by=created_by,
                notes=q.notes,
                terms_and_conditions=q.terms_and_conditions,
            )
            q = self.documents.move(q, "converted", expected_version, converted_invoice_id=inv.id)

        logger.info("Converted quotation %s into invoice %s", q.document_number, inv.document_number)
        return q, inv

    # ---------- Payments ---------- #

    def record_payment(
        self,
        company_id: str,
        invoice_id: str,
        amount: Union[Decimal, int, str],
        expected_version: int,
        *,
        payment_date: Optional[date] = None,
        method: Optional[str] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        allow_overpayment: Optional[bool] = None,
    ) -> Invoice:
        """
        Add a payment to an open invoice and move it to ``partially_paid`` or
        ``paid`` from the resulting balance.
        """
        with self.store.atomic():
            inv = self.documents.get_document("invoice", company_id, invoice_id)
            self.documents.check_version(inv, expected_version)
            if inv.status not in OPEN_INVOICE_STATES:
                raise InvalidTransition(
                    inv.status, "paid", document_id=inv.id, allowed=sorted(INVOICE_FLOW.allowed(inv.status))
                )

            try:
                payment = Payment(
                    amount=round_money(str(amount), inv.currency),
                    payment_date=payment_date or date.today(),
                    method=method,
                    reference=reference,
                    notes=notes,
                )
            except InvalidOperation as e:
                raise ValidationError("Invalid payment amount", amount=amount) from e
            except PydanticValidationError as e:
                raise ValidationError("Invalid payment", problems=[err["msg"] for err in e.errors()]) from e

            ps = inv.payment_status
            if allow_overpayment is None:
                allow_overpayment = self.documents.get_company(company_id).settings.allow_overpayment
            if not allow_overpayment and payment.amount > ps.amount_due:
                raise ValidationError(
                    "Payment exceeds amount due", amount=str(payment.amount), amount_due=str(ps.amount_due)
                )

            paid = ps.amount_paid + payment.amount
            due = balance_due(inv.total, ps.adjustments, paid, inv.currency)
            target = "paid" if due <= 0 else "partially_paid"
            new_status = ps.model_copy(update={
                "amount_paid": paid,
                "amount_due": due,
                "payments": [*ps.payments, payment],
            })

            if target == inv.status:
                updated = self.documents.save(
                    inv.model_copy(update={"payment_status": new_status}), expected_version
                )
            else:
                updated = self.documents.move(inv, target, expected_version, payment_status=new_status)

        logger.info(
            "Payment of %s %s on invoice %s, due %s",
            payment.amount, inv.currency, inv.document_number, due,
        )
        return updated

    # ---------- Credit / debit notes ---------- #

    def _linked_invoice(self, note: Document) -> Invoice:
        if not note.invoice_id:
            raise ValidationError("Note is not linked to an invoice", document_id=note.id)
        inv = self.documents.get_document("invoice", note.company_id, note.invoice_id)
        if inv.currency != note.currency:
            raise ValidationError(
                "Note currency differs from the invoice",
                note_currency=note.currency,
                invoice_currency=inv.currency,
            )
        return inv

    def apply_credit_note(self, company_id: str, note_id: str, expected_version: int) -> Tuple[Document, Invoice]:
        """Settle a sent credit note against its invoice as a payment."""
        with self.store.atomic():
            note = self.documents.get_document("credit_note", company_id, note_id)
            self.documents.check_version(note, expected_version)
            check_transition(note, "applied")
            inv = self._linked_invoice(note)

            inv = self.record_payment(
                company_id,
                inv.id,
                note.total,
                inv.version,
                method="credit_note",
                reference=note.document_number,
                notes=f"Credit note {note.document_number}",
                allow_overpayment=True,
            )
            note = self.documents.move(note, "applied", expected_version)
        return note, inv

    def apply_debit_note(self, company_id: str, note_id: str, expected_version: int) -> Tuple[Document, Invoice]:
        """Add a sent debit note's total to the amount due on its open invoice."""
        with self.store.atomic():
            note = self.documents.get_document("debit_note", company_id, note_id)
            self.documents.check_version(note, expected_version)
            check_transition(note, "applied")
            inv = self._linked_invoice(note)
            if inv.status not in OPEN_INVOICE_STATES:
                raise ValidationError("Invoice is not open", invoice_id=inv.id, status=inv.status)

            ps = inv.payment_status
            adjustments = ps.adjustments + note.total
            new_status = ps.model_copy(update={
                "adjustments": adjustments,
                "amount_due": balance_due(inv.total, adjustments, ps.amount_paid, inv.currency),
            })
            inv = self.documents.save(inv.model_copy(update={"payment_status": new_status}), inv.version)
            note = self.documents.move(note, "applied", expected_version)

        logger.info("Debit note %s added %s to invoice %s", note.document_number, note.total, inv.document_number)
        return note, inv

    # ---------- Due dates ---------- #

    def mark_overdue(self, company_id: str, today: Optional[date] = None) -> List[Invoice]:
        today = today or date.today()
        out: List[Invoice] = []
        with self.store.atomic():
            for row in self.documents.collection_for("invoice").find({"company_id": company_id, "status": "sent"}):
                inv = Invoice.model_validate(row)
                if inv.due_date and inv.due_date < today:
                    out.append(self.documents.move(inv, "overdue", inv.version))
        if out:
            logger.info("Marked %d invoice(s) overdue for company %s", len(out), company_id)
        return out

    def expire_quotations(self, company_id: str, today: Optional[date] = None) -> List[Quotation]:
        today = today or date.today()
        out: List[Quotation] = []
        with self.store.atomic():
            for row in self.documents.collection_for("quotation").find({"company_id": company_id, "status": "sent"}):
                q = Quotation.model_validate(row)
                if q.valid_until and q.valid_until < today:
                    out.append(self.documents.move(q, "expired", q.version))
        if out:
            logger.info("Expired %d quotation(s) for company %s", len(out), company_id)
        return out
