from __future__ import annotations

import logging
import math
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from billing.errors import Conflict, DocumentFrozen, NotFound, ValidationError
from billing.models.common import DOCUMENT_TYPES, utcnow
from billing.models.company import Company
from billing.models.customer import Customer, CustomerSnapshot
from billing.models.document import (
    COLLECTION_NAMES,
    Document,
    Invoice,
    PaymentStatus,
    document_model,
    editable_fields,
)
from billing.services.audit_service import (
    FINANCIAL_FIELDS,
    build_entry,
    compare_snapshots,
    create_snapshot,
    diff_documents,
)
from billing.services.currency_service import normalize_currency, resolve_currency
from billing.services.numbering_service import NumberingService
from billing.services.status_service import check_transition
from billing.services.totals_service import balance_due, price_items, totals_fields
from billing.storage.json_repo import JsonRepository
from billing.storage.repo import JsonStore

logger = logging.getLogger(__name__)

# Editable in every status: they carry no financial meaning.
ALWAYS_MUTABLE = frozenset({"notes", "terms_and_conditions", "reason", "due_date", "valid_until"})
# Editable only while draft, not even through an amendment.
DRAFT_ONLY = frozenset({"customer_id", "invoice_id"})

MAX_PAGE_SIZE = 100


class Page(BaseModel):
    items: List[Document]
    total: int
    page: int
    limit: int
    pages: int


class DocumentService:
    """
    Caller-facing lifecycle operations for quotations, invoices, credit and debit notes.

    Every mutation runs as one unit of work on the store. Writes after creation
    carry the version the caller read; a stale version raises Conflict.
    """

    def __init__(self, store: JsonStore, numbering: NumberingService) -> None:
        self.store = store
        self.numbering = numbering
        self.companies = store.collection("companies")
        self.customers = store.collection("customers")

    # ---------------- lookups ---------------- #

    def _check_type(self, document_type: str) -> None:
        if document_type not in DOCUMENT_TYPES:
            raise ValidationError("Unknown document type", document_type=document_type)

    def collection_for(self, document_type: str) -> JsonRepository:
        self._check_type(document_type)
        return self.store.collection(COLLECTION_NAMES[document_type])

    def _hydrate(self, document_type: str, row: Mapping[str, Any]) -> Document:
        return document_model(document_type).model_validate(row)

    def get_company(self, company_id: str) -> Company:
        row = self.companies.get_by_id(company_id)
        if row is None:
            raise NotFound("company", company_id)
        return Company.model_validate(row)

    def _customer(self, company_id: str, customer_id: str) -> Customer:
        row = self.customers.find_one({"id": customer_id, "company_id": company_id})
        if row is None:
            raise NotFound("customer", customer_id, company_id=company_id)
        return Customer.model_validate(row)

    def get_document(self, document_type: str, company_id: str, document_id: str) -> Document:
        row = self.collection_for(document_type).find_one({"id": document_id, "company_id": company_id})
        if row is None:
            raise NotFound(document_type, document_id, company_id=company_id)
        return self._hydrate(document_type, row)

    @staticmethod
    def check_version(doc: Document, expected_version: Optional[int]) -> None:
        if expected_version is None or doc.version != expected_version:
            raise Conflict(expected_version, doc.version, document_id=doc.id, status=doc.status)

    def _check_fields(self, document_type: str, keys: Iterable[str]) -> None:
        unknown = set(keys) - editable_fields(document_type)
        if unknown:
            raise ValidationError(
                "Unknown or read-only fields", document_type=document_type, fields=sorted(unknown)
            )

    # ---------------- writes ---------------- #

    def _validate(self, document_type: str, data: Mapping[str, Any]) -> Document:
        try:
            return document_model(document_type).model_validate(data)
        except PydanticValidationError as e:
            problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError("Invalid document", document_type=document_type, problems=problems) from e

    def save(self, doc: Document, expected_version: int) -> Document:
        doc = doc.model_copy(update={"updated_at": utcnow()})
        row = self.collection_for(doc.document_type).update_one_atomic(
            {"id": doc.id, "company_id": doc.company_id},
            doc.model_dump(mode="json", exclude={"version"}),
            expected_version,
        )
        return self._hydrate(doc.document_type, row)

    def move(self, doc: Document, target: str, expected_version: int, **fields: Any) -> Document:
        """Validate and apply a status change (plus system fields tied to it)."""
        self.check_version(doc, expected_version)
        check_transition(doc, target)
        moved = doc.model_copy(update={"status": target, **fields})
        saved = self.save(moved, expected_version)
        logger.info(
            "%s %s: %s -> %s", doc.document_type, doc.document_number, doc.status, target
        )
        return saved

    def _sync_balance(self, data: Dict[str, Any]) -> None:
        ps = data.get("payment_status")
        if ps is None:
            return
        status = ps if isinstance(ps, PaymentStatus) else PaymentStatus.model_validate(ps)
        data["payment_status"] = status.model_copy(update={
            "amount_due": balance_due(data["total"], status.adjustments, status.amount_paid, data.get("currency"))
        })

    def _apply_changes(self, doc: Document, changes: Mapping[str, Any], company: Company) -> Document:
        """New document with ``changes`` applied and every derived figure recomputed."""
        data: Dict[str, Any] = doc.model_dump()

        if "currency" in changes:
            code = normalize_currency(changes["currency"])
            if code is None:
                raise ValidationError("Unsupported currency", currency=changes["currency"])
            data["currency"] = code

        if "customer_id" in changes:
            customer_id = changes["customer_id"]
            if customer_id:
                customer = self._customer(doc.company_id, customer_id)
                data["customer_id"] = customer.id
                data["customer_snapshot"] = create_snapshot(customer)
                data["currency"] = resolve_currency(
                    customer.currency, company.currency, changes.get("currency"), current=doc.currency
                )
            else:
                data["customer_id"] = None
                data["customer_snapshot"] = None

        if "customer_snapshot" in changes:
            snap = changes["customer_snapshot"]
            try:
                data["customer_snapshot"] = (
                    CustomerSnapshot.model_validate(snap) if snap is not None else None
                )
            except PydanticValidationError as e:
                raise ValidationError("Invalid customer snapshot", problems=[str(e)]) from e

        if changes.get("invoice_id"):
            self.get_document("invoice", doc.company_id, changes["invoice_id"])

        for key in ALWAYS_MUTABLE | {"date", "invoice_id"}:
            if key in changes:
                data[key] = changes[key]

        raw_items = changes["items"] if "items" in changes else doc.items
        items, totals = price_items(raw_items, data["currency"])
        data.update(totals_fields(items, totals))
        self._sync_balance(data)
        return self._validate(doc.document_type, data)

    # ---------------- create ---------------- #

    def create_document(
        self,
        document_type: str,
        company_id: str,
        items: Iterable[Any] = (),
        customer_id: Optional[str] = None,
        requested_currency: Optional[str] = None,
        *,
        customer_snapshot: Optional[CustomerSnapshot] = None,
        quotation_id: Optional[str] = None,
        created_by: Optional[str] = None,
        **fields: Any,
    ) -> Document:
        """
        Create a draft: resolve the currency, price the items, snapshot the
        customer and issue the next number, all in one unit of work.

        ``fields`` carries dates and free text (date, due_date, valid_until,
        notes, terms_and_conditions, reason) and, for notes, ``invoice_id``.
        ``customer_snapshot`` replaces the customer lookup (document conversion).
        """
        self._check_type(document_type)
        self._check_fields(document_type, fields)
        if "currency" in fields:
            raise ValidationError("Pass the currency as requested_currency")

        with self.store.atomic():
            company = self.get_company(company_id)
            customer_currency: Optional[str] = None
            snapshot = customer_snapshot

            invoice_id = fields.get("invoice_id")
            if invoice_id:
                invoice = self.get_document("invoice", company_id, invoice_id)
                if customer_id in (None, invoice.customer_id):
                    customer_id = invoice.customer_id
                    snapshot = snapshot or invoice.customer_snapshot
                    customer_currency = invoice.currency

            if quotation_id:
                if document_type != "invoice":
                    raise ValidationError("Only invoices reference a quotation")
                self.get_document("quotation", company_id, quotation_id)

            if customer_id and snapshot is None:
                customer = self._customer(company_id, customer_id)
                snapshot = create_snapshot(customer)
                customer_currency = customer.currency
            elif customer_id and customer_currency is None and customer_snapshot is None:
                customer_currency = self._customer(company_id, customer_id).currency

            currency = resolve_currency(customer_currency, company.currency, requested_currency)
            priced, totals = price_items(items, currency)

            data: Dict[str, Any] = {
                "company_id": company_id,
                "document_number": "",
                "customer_id": customer_id,
                "customer_snapshot": snapshot,
                "currency": currency,
                "created_by": created_by,
                **totals_fields(priced, totals),
                **fields,
            }
            if document_type == "invoice":
                data["quotation_id"] = quotation_id
                data["payment_status"] = PaymentStatus(amount_due=totals.total)

            # validate before consuming a number
            doc = self._validate(document_type, data)
            if isinstance(doc, Invoice) and doc.due_date is None:
                doc = doc.model_copy(update={
                    "due_date": doc.date + timedelta(days=company.settings.default_due_days)
                })
            doc = doc.model_copy(update={
                "document_number": self.numbering.next_number(company_id, document_type)
            })
            row = self.collection_for(document_type).insert(doc)

        created = self._hydrate(document_type, row)
        logger.info(
            "Created %s %s (%s %s) for company %s",
            document_type, created.document_number, created.total, created.currency, company_id,
        )
        return created

    # ---------------- update / amend ---------------- #

    def update_document(
        self,
        document_type: str,
        company_id: str,
        document_id: str,
        changes: Mapping[str, Any],
        expected_version: int,
        amendment_reason: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Document:
        """
        Direct edit while draft. Once issued, free-text and due dates stay
        editable; financial fields go through ``amend`` when a reason is given
        and raise DocumentFrozen otherwise.
        """
        self._check_type(document_type)
        self._check_fields(document_type, changes)
        with self.store.atomic():
            doc = self.get_document(document_type, company_id, document_id)
            self.check_version(doc, expected_version)

            if not doc.is_draft:
                locked: Set[str] = set(changes) & (set(FINANCIAL_FIELDS) | DRAFT_ONLY)
                if locked:
                    if amendment_reason and not locked & DRAFT_ONLY:
                        return self.amend(
                            document_type, company_id, document_id, changes,
                            amendment_reason, expected_version, updated_by=updated_by,
                        )
                    raise DocumentFrozen(doc.status, locked, document_id=doc.id)

            company = self.get_company(company_id)
            updated = self._apply_changes(doc, changes, company)

            if doc.is_draft and doc.customer_snapshot is not None:
                snap_changes = compare_snapshots(doc.customer_snapshot, updated.customer_snapshot)
                if snap_changes:
                    entry = build_entry("customer_changed", snap_changes, updated_by)
                    updated = updated.model_copy(update={"audit_history": [*doc.audit_history, entry]})

            return self.save(updated, expected_version)

    def amend(
        self,
        document_type: str,
        company_id: str,
        document_id: str,
        changes: Mapping[str, Any],
        reason: str,
        expected_version: int,
        updated_by: Optional[str] = None,
    ) -> Document:
        """
        Audited edit of financial fields, allowed in any status.
        Appends exactly one audit entry with the field-level diff.
        """
        if not reason or not str(reason).strip():
            raise ValidationError("An amendment needs a reason")
        self._check_type(document_type)
        self._check_fields(document_type, changes)

        with self.store.atomic():
            doc = self.get_document(document_type, company_id, document_id)
            self.check_version(doc, expected_version)
            if not doc.is_draft and set(changes) & DRAFT_ONLY:
                raise DocumentFrozen(doc.status, set(changes) & DRAFT_ONLY, document_id=doc.id)

            company = self.get_company(company_id)
            amended = self._apply_changes(doc, changes, company)
            diff = diff_documents(doc, amended)
            if not diff:
                raise ValidationError("Amendment changes no financial field", document_id=doc.id)
            if amended.status == "paid" and amended.payment_status and amended.payment_status.amount_due > 0:
                # paid is terminal: amount_due must stay 0
                raise ValidationError(
                    "Amendment would leave a balance on a paid invoice",
                    document_id=doc.id,
                    amount_due=str(amended.payment_status.amount_due),
                )

            entry = build_entry(str(reason).strip(), diff, updated_by)
            amended = amended.model_copy(update={"audit_history": [*doc.audit_history, entry]})
            saved = self.save(amended, expected_version)

        logger.info(
            "Amended %s %s (%d change(s)): %s",
            document_type, saved.document_number, len(diff), entry.reason,
        )
        return saved

    def refresh_snapshot(
        self,
        document_type: str,
        company_id: str,
        document_id: str,
        expected_version: int,
        reason: str = "manual_refresh",
        updated_by: Optional[str] = None,
    ) -> Document:
        """Re-copy the live customer into the snapshot, through the audited path."""
        with self.store.atomic():
            doc = self.get_document(document_type, company_id, document_id)
            self.check_version(doc, expected_version)
            if not doc.customer_id:
                raise ValidationError("Document has no customer", document_id=doc.id)
            fresh = create_snapshot(self._customer(company_id, doc.customer_id))
            if not compare_snapshots(doc.customer_snapshot, fresh):
                return doc
            return self.amend(
                document_type, company_id, document_id,
                {"customer_snapshot": fresh.model_dump()}, reason, expected_version,
                updated_by=updated_by,
            )

    def refresh_customer_snapshots(self, customer: Customer, updated_by: Optional[str] = None) -> int:
        """
        Push a customer edit into its draft invoices and quotations, then into
        draft credit/debit notes of those invoices. Issued documents keep their
        snapshot. Returns the number of invoices and quotations updated.
        """
        fresh = create_snapshot(customer)
        updated = 0
        with self.store.atomic():
            for document_type in ("invoice", "quotation"):
                rows = self.collection_for(document_type).find(
                    {"company_id": customer.company_id, "customer_id": customer.id, "status": "draft"}
                )
                for row in rows:
                    doc = self._hydrate(document_type, row)
                    if self._resnapshot(doc, fresh, "customer_update", updated_by) is None:
                        continue
                    updated += 1
                    if document_type == "invoice":
                        self._cascade_to_notes(doc, fresh, updated_by)
        if updated:
            logger.info("Refreshed customer snapshot on %d draft document(s) for %s", updated, customer.id)
        return updated

    def _cascade_to_notes(self, invoice: Document, fresh: CustomerSnapshot, updated_by: Optional[str]) -> None:
        for note_type in ("credit_note", "debit_note"):
            rows = self.collection_for(note_type).find(
                {"company_id": invoice.company_id, "invoice_id": invoice.id, "status": "draft"}
            )
            for row in rows:
                self._resnapshot(self._hydrate(note_type, row), fresh, "cascade_update", updated_by)

    def _resnapshot(
        self, doc: Document, fresh: CustomerSnapshot, reason: str, updated_by: Optional[str]
    ) -> Optional[Document]:
        changes = compare_snapshots(doc.customer_snapshot, fresh)
        if not changes:
            return None
        entry = build_entry(reason, changes, updated_by)
        return self.save(
            doc.model_copy(update={
                "customer_snapshot": fresh.model_copy(),
                "audit_history": [*doc.audit_history, entry],
            }),
            doc.version,
        )

    # ---------------- status ---------------- #

    def transition_status(
        self,
        document_type: str,
        company_id: str,
        document_id: str,
        new_status: str,
        expected_version: int,
    ) -> Document:
        with self.store.atomic():
            doc = self.get_document(document_type, company_id, document_id)
            return self.move(doc, new_status, expected_version)

    def snapshot_state(self, document_type: str, company_id: str, document_id: str) -> str:
        return self.get_document(document_type, company_id, document_id).snapshot_state

    # ---------------- delete / list ---------------- #

    def delete_document(
        self, document_type: str, company_id: str, document_id: str, expected_version: int
    ) -> bool:
        """Drafts only. The number stays consumed."""
        with self.store.atomic():
            doc = self.get_document(document_type, company_id, document_id)
            self.check_version(doc, expected_version)
            if not doc.is_draft:
                raise DocumentFrozen(doc.status, ["status"], document_id=doc.id)
            deleted = self.collection_for(document_type).delete({"id": doc.id, "company_id": company_id})
        logger.info("Deleted draft %s %s", document_type, doc.document_number)
        return deleted

    def list_documents(
        self,
        company_id: str,
        document_type: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        customer_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> Page:
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError("Invalid paging", page=page, limit=limit)

        flt: Dict[str, Any] = {"company_id": company_id}
        if status:
            flt["status"] = status
        if customer_id:
            flt["customer_id"] = customer_id

        docs = [self._hydrate(document_type, r) for r in self.collection_for(document_type).find(flt)]
        if date_from:
            docs = [d for d in docs if d.date >= date_from]
        if date_to:
            docs = [d for d in docs if d.date <= date_to]
        docs.sort(key=lambda d: (d.date, d.created_at), reverse=True)

        total = len(docs)
        start = (page - 1) * limit
        return Page(
            items=docs[start:start + limit],
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )
