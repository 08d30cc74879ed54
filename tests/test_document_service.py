import threading
from datetime import date, timedelta
from decimal import Decimal

import pytest

from billing.errors import (
    Conflict,
    DocumentFrozen,
    IncompleteDocument,
    InvalidTransition,
    MissingCurrency,
    NotFound,
    ValidationError,
)
from billing.models.company import Company
from billing.models.customer import Customer


def test_create_invoice_uses_customer_currency(app, company, customer, make_invoice):
    inv = make_invoice()
    assert inv.document_number == "INV-1001"
    assert inv.status == "draft"
    assert inv.version == 1
    assert inv.currency == "USD"
    assert inv.subtotal == Decimal("200.00")
    assert inv.total_tax == Decimal("20.00")
    assert inv.total == Decimal("220.00")
    assert inv.customer_snapshot.name == "Globex"
    assert inv.payment_status.amount_due == Decimal("220.00")
    assert inv.due_date == inv.date + timedelta(days=30)
    assert inv.snapshot_state == "draft"


def test_requested_currency_overrides(make_invoice):
    inv = make_invoice(requested_currency="gbp")
    assert inv.currency == "GBP"


def test_company_currency_when_customer_has_none(app, company, items):
    c = app.customers.add_customer(Customer(company_id=company.id, name="Local"))
    q = app.documents.create_document("quotation", company.id, items, customer_id=c.id)
    assert q.currency == "EUR"
    assert q.document_number == "QUO-1001"


def test_missing_currency_creates_nothing(app, items):
    co = app.companies.register_company(Company(name="No Currency"))
    with pytest.raises(MissingCurrency):
        app.documents.create_document("quotation", co.id, items)
    assert app.numbering.peek(co.id, "quotation") == "QUO-1001"
    assert app.documents.list_documents(co.id, "quotation").total == 0


def test_invalid_input_does_not_consume_a_number(app, company, customer, items):
    with pytest.raises(ValidationError):
        app.documents.create_document("quotation", company.id, items, customer.id, date="not-a-date")
    q = app.documents.create_document("quotation", company.id, items, customer.id)
    assert q.document_number == "QUO-1001"


def test_unknown_document_type(app, company):
    with pytest.raises(ValidationError):
        app.documents.create_document("receipt", company.id, [])
    with pytest.raises(ValidationError):
        app.documents.update_document("receipt", company.id, "x", {"notes": "n"}, 1)
    with pytest.raises(ValidationError):
        app.documents.amend("receipt", company.id, "x", {"currency": "EUR"}, "typo", 1)


def test_oversized_amounts_are_rejected(app, company, customer):
    with pytest.raises(ValidationError):
        app.documents.create_document(
            "invoice", company.id, [{"name": "Bulk", "quantity": "1e20", "unit_price": "1e8"}], customer.id
        )
    assert app.numbering.peek(company.id, "invoice") == "INV-1001"


def test_derived_fields_cannot_be_set(app, company, make_invoice):
    inv = make_invoice()
    with pytest.raises(ValidationError) as exc:
        app.documents.update_document("invoice", company.id, inv.id, {"total": "1"}, inv.version)
    assert exc.value.context["fields"] == ["total"]


def test_draft_edit_recomputes_totals_without_audit(app, company, make_invoice):
    inv = make_invoice()
    updated = app.documents.update_document(
        "invoice", company.id, inv.id,
        {"items": [{"name": "Consulting", "quantity": 3, "unit_price": "100", "tax_rate": 10}]},
        inv.version,
    )
    assert updated.total == Decimal("330.00")
    assert updated.payment_status.amount_due == Decimal("330.00")
    assert updated.version == inv.version + 1
    assert updated.audit_history == []


def test_stale_version_conflicts(app, company, make_invoice):
    inv = make_invoice()
    app.documents.update_document("invoice", company.id, inv.id, {"notes": "first"}, inv.version)
    with pytest.raises(Conflict) as exc:
        app.documents.update_document("invoice", company.id, inv.id, {"notes": "second"}, inv.version)
    assert exc.value.actual == inv.version + 1
    assert app.documents.get_document("invoice", company.id, inv.id).notes == "first"


def test_sent_invoice_is_frozen(app, company, sent_invoice):
    assert sent_invoice.snapshot_state == "frozen"
    with pytest.raises(DocumentFrozen) as exc:
        app.documents.update_document(
            "invoice", company.id, sent_invoice.id,
            {"items": [{"name": "x", "quantity": 1, "unit_price": "1"}]},
            sent_invoice.version,
        )
    assert exc.value.fields == ["items"]
    assert exc.value.status == "sent"


def test_free_text_stays_editable_after_issue(app, company, sent_invoice):
    updated = app.documents.update_document(
        "invoice", company.id, sent_invoice.id,
        {"notes": "Thank you", "due_date": date(2030, 1, 31)},
        sent_invoice.version,
    )
    assert updated.notes == "Thank you"
    assert updated.due_date == date(2030, 1, 31)
    assert updated.audit_history == []
    assert updated.snapshot_state == "frozen"


def test_note_reason_stays_editable_after_issue(app, company, sent_invoice):
    note = app.documents.create_document(
        "credit_note", company.id, [{"name": "Refund", "quantity": 1, "unit_price": "20"}],
        invoice_id=sent_invoice.id, reason="Damaged goods",
    )
    note = app.documents.transition_status("credit_note", company.id, note.id, "sent", note.version)
    updated = app.documents.update_document(
        "credit_note", company.id, note.id, {"reason": "Damaged on delivery"}, note.version
    )
    assert updated.reason == "Damaged on delivery"
    assert updated.status == "sent"
    assert updated.audit_history == []


def test_amend_appends_one_audit_entry(app, company, sent_invoice):
    amended = app.documents.amend(
        "invoice", company.id, sent_invoice.id,
        {"items": [{"name": "Consulting", "quantity": 1, "unit_price": "100", "tax_rate": 10}]},
        "Customer returned one day",
        sent_invoice.version,
        updated_by="alice",
    )
    assert amended.total == Decimal("110.00")
    assert amended.status == "sent"
    assert amended.snapshot_state == "current"
    assert len(amended.audit_history) == 1
    entry = amended.audit_history[0]
    assert entry.reason == "Customer returned one day"
    assert entry.updated_by == "alice"
    fields = {c.field for c in entry.changes}
    assert "items[0].quantity" in fields
    assert "total" in fields


def test_update_with_reason_goes_through_amend(app, company, sent_invoice):
    amended = app.documents.update_document(
        "invoice", company.id, sent_invoice.id, {"currency": "EUR"},
        sent_invoice.version, amendment_reason="Wrong currency",
    )
    assert amended.currency == "EUR"
    assert amended.audit_history[0].changes[0].field == "currency"


def test_amend_requires_reason_and_a_change(app, company, sent_invoice):
    with pytest.raises(ValidationError):
        app.documents.amend("invoice", company.id, sent_invoice.id, {"currency": "EUR"}, "  ", sent_invoice.version)
    with pytest.raises(ValidationError):
        app.documents.amend("invoice", company.id, sent_invoice.id, {"currency": "USD"}, "noop", sent_invoice.version)


def test_customer_cannot_change_after_issue(app, company, sent_invoice):
    other = app.customers.add_customer(Customer(company_id=company.id, name="Initech"))
    with pytest.raises(DocumentFrozen):
        app.documents.update_document(
            "invoice", company.id, sent_invoice.id, {"customer_id": other.id},
            sent_invoice.version, amendment_reason="wrong customer",
        )


def test_changing_customer_on_draft_resnapshots(app, company, make_invoice):
    other = app.customers.add_customer(Customer(company_id=company.id, name="Initech", currency="CHF"))
    inv = make_invoice()
    updated = app.documents.update_document("invoice", company.id, inv.id, {"customer_id": other.id}, inv.version)
    assert updated.customer_snapshot.name == "Initech"
    # the currency already on the document is kept
    assert updated.currency == "USD"
    assert updated.audit_history[0].reason == "customer_changed"


def test_issue_requires_customer(app, company, items):
    q = app.documents.create_document("quotation", company.id, items)
    with pytest.raises(IncompleteDocument) as exc:
        app.documents.transition_status("quotation", company.id, q.id, "sent", q.version)
    assert exc.value.missing == ["customer_id"]
    assert app.documents.get_document("quotation", company.id, q.id).status == "draft"


def test_invalid_transition_leaves_document_unchanged(app, company, sent_invoice):
    with pytest.raises(InvalidTransition):
        app.documents.transition_status("invoice", company.id, sent_invoice.id, "draft", sent_invoice.version)
    doc = app.documents.get_document("invoice", company.id, sent_invoice.id)
    assert doc.status == "sent"
    assert doc.version == sent_invoice.version


def test_terminal_state_accepts_no_transition(app, company, sent_invoice):
    cancelled = app.documents.transition_status(
        "invoice", company.id, sent_invoice.id, "cancelled", sent_invoice.version
    )
    for target in ("sent", "paid", "draft", "overdue"):
        with pytest.raises(InvalidTransition):
            app.documents.transition_status("invoice", company.id, cancelled.id, target, cancelled.version)


def test_delete_only_drafts_and_numbers_are_not_reused(app, company, make_invoice, sent_invoice):
    draft = make_invoice()
    assert app.documents.delete_document("invoice", company.id, draft.id, draft.version)
    with pytest.raises(NotFound):
        app.documents.get_document("invoice", company.id, draft.id)
    with pytest.raises(DocumentFrozen):
        app.documents.delete_document("invoice", company.id, sent_invoice.id, sent_invoice.version)
    assert make_invoice().document_number == "INV-1003"


def test_documents_are_scoped_to_their_company(app, company, make_invoice):
    inv = make_invoice()
    other = app.companies.register_company(Company(name="Other", currency="EUR"))
    with pytest.raises(NotFound):
        app.documents.get_document("invoice", other.id, inv.id)


def test_list_documents_pages_and_filters(app, company, customer, make_invoice):
    for day in range(1, 6):
        make_invoice(date=date(2026, 3, day))
    first = app.documents.list_documents(company.id, "invoice", limit=2)
    assert first.total == 5
    assert first.pages == 3
    assert [d.date.day for d in first.items] == [5, 4]

    page3 = app.documents.list_documents(company.id, "invoice", page=3, limit=2)
    assert [d.date.day for d in page3.items] == [1]

    ranged = app.documents.list_documents(
        company.id, "invoice", date_from=date(2026, 3, 2), date_to=date(2026, 3, 3)
    )
    assert ranged.total == 2
    assert app.documents.list_documents(company.id, "invoice", status="sent").total == 0
    assert app.documents.list_documents(company.id, "invoice", customer_id=customer.id).total == 5

    with pytest.raises(ValidationError):
        app.documents.list_documents(company.id, "invoice", limit=0)


def test_refresh_snapshot_on_issued_document_is_audited(app, company, customer, sent_invoice):
    app.customers.update_customer(company.id, customer.id, {"name": "Globex Corp"})
    doc = app.documents.get_document("invoice", company.id, sent_invoice.id)
    assert doc.customer_snapshot.name == "Globex"

    refreshed = app.documents.refresh_snapshot("invoice", company.id, doc.id, doc.version)
    assert refreshed.customer_snapshot.name == "Globex Corp"
    assert refreshed.audit_history[-1].reason == "manual_refresh"
    assert refreshed.snapshot_state == "current"
    assert app.documents.snapshot_state("invoice", company.id, doc.id) == "current"

    again = app.documents.refresh_snapshot("invoice", company.id, doc.id, refreshed.version)
    assert again.version == refreshed.version


def test_credit_note_inherits_from_invoice(app, company, sent_invoice):
    note = app.documents.create_document(
        "credit_note", company.id,
        [{"name": "Refund", "quantity": 1, "unit_price": "20", "tax_rate": 10}],
        invoice_id=sent_invoice.id, reason="Discount",
    )
    assert note.document_number == "CN-1001"
    assert note.customer_id == sent_invoice.customer_id
    assert note.customer_snapshot == sent_invoice.customer_snapshot
    assert note.currency == "USD"
    assert note.total == Decimal("22.00")


def test_eur_customer_usd_company_lifecycle(app, items):
    co = app.companies.register_company(Company(name="US Corp", currency="USD"))
    cust = app.customers.add_customer(Customer(company_id=co.id, name="Berlin GmbH", currency="EUR"))
    inv = app.documents.create_document("invoice", co.id, items, cust.id)
    assert inv.currency == "EUR"
    assert inv.total == Decimal("220.00")

    inv = app.documents.transition_status("invoice", co.id, inv.id, "sent", inv.version)
    change = {"items": [{"name": "Consulting", "quantity": 3, "unit_price": "100", "tax_rate": 10}]}
    with pytest.raises(DocumentFrozen):
        app.documents.update_document("invoice", co.id, inv.id, change, inv.version)

    amended = app.documents.amend("invoice", co.id, inv.id, change, "Extra day", inv.version)
    assert len(amended.audit_history) == 1
    assert amended.total == Decimal("330.00")


def test_empty_invoice_cannot_be_sent(app, company, make_invoice):
    inv = make_invoice(items=[])
    with pytest.raises(IncompleteDocument) as exc:
        app.documents.transition_status("invoice", company.id, inv.id, "sent", inv.version)
    assert exc.value.missing == ["items"]


def test_concurrent_creation_yields_distinct_numbers(app, company, customer, items):
    numbers = []
    lock = threading.Lock()

    def create():
        doc = app.documents.create_document("invoice", company.id, items, customer.id)
        with lock:
            numbers.append(doc.document_number)

    threads = [threading.Thread(target=create) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(numbers) == [f"INV-{n}" for n in range(1001, 1011)]
    assert app.documents.list_documents(company.id, "invoice").total == 10
