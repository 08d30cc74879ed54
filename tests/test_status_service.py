import pytest

from billing.errors import IncompleteDocument, InvalidTransition
from billing.models.document import CreditNote, Invoice, LineItem, Quotation
from billing.services.status_service import (
    INVOICE_FLOW,
    QUOTATION_FLOW,
    StateMachine,
    check_transition,
    missing_for_issue,
)


def _invoice(**kwargs):
    kwargs.setdefault("items", [LineItem(name="a", quantity=1, unit_price=10)])
    kwargs.setdefault("currency", "EUR")
    kwargs.setdefault("customer_id", "c1")
    return Invoice(company_id="co", document_number="INV-1", **kwargs)


def test_terminal_states():
    assert INVOICE_FLOW.terminal_states == {"paid", "cancelled"}
    assert QUOTATION_FLOW.terminal_states == {"rejected", "expired", "converted"}


@pytest.mark.parametrize("current, target", [
    ("draft", "paid"),
    ("paid", "sent"),
    ("cancelled", "draft"),
    ("sent", "draft"),
])
def test_invalid_invoice_transitions(current, target):
    with pytest.raises(InvalidTransition) as exc:
        check_transition(_invoice(status=current), target)
    assert exc.value.current == current
    assert exc.value.target == target


def test_invalid_transition_reports_allowed_states():
    with pytest.raises(InvalidTransition) as exc:
        check_transition(Quotation(company_id="co", document_number="Q", status="sent"), "converted")
    assert exc.value.context["allowed"] == ["accepted", "expired", "rejected"]


def test_leaving_draft_requires_items_currency_and_customer():
    doc = _invoice(items=[], customer_id=None)
    assert missing_for_issue(doc) == ["items", "customer_id"]
    with pytest.raises(IncompleteDocument) as exc:
        check_transition(doc, "sent")
    assert exc.value.missing == ["items", "customer_id"]


def test_notes_may_be_issued_without_customer():
    note = CreditNote(
        company_id="co",
        document_number="CN-1",
        items=[LineItem(name="a", quantity=1, unit_price=10)],
        currency="EUR",
    )
    check_transition(note, "sent")


def test_check_transition_does_not_mutate():
    doc = _invoice()
    check_transition(doc, "sent")
    assert doc.status == "draft"


def test_custom_machine():
    m = StateMachine("ticket", {"draft": {"open"}, "open": {"closed"}})
    assert m.can_transition("draft", "open")
    assert not m.can_transition("draft", "closed")
    assert m.is_terminal("closed")
