from __future__ import annotations

from typing import Dict, FrozenSet, List, Mapping

from billing.errors import IncompleteDocument, InvalidTransition
from billing.models.document import Document


class StateMachine:
    """
    Finite state machine driven by a transition table (state -> allowed next states).
    States with no outgoing edge are terminal.
    """

    def __init__(self, name: str, table: Mapping[str, FrozenSet[str]], initial: str = "draft") -> None:
        self.name = name
        self.initial = initial
        self.table: Dict[str, FrozenSet[str]] = {k: frozenset(v) for k, v in table.items()}
        targets = set().union(*self.table.values()) if self.table else set()
        self.states: FrozenSet[str] = frozenset(self.table) | targets | {initial}

    def allowed(self, current: str) -> FrozenSet[str]:
        return self.table.get(current, frozenset())

    def can_transition(self, current: str, target: str) -> bool:
        return target in self.allowed(current)

    def is_terminal(self, state: str) -> bool:
        return not self.allowed(state)

    @property
    def terminal_states(self) -> FrozenSet[str]:
        return frozenset(s for s in self.states if self.is_terminal(s))

    def ensure(self, current: str, target: str) -> None:
        if not self.can_transition(current, target):
            raise InvalidTransition(
                current,
                target,
                document_type=self.name,
                allowed=sorted(self.allowed(current)),
            )


QUOTATION_FLOW = StateMachine("quotation", {
    "draft": frozenset({"sent"}),
    "sent": frozenset({"accepted", "rejected", "expired"}),
    "accepted": frozenset({"converted"}),
})

INVOICE_FLOW = StateMachine("invoice", {
    "draft": frozenset({"sent"}),
    "sent": frozenset({"paid", "partially_paid", "overdue", "cancelled"}),
    "partially_paid": frozenset({"paid", "cancelled"}),
    "overdue": frozenset({"paid", "partially_paid", "cancelled"}),
})

CREDIT_NOTE_FLOW = StateMachine("credit_note", {
    "draft": frozenset({"sent"}),
    "sent": frozenset({"applied"}),
})

DEBIT_NOTE_FLOW = StateMachine("debit_note", {
    "draft": frozenset({"sent"}),
    "sent": frozenset({"applied"}),
})

STATE_MACHINES: Dict[str, StateMachine] = {
    "quotation": QUOTATION_FLOW,
    "invoice": INVOICE_FLOW,
    "credit_note": CREDIT_NOTE_FLOW,
    "debit_note": DEBIT_NOTE_FLOW,
}

# Document types that cannot leave draft without a customer.
CUSTOMER_REQUIRED = frozenset({"quotation", "invoice"})


def machine_for(document_type: str) -> StateMachine:
    try:
        return STATE_MACHINES[document_type]
    except KeyError:
        raise ValueError(f"Unknown document type '{document_type}'") from None


def missing_for_issue(doc: Document) -> List[str]:
    missing = []
    if not doc.items:
        missing.append("items")
    if not doc.currency:
        missing.append("currency")
    if doc.document_type in CUSTOMER_REQUIRED and not doc.customer_id:
        missing.append("customer_id")
    return missing


def check_transition(doc: Document, target: str) -> None:
    """Raise unless ``doc`` may move to ``target``. Never mutates ``doc``."""
    machine_for(doc.document_type).ensure(doc.status, target)
    if doc.status == "draft":
        missing = missing_for_issue(doc)
        if missing:
            raise IncompleteDocument(
                missing,
                document_id=doc.id,
                current=doc.status,
                target=target,
            )
