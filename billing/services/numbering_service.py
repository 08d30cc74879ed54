from __future__ import annotations

import logging
from typing import Dict, Optional

from billing.config import NumberingDefaults
from billing.errors import NotFound, ValidationError
from billing.models.common import DOCUMENT_TYPES
from billing.models.sequence import NumberSequence, sequence_id
from billing.storage.repo import JsonStore

logger = logging.getLogger(__name__)


class NumberingService:
    """
    Per-company, per-document-type counters.

    The counter is an entity of its own (``sequences`` collection). Issuing a
    number is a read-increment-write inside the store's unit of work, so two
    callers never see the same value and a rolled back creation does not
    consume one. Numbers only move forward; they are never reclaimed.
    """

    def __init__(self, store: JsonStore, defaults: Optional[NumberingDefaults] = None) -> None:
        self.store = store
        self.repo = store.collection("sequences")
        self.defaults = defaults or NumberingDefaults()

    def _check_type(self, document_type: str) -> None:
        if document_type not in DOCUMENT_TYPES:
            raise ValidationError("Unknown document type", document_type=document_type)

    def ensure_sequence(self, company_id: str, document_type: str) -> NumberSequence:
        self._check_type(document_type)
        with self.store.atomic():
            row = self.repo.get_by_id(sequence_id(company_id, document_type))
            if row is None:
                seq = NumberSequence(
                    id=sequence_id(company_id, document_type),
                    company_id=company_id,
                    document_type=document_type,
                    prefix=self.defaults.prefix_for(document_type),
                    next_number=self.defaults.start_number,
                )
                row = self.repo.insert(seq)
        return NumberSequence.model_validate(row)

    def get_sequence(self, company_id: str, document_type: str) -> NumberSequence:
        self._check_type(document_type)
        row = self.repo.get_by_id(sequence_id(company_id, document_type))
        if row is None:
            raise NotFound("sequence", sequence_id(company_id, document_type))
        return NumberSequence.model_validate(row)

    def sequences_for(self, company_id: str) -> Dict[str, NumberSequence]:
        rows = self.repo.find({"company_id": company_id})
        return {r["document_type"]: NumberSequence.model_validate(r) for r in rows}

    def peek(self, company_id: str, document_type: str) -> str:
        """Next number that would be issued, without consuming it."""
        seq = self.get_sequence(company_id, document_type)
        return seq.format(seq.next_number)

    def next_number(self, company_id: str, document_type: str) -> str:
        with self.store.atomic():
            seq = self.ensure_sequence(company_id, document_type)
            value = self.repo.increment({"id": seq.id}, "next_number")
        number = seq.format(value)
        logger.info("Issued %s number %s for company %s", document_type, number, company_id)
        return number

    def configure(
        self,
        company_id: str,
        document_type: str,
        *,
        prefix: Optional[str] = None,
        next_number: Optional[int] = None,
    ) -> NumberSequence:
        with self.store.atomic():
            seq = self.ensure_sequence(company_id, document_type)
            update: Dict[str, object] = {}
            if prefix is not None:
                update["prefix"] = prefix
            if next_number is not None:
                if next_number < seq.next_number:
                    raise ValidationError(
                        "Counter can only move forward",
                        document_type=document_type,
                        current=seq.next_number,
                        requested=next_number,
                    )
                update["next_number"] = next_number
            if not update:
                return seq
            row = self.repo.update_one_atomic({"id": seq.id}, update, expected_version=seq.version)
        return NumberSequence.model_validate(row)
