from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from billing.errors import NotFound, ValidationError
from billing.models.customer import Customer
from billing.services.currency_service import normalize_currency
from billing.services.document_service import DocumentService
from billing.storage.repo import JsonStore

logger = logging.getLogger(__name__)

READ_ONLY = frozenset({"id", "company_id", "version", "created_at", "updated_at"})
SEARCH_LIMIT = 10


class CustomerService:
    def __init__(self, store: JsonStore, documents: DocumentService) -> None:
        self.store = store
        self.repo = store.collection("customers")
        self.documents = documents

    @staticmethod
    def _validate(data: Mapping[str, Any]) -> Customer:
        data = dict(data)
        if data.get("currency"):
            code = normalize_currency(data["currency"])
            if code is None:
                raise ValidationError("Unsupported currency", currency=data["currency"])
            data["currency"] = code
        try:
            return Customer.model_validate(data)
        except PydanticValidationError as e:
            problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError("Invalid customer", problems=problems) from e

    def add_customer(self, customer: Customer) -> Customer:
        customer = self._validate(customer.model_dump())
        with self.store.atomic():
            self.documents.get_company(customer.company_id)
            row = self.repo.insert(customer)
        logger.info("Added customer %s to company %s", customer.name, customer.company_id)
        return Customer.model_validate(row)

    def list_customers(self, company_id: str, include_inactive: bool = False) -> List[Customer]:
        rows = self.repo.find({"company_id": company_id})
        out = [Customer.model_validate(d) for d in rows]
        if not include_inactive:
            out = [c for c in out if c.status == "active"]
        return sorted(out, key=lambda c: c.name.lower())

    def get_customer(self, company_id: str, customer_id: str) -> Customer:
        row = self.repo.find_one({"id": customer_id, "company_id": company_id})
        if row is None:
            raise NotFound("customer", customer_id, company_id=company_id)
        return Customer.model_validate(row)

    def search_customers(self, company_id: str, query: str) -> List[Customer]:
        """Active customers whose name, email or contact contains ``query``."""
        q = (query or "").strip().lower()
        if not q:
            return []

        def hit(row):
            return row.get("company_id") == company_id and row.get("status", "active") == "active" and any(
                q in (row.get(k) or "").lower() for k in ("name", "email", "contact_person")
            )

        return [Customer.model_validate(d) for d in self.repo.find(hit)][:SEARCH_LIMIT]

    def update_customer(
        self,
        company_id: str,
        customer_id: str,
        changes: Mapping[str, Any],
        expected_version: Optional[int] = None,
        updated_by: Optional[str] = None,
    ) -> Tuple[Customer, int]:
        """
        Update a customer and refresh the snapshot on its draft documents.
        Issued documents keep the snapshot they were issued with.
        Returns the customer and the number of documents refreshed.
        """
        readonly = set(changes) & READ_ONLY
        if readonly:
            raise ValidationError("Read-only fields", fields=sorted(readonly))

        with self.store.atomic():
            current = self.get_customer(company_id, customer_id)
            updated = self._validate({**current.model_dump(), **changes})
            updated.touch()
            row = self.repo.update_one_atomic(
                {"id": customer_id, "company_id": company_id},
                updated.model_dump(mode="json", exclude={"version"}),
                expected_version,
            )
            customer = Customer.model_validate(row)
            refreshed = self.documents.refresh_customer_snapshots(customer, updated_by=updated_by)

        logger.info("Updated customer %s, %d draft document(s) refreshed", customer_id, refreshed)
        return customer, refreshed

    def delete_customer(self, company_id: str, customer_id: str) -> bool:
        """Issued documents keep their snapshot, so the customer may go."""
        with self.store.atomic():
            self.get_customer(company_id, customer_id)
            return self.repo.delete({"id": customer_id, "company_id": company_id})
