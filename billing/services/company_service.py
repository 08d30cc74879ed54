from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from billing.errors import NotFound, ValidationError
from billing.models.common import DOCUMENT_TYPES
from billing.models.company import Company, CompanySettings
from billing.models.sequence import NumberSequence
from billing.services.currency_service import normalize_currency
from billing.services.numbering_service import NumberingService
from billing.storage.repo import JsonStore

logger = logging.getLogger(__name__)

READ_ONLY = frozenset({"id", "version", "created_at", "updated_at"})


class CompanyService:
    """Tenants: profile, default currency, billing settings and numbering."""

    def __init__(
        self,
        store: JsonStore,
        numbering: NumberingService,
        defaults: Optional[CompanySettings] = None,
    ) -> None:
        self.store = store
        self.repo = store.collection("companies")
        self.numbering = numbering
        self.defaults = defaults or CompanySettings()

    def _check_currency(self, data: Dict[str, Any]) -> None:
        if data.get("currency"):
            code = normalize_currency(data["currency"])
            if code is None:
                raise ValidationError("Unsupported currency", currency=data["currency"])
            data["currency"] = code

    def register_company(self, company: Company) -> Company:
        """Store a new company and open one counter per document type."""
        data = company.model_dump()
        if "settings" not in company.model_fields_set:
            data["settings"] = self.defaults.model_dump()
        self._check_currency(data)
        company = Company.model_validate(data)
        with self.store.atomic():
            self.repo.insert(company)
            for document_type in DOCUMENT_TYPES:
                self.numbering.ensure_sequence(company.id, document_type)
        logger.info("Registered company %s (%s)", company.name, company.id)
        return self.get_company(company.id)

    def list_companies(self) -> List[Company]:
        return [Company.model_validate(d) for d in self.repo.list_all()]

    def get_company(self, company_id: str) -> Company:
        row = self.repo.get_by_id(company_id)
        if row is None:
            raise NotFound("company", company_id)
        return Company.model_validate(row)

    def update_company(
        self, company_id: str, changes: Mapping[str, Any], expected_version: Optional[int] = None
    ) -> Company:
        readonly = set(changes) & READ_ONLY
        if readonly:
            raise ValidationError("Read-only fields", fields=sorted(readonly))
        with self.store.atomic():
            current = self.get_company(company_id)
            data = {**current.model_dump(), **changes}
            self._check_currency(data)
            try:
                updated = Company.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError("Invalid company", problems=[str(err["msg"]) for err in e.errors()]) from e
            updated.touch()
            row = self.repo.update_one_atomic(
                {"id": company_id},
                updated.model_dump(mode="json", exclude={"version"}),
                expected_version,
            )
        return Company.model_validate(row)

    def update_settings(self, company_id: str, **settings: Any) -> Company:
        current = self.get_company(company_id)
        try:
            merged = CompanySettings.model_validate({**current.settings.model_dump(), **settings})
        except PydanticValidationError as e:
            raise ValidationError("Invalid settings", problems=[str(err["msg"]) for err in e.errors()]) from e
        return self.update_company(company_id, {"settings": merged.model_dump()})

    # ---------- Numbering ---------- #

    def get_numbering(self, company_id: str) -> Dict[str, NumberSequence]:
        self.get_company(company_id)
        return self.numbering.sequences_for(company_id)

    def update_numbering(
        self,
        company_id: str,
        document_type: str,
        prefix: Optional[str] = None,
        next_number: Optional[int] = None,
    ) -> NumberSequence:
        self.get_company(company_id)
        seq = self.numbering.configure(company_id, document_type, prefix=prefix, next_number=next_number)
        logger.info(
            "Numbering for %s/%s now starts at %s",
            company_id, document_type, seq.format(seq.next_number),
        )
        return seq
