from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from billing.errors import NotFound, ValidationError
from billing.models.product import Product
from billing.storage.repo import JsonStore

READ_ONLY = frozenset({"id", "company_id", "version", "created_at", "updated_at"})


class CatalogService:
    """
    Per-company product catalogue.
    Products only seed line items: a later price change never touches an
    existing document.
    """

    def __init__(self, store: JsonStore) -> None:
        self.store = store
        self.repo = store.collection("products")

    # ---------- Helpers ---------- #

    @staticmethod
    def _hydrate(d: Mapping[str, Any]) -> Product:
        try:
            return Product.model_validate(d)
        except PydanticValidationError as e:
            problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError("Invalid product", problems=problems) from e

    # ---------- Products ---------- #

    def list_products(self, company_id: str, include_inactive: bool = False) -> List[Product]:
        rows = self.repo.find({"company_id": company_id})
        out = [self._hydrate(d) for d in rows]
        if not include_inactive:
            out = [p for p in out if p.status == "active"]
        return out

    def get_product(self, company_id: str, product_id: str) -> Product:
        row = self.repo.find_one({"id": product_id, "company_id": company_id})
        if row is None:
            raise NotFound("product", product_id, company_id=company_id)
        return self._hydrate(row)

    def add_product(self, p: Product) -> Product:
        with self.store.atomic():
            if p.sku and self.repo.find_one({"company_id": p.company_id, "sku": p.sku}):
                raise ValidationError("SKU already in use", sku=p.sku)
            row = self.repo.insert(p)
        return self._hydrate(row)

    def update_product(self, company_id: str, product_id: str, changes: Mapping[str, Any]) -> Product:
        readonly = set(changes) & READ_ONLY
        if readonly:
            raise ValidationError("Read-only fields", fields=sorted(readonly))
        with self.store.atomic():
            current = self.get_product(company_id, product_id)
            updated = self._hydrate({**current.model_dump(), **changes})
            updated.touch()
            row = self.repo.update_one_atomic(
                {"id": product_id, "company_id": company_id},
                updated.model_dump(mode="json", exclude={"version"}),
            )
        return self._hydrate(row)

    def delete_product(self, company_id: str, product_id: str) -> bool:
        return self.repo.delete({"id": product_id, "company_id": company_id})

    def line_from_product(
        self,
        company_id: str,
        product_id: str,
        quantity: Union[Decimal, int, str] = 1,
        tax_rate: Optional[Decimal] = None,
    ) -> Dict[str, Any]:
        """Line item input copied from the catalogue, ready for create/update."""
        p = self.get_product(company_id, product_id)
        return {
            "product_id": p.id,
            "name": p.name,
            "description": p.description or "",
            "quantity": Decimal(str(quantity)),
            "unit_price": p.unit_price,
            "tax_rate": p.tax_rate if tax_rate is None else tax_rate,
        }
