from __future__ import annotations
from decimal import Decimal
from typing import Literal, Optional
from pydantic import Field
from .common import TimeStamped, gen_id


class Product(TimeStamped):
    id: str = Field(default_factory=gen_id)
    company_id: str
    name: str
    description: Optional[str] = None
    sku: Optional[str] = None
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    unit: str = "unit"
    status: Literal["active", "inactive"] = "active"
