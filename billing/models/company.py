from __future__ import annotations
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, EmailStr, Field
from .common import Address, TimeStamped, gen_id


class CompanySettings(BaseModel):
    default_due_days: int = Field(default=30, ge=0)
    default_tax_rate: Decimal = Field(default=Decimal("10"), ge=0, le=100)
    payment_terms: str = "Net 30"
    allow_overpayment: bool = False


class Company(TimeStamped):
    id: str = Field(default_factory=gen_id)
    name: str
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    country: Optional[str] = None
    tax_id: Optional[str] = None
    currency: Optional[str] = None
    settings: CompanySettings = Field(default_factory=CompanySettings)
