from __future__ import annotations
from typing import Literal, Optional
from pydantic import BaseModel, EmailStr, Field
from .common import Address, TimeStamped, gen_id


class Customer(TimeStamped):
    id: str = Field(default_factory=gen_id)
    company_id: str
    name: str
    contact_person: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    country: Optional[str] = None
    tax_id: Optional[str] = None
    currency: Optional[str] = None
    status: Literal["active", "inactive"] = "active"
    notes: Optional[str] = None


class CustomerSnapshot(BaseModel):
    """Customer fields frozen on a document when it is issued."""

    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    country: Optional[str] = None
    tax_id: Optional[str] = None
