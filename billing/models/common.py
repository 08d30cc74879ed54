from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

DocumentType = Literal["quotation", "invoice", "credit_note", "debit_note"]

DOCUMENT_TYPES = ("quotation", "invoice", "credit_note", "debit_note")


def gen_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None


class TimeStamped(BaseModel):
    model_config = ConfigDict(extra="ignore")

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    def touch(self):
        self.updated_at = utcnow()
