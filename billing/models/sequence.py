from __future__ import annotations
from pydantic import BaseModel, Field
from .common import DocumentType


def sequence_id(company_id: str, document_type: str) -> str:
    return f"{company_id}:{document_type}"


class NumberSequence(BaseModel):
    id: str
    company_id: str
    document_type: DocumentType
    prefix: str = ""
    next_number: int = Field(default=1, ge=1)
    version: int = 1

    def format(self, value: int) -> str:
        return f"{self.prefix}{value}"
