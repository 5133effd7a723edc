from pydantic import BaseModel, Field, field_validator
from typing import List
from uuid import UUID
from datetime import datetime

from app.modules.sequences.models import DocumentType


class SequenceCreate(BaseModel):
    document_type: DocumentType
    series: str = Field(..., min_length=1, max_length=10, description="Ej: F001")
    current_number: int = Field(0, ge=0, description="Último correlativo ya emitido")
    prefix: str = Field("", max_length=10)
    suffix: str = Field("", max_length=10)
    min_digits: int = Field(8, ge=1, le=20)

    @field_validator('series')
    @classmethod
    def validate_series(cls, v):
        v = v.strip().upper()
        if not v.isalnum():
            raise ValueError('La serie solo puede contener letras y números')
        return v


class SequenceOut(BaseModel):
    id: UUID
    tenant_id: UUID
    document_type: DocumentType
    series: str
    current_number: int
    prefix: str
    suffix: str
    min_digits: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SequenceList(BaseModel):
    sequences: List[SequenceOut]
    total: int


class NextNumberPreview(BaseModel):
    """Vista previa del siguiente número; no consume el correlativo"""
    document_type: DocumentType
    series: str
    next_number: int
    formatted_number: str
