from pydantic import BaseModel
from uuid import UUID

from app.modules.customers.models import CustomerDocumentType


class CustomerForInvoice(BaseModel):
    """Esquema simplificado para uso en facturas"""
    id: UUID
    name: str
    document_type: CustomerDocumentType
    document_number: str

    class Config:
        from_attributes = True
