from pydantic import BaseModel, Field, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List
from uuid import UUID
from datetime import date, datetime

from app.modules.customers.schemas import CustomerForInvoice
from app.modules.invoices.models import InvoiceStatus, SunatStatus, Currency
from app.modules.sequences.models import DocumentType


# Invoice Line Schemas
class InvoiceLineCreate(BaseModel):
    product_id: UUID
    quantity: Decimal = Field(..., gt=0, decimal_places=3, description="Cantidad debe ser mayor a 0")
    unit_price: Decimal = Field(..., ge=0, decimal_places=6, description="Precio unitario sin impuestos (hasta 6 decimales)")
    discount_rate: Decimal = Field(Decimal('0.00'), ge=0, le=100, decimal_places=2, description="Porcentaje de descuento")


class InvoiceLineOut(BaseModel):
    id: UUID
    product_id: UUID
    line_number: int
    product_code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_rate: Decimal
    tax_rate: Decimal
    discount_amount: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal

    class Config:
        from_attributes = True


# Invoice Schemas
class InvoiceCreate(BaseModel):
    customer_id: UUID
    document_type: DocumentType = DocumentType.INVOICE
    series: str = Field(..., min_length=1, max_length=10, description="Ej: F001")
    currency: Currency = Currency.PEN
    exchange_rate: Decimal = Field(Decimal('1.0000'), gt=0, decimal_places=4)
    issue_date: date = Field(default_factory=date.today)
    due_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[InvoiceLineCreate] = Field(..., min_length=1, description="Debe incluir al menos un item")

    @field_validator('series')
    @classmethod
    def normalize_series(cls, v):
        return v.strip().upper()

    @model_validator(mode='after')
    def validate_due_date(self):
        if self.due_date and self.issue_date and self.due_date < self.issue_date:
            raise ValueError('La fecha de vencimiento no puede ser anterior a la fecha de emisión')
        return self


class InvoiceOut(BaseModel):
    id: UUID
    tenant_id: UUID
    customer_id: UUID
    document_type: DocumentType
    series: str
    correlative: int
    invoice_number: str
    status: InvoiceStatus
    sunat_status: SunatStatus
    issue_date: date
    due_date: Optional[date]
    notes: Optional[str]
    currency: Currency
    exchange_rate: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    created_by: UUID
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class InvoiceDetail(InvoiceOut):
    """Esquema detallado que incluye el cliente y las líneas"""
    customer: CustomerForInvoice
    lines: List[InvoiceLineOut]

    class Config:
        from_attributes = True


class InvoiceList(BaseModel):
    invoices: List[InvoiceOut]
    total: int
    limit: int
    offset: int


# Search y Filter Schemas
class InvoiceFilters(BaseModel):
    """Filtros para búsqueda de facturas"""
    status: Optional[InvoiceStatus] = None
    sunat_status: Optional[SunatStatus] = None
    document_type: Optional[DocumentType] = None
    series: Optional[str] = None
    customer_id: Optional[UUID] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


# Calculation Schemas
class LineAmounts(BaseModel):
    """Montos calculados de una línea"""
    quantity: Decimal
    unit_price: Decimal
    discount_rate: Decimal
    tax_rate: Decimal
    discount_amount: Decimal
    subtotal: Decimal       # Base neta tras descuento
    tax_amount: Decimal
    total_amount: Decimal


class InvoiceTotals(BaseModel):
    """Totales calculados de la factura"""
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
