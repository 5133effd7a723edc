from app.database.database import Base
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, Enum
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from datetime import datetime
from app.common.mixins import TenantMixin
import enum


class DocumentType(enum.Enum):
    INVOICE = "invoice"          # Factura
    RECEIPT = "receipt"          # Boleta de venta
    CREDIT_NOTE = "credit_note"  # Nota de crédito
    DEBIT_NOTE = "debit_note"    # Nota de débito
    QUOTATION = "quotation"      # Cotización, numerada pero no emitible como comprobante


ISSUABLE_DOCUMENT_TYPES = frozenset({
    DocumentType.INVOICE,
    DocumentType.RECEIPT,
    DocumentType.CREDIT_NOTE,
    DocumentType.DEBIT_NOTE,
})


def format_document_number(prefix, series: str, number: int, min_digits: int, suffix=None) -> str:
    """prefix + series + "-" + correlativo con ceros a la izquierda + suffix"""
    return f"{prefix or ''}{series}-{str(number).zfill(min_digits)}{suffix or ''}"


class DocumentSequence(Base, TenantMixin):
    """Correlativo por empresa, tipo de documento y serie"""
    __tablename__ = "document_sequences"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    document_type = Column(Enum(DocumentType), nullable=False)
    series = Column(String(10), nullable=False)  # Ej: "F001", "B001"
    current_number = Column(Integer, nullable=False, default=0)  # Último correlativo emitido
    prefix = Column(String(10), nullable=False, default="")
    suffix = Column(String(10), nullable=False, default="")
    min_digits = Column(Integer, nullable=False, default=8)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "document_type", "series", name="uq_sequence_tenant_type_series"),
    )

    def format_number(self, number: int) -> str:
        return format_document_number(self.prefix, self.series, number, self.min_digits, self.suffix)
