from app.database.database import Base
from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint, Index, Numeric, Enum, Date, Text
from sqlalchemy.orm import relationship
from datetime import date
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
from app.modules.sequences.models import DocumentType
import enum


class InvoiceStatus(enum.Enum):
    DRAFT = "draft"            # Emitida, aún no enviada a SUNAT
    SENT = "sent"              # Enviada a SUNAT
    ACCEPTED = "accepted"      # Aceptada por SUNAT
    REJECTED = "rejected"      # Rechazada por SUNAT
    CANCELLED = "cancelled"    # Anulada (comunicación de baja)


class SunatStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ERROR = "error"


class Currency(enum.Enum):
    PEN = "PEN"
    USD = "USD"
    EUR = "EUR"


class Invoice(Base, TenantMixin, TimestampMixin):
    __tablename__ = "invoices"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)

    # References
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    sequence_id = Column(UUID(as_uuid=True), ForeignKey("document_sequences.id"), nullable=False)
    created_by = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)

    # Numeración
    document_type = Column(Enum(DocumentType), nullable=False, default=DocumentType.INVOICE)
    series = Column(String(10), nullable=False)
    correlative = Column(Integer, nullable=False)
    invoice_number = Column(String(50), nullable=False)  # prefix + serie + "-" + correlativo + suffix

    status = Column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT)

    # Dates
    issue_date = Column(Date, nullable=False, default=date.today)
    due_date = Column(Date, nullable=True)

    # Content
    notes = Column(Text, nullable=True)
    currency = Column(Enum(Currency), nullable=False, default=Currency.PEN)
    exchange_rate = Column(Numeric(10, 4), nullable=False, default=1)

    # Totals (suma de los valores ya redondeados por línea)
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)

    # Integración SUNAT (escrito solo por el integrador externo)
    sunat_status = Column(Enum(SunatStatus), nullable=False, default=SunatStatus.PENDING)
    sunat_response_code = Column(String(10), nullable=True)
    sunat_response_message = Column(Text, nullable=True)
    xml_content = Column(Text, nullable=True)
    pdf_path = Column(String(500), nullable=True)

    # Relationships
    customer = relationship("Customer")
    sequence = relationship("DocumentSequence")
    created_by_user = relationship("User")
    lines = relationship(
        "InvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLine.line_number"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "document_type", "series", "correlative", name="uq_invoice_tenant_type_series_correlative"),
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoice_tenant_number"),
        Index("idx_invoices_tenant_issue_date", "tenant_id", "issue_date"),
        Index("idx_invoices_sunat_status", "sunat_status"),
    )


class InvoiceLine(Base, TimestampMixin):
    __tablename__ = "invoice_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    invoice_id = Column(UUID(as_uuid=True), ForeignKey("invoices.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False)
    line_number = Column(Integer, nullable=False)

    # Snapshot data (para preservar información si el producto cambia)
    product_code = Column(String(50), nullable=False)
    description = Column(String(200), nullable=False)

    quantity = Column(Numeric(12, 3), nullable=False)  # Permitir decimales para servicios
    unit_price = Column(Numeric(18, 6), nullable=False)  # Precio sin impuestos, admite fracciones de céntimo
    discount_rate = Column(Numeric(5, 2), nullable=False, default=0)
    tax_rate = Column(Numeric(5, 2), nullable=False)  # IGV del producto al momento de emitir

    # Line calculations
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=False)  # Base neta: quantity * unit_price - descuento
    tax_amount = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)  # subtotal + tax_amount

    # Relationships
    invoice = relationship("Invoice", back_populates="lines")
    product = relationship("Product")

    __table_args__ = (
        UniqueConstraint("invoice_id", "line_number", name="uq_invoice_line_number"),
    )
