from app.database.database import Base
from sqlalchemy import Column, String, Boolean, Enum, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin, SoftDeleteMixin
import enum


class CustomerDocumentType(enum.Enum):
    DNI = "dni"
    RUC = "ruc"
    PASSPORT = "passport"
    OTHER = "other"


class TaxCondition(enum.Enum):
    DOMICILIADO = "domiciliado"
    NO_DOMICILIADO = "no_domiciliado"


class Customer(Base, TenantMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "customers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    document_type = Column(Enum(CustomerDocumentType), nullable=False)
    document_number = Column(String(20), nullable=False)
    name = Column(String(200), nullable=False)
    business_name = Column(String(200), nullable=True)
    email = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    address = Column(String, nullable=True)
    country = Column(String(2), nullable=False, default="PE")
    tax_condition = Column(Enum(TaxCondition), nullable=False, default=TaxCondition.DOMICILIADO)
    is_active = Column(Boolean, default=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "document_type", "document_number", name="uq_customer_tenant_document"),
    )
