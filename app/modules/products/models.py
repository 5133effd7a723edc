from app.database.database import Base
from sqlalchemy import Column, String, Boolean, Numeric, Enum, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class ProductType(enum.Enum):
    PRODUCT = "product"
    SERVICE = "service"


class TaxType(enum.Enum):
    GRAVADO = "gravado"
    EXONERADO = "exonerado"
    INAFECTO = "inafecto"
    EXPORTACION = "exportacion"


class Product(Base, TenantMixin, TimestampMixin):
    __tablename__ = "products"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(50), nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(String(255), nullable=True)
    product_type = Column(Enum(ProductType), nullable=False, default=ProductType.PRODUCT)
    unit_type = Column(String(3), nullable=False, default="NIU")  # Código de unidad SUNAT
    price = Column(Numeric(12, 2), nullable=False, default=0)
    tax_type = Column(Enum(TaxType), nullable=False, default=TaxType.GRAVADO)
    igv_rate = Column(Numeric(5, 2), nullable=False, default=18)  # Porcentaje vigente, se congela en cada línea
    is_active = Column(Boolean, default=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_product_tenant_code"),
    )
