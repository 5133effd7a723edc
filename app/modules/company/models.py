from app.database.database import Base
from sqlalchemy import Column, String, Boolean, DateTime, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
import enum
import uuid


class TaxRegime(enum.Enum):
    GENERAL = "general"
    SIMPLIFIED = "simplified"
    SPECIAL = "special"


class Company(Base):
    __tablename__ = "companies"

    id = Column(UUID(as_uuid=True), primary_key=True, index=True, default=uuid.uuid4)
    ruc = Column(String(11), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    business_name = Column(String(200), nullable=True)
    address = Column(String, nullable=True)
    phone = Column(String(20), nullable=True)
    tax_regime = Column(Enum(TaxRegime), nullable=False, default=TaxRegime.GENERAL)
    currency = Column(String(3), nullable=False, default="PEN")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user_companies = relationship("UserCompany", back_populates="company")
