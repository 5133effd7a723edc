from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID
from datetime import date

from app.core.config import settings
from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.permissions import Capability
from app.modules.auth.schemas import AuthContext
from app.modules.invoices.models import InvoiceStatus, SunatStatus
from app.modules.invoices.service import InvoiceIssuer, InvoiceService
from app.modules.invoices.schemas import InvoiceCreate, InvoiceDetail, InvoiceList, InvoiceFilters
from app.modules.sequences.models import DocumentType

# Router principal del módulo de facturas
router = APIRouter(prefix="/invoices", tags=["Invoices"])


@router.post("/", response_model=InvoiceDetail, status_code=status.HTTP_201_CREATED)
def create_invoice(
    invoice_data: InvoiceCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_capability(Capability.ISSUE_INVOICE))
):
    """
    Emitir una factura

    Asigna el siguiente correlativo de la serie, calcula los totales y
    registra cabecera y líneas en una sola transacción. La factura queda en
    estado draft hasta que el integrador SUNAT la envíe.
    """
    return InvoiceIssuer(db).issue(invoice_data, auth_context)


@router.get("/", response_model=InvoiceList)
def list_invoices(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    status: Optional[InvoiceStatus] = Query(None, description="Estado de la factura"),
    sunat_status: Optional[SunatStatus] = Query(None, description="Estado en SUNAT"),
    document_type: Optional[DocumentType] = Query(None, description="Tipo de documento"),
    series: Optional[str] = Query(None, max_length=10, description="Serie"),
    customer_id: Optional[UUID] = Query(None, description="Filtrar por cliente"),
    date_from: Optional[date] = Query(None, description="Fecha inicial (YYYY-MM-DD)"),
    date_to: Optional[date] = Query(None, description="Fecha final (YYYY-MM-DD)"),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_capability(Capability.VIEW_INVOICES))
):
    """
    Listar facturas de la empresa con filtros
    """
    filters = InvoiceFilters(
        status=status,
        sunat_status=sunat_status,
        document_type=document_type,
        series=series,
        customer_id=customer_id,
        date_from=date_from,
        date_to=date_to
    )
    return InvoiceService(db).get_invoices(auth_context.tenant_id, filters, limit, offset)


@router.get("/{invoice_id}", response_model=InvoiceDetail)
def get_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_capability(Capability.VIEW_INVOICES))
):
    """
    Obtener una factura con sus líneas
    """
    return InvoiceService(db).get_invoice_by_id(invoice_id, auth_context.tenant_id)
