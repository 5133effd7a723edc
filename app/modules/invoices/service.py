from sqlalchemy.orm import Session, joinedload, selectinload
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy import desc
from typing import Dict, List, Optional, Tuple
from uuid import UUID
import logging

from app.common.exceptions import (
    FacturadorError, NotFoundError, PersistenceError, ValidationError
)
from app.modules.auth.permissions import Capability, ensure_capability
from app.modules.auth.schemas import AuthContext
from app.modules.customers.service import get_customer_for_tenant
from app.modules.invoices.calculator import LineItemCalculator
from app.modules.invoices.models import Invoice, InvoiceLine, InvoiceStatus, SunatStatus
from app.modules.invoices.schemas import InvoiceCreate, InvoiceFilters, InvoiceLineCreate, LineAmounts
from app.modules.products.models import Product
from app.modules.products.service import get_active_products_for_tenant
from app.modules.sequences.models import ISSUABLE_DOCUMENT_TYPES
from app.modules.sequences.service import AllocatedNumber, SequenceAllocator, SequenceStore

logger = logging.getLogger(__name__)


class InvoiceIssuer:
    """
    Emisión atómica de facturas.

    Valida, calcula, asigna el correlativo y persiste cabecera y líneas en
    una sola transacción. Cualquier fallo hace rollback de la sesión
    completa, incluido el incremento del correlativo.
    """

    def __init__(self, db: Session, calculator: Optional[LineItemCalculator] = None,
                 allocator: Optional[SequenceAllocator] = None):
        self.db = db
        self.calculator = calculator or LineItemCalculator()
        self.allocator = allocator or SequenceAllocator(db, SequenceStore(db))

    def issue(self, invoice_data: InvoiceCreate, auth_context: AuthContext) -> Invoice:
        """Emitir una factura en estado draft"""
        ensure_capability(auth_context.user_role, Capability.ISSUE_INVOICE)
        tenant_id = auth_context.tenant_id

        if invoice_data.document_type not in ISSUABLE_DOCUMENT_TYPES:
            raise ValidationError(
                f"El tipo de documento {invoice_data.document_type.value} no se puede emitir",
                details={"document_type": invoice_data.document_type.value}
            )
        if not invoice_data.items:
            raise ValidationError("Debe incluir al menos un item en la factura")

        try:
            get_customer_for_tenant(self.db, tenant_id=tenant_id, customer_id=invoice_data.customer_id)
            products = get_active_products_for_tenant(
                self.db,
                tenant_id=tenant_id,
                product_ids=[item.product_id for item in invoice_data.items]
            )

            priced_lines = self._price_lines(invoice_data.items, products)

            allocated = self.allocator.allocate(
                tenant_id=tenant_id,
                document_type=invoice_data.document_type,
                series=invoice_data.series
            )

            invoice = self._persist(invoice_data, auth_context, allocated, priced_lines)
            self.db.commit()

        except FacturadorError as e:
            self.db.rollback()
            logger.warning(f"Emisión rechazada para empresa {tenant_id}: [{e.kind}] {e.message}")
            raise
        except IntegrityError as e:
            self.db.rollback()
            logger.error(f"Violación de integridad emitiendo factura para empresa {tenant_id}: {e}")
            raise PersistenceError("No se pudo registrar la factura por una violación de integridad")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Error de base de datos emitiendo factura para empresa {tenant_id}: {e}", exc_info=True)
            raise PersistenceError("Error de almacenamiento al registrar la factura")
        except BaseException:
            # Cancelaciones y errores inesperados: nunca dejar la transacción a medias
            self.db.rollback()
            raise

        logger.info(
            f"Factura emitida: {invoice.invoice_number} para empresa {tenant_id} "
            f"(total {invoice.total_amount} {invoice.currency.value})"
        )
        return InvoiceService(self.db).get_invoice_by_id(invoice.id, tenant_id)

    def _price_lines(self, items: List[InvoiceLineCreate],
                     products: Dict[UUID, Product]) -> List[Tuple[InvoiceLineCreate, Product, LineAmounts]]:
        priced = []
        for index, item in enumerate(items):
            product = products[item.product_id]
            # El IGV se toma del producto ahora y queda congelado en la línea
            amounts = self.calculator.calculate_line(
                quantity=item.quantity,
                unit_price=item.unit_price,
                discount_rate=item.discount_rate,
                tax_rate=product.igv_rate,
                line_index=index
            )
            priced.append((item, product, amounts))
        return priced

    def _persist(self, invoice_data: InvoiceCreate, auth_context: AuthContext, allocated: AllocatedNumber,
                 priced_lines: List[Tuple[InvoiceLineCreate, Product, LineAmounts]]) -> Invoice:
        totals = self.calculator.calculate_totals(amounts for _, _, amounts in priced_lines)

        invoice = Invoice(
            tenant_id=auth_context.tenant_id,
            customer_id=invoice_data.customer_id,
            sequence_id=allocated.sequence_id,
            created_by=auth_context.user_id,
            document_type=invoice_data.document_type,
            series=invoice_data.series,
            correlative=allocated.correlative,
            invoice_number=allocated.formatted_number,
            status=InvoiceStatus.DRAFT,
            sunat_status=SunatStatus.PENDING,
            issue_date=invoice_data.issue_date,
            due_date=invoice_data.due_date,
            notes=invoice_data.notes,
            currency=invoice_data.currency,
            exchange_rate=invoice_data.exchange_rate,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            discount_amount=totals.discount_amount,
            total_amount=totals.total_amount
        )
        self.db.add(invoice)
        self.db.flush()

        self._persist_lines(invoice, priced_lines)
        return invoice

    def _persist_lines(self, invoice: Invoice,
                       priced_lines: List[Tuple[InvoiceLineCreate, Product, LineAmounts]]) -> None:
        for number, (item, product, amounts) in enumerate(priced_lines, start=1):
            self.db.add(InvoiceLine(
                invoice_id=invoice.id,
                product_id=item.product_id,
                line_number=number,
                product_code=product.code,
                description=product.name,
                quantity=amounts.quantity,
                unit_price=amounts.unit_price,
                discount_rate=amounts.discount_rate,
                tax_rate=amounts.tax_rate,
                discount_amount=amounts.discount_amount,
                subtotal=amounts.subtotal,
                tax_amount=amounts.tax_amount,
                total_amount=amounts.total_amount
            ))
        self.db.flush()


class InvoiceService:
    """Consultas de facturas ya emitidas"""

    def __init__(self, db: Session):
        self.db = db

    def get_invoice_by_id(self, invoice_id: UUID, tenant_id: UUID) -> Invoice:
        """Obtener factura por ID con sus líneas"""
        invoice = self.db.query(Invoice).options(
            selectinload(Invoice.lines),
            joinedload(Invoice.customer)
        ).filter(
            Invoice.id == invoice_id,
            Invoice.tenant_id == tenant_id
        ).first()

        if not invoice:
            raise NotFoundError("Factura no encontrada", details={"invoice_id": str(invoice_id)})

        return invoice

    def get_invoices(self, tenant_id: UUID, filters: InvoiceFilters, limit: int = 20, offset: int = 0) -> dict:
        """Obtener lista de facturas con filtros"""
        query = self.db.query(Invoice).filter(Invoice.tenant_id == tenant_id)

        if filters.status:
            query = query.filter(Invoice.status == filters.status)

        if filters.sunat_status:
            query = query.filter(Invoice.sunat_status == filters.sunat_status)

        if filters.document_type:
            query = query.filter(Invoice.document_type == filters.document_type)

        if filters.series:
            query = query.filter(Invoice.series == filters.series.strip().upper())

        if filters.customer_id:
            query = query.filter(Invoice.customer_id == filters.customer_id)

        if filters.date_from:
            query = query.filter(Invoice.issue_date >= filters.date_from)

        if filters.date_to:
            query = query.filter(Invoice.issue_date <= filters.date_to)

        total = query.count()
        invoices = query.order_by(
            desc(Invoice.issue_date), desc(Invoice.correlative)
        ).offset(offset).limit(limit).all()

        return {
            "invoices": invoices,
            "total": total,
            "limit": limit,
            "offset": offset
        }
