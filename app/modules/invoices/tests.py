"""
Tests para el módulo de Facturas

Cubren:
- Cálculo de montos por línea y totales (redondeo comercial)
- Emisión atómica: correlativo, cabecera y líneas en una sola transacción
- Rollback completo ante cualquier fallo, sin huecos en la numeración
- Aislamiento multi-tenant de clientes y productos
- Emisión concurrente sobre la misma serie
- Endpoints HTTP
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.orm import Session

from app.common.exceptions import (
    InvalidLineInputError, NotFoundError, PermissionDeniedError, PersistenceError,
    SequenceInactiveError, SequenceNotFoundError, ValidationError
)
from app.modules.auth.permissions import UserRole
from app.modules.auth.schemas import AuthContext
from app.modules.customers.models import Customer, CustomerDocumentType
from app.modules.invoices.calculator import LineItemCalculator, round_money
from app.modules.invoices.models import Invoice, InvoiceLine, InvoiceStatus, SunatStatus
from app.modules.invoices.schemas import InvoiceCreate, InvoiceFilters, InvoiceLineCreate
from app.modules.invoices.service import InvoiceIssuer, InvoiceService
from app.modules.sequences.models import DocumentSequence, DocumentType


def make_invoice_data(customer, products, series="F001", **kwargs):
    """Armar una factura con una línea de 3 x 10.00 por producto"""
    items = [
        InvoiceLineCreate(
            product_id=product.id,
            quantity=Decimal("3"),
            unit_price=Decimal("10.00"),
            discount_rate=Decimal("5")
        )
        for product in products
    ]
    return InvoiceCreate(customer_id=customer.id, series=series, items=items, **kwargs)


def current_number(session_factory, sequence_id):
    """Leer el correlativo desde una sesión nueva, sin caché"""
    session = session_factory()
    try:
        return session.get(DocumentSequence, sequence_id).current_number
    finally:
        session.close()


# ===== TESTS DEL CALCULADOR =====

class TestLineItemCalculator:
    """Tests para el cálculo de montos"""

    def setup_method(self):
        self.calculator = LineItemCalculator()

    def test_line_with_discount_and_tax(self):
        line = self.calculator.calculate_line(
            quantity=3, unit_price="10.00", discount_rate="5", tax_rate="18"
        )
        assert line.subtotal == Decimal("28.50")
        assert line.discount_amount == Decimal("1.50")
        assert line.tax_amount == Decimal("5.13")
        assert line.total_amount == Decimal("33.63")

    def test_round_half_up(self):
        assert round_money(Decimal("0.125")) == Decimal("0.13")
        assert round_money(Decimal("0.124")) == Decimal("0.12")

        line = self.calculator.calculate_line(
            quantity=1, unit_price="0.125", discount_rate=0, tax_rate=0
        )
        assert line.subtotal == Decimal("0.13")
        assert line.total_amount == Decimal("0.13")

    def test_fractional_quantity(self):
        line = self.calculator.calculate_line(
            quantity="2.5", unit_price="3.99", discount_rate=0, tax_rate=18
        )
        assert line.subtotal == Decimal("9.98")
        assert line.tax_amount == Decimal("1.80")
        assert line.total_amount == Decimal("11.78")

    def test_totals_sum_rounded_lines(self):
        """El impuesto total es la suma de impuestos ya redondeados por línea"""
        lines = [
            self.calculator.calculate_line(quantity=1, unit_price="0.25", discount_rate=0, tax_rate=18)
            for _ in range(3)
        ]
        assert all(line.tax_amount == Decimal("0.05") for line in lines)

        totals = self.calculator.calculate_totals(lines)
        assert totals.subtotal == Decimal("0.75")
        assert totals.tax_amount == Decimal("0.15")
        assert totals.total_amount == Decimal("0.90")

    def test_zero_price_and_full_discount(self):
        line = self.calculator.calculate_line(quantity=2, unit_price=0, discount_rate=0, tax_rate=18)
        assert line.total_amount == Decimal("0.00")

        line = self.calculator.calculate_line(quantity=2, unit_price="50", discount_rate=100, tax_rate=18)
        assert line.subtotal == Decimal("0.00")
        assert line.discount_amount == Decimal("100.00")
        assert line.tax_amount == Decimal("0.00")

    @pytest.mark.parametrize("kwargs", [
        {"quantity": 0, "unit_price": 10, "discount_rate": 0, "tax_rate": 18},
        {"quantity": -1, "unit_price": 10, "discount_rate": 0, "tax_rate": 18},
        {"quantity": 1, "unit_price": "-0.01", "discount_rate": 0, "tax_rate": 18},
        {"quantity": 1, "unit_price": 10, "discount_rate": "100.01", "tax_rate": 18},
        {"quantity": 1, "unit_price": 10, "discount_rate": 0, "tax_rate": 150},
        {"quantity": "abc", "unit_price": 10, "discount_rate": 0, "tax_rate": 18},
        {"quantity": 1, "unit_price": "NaN", "discount_rate": 0, "tax_rate": 18},
    ])
    def test_invalid_line_input(self, kwargs):
        with pytest.raises(InvalidLineInputError) as exc_info:
            self.calculator.calculate_line(line_index=2, **kwargs)

        assert exc_info.value.line_index == 2
        assert exc_info.value.details["line_index"] == 2
        assert exc_info.value.kind == "invalid_line_input"


# ===== TESTS DE EMISIÓN =====

class TestInvoiceIssuer:
    """Tests para la emisión atómica de facturas"""

    def test_issue_invoice_success(self, db_session: Session, auth_context, sample_customer,
                                   sample_product, sample_sequence):
        invoice = InvoiceIssuer(db_session).issue(
            make_invoice_data(sample_customer, [sample_product]), auth_context
        )

        assert invoice.invoice_number == "F001-00000001"
        assert invoice.correlative == 1
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.sunat_status == SunatStatus.PENDING
        assert invoice.tenant_id == auth_context.tenant_id
        assert invoice.created_by == auth_context.user_id
        assert invoice.subtotal == Decimal("28.50")
        assert invoice.tax_amount == Decimal("5.13")
        assert invoice.discount_amount == Decimal("1.50")
        assert invoice.total_amount == Decimal("33.63")

        assert len(invoice.lines) == 1
        line = invoice.lines[0]
        assert line.line_number == 1
        assert line.product_code == "P001"
        assert line.description == "Cemento Portland 42.5kg"
        assert line.tax_rate == Decimal("18.00")

        db_session.refresh(sample_sequence)
        assert sample_sequence.current_number == 1

    def test_correlatives_are_consecutive(self, db_session: Session, auth_context, sample_customer,
                                          sample_product, sample_sequence):
        issuer = InvoiceIssuer(db_session)
        numbers = [
            issuer.issue(make_invoice_data(sample_customer, [sample_product]), auth_context).invoice_number
            for _ in range(3)
        ]

        assert numbers == ["F001-00000001", "F001-00000002", "F001-00000003"]

    def test_totals_match_lines(self, db_session: Session, auth_context, sample_customer,
                                sample_product, product_factory, sample_company, sample_sequence):
        exempt = product_factory(sample_company, "P002", igv_rate=Decimal("0"))
        invoice = InvoiceIssuer(db_session).issue(
            make_invoice_data(sample_customer, [sample_product, exempt]), auth_context
        )

        assert invoice.subtotal == sum(line.subtotal for line in invoice.lines)
        assert invoice.tax_amount == sum(line.tax_amount for line in invoice.lines)
        assert invoice.total_amount == invoice.subtotal + invoice.tax_amount
        assert [line.line_number for line in invoice.lines] == [1, 2]
        assert invoice.lines[1].tax_amount == Decimal("0.00")

    def test_tax_rate_frozen_at_issue(self, db_session: Session, session_factory, auth_context,
                                      sample_customer, sample_product, sample_sequence):
        invoice = InvoiceIssuer(db_session).issue(
            make_invoice_data(sample_customer, [sample_product]), auth_context
        )

        sample_product.igv_rate = Decimal("10.00")
        db_session.commit()

        session = session_factory()
        try:
            stored = InvoiceService(session).get_invoice_by_id(invoice.id, auth_context.tenant_id)
            assert stored.lines[0].tax_rate == Decimal("18.00")
            assert stored.tax_amount == Decimal("5.13")
        finally:
            session.close()

    def test_read_after_write_from_new_session(self, db_session: Session, session_factory, auth_context,
                                               sample_customer, sample_product, sample_sequence):
        invoice = InvoiceIssuer(db_session).issue(
            make_invoice_data(sample_customer, [sample_product], notes="Entrega en obra"), auth_context
        )

        session = session_factory()
        try:
            stored = InvoiceService(session).get_invoice_by_id(invoice.id, auth_context.tenant_id)
            assert stored.invoice_number == invoice.invoice_number
            assert stored.total_amount == invoice.total_amount
            assert stored.notes == "Entrega en obra"
            assert stored.customer.document_number == "20601234567"
            assert len(stored.lines) == 1
        finally:
            session.close()

    def test_invalid_line_leaves_no_trace(self, db_session: Session, session_factory, auth_context,
                                          sample_customer, sample_product, product_factory,
                                          sample_company, sample_sequence):
        broken = product_factory(sample_company, "P999", igv_rate=Decimal("150"))

        with pytest.raises(InvalidLineInputError) as exc_info:
            InvoiceIssuer(db_session).issue(
                make_invoice_data(sample_customer, [sample_product, broken]), auth_context
            )

        assert exc_info.value.line_index == 1
        assert current_number(session_factory, sample_sequence.id) == 0
        assert db_session.query(Invoice).count() == 0

    def test_duplicate_correlative_rolls_back(self, db_session: Session, session_factory, auth_context,
                                              sample_customer, sample_product, sample_sequence):
        # Factura con el correlativo 1 registrada por fuera del asignador
        db_session.add(Invoice(
            tenant_id=auth_context.tenant_id,
            customer_id=sample_customer.id,
            sequence_id=sample_sequence.id,
            created_by=auth_context.user_id,
            document_type=DocumentType.INVOICE,
            series="F001",
            correlative=1,
            invoice_number="F001-00000001",
            issue_date=date.today()
        ))
        db_session.commit()

        with pytest.raises(PersistenceError):
            InvoiceIssuer(db_session).issue(
                make_invoice_data(sample_customer, [sample_product]), auth_context
            )

        assert current_number(session_factory, sample_sequence.id) == 0
        assert db_session.query(Invoice).count() == 1
        assert db_session.query(InvoiceLine).count() == 0

    def test_failure_after_header_rolls_back_everything(self, db_session: Session, session_factory,
                                                        auth_context, sample_customer, sample_product,
                                                        sample_sequence, monkeypatch):
        def explode(self, invoice, priced_lines):
            raise RuntimeError("fallo simulado al guardar líneas")

        monkeypatch.setattr(InvoiceIssuer, "_persist_lines", explode)

        with pytest.raises(RuntimeError):
            InvoiceIssuer(db_session).issue(
                make_invoice_data(sample_customer, [sample_product]), auth_context
            )

        assert current_number(session_factory, sample_sequence.id) == 0
        assert db_session.query(Invoice).count() == 0

        # La siguiente emisión reutiliza el número que no llegó a confirmarse
        monkeypatch.undo()
        invoice = InvoiceIssuer(db_session).issue(
            make_invoice_data(sample_customer, [sample_product]), auth_context
        )
        assert invoice.invoice_number == "F001-00000001"

    def test_inactive_sequence(self, db_session: Session, session_factory, auth_context,
                               sample_customer, sample_product, sample_sequence):
        sample_sequence.is_active = False
        db_session.commit()

        with pytest.raises(SequenceInactiveError):
            InvoiceIssuer(db_session).issue(
                make_invoice_data(sample_customer, [sample_product]), auth_context
            )

        assert current_number(session_factory, sample_sequence.id) == 0
        assert db_session.query(Invoice).count() == 0

    def test_missing_sequence(self, db_session: Session, auth_context, sample_customer,
                              sample_product, sample_sequence):
        with pytest.raises(SequenceNotFoundError):
            InvoiceIssuer(db_session).issue(
                make_invoice_data(sample_customer, [sample_product], series="F999"), auth_context
            )

        assert db_session.query(Invoice).count() == 0

    def test_customer_from_other_company(self, db_session: Session, session_factory, auth_context,
                                         other_company, sample_product, sample_sequence):
        foreign_customer = Customer(
            tenant_id=other_company.id,
            document_type=CustomerDocumentType.DNI,
            document_number="45678912",
            name="Cliente Ajeno"
        )
        db_session.add(foreign_customer)
        db_session.commit()

        with pytest.raises(NotFoundError):
            InvoiceIssuer(db_session).issue(
                make_invoice_data(foreign_customer, [sample_product]), auth_context
            )

        assert current_number(session_factory, sample_sequence.id) == 0

    def test_product_from_other_company(self, db_session: Session, auth_context, sample_customer,
                                        product_factory, other_company, sample_sequence):
        foreign_product = product_factory(other_company, "X001")

        with pytest.raises(NotFoundError):
            InvoiceIssuer(db_session).issue(
                make_invoice_data(sample_customer, [foreign_product]), auth_context
            )

    def test_unknown_product(self, db_session: Session, auth_context, sample_customer, sample_sequence):
        data = InvoiceCreate(
            customer_id=sample_customer.id,
            series="F001",
            items=[InvoiceLineCreate(product_id=uuid4(), quantity=Decimal("1"), unit_price=Decimal("1.00"))]
        )

        with pytest.raises(NotFoundError):
            InvoiceIssuer(db_session).issue(data, auth_context)

    def test_inactive_product(self, db_session: Session, auth_context, sample_customer,
                              product_factory, sample_company, sample_sequence):
        discontinued = product_factory(sample_company, "P050", is_active=False)

        with pytest.raises(ValidationError):
            InvoiceIssuer(db_session).issue(
                make_invoice_data(sample_customer, [discontinued]), auth_context
            )

    def test_quotation_not_issuable(self, db_session: Session, auth_context, sample_customer,
                                    sample_product, sample_sequence):
        data = make_invoice_data(sample_customer, [sample_product], document_type=DocumentType.QUOTATION)

        with pytest.raises(ValidationError) as exc_info:
            InvoiceIssuer(db_session).issue(data, auth_context)

        assert exc_info.value.details["document_type"] == "quotation"

    def test_missing_role(self, db_session: Session, sample_company, sample_user, sample_customer,
                          sample_product, sample_sequence):
        context = AuthContext.model_construct(
            user_id=sample_user.id, tenant_id=sample_company.id, user_role=None
        )

        with pytest.raises(PermissionDeniedError):
            InvoiceIssuer(db_session).issue(
                make_invoice_data(sample_customer, [sample_product]), context
            )

    def test_concurrent_issue_same_series(self, session_factory, auth_context, sample_customer,
                                          sample_product, sample_sequence):
        """N emisiones simultáneas producen exactamente los correlativos 1..N"""
        workers = 10
        barrier = threading.Barrier(workers)
        data = make_invoice_data(sample_customer, [sample_product])

        def issue_one(_):
            session = session_factory()
            try:
                barrier.wait()
                return InvoiceIssuer(session).issue(data, auth_context).correlative
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=workers) as executor:
            correlatives = list(executor.map(issue_one, range(workers)))

        assert sorted(correlatives) == list(range(1, workers + 1))
        assert current_number(session_factory, sample_sequence.id) == workers


# ===== TESTS DE CONSULTA =====

class TestInvoiceService:
    """Tests para la consulta de facturas"""

    def test_get_invoice_other_company(self, db_session: Session, auth_context, other_company,
                                       sample_customer, sample_product, sample_sequence):
        invoice = InvoiceIssuer(db_session).issue(
            make_invoice_data(sample_customer, [sample_product]), auth_context
        )

        with pytest.raises(NotFoundError):
            InvoiceService(db_session).get_invoice_by_id(invoice.id, other_company.id)

    def test_get_invoices_with_filters(self, db_session: Session, auth_context, sample_customer,
                                       sample_product, sample_sequence, sample_company):
        db_session.add(DocumentSequence(
            tenant_id=sample_company.id,
            document_type=DocumentType.RECEIPT,
            series="B001"
        ))
        db_session.commit()

        issuer = InvoiceIssuer(db_session)
        issuer.issue(make_invoice_data(sample_customer, [sample_product]), auth_context)
        issuer.issue(make_invoice_data(sample_customer, [sample_product]), auth_context)
        issuer.issue(
            make_invoice_data(sample_customer, [sample_product], series="B001",
                              document_type=DocumentType.RECEIPT),
            auth_context
        )

        service = InvoiceService(db_session)

        result = service.get_invoices(auth_context.tenant_id, InvoiceFilters())
        assert result["total"] == 3

        result = service.get_invoices(auth_context.tenant_id, InvoiceFilters(series="f001"))
        assert result["total"] == 2
        assert [i.correlative for i in result["invoices"]] == [2, 1]

        result = service.get_invoices(
            auth_context.tenant_id, InvoiceFilters(document_type=DocumentType.RECEIPT)
        )
        assert result["total"] == 1
        assert result["invoices"][0].invoice_number == "B001-00000001"

        result = service.get_invoices(auth_context.tenant_id, InvoiceFilters(), limit=1, offset=1)
        assert result["total"] == 3
        assert len(result["invoices"]) == 1


# ===== TESTS DE ENDPOINTS =====

class TestInvoiceAPI:
    """Tests para los endpoints de facturas"""

    def invoice_payload(self, customer, product, series="F001"):
        return {
            "customer_id": str(customer.id),
            "series": series,
            "items": [
                {"product_id": str(product.id), "quantity": "3", "unit_price": "10.00", "discount_rate": "5"}
            ]
        }

    def test_create_invoice_endpoint(self, client, auth_headers, sample_customer, sample_product,
                                     sample_sequence):
        response = client.post(
            "/invoices/", json=self.invoice_payload(sample_customer, sample_product), headers=auth_headers
        )

        assert response.status_code == 201
        data = response.json()
        assert data["invoice_number"] == "F001-00000001"
        assert data["status"] == "draft"
        assert Decimal(data["total_amount"]) == Decimal("33.63")
        assert len(data["lines"]) == 1
        assert data["customer"]["id"] == str(sample_customer.id)
        assert data["customer"]["name"] == "Inversiones Lima S.A."
        assert data["customer"]["document_type"] == "ruc"
        assert data["customer"]["document_number"] == "20601234567"

    def test_get_invoice_endpoint(self, client, auth_headers, sample_customer, sample_product,
                                  sample_sequence):
        created = client.post(
            "/invoices/", json=self.invoice_payload(sample_customer, sample_product), headers=auth_headers
        ).json()

        response = client.get(f"/invoices/{created['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["invoice_number"] == created["invoice_number"]

        response = client.get(f"/invoices/{uuid4()}", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "not_found"

    def test_list_invoices_endpoint(self, client, auth_headers, sample_customer, sample_product,
                                    sample_sequence):
        for _ in range(2):
            client.post(
                "/invoices/", json=self.invoice_payload(sample_customer, sample_product), headers=auth_headers
            )

        response = client.get("/invoices/", params={"series": "F001", "limit": 1}, headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["limit"] == 1
        assert data["invoices"][0]["correlative"] == 2

    def test_inactive_sequence_endpoint(self, client, auth_headers, db_session: Session,
                                        sample_customer, sample_product, sample_sequence):
        sample_sequence.is_active = False
        db_session.commit()

        response = client.post(
            "/invoices/", json=self.invoice_payload(sample_customer, sample_product), headers=auth_headers
        )

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "sequence_inactive"

    def test_empty_items_rejected(self, client, auth_headers, sample_customer, sample_sequence):
        payload = {"customer_id": str(sample_customer.id), "series": "F001", "items": []}

        response = client.post("/invoices/", json=payload, headers=auth_headers)
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["kind"] == "validation_error"
        assert detail["message"]
        assert detail["details"]["errors"][0]["loc"] == ["body", "items"]

    def test_invalid_line_rejected(self, client, auth_headers, db_session: Session, sample_customer,
                                   sample_product, sample_sequence):
        payload = self.invoice_payload(sample_customer, sample_product)
        payload["items"].append({"product_id": str(sample_product.id), "quantity": "0", "unit_price": "5.00"})

        response = client.post("/invoices/", json=payload, headers=auth_headers)

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["kind"] == "invalid_line_input"
        assert detail["details"]["line_index"] == 1
        db_session.refresh(sample_sequence)
        assert sample_sequence.current_number == 0

    def test_sub_cent_unit_price(self, client, auth_headers, sample_customer, sample_product,
                                 sample_sequence):
        payload = {
            "customer_id": str(sample_customer.id),
            "series": "F001",
            "items": [{"product_id": str(sample_product.id), "quantity": "1", "unit_price": "0.125"}]
        }

        response = client.post("/invoices/", json=payload, headers=auth_headers)

        assert response.status_code == 201
        line = response.json()["lines"][0]
        assert Decimal(line["unit_price"]) == Decimal("0.125")
        assert Decimal(line["subtotal"]) == Decimal("0.13")
        assert Decimal(line["tax_amount"]) == Decimal("0.02")
        assert Decimal(line["total_amount"]) == Decimal("0.15")

    def test_missing_company_header(self, client, auth_headers):
        headers = {"Authorization": auth_headers["Authorization"]}

        response = client.get("/invoices/", headers=headers)
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["kind"] == "validation_error"
        assert detail["details"]["header"] == "X-Company-ID"

    def test_unknown_route(self, client, auth_headers):
        response = client.get("/facturas/", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "not_found"

    def test_sales_role_can_issue(self, client, headers_for, member_factory, sample_company,
                                  sample_customer, sample_product, sample_sequence):
        seller = member_factory(sample_company, UserRole.SALES)

        response = client.post(
            "/invoices/",
            json=self.invoice_payload(sample_customer, sample_product),
            headers=headers_for(seller, sample_company)
        )
        assert response.status_code == 201

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
