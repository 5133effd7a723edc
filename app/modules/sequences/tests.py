"""
Tests para el módulo de Correlativos

Cubren el formato del número de documento, la administración de series
(alta, activación, vista previa) y la asignación del siguiente número
dentro de la transacción del llamador.
"""

from uuid import uuid4

import pytest
from sqlalchemy import event, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session

from app.common.exceptions import (
    ConcurrencyConflictError, ConflictError, NotFoundError,
    SequenceInactiveError, SequenceNotFoundError
)
from app.modules.auth.permissions import UserRole
from app.core.config import settings
from app.modules.company.models import Company
from app.modules.sequences.models import DocumentSequence, DocumentType, format_document_number
from app.modules.sequences.schemas import SequenceCreate
from app.modules.sequences.service import SequenceAllocator, SequenceStore


# ===== TESTS DE FORMATO =====

class TestDocumentNumberFormat:
    """Tests para el formato prefix + serie + "-" + correlativo + suffix"""

    def test_default_padding(self):
        assert format_document_number("", "F001", 1, 8) == "F001-00000001"

    def test_prefix_suffix_and_digits(self):
        assert format_document_number("E", "F001", 42, 4, "X") == "EF001-0042X"

    def test_number_wider_than_min_digits(self):
        assert format_document_number(None, "B001", 123456, 4) == "B001-123456"

    def test_series_schema_normalization(self):
        data = SequenceCreate(document_type=DocumentType.INVOICE, series=" f002 ")
        assert data.series == "F002"

        with pytest.raises(ValueError):
            SequenceCreate(document_type=DocumentType.INVOICE, series="F-01")


# ===== TESTS DEL STORE =====

class TestSequenceStore:
    """Tests para la administración de series"""

    def test_create_sequence(self, db_session: Session, sample_company, sample_user):
        sequence = SequenceStore(db_session).create_sequence(
            tenant_id=sample_company.id,
            document_type=DocumentType.RECEIPT,
            series="B001",
            initial_number=150,
            min_digits=6,
            created_by=sample_user.id
        )

        assert sequence.id is not None
        assert sequence.current_number == 150
        assert sequence.is_active is True
        assert sequence.format_number(151) == "B001-000151"

    def test_create_duplicate_sequence(self, db_session: Session, sample_company, sample_sequence):
        with pytest.raises(ConflictError):
            SequenceStore(db_session).create_sequence(
                tenant_id=sample_company.id,
                document_type=DocumentType.INVOICE,
                series="F001"
            )

    def test_same_series_other_company(self, db_session: Session, other_company, sample_sequence):
        sequence = SequenceStore(db_session).create_sequence(
            tenant_id=other_company.id,
            document_type=DocumentType.INVOICE,
            series="F001"
        )
        assert sequence.tenant_id == other_company.id

    def test_get_missing_sequence(self, db_session: Session, sample_company):
        with pytest.raises(SequenceNotFoundError) as exc_info:
            SequenceStore(db_session).get(
                tenant_id=sample_company.id, document_type=DocumentType.INVOICE, series="F404"
            )
        assert exc_info.value.kind == "sequence_not_found"

    def test_list_sequences(self, db_session: Session, sample_company, other_company, sample_sequence):
        store = SequenceStore(db_session)
        store.create_sequence(tenant_id=sample_company.id, document_type=DocumentType.INVOICE, series="F002")
        store.create_sequence(tenant_id=other_company.id, document_type=DocumentType.INVOICE, series="F003")

        sequences = store.list_sequences(tenant_id=sample_company.id)
        assert [s.series for s in sequences] == ["F001", "F002"]

    def test_set_active(self, db_session: Session, sample_company, other_company, sample_sequence):
        store = SequenceStore(db_session)

        sequence = store.set_active(tenant_id=sample_company.id, sequence_id=sample_sequence.id, is_active=False)
        assert sequence.is_active is False

        sequence = store.set_active(tenant_id=sample_company.id, sequence_id=sample_sequence.id, is_active=True)
        assert sequence.is_active is True

        with pytest.raises(NotFoundError):
            store.set_active(tenant_id=other_company.id, sequence_id=sample_sequence.id, is_active=False)

    def test_peek_next_does_not_consume(self, db_session: Session, sample_company, sample_sequence):
        store = SequenceStore(db_session)

        first = store.peek_next(tenant_id=sample_company.id, document_type=DocumentType.INVOICE, series="F001")
        second = store.peek_next(tenant_id=sample_company.id, document_type=DocumentType.INVOICE, series="F001")

        assert first.next_number == second.next_number == 1
        assert first.formatted_number == "F001-00000001"
        db_session.refresh(sample_sequence)
        assert sample_sequence.current_number == 0

    def test_peek_next_inactive(self, db_session: Session, sample_company, sample_sequence):
        sample_sequence.is_active = False
        db_session.commit()

        with pytest.raises(SequenceInactiveError):
            SequenceStore(db_session).peek_next(
                tenant_id=sample_company.id, document_type=DocumentType.INVOICE, series="F001"
            )


# ===== TESTS DEL ASIGNADOR =====

class TestSequenceAllocator:
    """Tests para la asignación de correlativos"""

    def allocate(self, allocator, company):
        return allocator.allocate(tenant_id=company.id, document_type=DocumentType.INVOICE, series="F001")

    def test_allocate_increments(self, db_session: Session, sample_company, sample_sequence):
        allocator = SequenceAllocator(db_session)

        first = self.allocate(allocator, sample_company)
        second = self.allocate(allocator, sample_company)
        db_session.commit()

        assert (first.correlative, second.correlative) == (1, 2)
        assert second.formatted_number == "F001-00000002"
        assert first.sequence_id == sample_sequence.id
        db_session.refresh(sample_sequence)
        assert sample_sequence.current_number == 2

    def test_rollback_restores_counter(self, db_session: Session, sample_company, sample_sequence):
        allocated = self.allocate(SequenceAllocator(db_session), sample_company)
        assert allocated.correlative == 1

        db_session.rollback()

        db_session.refresh(sample_sequence)
        assert sample_sequence.current_number == 0

    def test_allocate_inactive(self, db_session: Session, sample_company, sample_sequence):
        sample_sequence.is_active = False
        db_session.commit()

        with pytest.raises(SequenceInactiveError):
            self.allocate(SequenceAllocator(db_session), sample_company)

    def test_allocate_missing(self, db_session: Session, sample_company):
        with pytest.raises(SequenceNotFoundError):
            self.allocate(SequenceAllocator(db_session), sample_company)

    def test_retry_after_lost_race(self, db_session: Session, sample_company, sample_sequence, monkeypatch):
        allocator = SequenceAllocator(db_session)
        real_cas = allocator._compare_and_swap
        calls = []

        def lose_first_race(sequence_id, expected, new_value):
            calls.append(expected)
            if len(calls) == 1:
                # Otro proceso confirmó el 1 antes que nosotros
                real_cas(sequence_id, expected, new_value)
                return False
            return real_cas(sequence_id, expected, new_value)

        monkeypatch.setattr(allocator, "_compare_and_swap", lose_first_race)

        allocated = self.allocate(allocator, sample_company)
        db_session.commit()

        assert calls == [0, 1]
        assert allocated.correlative == 2
        db_session.refresh(sample_sequence)
        assert sample_sequence.current_number == 2

    def test_retries_exhausted(self, db_session: Session, sample_company, sample_sequence, monkeypatch):
        allocator = SequenceAllocator(db_session, max_retries=3)
        attempts = []

        def always_lose(sequence_id, expected, new_value):
            attempts.append(expected)
            return False

        monkeypatch.setattr(allocator, "_compare_and_swap", always_lose)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            self.allocate(allocator, sample_company)
        db_session.rollback()

        assert len(attempts) == 3
        assert exc_info.value.status_code == 409
        db_session.refresh(sample_sequence)
        assert sample_sequence.current_number == 0

    def test_max_retries_must_be_positive(self, db_session: Session):
        with pytest.raises(ValueError):
            SequenceAllocator(db_session, max_retries=0)

        assert SequenceAllocator(db_session).max_retries == settings.SEQUENCE_ALLOCATION_MAX_RETRIES

    def test_single_attempt_honored(self, db_session: Session, sample_company, sample_sequence, monkeypatch):
        allocator = SequenceAllocator(db_session, max_retries=1)
        attempts = []

        def always_lose(sequence_id, expected, new_value):
            attempts.append(expected)
            return False

        monkeypatch.setattr(allocator, "_compare_and_swap", always_lose)

        with pytest.raises(ConcurrencyConflictError):
            self.allocate(allocator, sample_company)
        db_session.rollback()

        assert attempts == [0]

    def test_lock_and_write_scoped_to_one_key(self, db_session: Session, engine, sample_company,
                                              other_company, sample_sequence):
        """El bloqueo y el UPDATE solo tocan la fila de (empresa, tipo, serie)"""
        store = SequenceStore(db_session)
        receipts = store.create_sequence(
            tenant_id=sample_company.id, document_type=DocumentType.RECEIPT, series="B001"
        )
        foreign = store.create_sequence(
            tenant_id=other_company.id, document_type=DocumentType.INVOICE, series="F001"
        )

        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            statements.append(" ".join(statement.split()))

        event.listen(engine, "before_cursor_execute", capture)
        try:
            self.allocate(SequenceAllocator(db_session), sample_company)
        finally:
            event.remove(engine, "before_cursor_execute", capture)

        writes = [s for s in statements if not s.upper().startswith("SELECT")]
        assert len(writes) == 1
        assert writes[0].startswith("UPDATE document_sequences SET")
        assert "document_sequences.id = ?" in writes[0]
        assert "document_sequences.current_number = ?" in writes[0]

        lookups = [s for s in statements if "FROM document_sequences" in s]
        assert all("document_sequences.tenant_id = ?" in s for s in lookups)
        assert all("document_sequences.series = ?" in s for s in lookups)

        # El bloqueo de fila se emite contra la misma clave, nunca sobre la tabla
        locking = str(
            store._key_query(sample_company.id, DocumentType.INVOICE, "F001")
            .with_for_update()
            .compile(dialect=postgresql.dialect())
        )
        assert locking.rstrip().endswith("FOR UPDATE")
        assert "document_sequences.series =" in locking
        assert "LOCK TABLE" not in locking.upper()

        db_session.commit()
        db_session.refresh(receipts)
        db_session.refresh(foreign)
        assert (receipts.current_number, foreign.current_number) == (0, 0)

    def test_other_keys_not_blocked_by_open_allocation(self, postgres_session_factory):
        """
        Con una asignación sin confirmar en F001, otra serie y otra empresa
        asignan sin esperar. Requiere PostgreSQL (SQLite bloquea todo el
        archivo en cada escritura).
        """
        setup = postgres_session_factory()
        try:
            company = Company(ruc=f"20{uuid4().int % 10**9:09d}", name="Empresa Norte S.A.C.")
            other = Company(ruc=f"10{uuid4().int % 10**9:09d}", name="Empresa Sur S.A.C.")
            setup.add_all([company, other])
            setup.flush()
            setup.add_all([
                DocumentSequence(tenant_id=company.id, document_type=DocumentType.INVOICE, series="F001"),
                DocumentSequence(tenant_id=company.id, document_type=DocumentType.RECEIPT, series="B001"),
                DocumentSequence(tenant_id=other.id, document_type=DocumentType.INVOICE, series="F001"),
            ])
            setup.commit()
            company_id, other_id = company.id, other.id
        finally:
            setup.close()

        holder = postgres_session_factory()
        contender = postgres_session_factory()
        try:
            held = SequenceAllocator(holder).allocate(
                tenant_id=company_id, document_type=DocumentType.INVOICE, series="F001"
            )
            assert held.correlative == 1

            # Si la fila de F001 bloqueara a las demás, esto fallaría por timeout
            contender.execute(text("SET LOCAL lock_timeout = '2s'"))
            receipt = SequenceAllocator(contender).allocate(
                tenant_id=company_id, document_type=DocumentType.RECEIPT, series="B001"
            )
            foreign = SequenceAllocator(contender).allocate(
                tenant_id=other_id, document_type=DocumentType.INVOICE, series="F001"
            )
            contender.commit()

            assert (receipt.correlative, foreign.correlative) == (1, 1)
            holder.rollback()
        finally:
            holder.close()
            contender.close()

        check = postgres_session_factory()
        try:
            store = SequenceStore(check)
            assert store.get(tenant_id=company_id, document_type=DocumentType.INVOICE,
                             series="F001").current_number == 0
            assert store.get(tenant_id=company_id, document_type=DocumentType.RECEIPT,
                             series="B001").current_number == 1
        finally:
            check.close()


# ===== TESTS DE ENDPOINTS =====

class TestSequenceAPI:
    """Tests para los endpoints de correlativos"""

    def test_create_sequence_endpoint(self, client, auth_headers):
        payload = {"document_type": "receipt", "series": "b001", "min_digits": 6}

        response = client.post("/sequences/", json=payload, headers=auth_headers)
        assert response.status_code == 201
        data = response.json()
        assert data["series"] == "B001"
        assert data["current_number"] == 0

        response = client.post("/sequences/", json=payload, headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == "conflict"

    def test_list_sequences_endpoint(self, client, auth_headers, sample_sequence):
        response = client.get("/sequences/", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["sequences"][0]["series"] == "F001"

    def test_preview_next_endpoint(self, client, auth_headers, sample_sequence):
        params = {"document_type": "invoice", "series": "f001"}

        response = client.get("/sequences/next", params=params, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["formatted_number"] == "F001-00000001"

        response = client.get("/sequences/next", params={"document_type": "invoice", "series": "F404"},
                              headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "sequence_not_found"

    def test_deactivate_and_activate_endpoint(self, client, auth_headers, sample_sequence):
        response = client.post(f"/sequences/{sample_sequence.id}/deactivate", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["is_active"] is False

        response = client.post(f"/sequences/{sample_sequence.id}/activate", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["is_active"] is True

    def test_sales_cannot_manage_sequences(self, client, headers_for, member_factory, sample_company,
                                           sample_sequence):
        seller = member_factory(sample_company, UserRole.SALES)
        headers = headers_for(seller, sample_company)

        response = client.post("/sequences/", json={"document_type": "invoice", "series": "F009"}, headers=headers)
        assert response.status_code == 403
        assert response.json()["detail"]["kind"] == "permission_denied"

        response = client.get("/sequences/", headers=headers)
        assert response.status_code == 200
