"""
Fixtures compartidas para las pruebas.

Cada prueba usa una base SQLite en archivo propia (tmp_path) para que las
pruebas con varios hilos tengan conexiones reales e independientes.
"""
import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from decimal import Decimal
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.main import app
from app.database.database import Base, build_engine, get_db
from app.modules.auth.models import User, UserCompany
from app.modules.auth.permissions import UserRole
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import create_access_token
from app.modules.company.models import Company
from app.modules.customers.models import Customer, CustomerDocumentType
from app.modules.products.models import Product
from app.modules.sequences.models import DocumentSequence, DocumentType


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'facturador_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


# ===== DATOS DE EJEMPLO =====

@pytest.fixture
def sample_company(db_session):
    company = Company(ruc="20123456789", name="Comercial Andina S.A.C.")
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture
def other_company(db_session):
    company = Company(ruc="20987654321", name="Distribuidora del Sur E.I.R.L.")
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture
def member_factory(db_session):
    """Crear usuarios con un rol dado en una empresa"""
    counter = {"n": 0}

    def make_member(company, role=UserRole.OWNER):
        counter["n"] += 1
        user = User(email=f"usuario{counter['n']}@example.com", full_name=f"Usuario {counter['n']}")
        db_session.add(user)
        db_session.flush()
        db_session.add(UserCompany(user_id=user.id, company_id=company.id, role=role))
        db_session.commit()
        return user

    return make_member


@pytest.fixture
def sample_user(member_factory, sample_company):
    return member_factory(sample_company, UserRole.OWNER)


@pytest.fixture
def auth_context(sample_user, sample_company):
    return AuthContext(user_id=sample_user.id, tenant_id=sample_company.id, user_role=UserRole.OWNER)


@pytest.fixture
def sample_customer(db_session, sample_company):
    customer = Customer(
        tenant_id=sample_company.id,
        document_type=CustomerDocumentType.RUC,
        document_number="20601234567",
        name="Inversiones Lima S.A."
    )
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture
def product_factory(db_session):
    def make_product(company, code, name=None, igv_rate=Decimal("18.00"), price=Decimal("10.00"), is_active=True):
        product = Product(
            tenant_id=company.id,
            code=code,
            name=name or f"Producto {code}",
            price=price,
            igv_rate=igv_rate,
            is_active=is_active
        )
        db_session.add(product)
        db_session.commit()
        return product

    return make_product


@pytest.fixture
def sample_product(product_factory, sample_company):
    return product_factory(sample_company, "P001", name="Cemento Portland 42.5kg")


@pytest.fixture
def sample_sequence(db_session, sample_company):
    sequence = DocumentSequence(
        tenant_id=sample_company.id,
        document_type=DocumentType.INVOICE,
        series="F001",
        current_number=0,
        prefix="",
        suffix="",
        min_digits=8
    )
    db_session.add(sequence)
    db_session.commit()
    return sequence


# ===== CLIENTE HTTP =====

@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def headers_for():
    def make_headers(user, company):
        token = create_access_token({"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}", "X-Company-ID": str(company.id)}

    return make_headers


@pytest.fixture
def auth_headers(headers_for, sample_user, sample_company):
    return headers_for(sample_user, sample_company)


# ===== POSTGRESQL (opcional) =====

@pytest.fixture
def postgres_session_factory():
    """
    Sesiones contra un PostgreSQL real para pruebas de bloqueo por fila.

    Se activa con FACTURADOR_TEST_POSTGRES_URL apuntando a una base
    desechable: las tablas se crean y se eliminan en cada prueba.
    """
    url = os.environ.get("FACTURADOR_TEST_POSTGRES_URL")
    if not url:
        pytest.skip("FACTURADOR_TEST_POSTGRES_URL no configurada")

    engine = build_engine(url)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
