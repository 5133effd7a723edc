"""
Tests para autenticación y permisos por empresa
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.orm import Session

from app.common.exceptions import PermissionDeniedError
from app.modules.auth.permissions import Capability, UserRole, ensure_capability, has_capability
from app.modules.auth.utils import create_access_token, decode_access_token


class TestCapabilities:
    """Tests para la tabla de capacidades por rol"""

    @pytest.mark.parametrize("role", list(UserRole))
    def test_every_role_can_issue_and_view(self, role):
        assert has_capability(role, Capability.ISSUE_INVOICE)
        assert has_capability(role, Capability.VIEW_INVOICES)
        assert has_capability(role, Capability.VIEW_SEQUENCES)

    def test_manage_sequences_restricted(self):
        assert has_capability(UserRole.OWNER, Capability.MANAGE_SEQUENCES)
        assert has_capability(UserRole.ADMIN, Capability.MANAGE_SEQUENCES)
        assert not has_capability(UserRole.ACCOUNTANT, Capability.MANAGE_SEQUENCES)
        assert not has_capability(UserRole.SALES, Capability.MANAGE_SEQUENCES)

    def test_ensure_capability_without_role(self):
        with pytest.raises(PermissionDeniedError) as exc_info:
            ensure_capability(None, Capability.ISSUE_INVOICE)
        assert exc_info.value.status_code == 403

    def test_ensure_capability_lists_allowed_roles(self):
        with pytest.raises(PermissionDeniedError) as exc_info:
            ensure_capability(UserRole.SALES, Capability.MANAGE_SEQUENCES)

        assert "owner" in exc_info.value.message
        assert exc_info.value.details["capability"] == "manage_sequences"


class TestAccessToken:
    """Tests para los tokens JWT"""

    def test_token_round_trip(self):
        user_id = str(uuid4())
        payload = decode_access_token(create_access_token({"sub": user_id}))

        assert payload["sub"] == user_id
        assert payload["type"] == "access"

    def test_expired_token_rejected(self, client, sample_user, sample_company):
        token = create_access_token({"sub": str(sample_user.id)}, expires_delta=timedelta(minutes=-1))
        headers = {"Authorization": f"Bearer {token}", "X-Company-ID": str(sample_company.id)}

        response = client.get("/invoices/", headers=headers)
        assert response.status_code == 401


class TestAuthDependencies:
    """Tests para la resolución del contexto de autenticación"""

    def test_invalid_token(self, client, sample_company):
        headers = {"Authorization": "Bearer no-es-un-token", "X-Company-ID": str(sample_company.id)}

        response = client.get("/invoices/", headers=headers)
        assert response.status_code == 401
        detail = response.json()["detail"]
        assert detail["kind"] == "unauthenticated"
        assert detail["message"] == "No se pudieron validar las credenciales"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_user(self, client, sample_company):
        token = create_access_token({"sub": str(uuid4())})
        headers = {"Authorization": f"Bearer {token}", "X-Company-ID": str(sample_company.id)}

        response = client.get("/invoices/", headers=headers)
        assert response.status_code == 401

    def test_inactive_user(self, client, db_session: Session, sample_user, auth_headers):
        sample_user.is_active = False
        db_session.commit()

        response = client.get("/invoices/", headers=auth_headers)
        assert response.status_code == 401

    def test_user_not_member_of_company(self, client, headers_for, sample_user, other_company):
        response = client.get("/invoices/", headers=headers_for(sample_user, other_company))
        assert response.status_code == 403
        assert response.json()["detail"]["kind"] == "permission_denied"

    def test_member_of_company(self, client, auth_headers):
        response = client.get("/invoices/", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["total"] == 0
        assert response.headers["X-Tenant-ID"] == auth_headers["X-Company-ID"]
