"""
Dependencias de autenticación para FastAPI.
"""
from uuid import UUID
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
import jwt

from app.database.database import get_db
from app.modules.auth.models import User, UserCompany
from app.modules.auth.permissions import Capability, ensure_capability
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import decode_access_token

# Security scheme
security = HTTPBearer()


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        request: Request,
        credentials: HTTPAuthorizationCredentials = Depends(security),
        db: Session = Depends(get_db)
    ) -> AuthContext:
        """
        Obtener contexto de autenticación completo con tenant.
        Requiere X-Company-ID header (TenantMiddleware lo deja en request.state).
        """
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No se pudieron validar las credenciales",
            headers={"WWW-Authenticate": "Bearer"},
        )

        try:
            payload = decode_access_token(credentials.credentials)
            user_id = UUID(payload.get("sub"))
        except (jwt.PyJWTError, TypeError, ValueError):
            raise credentials_exception

        user = db.query(User).filter(User.id == user_id).first()
        if user is None or not user.is_active:
            raise credentials_exception

        tenant_id = getattr(request.state, "tenant_id", None)
        if tenant_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Se requiere seleccionar una empresa"
            )

        # Verificar que el usuario pertenece a esta empresa
        user_company = db.query(UserCompany).filter(
            UserCompany.user_id == user.id,
            UserCompany.company_id == tenant_id,
            UserCompany.is_active.is_(True)
        ).first()

        if not user_company:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="No tienes acceso a esta empresa"
            )

        return AuthContext(
            user_id=user.id,
            tenant_id=tenant_id,
            user_role=user_company.role,
            email=user.email
        )

    @staticmethod
    def require_capability(capability: Capability):
        """
        Dependencia para requerir una capacidad concreta.
        """
        def capability_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            ensure_capability(auth_context.user_role, capability)
            return auth_context
        return capability_checker


# Instancias de dependencias
get_auth_context = AuthDependencies.get_auth_context
require_capability = AuthDependencies.require_capability
