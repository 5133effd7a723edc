from pydantic import BaseModel
from typing import Optional
from uuid import UUID

from app.modules.auth.permissions import UserRole


class AuthContext(BaseModel):
    """Identidad del llamador ya resuelta para un tenant concreto."""
    user_id: UUID
    tenant_id: UUID
    user_role: UserRole
    email: Optional[str] = None
