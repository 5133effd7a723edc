"""
Roles por empresa y tabla de capacidades.

Los endpoints y servicios piden una capacidad, nunca una lista de roles:
la tabla ``ROLE_CAPABILITIES`` es el único lugar donde se decide qué rol
puede hacer qué.
"""
import enum
from typing import Dict, FrozenSet, Optional

from app.common.exceptions import PermissionDeniedError


class UserRole(enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    ACCOUNTANT = "accountant"
    SALES = "sales"


class Capability(enum.Enum):
    ISSUE_INVOICE = "issue_invoice"
    VIEW_INVOICES = "view_invoices"
    VIEW_SEQUENCES = "view_sequences"
    MANAGE_SEQUENCES = "manage_sequences"


ROLE_CAPABILITIES: Dict[UserRole, FrozenSet[Capability]] = {
    UserRole.OWNER: frozenset(Capability),
    UserRole.ADMIN: frozenset(Capability),
    UserRole.ACCOUNTANT: frozenset({
        Capability.ISSUE_INVOICE,
        Capability.VIEW_INVOICES,
        Capability.VIEW_SEQUENCES,
    }),
    UserRole.SALES: frozenset({
        Capability.ISSUE_INVOICE,
        Capability.VIEW_INVOICES,
        Capability.VIEW_SEQUENCES,
    }),
}


def has_capability(role: Optional[UserRole], capability: Capability) -> bool:
    if role is None:
        return False
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def ensure_capability(role: Optional[UserRole], capability: Capability) -> None:
    """Lanzar PermissionDeniedError si el rol no tiene la capacidad."""
    if not has_capability(role, capability):
        allowed = sorted(r.value for r, caps in ROLE_CAPABILITIES.items() if capability in caps)
        raise PermissionDeniedError(
            f"Se requiere uno de estos roles: {', '.join(allowed)}",
            details={"capability": capability.value, "role": role.value if role else None}
        )
