from uuid import UUID
from sqlalchemy.orm import Session

from app.common.exceptions import NotFoundError
from app.modules.customers.models import Customer


def get_customer_for_tenant(db: Session, *, tenant_id: UUID, customer_id: UUID) -> Customer:
    """Cliente activo del tenant o NotFoundError; nunca cruza empresas."""
    customer = db.query(Customer).filter(
        Customer.id == customer_id,
        Customer.tenant_id == tenant_id,
        Customer.deleted_at.is_(None),
        Customer.is_active.is_(True)
    ).first()

    if not customer:
        raise NotFoundError(
            "El cliente especificado no existe o no pertenece a esta empresa",
            details={"customer_id": str(customer_id)}
        )
    return customer
