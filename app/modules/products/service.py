from typing import Dict, Iterable
from uuid import UUID
from sqlalchemy.orm import Session

from app.common.exceptions import NotFoundError, ValidationError
from app.modules.products.models import Product


def get_active_products_for_tenant(db: Session, *, tenant_id: UUID, product_ids: Iterable[UUID]) -> Dict[UUID, Product]:
    """
    Resolver los productos de una factura en una sola consulta.

    Falla con el primer id que no pertenezca al tenant (NotFoundError) o
    que esté desactivado (ValidationError).
    """
    requested = list(dict.fromkeys(product_ids))
    found = {
        product.id: product
        for product in db.query(Product).filter(
            Product.id.in_(requested),
            Product.tenant_id == tenant_id
        ).all()
    }

    for product_id in requested:
        product = found.get(product_id)
        if product is None:
            raise NotFoundError(
                f"El producto {product_id} no existe o no pertenece a esta empresa",
                details={"product_id": str(product_id)}
            )
        if not product.is_active:
            raise ValidationError(
                f"El producto {product.name} está desactivado",
                details={"product_id": str(product_id)}
            )
    return found
