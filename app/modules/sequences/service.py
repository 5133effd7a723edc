from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.common.exceptions import (
    ConflictError, ConcurrencyConflictError, NotFoundError,
    SequenceInactiveError, SequenceNotFoundError
)
from app.core.config import settings
from app.modules.sequences.models import DocumentSequence, DocumentType
from app.modules.sequences.schemas import NextNumberPreview, SequenceCreate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocatedNumber:
    sequence_id: UUID
    correlative: int
    formatted_number: str


class SequenceStore:
    """Almacenamiento y búsqueda puntual de correlativos por (empresa, tipo, serie)."""

    def __init__(self, db: Session):
        self.db = db

    def _key_query(self, tenant_id: UUID, document_type: DocumentType, series: str):
        return select(DocumentSequence).where(
            DocumentSequence.tenant_id == tenant_id,
            DocumentSequence.document_type == document_type,
            DocumentSequence.series == series
        )

    def _not_found(self, document_type: DocumentType, series: str) -> SequenceNotFoundError:
        return SequenceNotFoundError(
            f"No existe correlativo para {document_type.value} serie {series}",
            details={"document_type": document_type.value, "series": series}
        )

    def get(self, *, tenant_id: UUID, document_type: DocumentType, series: str) -> DocumentSequence:
        sequence = self.db.execute(
            self._key_query(tenant_id, document_type, series)
        ).scalar_one_or_none()
        if sequence is None:
            raise self._not_found(document_type, series)
        return sequence

    def get_for_update(self, *, tenant_id: UUID, document_type: DocumentType, series: str) -> DocumentSequence:
        """
        Igual que get() pero bloquea la fila hasta el fin de la transacción
        (SELECT ... FOR UPDATE) y refresca el objeto en el identity map.
        """
        stmt = (
            self._key_query(tenant_id, document_type, series)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        sequence = self.db.execute(stmt).scalar_one_or_none()
        if sequence is None:
            raise self._not_found(document_type, series)
        return sequence

    def get_by_id(self, *, tenant_id: UUID, sequence_id: UUID) -> DocumentSequence:
        sequence = self.db.query(DocumentSequence).filter(
            DocumentSequence.id == sequence_id,
            DocumentSequence.tenant_id == tenant_id
        ).first()
        if sequence is None:
            raise NotFoundError("Correlativo no encontrado", details={"sequence_id": str(sequence_id)})
        return sequence

    def list_sequences(self, *, tenant_id: UUID) -> List[DocumentSequence]:
        return self.db.query(DocumentSequence).filter(
            DocumentSequence.tenant_id == tenant_id
        ).order_by(DocumentSequence.document_type, DocumentSequence.series).all()

    def create_sequence(
        self,
        *,
        tenant_id: UUID,
        document_type: DocumentType,
        series: str,
        initial_number: int = 0,
        prefix: str = "",
        suffix: str = "",
        min_digits: int = 8,
        created_by: Optional[UUID] = None
    ) -> DocumentSequence:
        """Crear una serie nueva; ConflictError si la clave ya existe."""
        existing = self.db.execute(
            self._key_query(tenant_id, document_type, series)
        ).scalar_one_or_none()
        if existing is not None:
            raise ConflictError(
                "Ya existe un correlativo para este tipo de documento y serie",
                details={"document_type": document_type.value, "series": series}
            )

        sequence = DocumentSequence(
            tenant_id=tenant_id,
            document_type=document_type,
            series=series,
            current_number=initial_number,
            prefix=prefix or "",
            suffix=suffix or "",
            min_digits=min_digits,
            is_active=True,
            created_by=created_by
        )
        self.db.add(sequence)
        try:
            self.db.commit()
        except IntegrityError:
            # Otra petición creó la misma clave entre la verificación y el commit
            self.db.rollback()
            raise ConflictError(
                "Ya existe un correlativo para este tipo de documento y serie",
                details={"document_type": document_type.value, "series": series}
            )
        self.db.refresh(sequence)

        logger.info(f"Correlativo creado: {document_type.value}-{series} para empresa {tenant_id}")
        return sequence

    def create_from_schema(self, data: SequenceCreate, *, tenant_id: UUID, created_by: Optional[UUID] = None) -> DocumentSequence:
        return self.create_sequence(
            tenant_id=tenant_id,
            document_type=data.document_type,
            series=data.series,
            initial_number=data.current_number,
            prefix=data.prefix,
            suffix=data.suffix,
            min_digits=data.min_digits,
            created_by=created_by
        )

    def set_active(self, *, tenant_id: UUID, sequence_id: UUID, is_active: bool) -> DocumentSequence:
        """Las series no se eliminan: se desactivan o reactivan."""
        sequence = self.get_by_id(tenant_id=tenant_id, sequence_id=sequence_id)
        sequence.is_active = is_active
        self.db.commit()
        self.db.refresh(sequence)

        logger.info(
            f"Correlativo {sequence.document_type.value}-{sequence.series} "
            f"{'activado' if is_active else 'desactivado'} para empresa {tenant_id}"
        )
        return sequence

    def peek_next(self, *, tenant_id: UUID, document_type: DocumentType, series: str) -> NextNumberPreview:
        """Siguiente número que se asignaría, sin tocar current_number."""
        sequence = self.get(tenant_id=tenant_id, document_type=document_type, series=series)
        if not sequence.is_active:
            raise SequenceInactiveError(
                f"El correlativo {document_type.value} serie {series} está desactivado",
                details={"document_type": document_type.value, "series": series}
            )
        next_number = sequence.current_number + 1
        return NextNumberPreview(
            document_type=sequence.document_type,
            series=sequence.series,
            next_number=next_number,
            formatted_number=sequence.format_number(next_number)
        )


class SequenceAllocator:
    """
    Asigna el siguiente correlativo dentro de la transacción del llamador.

    La fila se bloquea con SELECT ... FOR UPDATE y se escribe con un
    UPDATE condicionado al valor leído (compare-and-swap). En Postgres el
    bloqueo basta y el CAS siempre acierta; en motores sin bloqueo de fila
    el CAS detecta la carrera y se reintenta releyendo la fila. Nunca hace
    commit: si la factura falla después, el rollback deshace el incremento.
    """

    def __init__(self, db: Session, store: Optional[SequenceStore] = None, max_retries: Optional[int] = None):
        self.db = db
        self.store = store or SequenceStore(db)
        if max_retries is None:
            max_retries = settings.SEQUENCE_ALLOCATION_MAX_RETRIES
        if max_retries < 1:
            raise ValueError("max_retries debe ser al menos 1")
        self.max_retries = max_retries

    def _compare_and_swap(self, sequence_id: UUID, expected: int, new_value: int) -> bool:
        result = self.db.execute(
            update(DocumentSequence)
            .where(
                DocumentSequence.id == sequence_id,
                DocumentSequence.current_number == expected
            )
            .values(current_number=new_value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def allocate(self, *, tenant_id: UUID, document_type: DocumentType, series: str) -> AllocatedNumber:
        for attempt in range(1, self.max_retries + 1):
            sequence = self.store.get_for_update(
                tenant_id=tenant_id, document_type=document_type, series=series
            )
            if not sequence.is_active:
                raise SequenceInactiveError(
                    f"No existe correlativo activo para {document_type.value} serie {series}",
                    details={"document_type": document_type.value, "series": series}
                )

            current = sequence.current_number
            next_number = current + 1

            if self._compare_and_swap(sequence.id, current, next_number):
                self.db.expire(sequence, ["current_number", "updated_at"])
                formatted = sequence.format_number(next_number)
                logger.debug(f"Correlativo asignado {formatted} (intento {attempt})")
                return AllocatedNumber(
                    sequence_id=sequence.id,
                    correlative=next_number,
                    formatted_number=formatted
                )

            logger.warning(
                f"Conflicto de concurrencia en {document_type.value}-{series} "
                f"(leído {current}), reintento {attempt}/{self.max_retries}"
            )

        raise ConcurrencyConflictError(
            f"No se pudo asignar correlativo para {document_type.value} serie {series}; intente nuevamente",
            details={"document_type": document_type.value, "series": series, "attempts": self.max_retries}
        )
