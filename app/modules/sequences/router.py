from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.permissions import Capability
from app.modules.auth.schemas import AuthContext
from app.modules.sequences.models import DocumentType
from app.modules.sequences.schemas import SequenceCreate, SequenceOut, SequenceList, NextNumberPreview
from app.modules.sequences.service import SequenceStore

router = APIRouter(prefix="/sequences", tags=["Sequences"])


@router.get("/", response_model=SequenceList)
def list_sequences(
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_capability(Capability.VIEW_SEQUENCES))
):
    """
    Listar los correlativos de la empresa ordenados por tipo y serie
    """
    sequences = SequenceStore(db).list_sequences(tenant_id=auth_context.tenant_id)
    return {"sequences": sequences, "total": len(sequences)}


@router.post("/", response_model=SequenceOut, status_code=status.HTTP_201_CREATED)
def create_sequence(
    sequence_data: SequenceCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_capability(Capability.MANAGE_SEQUENCES))
):
    """
    Crear un correlativo para un tipo de documento y serie

    Solo propietarios y administradores. Responde 409 si la serie ya existe.
    """
    return SequenceStore(db).create_from_schema(
        sequence_data,
        tenant_id=auth_context.tenant_id,
        created_by=auth_context.user_id
    )


@router.get("/next", response_model=NextNumberPreview)
def preview_next_number(
    document_type: DocumentType = Query(..., description="Tipo de documento"),
    series: str = Query(..., min_length=1, max_length=10, description="Serie, ej. F001"),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_capability(Capability.VIEW_SEQUENCES))
):
    """
    Consultar el siguiente número de una serie sin consumirlo
    """
    return SequenceStore(db).peek_next(
        tenant_id=auth_context.tenant_id,
        document_type=document_type,
        series=series.strip().upper()
    )


@router.post("/{sequence_id}/deactivate", response_model=SequenceOut)
def deactivate_sequence(
    sequence_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_capability(Capability.MANAGE_SEQUENCES))
):
    """
    Desactivar una serie; no se podrán emitir más documentos con ella
    """
    return SequenceStore(db).set_active(
        tenant_id=auth_context.tenant_id, sequence_id=sequence_id, is_active=False
    )


@router.post("/{sequence_id}/activate", response_model=SequenceOut)
def activate_sequence(
    sequence_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_capability(Capability.MANAGE_SEQUENCES))
):
    """
    Reactivar una serie desactivada
    """
    return SequenceStore(db).set_active(
        tenant_id=auth_context.tenant_id, sequence_id=sequence_id, is_active=True
    )
