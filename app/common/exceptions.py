"""
Excepciones de dominio del servicio de facturación.

Los servicios lanzan estas excepciones; quien es dueño de la transacción
hace rollback y el handler registrado en ``app.main`` las convierte en una
respuesta JSON ``{"detail": {"kind", "message", "details"}}``. Los errores
de validación de pydantic y las HTTPException usan el mismo cuerpo.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


@dataclass(eq=False)
class FacturadorError(Exception):
    """Base de todos los errores de dominio."""

    message: str
    kind: str = "internal_error"
    status_code: int = 500
    details: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.details is None:
            self.details = {}

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ValidationError(FacturadorError):
    """Datos faltantes o inválidos. No deja efectos secundarios."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, kind="validation_error", status_code=400, details=details)


class InvalidLineInputError(ValidationError):
    """Una línea de factura con cantidad, precio o tasas fuera de rango."""

    def __init__(self, message: str, *, line_index: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        details = dict(details or {})
        if line_index is not None:
            details.setdefault("line_index", line_index)
        self.line_index = line_index
        super().__init__(message, details=details)
        self.kind = "invalid_line_input"


class PermissionDeniedError(FacturadorError):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, kind="permission_denied", status_code=403, details=details)


class NotFoundError(FacturadorError):
    """Producto, cliente, factura o correlativo inexistente para el tenant."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, kind="not_found", status_code=404, details=details)


class SequenceNotFoundError(NotFoundError):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)
        self.kind = "sequence_not_found"


class SequenceInactiveError(FacturadorError):
    """La serie existe pero fue desactivada por un administrador."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, kind="sequence_inactive", status_code=409, details=details)


class ConflictError(FacturadorError):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, kind="conflict", status_code=409, details=details)


class ConcurrencyConflictError(FacturadorError):
    """Se agotaron los reintentos al incrementar un correlativo disputado."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, kind="concurrency_conflict", status_code=409, details=details)


class PersistenceError(FacturadorError):
    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message=message, kind="persistence_error", status_code=500, details=details)


HTTP_ERROR_KINDS = {
    400: "validation_error",
    401: "unauthenticated",
    403: "permission_denied",
    404: "not_found",
    405: "method_not_allowed",
}

# Campos de InvoiceLineCreate; un error en ellos se reporta como línea inválida
LINE_INPUT_FIELDS = ("quantity", "unit_price", "discount_rate")


def _invalid_line_index(errors) -> Optional[int]:
    for error in errors:
        loc = tuple(error.get("loc", ()))
        if (
            len(loc) >= 4
            and loc[:2] == ("body", "items")
            and isinstance(loc[2], int)
            and loc[3] in LINE_INPUT_FIELDS
        ):
            return loc[2]
    return None


async def facturador_exception_handler(request: Request, exc: FacturadorError) -> JSONResponse:
    """Respuesta estandarizada para errores de dominio."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Errores de forma del request (pydantic) con el mismo cuerpo que los de
    dominio. El status sigue siendo 422.
    """
    errors = jsonable_encoder(exc.errors())
    line_index = _invalid_line_index(exc.errors())
    if line_index is not None:
        error = InvalidLineInputError(
            f"La línea {line_index + 1} tiene valores inválidos",
            line_index=line_index,
            details={"errors": errors}
        )
    else:
        error = ValidationError("Los datos enviados no son válidos", details={"errors": errors})
    return JSONResponse(status_code=422, content={"detail": error.to_dict()})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """HTTPException de FastAPI/Starlette (auth, rutas inexistentes) con kind y message."""
    content = {
        "kind": HTTP_ERROR_KINDS.get(exc.status_code, "http_error"),
        "message": str(exc.detail),
        "details": {}
    }
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": content},
        headers=getattr(exc, "headers", None)
    )
