"""
Errors — Taxonomía de errores del asistente.

- ValidationError: input del usuario que no cumple las reglas del paso
  (recuperable, se muestra al usuario para que corrija).
- NotFound: sesión / paso / workflow / ticket inexistente.
- UpstreamUnavailable: falla de embeddings, LLM o store.
- Conflict: operación rechazada por el estado actual (ej: ticket activo).
"""

from typing import List, Optional


class AssistantError(Exception):
    """Base de todos los errores del dominio."""

    status_code = 500
    error_type = "assistant_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(AssistantError):
    """El input no pasa las reglas de validación del paso actual."""

    status_code = 422
    error_type = "validation_error"

    def __init__(self, detail: str, messages: Optional[List[str]] = None):
        super().__init__(detail)
        self.messages = messages or [detail]


class NotFound(AssistantError):
    status_code = 404
    error_type = "not_found"


class UpstreamUnavailable(AssistantError):
    status_code = 503
    error_type = "upstream_unavailable"


class Conflict(AssistantError):
    status_code = 409
    error_type = "conflict"
