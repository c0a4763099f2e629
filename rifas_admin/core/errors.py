"""Errores de dominio que la capa HTTP traduce a respuestas."""


class ValidationFailed(ValueError):
    """Dato de entrada inválido y corregible por el usuario (422)."""


class NotFoundError(LookupError):
    """Rifa, compra, usuario o recurso inexistente (404)."""


class ConflictError(RuntimeError):
    """El estado actual impide la operación (409)."""


class AdminRequired(Exception):
    """Acceso a una ruta de administración sin rol admin; se redirige al login."""

    def __init__(self, next_path: str = "/"):
        super().__init__("Acceso denegado. Permisos de administrador requeridos.")
        self.next_path = next_path
