from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Any, Dict, Optional

from supabase import Client

from rifas_admin.core.logger import get_logger

logger = get_logger(__name__)

ROLES = ("admin", "user")


@dataclass(frozen=True)
class Principal:
    id: str
    email: Optional[str]
    role: str


def has_role(user: Optional[Principal], role: str) -> bool:
    return user is not None and user.role == role


def _principal_from_row(row: Dict[str, Any]) -> Principal:
    return Principal(id=row["id"], email=row.get("email"), role=row.get("role") or "user")


def resolve_principal(
    client: Client,
    admin_key: str,
    user_id: str,
    configured_admin_key: str,
) -> Optional[Principal]:
    """
    Identifica al usuario de la petición.
    - X-Admin-Key igual a ADMIN_API_KEY -> administrador de servicio.
    - X-User-Id (lo reenvía la capa de sesión) -> rol leído de `users`.
    """
    if configured_admin_key and admin_key and hmac.compare_digest(admin_key, configured_admin_key):
        return Principal(id="service-admin", email=None, role="admin")

    if not user_id:
        return None

    rows = (
        client.table("users")
        .select("id, email, role")
        .eq("id", user_id)
        .limit(1)
        .execute()
    ).data or []
    if not rows:
        logger.warning("X-User-Id desconocido: %s", user_id)
        return None
    return _principal_from_row(rows[0])
