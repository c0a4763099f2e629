import re
import unicodedata
import datetime as dt
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional


def mask_email(email: str) -> str:
    if not email or "@" not in email:
        return email
    user, dom = email.split("@", 1)

    def _mask(s: str) -> str:
        if len(s) <= 2:
            return s[:1] + "*"
        return s[:2] + "***"

    dom_parts = dom.split(".")
    dom_parts[0] = _mask(dom_parts[0])
    return f"{_mask(user)}@{'.'.join(dom_parts)}"


def round2(x: float | Decimal) -> float:
    if not isinstance(x, Decimal):
        x = Decimal(str(x))
    return float(x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def to_float(value: Any, default: float = 0.0) -> float:
    # Postgres devuelve numeric como string ("20.00")
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# ---------- Tiempo ----------
def now_utc() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_iso(value: dt.datetime) -> str:
    # PostgREST espera ISO 8601 con 'Z'
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(s: Any) -> Optional[dt.datetime]:
    """ISO 8601 ('Z' o '+00:00'); sin zona se asume UTC. None si no se puede leer."""
    if not s:
        return None
    if isinstance(s, dt.datetime):
        value = s
    else:
        try:
            value = dt.datetime.fromisoformat(str(s).replace("Z", "+00:00"))
        except ValueError:
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value


# ---------- Texto ----------
def slugify(text: str) -> str:
    """'Mi Rifa Genial' -> 'mi-rifa-genial'"""
    norm = unicodedata.normalize("NFD", str(text))
    norm = "".join(c for c in norm if unicodedata.category(c) != "Mn")
    norm = norm.lower().strip()
    norm = re.sub(r"\s+", "-", norm)
    norm = re.sub(r"[^\w-]+", "", norm)
    return re.sub(r"--+", "-", norm).strip("-")


def ticket_number_width(universe: int) -> int:
    return max(4, len(str(max(universe - 1, 0))))


def format_ticket_number(n: int, universe: int) -> str:
    return str(n).zfill(ticket_number_width(universe))


def digits_only(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


# ---------- PostgREST ----------
PAGE_SIZE = 1000  # tope por defecto de filas por respuesta


def fetch_all(build_query, page_size: int = PAGE_SIZE) -> List[Dict[str, Any]]:
    """
    Recorre todas las páginas de una consulta. `build_query` devuelve un
    query builder nuevo (select + filtros) en cada llamada.
    """
    rows: List[Dict[str, Any]] = []
    start = 0
    while True:
        chunk = build_query().range(start, start + page_size - 1).execute().data or []
        rows.extend(chunk)
        if len(chunk) < page_size:
            return rows
        start += page_size


def first_row(resp) -> Optional[Dict[str, Any]]:
    data = getattr(resp, "data", None) or []
    return data[0] if data else None
