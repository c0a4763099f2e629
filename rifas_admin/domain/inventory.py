"""
Inventario de tickets de una rifa.

Un ticket está "tomado" si está vendido, o si está reservado y su
`reserved_until` todavía no pasó. Los reservados de una compra pendiente
(con `purchase_id` y sin vencimiento) quedan tomados hasta que se confirme o
rechace. Las reservas vencidas cuentan como libres aunque la fila siga
en `reserved`: la disponibilidad se calcula en cada lectura y nunca se
reescribe el estado por barrido.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from rifas_admin.services.utils import parse_iso, round2

AVAILABLE = "available"
RESERVED = "reserved"
SOLD = "sold"
TICKET_STATUSES = (AVAILABLE, RESERVED, SOLD)


def reservation_active(ticket: Mapping[str, Any], now: dt.datetime) -> bool:
    if ticket.get("status") != RESERVED:
        return False
    raw = ticket.get("reserved_until")
    if not raw:
        # sin vencimiento solo sigue apartado si ya pertenece a una compra pendiente
        return bool(ticket.get("purchase_id"))
    until = parse_iso(raw)
    if until is None:
        # fecha ilegible: conservador, se considera tomado
        return True
    return until > now


def is_taken(ticket: Mapping[str, Any], now: dt.datetime) -> bool:
    if ticket.get("status") == SOLD:
        return True
    return reservation_active(ticket, now)


def count_taken(tickets: Iterable[Mapping[str, Any]], now: dt.datetime) -> int:
    return sum(1 for t in tickets if is_taken(t, now))


def partition_tickets(
    tickets: Iterable[Mapping[str, Any]], now: dt.datetime
) -> Tuple[List[Mapping[str, Any]], List[Mapping[str, Any]]]:
    available: List[Mapping[str, Any]] = []
    taken: List[Mapping[str, Any]] = []
    for t in tickets:
        (taken if is_taken(t, now) else available).append(t)
    return available, taken


@dataclass(frozen=True)
class Availability:
    total: int
    taken: int
    sold: int
    reserved: int
    available: int
    percent_sold: float
    percent_taken: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def availability(tickets: Iterable[Mapping[str, Any]], universe: int, now: dt.datetime) -> Availability:
    """
    Resumen para barras de progreso. `universe` es el total configurado de la
    rifa; si aún no se generaron filas, los números faltantes cuentan como libres.
    """
    sold = 0
    reserved = 0
    for t in tickets:
        if t.get("status") == SOLD:
            sold += 1
        elif reservation_active(t, now):
            reserved += 1

    total = max(int(universe or 0), 0)
    taken = sold + reserved
    available = max(total - taken, 0)
    percent_sold = round2(sold / total * 100.0) if total else 0.0
    percent_taken = round2(taken / total * 100.0) if total else 0.0
    return Availability(
        total=total,
        taken=taken,
        sold=sold,
        reserved=reserved,
        available=available,
        percent_sold=percent_sold,
        percent_taken=percent_taken,
    )
