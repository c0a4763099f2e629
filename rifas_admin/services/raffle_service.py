from __future__ import annotations

import re
import random
import datetime as dt
from typing import List, Optional, Dict, Any

from supabase import Client

from rifas_admin.core.errors import ValidationFailed, NotFoundError, ConflictError
from rifas_admin.core.logger import get_logger
from rifas_admin.core.settings import Settings, RuntimeConfig, settings as default_settings
from rifas_admin.domain import inventory
from rifas_admin.services import messages
from rifas_admin.services.notifier import WhatsappNotifier
from rifas_admin.services.utils import (
    fetch_all, first_row, format_ticket_number, now_utc, parse_iso, round2, slugify, to_float, to_iso,
)

logger = get_logger(__name__)

RAFFLE_STATUSES = ("draft", "active", "finished", "cancelled", "postponed")
CURRENCIES = ("USD", "VES")
_TICKET_BATCH = 1000
_LOTTERY_NUMBER = re.compile(r"^\d{4}$")


class RaffleService:
    def __init__(
        self,
        client: Client,
        notifier: Optional[WhatsappNotifier] = None,
        cfg: Optional[Settings] = None,
    ):
        self.client = client
        self.notifier = notifier
        self.cfg = cfg or default_settings

    # ---------- Lectura ----------
    def _raffle_row(self, raffle_id: str) -> Dict[str, Any]:
        row = first_row(self.client.table("raffles").select("*").eq("id", raffle_id).limit(1).execute())
        if not row:
            raise NotFoundError("Rifa no encontrada.")
        return row

    def _images(self, raffle_id: str) -> List[Dict[str, Any]]:
        return (
            self.client.table("raffle_images")
            .select("id, url")
            .eq("raffle_id", raffle_id)
            .execute()
        ).data or []

    def get_raffle(self, raffle_id: str) -> Dict[str, Any]:
        raffle = self._raffle_row(raffle_id)
        return {**raffle, "images": self._images(raffle_id)}

    def get_raffle_by_slug(self, slug: str) -> Dict[str, Any]:
        row = first_row(self.client.table("raffles").select("*").eq("slug", slug).limit(1).execute())
        if not row:
            raise NotFoundError("Rifa no encontrada.")
        return {**row, "images": self._images(row["id"])}

    def list_raffles(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        q = self.client.table("raffles").select("*")
        if status:
            if status not in RAFFLE_STATUSES:
                raise ValidationFailed(f"Estado de rifa inválido: {status}")
            q = q.eq("status", status)
        return q.order("created_at", desc=True).execute().data or []

    # ---------- Alta / edición ----------
    def _validate_fields(self, name: str, price: float, minimum_tickets: int, currency: str) -> None:
        if not name or len(name.strip()) < 5:
            raise ValidationFailed("El nombre debe tener al menos 5 caracteres.")
        if price is None or float(price) <= 0:
            raise ValidationFailed("El precio debe ser un número positivo.")
        if minimum_tickets is None or int(minimum_tickets) <= 0:
            raise ValidationFailed("El mínimo de tickets debe ser un número positivo.")
        if currency not in CURRENCIES:
            raise ValidationFailed("La moneda es requerida.")

    def _slug_taken(self, slug: str) -> bool:
        rows = self.client.table("raffles").select("id").eq("slug", slug).limit(1).execute().data or []
        return bool(rows)

    def _unique_slug(self, name: str) -> str:
        base = slugify(name) or "rifa"
        candidate = base
        counter = 1
        while self._slug_taken(candidate):
            candidate = f"{base}-{counter}"
            counter += 1
        return candidate

    def create_raffle(
        self,
        name: str,
        price: float,
        limit_date: dt.datetime,
        currency: str = "USD",
        minimum_tickets: Optional[int] = None,
        description: Optional[str] = None,
        image_urls: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        minimum_tickets = minimum_tickets or self.cfg.ticket_universe
        self._validate_fields(name, price, minimum_tickets, currency)
        if not limit_date:
            raise ValidationFailed("La fecha límite es requerida.")

        row = {
            "name": name.strip(),
            "slug": self._unique_slug(name),
            "description": description,
            "price": round2(price),
            "currency": currency,
            "minimum_tickets": int(minimum_tickets),
            "status": "draft",
            "limit_date": to_iso(limit_date),
        }
        created = first_row(self.client.table("raffles").insert(row).execute())
        if not created:
            raise RuntimeError("No se pudo crear la rifa")

        if image_urls:
            self.client.table("raffle_images").insert(
                [{"raffle_id": created["id"], "url": u} for u in image_urls]
            ).execute()

        logger.info("Rifa creada: %s (%s)", created["name"], created["slug"])
        self._notify_waitlist(created)
        return {**created, "images": self._images(created["id"])}

    def update_raffle(
        self,
        raffle_id: str,
        name: str,
        price: float,
        minimum_tickets: int,
        limit_date: dt.datetime,
        currency: str,
        description: Optional[str] = None,
        new_image_urls: Optional[List[str]] = None,
        image_ids_to_delete: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        current = self._raffle_row(raffle_id)
        self._validate_fields(name, price, minimum_tickets, currency)
        # el universo queda fijo una vez generados los números
        if int(minimum_tickets) != self._universe(current) and self._has_tickets(raffle_id):
            raise ConflictError("No se puede cambiar la cantidad de tickets de una rifa que ya tiene tickets generados.")

        self.client.table("raffles").update({
            "name": name.strip(),
            "description": description,
            "price": round2(price),
            "minimum_tickets": int(minimum_tickets),
            "limit_date": to_iso(limit_date),
            "currency": currency,
            "updated_at": to_iso(now_utc()),
        }).eq("id", raffle_id).execute()

        if image_ids_to_delete:
            (
                self.client.table("raffle_images")
                .delete()
                .eq("raffle_id", raffle_id)
                .in_("id", image_ids_to_delete)
                .execute()
            )
        if new_image_urls:
            self.client.table("raffle_images").insert(
                [{"raffle_id": raffle_id, "url": u} for u in new_image_urls]
            ).execute()

        return self.get_raffle(raffle_id)

    def _notify_waitlist(self, raffle: Dict[str, Any]) -> int:
        """Aviso de nueva rifa a la lista de espera. Nunca interrumpe la creación."""
        if self.notifier is None:
            return 0
        subscribers = self.client.table("waitlist_subscribers").select("name, whatsapp").execute().data or []
        if not subscribers:
            logger.info("No hay suscriptores en la lista de espera para notificar.")
            return 0

        price = messages.format_price(to_float(raffle.get("price")), raffle.get("currency") or "USD")
        url = f"{self.cfg.public_base_url.rstrip('/')}/rifa/{raffle['slug']}"
        sent = 0
        for sub in subscribers:
            text = messages.new_raffle(sub.get("name") or "", raffle["name"], price, url)
            if self.notifier.send(sub.get("whatsapp"), text).success:
                sent += 1
        logger.info("Lista de espera notificada: %d/%d", sent, len(subscribers))
        return sent

    # ---------- Estado ----------
    def update_status(self, raffle_id: str, new_status: str) -> Dict[str, Any]:
        if new_status not in RAFFLE_STATUSES:
            raise ValidationFailed(f"Estado de rifa inválido: {new_status}")
        current = self._raffle_row(raffle_id)

        self.client.table("raffles").update(
            {"status": new_status, "updated_at": to_iso(now_utc())}
        ).eq("id", raffle_id).execute()

        generated = 0
        if current.get("status") == "draft" and new_status == "active" and not self._has_tickets(raffle_id):
            generated = self._insert_ticket_universe(raffle_id, self._universe(current))

        logger.info("Rifa %s: %s -> %s", raffle_id, current.get("status"), new_status)
        return {"id": raffle_id, "status": new_status, "tickets_generated": generated}

    def postpone(self, raffle_id: str, new_limit_date: dt.datetime) -> Dict[str, Any]:
        raffle = self._raffle_row(raffle_id)
        if raffle.get("status") != "finished":
            raise ConflictError("La rifa no puede ser pospuesta en su estado actual.")
        if not new_limit_date:
            raise ValidationFailed("La nueva fecha límite es requerida.")

        # se reactiva con la nueva fecha para el próximo sorteo
        self.client.table("raffles").update({
            "status": "active",
            "limit_date": to_iso(new_limit_date),
            "updated_at": to_iso(now_utc()),
        }).eq("id", raffle_id).execute()
        return {"id": raffle_id, "status": "active", "limit_date": to_iso(new_limit_date)}

    # ---------- Tickets ----------
    def _universe(self, raffle: Dict[str, Any]) -> int:
        try:
            n = int(raffle.get("minimum_tickets") or 0)
        except (TypeError, ValueError):
            n = 0
        return n if n > 0 else self.cfg.ticket_universe

    def _has_tickets(self, raffle_id: str) -> bool:
        rows = self.client.table("tickets").select("id").eq("raffle_id", raffle_id).limit(1).execute().data or []
        return bool(rows)

    def _insert_ticket_universe(self, raffle_id: str, universe: int) -> int:
        logger.info("Generando %d tickets para la rifa %s", universe, raffle_id)
        for start in range(0, universe, _TICKET_BATCH):
            batch = [
                {
                    "raffle_id": raffle_id,
                    "ticket_number": format_ticket_number(n, universe),
                    "status": inventory.AVAILABLE,
                }
                for n in range(start, min(start + _TICKET_BATCH, universe))
            ]
            self.client.table("tickets").insert(batch).execute()
        return universe

    def generate_tickets(self, raffle_id: str) -> Dict[str, Any]:
        raffle = self._raffle_row(raffle_id)
        if raffle.get("status") != "active":
            raise ConflictError("Solo se pueden generar tickets para rifas activas.")
        if self._has_tickets(raffle_id):
            raise ConflictError("Esta rifa ya tiene tickets generados.")
        count = self._insert_ticket_universe(raffle_id, self._universe(raffle))
        return {"tickets_generated": count}

    def _tickets(self, raffle_id: str, statuses: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        def build():
            q = (
                self.client.table("tickets")
                .select("id, ticket_number, status, reserved_until, purchase_id")
                .eq("raffle_id", raffle_id)
            )
            if statuses:
                q = q.in_("status", statuses)
            return q.order("ticket_number")

        return fetch_all(build)

    def progress(self, raffle_id: str, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        raffle = self._raffle_row(raffle_id)
        held = self._tickets(raffle_id, statuses=[inventory.RESERVED, inventory.SOLD])
        summary = inventory.availability(held, self._universe(raffle), now or now_utc())
        return {"raffle_id": raffle_id, **summary.to_dict()}

    def reserve_tickets(self, raffle_id: str, count: int, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        """
        Aparta `count` números libres al azar por RESERVATION_MINUTES.
        Las reservas vencidas se consideran libres sin reescribirlas antes.
        """
        if count is None or int(count) < 1:
            raise ValidationFailed("La cantidad debe ser al menos 1.")
        count = int(count)
        now = now or now_utc()

        raffle = self._raffle_row(raffle_id)
        if raffle.get("status") != "active":
            raise ConflictError("La rifa no está activa.")

        if not self._has_tickets(raffle_id):
            self._insert_ticket_universe(raffle_id, self._universe(raffle))

        available, _taken = inventory.partition_tickets(self._tickets(raffle_id), now)
        if len(available) < count:
            raise ConflictError("No hay suficientes tickets disponibles para apartar.")

        chosen = random.sample(available, count)
        until = now + dt.timedelta(minutes=self.cfg.reservation_minutes)
        (
            self.client.table("tickets")
            .update({"status": inventory.RESERVED, "reserved_until": to_iso(until), "purchase_id": None})
            .in_("id", [t["id"] for t in chosen])
            .execute()
        )

        numbers = sorted(t["ticket_number"] for t in chosen)
        logger.info("Rifa %s: %d tickets apartados hasta %s", raffle_id, count, to_iso(until))
        return {"reserved_tickets": numbers, "reserved_until": to_iso(until)}

    # ---------- Sorteo ----------
    def draw_winner(self, raffle_id: str, lottery_number: str, proof_url: Optional[str] = None) -> Dict[str, Any]:
        lottery_number = (lottery_number or "").strip()
        if not _LOTTERY_NUMBER.match(lottery_number):
            raise ValidationFailed("El número debe tener 4 dígitos.")

        raffle = self._raffle_row(raffle_id)
        if raffle.get("status") != "finished":
            raise ConflictError("La rifa no está en estado finalizado.")

        ticket_number = format_ticket_number(int(lottery_number), self._universe(raffle))
        ticket = first_row(
            self.client.table("tickets")
            .select("id, ticket_number, status, purchase_id")
            .eq("raffle_id", raffle_id)
            .eq("ticket_number", ticket_number)
            .eq("status", inventory.SOLD)
            .limit(1)
            .execute()
        )
        purchase = None
        if ticket and ticket.get("purchase_id"):
            purchase = first_row(
                self.client.table("purchases").select("*").eq("id", ticket["purchase_id"]).limit(1).execute()
            )
        if not ticket or not purchase:
            raise ConflictError(
                f"El ticket #{lottery_number} no fue vendido o no existe. La rifa puede ser pospuesta."
            )

        self.client.table("raffles").update({
            "winner_ticket_id": ticket["id"],
            "winner_lottery_number": lottery_number,
            "winner_proof_url": proof_url,
            "updated_at": to_iso(now_utc()),
        }).eq("id", raffle_id).execute()

        if self.notifier is not None:
            text = messages.winner(purchase.get("buyer_name") or "Ganador", raffle["name"], ticket["ticket_number"])
            self.notifier.send(purchase.get("buyer_phone"), text)

        logger.info("Ganador registrado en rifa %s: ticket %s", raffle_id, ticket["ticket_number"])
        return {
            "winner_ticket_number": ticket["ticket_number"],
            "winner_name": purchase.get("buyer_name"),
            "winner_email": purchase.get("buyer_email"),
            "winner_proof_url": proof_url,
        }

    # ---------- Público ----------
    def public_raffle(
        self, raffle: Dict[str, Any], exchange_rate: float, now: Optional[dt.datetime] = None
    ) -> Dict[str, Any]:
        """Vista pública de una rifa ya leída con `get_raffle_by_slug`."""
        if raffle.get("status") == "draft":
            raise NotFoundError("Rifa no encontrada.")

        now = now or now_utc()
        held = self._tickets(raffle["id"], statuses=[inventory.RESERVED, inventory.SOLD])
        summary = inventory.availability(held, self._universe(raffle), now)

        methods = (
            self.client.table("payment_methods")
            .select("*")
            .eq("is_active", True)
            .order("title")
            .execute()
        ).data or []

        limit_date = parse_iso(raffle.get("limit_date"))
        return {
            "raffle": raffle,
            "progress": summary.to_dict(),
            "payment_methods": methods,
            "exchange_rate": exchange_rate,
            "sales_closed": bool(limit_date and limit_date <= now),
        }
