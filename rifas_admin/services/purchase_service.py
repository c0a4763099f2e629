from __future__ import annotations

import re
import math
import datetime as dt
from typing import List, Optional, Dict, Any, Iterable

from supabase import Client

from rifas_admin.core.errors import ValidationFailed, NotFoundError, ConflictError
from rifas_admin.core.logger import get_logger
from rifas_admin.core.settings import Settings, settings as default_settings
from rifas_admin.domain import inventory
from rifas_admin.domain.referrals import DIRECT_OPTION
from rifas_admin.services import messages
from rifas_admin.services.notifier import WhatsappNotifier, SendResult
from rifas_admin.services.payment_verifier import PaymentVerifier
from rifas_admin.services.utils import (
    digits_only, fetch_all, first_row, mask_email, now_utc, parse_iso, round2, to_float, to_iso,
)

logger = get_logger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
REJECTED = "rejected"
PURCHASE_STATUSES = (PENDING, CONFIRMED, REJECTED)

# Los filtros por día y las estadísticas "de hoy" usan la hora de Venezuela
VE_TZ = dt.timezone(dt.timedelta(hours=-4))

SORTABLE_COLUMNS = ("created_at", "amount", "ticket_count", "buyer_name", "buyer_email", "status")

TOP_RANKING_SIZE = 5

_SIMILAR_COLUMNS = "id, raffle_id, buyer_name, buyer_email, payment_reference, amount, status, created_at"
_SAFE_SUFFIX = re.compile(r"^[0-9A-Za-z]+$")


def _day_bounds(day: dt.date) -> tuple:
    start = dt.datetime.combine(day, dt.time.min, tzinfo=VE_TZ)
    return start, start + dt.timedelta(days=1)


class PurchaseService:
    def __init__(
        self,
        client: Client,
        notifier: Optional[WhatsappNotifier] = None,
        verifier: Optional[PaymentVerifier] = None,
        cfg: Optional[Settings] = None,
    ):
        self.client = client
        self.notifier = notifier
        self.verifier = verifier
        self.cfg = cfg or default_settings

    # ---------- Helpers ----------
    def _purchase_row(self, purchase_id: str) -> Dict[str, Any]:
        row = first_row(self.client.table("purchases").select("*").eq("id", purchase_id).limit(1).execute())
        if not row:
            raise NotFoundError("Compra no encontrada.")
        return row

    def _raffle_row(self, raffle_id: str) -> Dict[str, Any]:
        row = first_row(self.client.table("raffles").select("*").eq("id", raffle_id).limit(1).execute())
        if not row:
            raise NotFoundError("La rifa seleccionada no existe.")
        return row

    def _ticket_numbers(self, purchase_ids: Iterable[str]) -> Dict[str, List[str]]:
        ids = list(purchase_ids)
        out: Dict[str, List[str]] = {pid: [] for pid in ids}
        if not ids:
            return out
        rows = fetch_all(
            lambda: self.client.table("tickets").select("ticket_number, purchase_id").in_("purchase_id", ids)
        )
        for r in rows:
            out.setdefault(r["purchase_id"], []).append(r["ticket_number"])
        for nums in out.values():
            nums.sort()
        return out

    def _notify(self, phone: Optional[str], text: str) -> SendResult:
        if self.notifier is None:
            return SendResult(success=True, skipped=True)
        result = self.notifier.send(phone, text)
        if not result.success:
            logger.warning("No se pudo notificar por WhatsApp a %s: %s", phone, result.error)
        return result

    def _send_tickets(
        self, purchase: Dict[str, Any], raffle_name: str, numbers: Optional[List[str]] = None
    ) -> SendResult:
        if numbers is None:
            numbers = self._ticket_numbers([purchase["id"]]).get(purchase["id"], [])
        text = messages.tickets_confirmed(purchase.get("buyer_name") or "", raffle_name, numbers, self.cfg.public_base_url)
        return self._notify(purchase.get("buyer_phone"), text)

    def _after_confirmation(self, purchase: Dict[str, Any], raffle_name: str) -> None:
        """Tickets al comprador, aviso de ticket premium al admin y movimientos del Top 5."""
        numbers = self._ticket_numbers([purchase["id"]]).get(purchase["id"], [])
        self._send_tickets(purchase, raffle_name, numbers)
        self.notify_premium_tickets(purchase, raffle_name, numbers)
        self.notify_top_ranking(purchase)

    def notify_premium_tickets(self, purchase: Dict[str, Any], raffle_name: str, numbers: Iterable[str]) -> bool:
        premium = set(self.cfg.premium_tickets)
        hits = sorted(premium.intersection(numbers))
        if not hits or not self.cfg.admin_whatsapp:
            return False
        logger.info("Ticket premium %s vendido en la compra %s", ", ".join(hits), purchase["id"])
        text = messages.premium_ticket_alert(purchase.get("buyer_name") or "", raffle_name, hits)
        return self._notify(self.cfg.admin_whatsapp, text).success

    def notify_top_ranking(self, purchase: Dict[str, Any]) -> int:
        """
        Si el comprador quedó en el Top 5 se le indica cuánto le falta para
        el primer lugar, y a quienes superó cuánto necesitan para recuperarse.
        Devuelve la cantidad de mensajes enviados.
        """
        email = (purchase.get("buyer_email") or "").strip().lower()
        if self.notifier is None or not email:
            return 0
        ranking = self._ranking(purchase["raffle_id"])[:TOP_RANKING_SIZE]
        current = next((e for e in ranking if e["buyer_email"] == email), None)
        if current is None:
            return 0

        name = current["buyer_name"] or ""
        leader = ranking[0]
        if current is leader:
            text = messages.top_leader(name)
        else:
            text = messages.top_entered(name, leader["total_tickets"] - current["total_tickets"] + 1)
        sent = int(self._notify(current["buyer_phone"], text).success)

        for other in ranking:
            if other is current or other["total_tickets"] >= current["total_tickets"]:
                continue
            gap = current["total_tickets"] - other["total_tickets"] + 1
            text = messages.top_overtaken(other["buyer_name"] or "", name, gap)
            sent += int(self._notify(other["buyer_phone"], text).success)
        return sent

    # ---------- Compra ----------
    def _resolve_referral(self, code: Optional[str]) -> Optional[Dict[str, Any]]:
        code = (code or "").strip()
        if not code:
            return None
        link = first_row(
            self.client.table("referral_links").select("id, name, code").eq("code", code).limit(1).execute()
        )
        if not link:
            logger.warning('Código de referido "%s" no fue encontrado.', code)
        return link

    def buy_tickets(
        self,
        raffle_id: str,
        name: str,
        email: str,
        phone: str,
        payment_reference: str,
        payment_method: str,
        ticket_numbers: List[str],
        referral_code: Optional[str] = None,
        screenshot_url: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> Dict[str, Any]:
        """
        Convierte una reserva vigente en compra.
        Si el método de pago lo indica se verifica contra Pabilo; un pago
        confirmado vende los tickets y uno pendiente los deja apartados a
        nombre de la compra hasta que el admin la procese.
        """
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if len(name) < 3:
            raise ValidationFailed("El nombre es requerido")
        if "@" not in email:
            raise ValidationFailed("Email inválido")
        if len(digits_only(phone)) < 10:
            raise ValidationFailed("Teléfono inválido")
        if not (payment_reference or "").strip():
            raise ValidationFailed("La referencia es requerida")
        if not (payment_method or "").strip():
            raise ValidationFailed("Debe seleccionar un método de pago")
        numbers = sorted({n.strip() for n in ticket_numbers or [] if n and n.strip()})
        if not numbers:
            raise ValidationFailed("No hay tickets apartados para comprar.")

        now = now or now_utc()
        raffle = self._raffle_row(raffle_id)

        tickets = (
            self.client.table("tickets")
            .select("id, ticket_number, status, reserved_until, purchase_id")
            .eq("raffle_id", raffle_id)
            .in_("ticket_number", numbers)
            .eq("status", inventory.RESERVED)
            .execute()
        ).data or []
        valid = [t for t in tickets if not t.get("purchase_id") and inventory.reservation_active(t, now)]
        if len(valid) != len(numbers):
            raise ConflictError("Tu reservación expiró o los tickets ya no son válidos. Por favor, intenta de nuevo.")

        link = self._resolve_referral(referral_code)
        amount = round2(len(numbers) * to_float(raffle.get("price")))

        status = PENDING
        method = first_row(
            self.client.table("payment_methods")
            .select("title, triggers_api_verification")
            .eq("title", payment_method)
            .limit(1)
            .execute()
        )
        if method and method.get("triggers_api_verification") and self.verifier is not None:
            logger.info("Verificando con Pabilo para [%s]", payment_method)
            if self.verifier.verify(amount, payment_reference):
                status = CONFIRMED

        purchase = first_row(self.client.table("purchases").insert({
            "raffle_id": raffle_id,
            "buyer_name": name,
            "buyer_email": email,
            "buyer_phone": phone,
            "ticket_count": len(numbers),
            "amount": amount,
            "payment_method": payment_method,
            "payment_reference": payment_reference.strip(),
            "payment_screenshot_url": screenshot_url,
            "status": status,
            "referral_link_id": link["id"] if link else None,
            "referral_code": link["code"] if link else None,
            "referral_name": link["name"] if link else None,
            "created_at": to_iso(now),
        }).execute())
        if not purchase:
            raise RuntimeError("No se pudo registrar la compra")

        (
            self.client.table("tickets")
            .update({
                "status": inventory.SOLD if status == CONFIRMED else inventory.RESERVED,
                "purchase_id": purchase["id"],
                "reserved_until": None,
            })
            .in_("id", [t["id"] for t in valid])
            .execute()
        )

        if status == CONFIRMED:
            self._after_confirmation(purchase, raffle["name"])
            message = "¡Pago confirmado automáticamente! Tus tickets ya han sido generados."
        else:
            self._notify(phone, messages.purchase_received(name, raffle["name"]))
            message = "¡Solicitud recibida! Te avisaremos por WhatsApp cuando validemos el pago. ¡Mucha suerte!"

        logger.info("Compra %s registrada (%s) en rifa %s", purchase["id"], status, raffle_id)
        return {"purchase": purchase, "status": status, "message": message}

    # ---------- Gestión (admin) ----------
    def update_status(
        self,
        purchase_id: str,
        new_status: str,
        reason: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> Dict[str, Any]:
        if new_status not in (CONFIRMED, REJECTED):
            raise ValidationFailed("Datos inválidos.")
        if new_status == REJECTED and reason not in messages.REJECTION_REASONS:
            raise ValidationFailed("Debe seleccionar un motivo para el rechazo.")

        purchase = self._purchase_row(purchase_id)
        if purchase.get("status") != PENDING:
            raise ConflictError("Esta compra ya ha sido procesada.")

        changes: Dict[str, Any] = {"status": new_status}
        if new_status == REJECTED:
            changes.update({"rejection_reason": reason, "rejection_comment": comment})
        self.client.table("purchases").update(changes).eq("id", purchase_id).execute()

        raffle = self._raffle_row(purchase["raffle_id"])
        if new_status == CONFIRMED:
            self.client.table("tickets").update({"status": inventory.SOLD}).eq("purchase_id", purchase_id).execute()
            self._after_confirmation(purchase, raffle["name"])
        else:
            # los números vuelven a estar libres
            (
                self.client.table("tickets")
                .update({"status": inventory.AVAILABLE, "purchase_id": None, "reserved_until": None})
                .eq("purchase_id", purchase_id)
                .execute()
            )
            text = messages.purchase_rejected(purchase.get("buyer_name") or "", reason, comment)
            self._notify(purchase.get("buyer_phone"), text)

        logger.info("Compra %s -> %s", purchase_id, new_status)
        verb = "confirmada y notificada" if new_status == CONFIRMED else "rechazada y notificada"
        return {"id": purchase_id, "status": new_status, "message": f"La compra ha sido {verb}."}

    def update_info(self, purchase_id: str, email: Optional[str] = None, phone: Optional[str] = None) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        if email is not None:
            email = email.strip().lower()
            if "@" not in email:
                raise ValidationFailed("Email inválido")
            changes["buyer_email"] = email
        if phone is not None:
            if len(digits_only(phone)) < 10:
                raise ValidationFailed("Teléfono inválido")
            changes["buyer_phone"] = phone.strip()
        if not changes:
            raise ValidationFailed("No hay cambios para guardar.")

        self._purchase_row(purchase_id)
        self.client.table("purchases").update(changes).eq("id", purchase_id).execute()
        return self._purchase_row(purchase_id)

    def resend_tickets(self, purchase_id: str) -> Dict[str, Any]:
        purchase = self._purchase_row(purchase_id)
        if purchase.get("status") != CONFIRMED:
            raise ConflictError("Solo se pueden reenviar tickets de compras confirmadas.")
        raffle = self._raffle_row(purchase["raffle_id"])
        result = self._send_tickets(purchase, raffle["name"])
        return {"id": purchase_id, "sent": result.success, "skipped": result.skipped, "error": result.error}

    # ---------- Consultas ----------
    def find_my_tickets(self, email: str) -> List[Dict[str, Any]]:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationFailed("Email inválido.")
        purchases = (
            self.client.table("purchases")
            .select("*")
            .eq("buyer_email", email)
            .order("created_at", desc=True)
            .execute()
        ).data or []
        if not purchases:
            return []

        raffle_ids = sorted({p["raffle_id"] for p in purchases})
        raffles = {
            r["id"]: r
            for r in (
                self.client.table("raffles")
                .select("id, name, slug, status, currency, winner_ticket_id, winner_lottery_number")
                .in_("id", raffle_ids)
                .execute()
            ).data or []
        }
        numbers = self._ticket_numbers(p["id"] for p in purchases)
        return [
            {**p, "raffle": raffles.get(p["raffle_id"]), "tickets": numbers.get(p["id"], [])}
            for p in purchases
        ]

    def similar_references(self, purchase: Dict[str, Any], limit: int = 10) -> List[Dict[str, Any]]:
        """Otras compras cuya referencia termina en los mismos 4 dígitos."""
        ref = (purchase.get("payment_reference") or "").strip()
        if len(ref) < 4:
            return []
        return (
            self.client.table("purchases")
            .select(_SIMILAR_COLUMNS)
            .like("payment_reference", f"%{ref[-4:]}")
            .neq("id", purchase["id"])
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        ).data or []

    def _similar_for_rows(self, rows: List[Dict[str, Any]], limit: int = 10) -> Dict[str, List[Dict[str, Any]]]:
        """`similar_references` para una página completa con una sola consulta."""
        suffixes = {}
        out: Dict[str, List[Dict[str, Any]]] = {}
        for r in rows:
            ref = (r.get("payment_reference") or "").strip()
            out[r["id"]] = []
            if len(ref) < 4:
                continue
            if _SAFE_SUFFIX.match(ref[-4:]):
                suffixes[r["id"]] = ref[-4:]
            else:
                # la sintaxis de `or` no admite comas ni puntos sin comillas
                out[r["id"]] = self.similar_references(r, limit)
        if not suffixes:
            return out

        clause = ",".join(f"payment_reference.like.*{s}" for s in sorted(set(suffixes.values())))
        candidates = fetch_all(
            lambda: self.client.table("purchases").select(_SIMILAR_COLUMNS).or_(clause).order("created_at", desc=True)
        )
        for row_id, suffix in suffixes.items():
            out[row_id] = [
                c for c in candidates
                if c["id"] != row_id and (c.get("payment_reference") or "").endswith(suffix)
            ][:limit]
        return out

    def sale_details(self, purchase_id: str) -> Dict[str, Any]:
        purchase = self._purchase_row(purchase_id)
        raffle = self._raffle_row(purchase["raffle_id"])
        referral = None
        if purchase.get("referral_code"):
            referral = {"name": purchase.get("referral_name"), "code": purchase.get("referral_code")}

        similar = self.similar_references(purchase)
        if similar:
            names = {
                r["id"]: r["name"]
                for r in (
                    self.client.table("raffles")
                    .select("id, name")
                    .in_("id", sorted({s["raffle_id"] for s in similar}))
                    .execute()
                ).data or []
            }
            similar = [{**s, "raffle_name": names.get(s["raffle_id"])} for s in similar]

        return {
            "purchase": {
                **purchase,
                "raffle": {"id": raffle["id"], "name": raffle["name"], "currency": raffle.get("currency")},
                "referral_link": referral,
                "tickets": self._ticket_numbers([purchase_id]).get(purchase_id, []),
            },
            "similar_references": similar,
        }

    def paginated_sales(
        self,
        raffle_id: str,
        page: int = 0,
        size: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
        search: Optional[str] = None,
        statuses: Optional[List[str]] = None,
        referrals: Optional[List[str]] = None,
        date: Optional[dt.date] = None,
    ) -> Dict[str, Any]:
        if size < 1 or page < 0:
            raise ValidationFailed("Paginación inválida.")
        if sort_by not in SORTABLE_COLUMNS:
            raise ValidationFailed(f"No se puede ordenar por {sort_by}")

        rows = fetch_all(lambda: self.client.table("purchases").select("*").eq("raffle_id", raffle_id))

        if search:
            needle = search.strip().lower()
            rows = [
                r for r in rows
                if needle in (r.get("buyer_name") or "").lower() or needle in (r.get("buyer_email") or "").lower()
            ]
        if statuses:
            rows = [r for r in rows if r.get("status") in statuses]
        if referrals:
            wanted = set(referrals)
            rows = [
                r for r in rows
                if (r.get("referral_name") or DIRECT_OPTION) in wanted
            ]
        if date:
            start, end = _day_bounds(date)
            created = {r["id"]: parse_iso(r.get("created_at")) for r in rows}
            rows = [r for r in rows if created[r["id"]] and start <= created[r["id"]] < end]

        stats = {
            "total_sales": len(rows),
            "total_revenue": round2(sum(to_float(r.get("amount")) for r in rows if r.get("status") == CONFIRMED)),
            "total_tickets_sold": sum(int(r.get("ticket_count") or 0) for r in rows if r.get("status") == CONFIRMED),
            "pending_revenue": round2(sum(to_float(r.get("amount")) for r in rows if r.get("status") == PENDING)),
        }

        def sort_key(r: Dict[str, Any]):
            value = r.get(sort_by)
            if sort_by == "amount":
                return to_float(value)
            if sort_by == "ticket_count":
                return int(value or 0)
            if sort_by == "created_at":
                return parse_iso(value) or dt.datetime.min.replace(tzinfo=dt.timezone.utc)
            return (value or "").lower()

        rows.sort(key=sort_key, reverse=descending)
        page_rows = rows[page * size:(page + 1) * size]
        numbers = self._ticket_numbers(r["id"] for r in page_rows)
        similar = self._similar_for_rows(page_rows)
        return {
            "rows": [
                {**r, "tickets": numbers.get(r["id"], []), "similar_references": similar[r["id"]]}
                for r in page_rows
            ],
            "page_count": math.ceil(len(rows) / size),
            "total_row_count": len(rows),
            "statistics": stats,
        }

    def _ranking(self, raffle_id: str) -> List[Dict[str, Any]]:
        """Compradores confirmados agrupados por email, de más a menos tickets."""
        rows = fetch_all(
            lambda: self.client.table("purchases")
            .select("buyer_name, buyer_email, buyer_phone, ticket_count, created_at")
            .eq("raffle_id", raffle_id)
            .eq("status", CONFIRMED)
            .order("created_at")
        )
        totals: Dict[str, Dict[str, Any]] = {}
        for r in rows:
            email = (r.get("buyer_email") or "").strip().lower()
            if not email:
                continue
            entry = totals.setdefault(
                email, {"buyer_name": r.get("buyer_name"), "buyer_email": email, "buyer_phone": None, "total_tickets": 0}
            )
            entry["total_tickets"] += int(r.get("ticket_count") or 0)
            # el nombre y el teléfono más recientes ganan
            if r.get("buyer_name"):
                entry["buyer_name"] = r["buyer_name"]
            if r.get("buyer_phone"):
                entry["buyer_phone"] = r["buyer_phone"]
        return sorted(totals.values(), key=lambda e: e["total_tickets"], reverse=True)

    def top_buyers(self, raffle_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        return [
            {"buyer_name": e["buyer_name"], "buyer_email": mask_email(e["buyer_email"]), "total_tickets": e["total_tickets"]}
            for e in self._ranking(raffle_id)[:limit]
        ]

    def dashboard_stats(self, now: Optional[dt.datetime] = None) -> Dict[str, Any]:
        now = now or now_utc()
        start, end = _day_bounds(now.astimezone(VE_TZ).date())

        pending = (
            self.client.table("purchases").select("id", count="exact").eq("status", PENDING).execute()
        ).count or 0
        confirmed_today = (
            self.client.table("purchases")
            .select("amount")
            .eq("status", CONFIRMED)
            .gte("created_at", to_iso(start))
            .lt("created_at", to_iso(end))
            .execute()
        ).data or []
        active = (
            self.client.table("raffles").select("id", count="exact").eq("status", "active").execute()
        ).count or 0

        return {
            "total_pending_purchases": pending,
            "total_confirmed_today": len(confirmed_today),
            "total_revenue_today": round2(sum(to_float(r.get("amount")) for r in confirmed_today)),
            "active_raffles": active,
        }

    def new_purchases_since(self, since: str) -> List[Dict[str, Any]]:
        ts = parse_iso(since)
        if ts is None:
            raise ValidationFailed("Fecha inválida.")
        return (
            self.client.table("purchases")
            .select("*")
            .eq("status", PENDING)
            .gt("created_at", to_iso(ts))
            .order("created_at", desc=True)
            .execute()
        ).data or []
