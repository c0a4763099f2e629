from __future__ import annotations

import re
from typing import List, Optional, Dict, Any
from urllib.parse import urlencode

from supabase import Client

from rifas_admin.core.errors import ValidationFailed, NotFoundError, ConflictError
from rifas_admin.core.logger import get_logger
from rifas_admin.core.settings import Settings, RuntimeConfig, settings as default_settings
from rifas_admin.domain.referrals import (
    DIRECT_OPTION, aggregate_by_source, compute_commissions,
)
from rifas_admin.services.utils import fetch_all, first_row, now_utc, round2, to_iso

logger = get_logger(__name__)

_CODE = re.compile(r"^[A-Za-z0-9_-]{3,}$")

_PURCHASE_COLS = "id, raffle_id, status, ticket_count, amount, buyer_email, referral_code, referral_name"


class ReferralService:
    def __init__(self, client: Client, cfg: Optional[Settings] = None):
        self.client = client
        self.cfg = cfg or default_settings

    # ---------- Links ----------
    def create_link(self, name: str, code: str) -> Dict[str, Any]:
        name = (name or "").strip()
        code = (code or "").strip()
        if len(name) < 3:
            raise ValidationFailed("El nombre de la campaña es requerido.")
        if not _CODE.match(code):
            raise ValidationFailed(
                "El código solo puede contener letras, números, guiones y guiones bajos (mínimo 3)."
            )
        if self.resolve_code(code):
            raise ConflictError("Este código ya está en uso. Elige otro.")

        row = first_row(self.client.table("referral_links").insert({
            "name": name,
            "code": code,
            "created_at": to_iso(now_utc()),
        }).execute())
        logger.info("Link de referido creado: %s (%s)", code, name)
        return row

    def list_links(self) -> List[Dict[str, Any]]:
        return (
            self.client.table("referral_links")
            .select("*")
            .order("created_at", desc=True)
            .execute()
        ).data or []

    def delete_link(self, link_id: str) -> Dict[str, Any]:
        link = first_row(self.client.table("referral_links").select("id").eq("id", link_id).limit(1).execute())
        if not link:
            raise NotFoundError("Link de referido no encontrado.")
        self.client.table("referral_links").delete().eq("id", link_id).execute()
        return {"ok": True, "id": link_id}

    def resolve_code(self, code: Optional[str]) -> Optional[Dict[str, Any]]:
        code = (code or "").strip()
        if not code:
            return None
        return first_row(
            self.client.table("referral_links").select("id, name, code").eq("code", code).limit(1).execute()
        )

    def share_link(self, raffle_slug: str, code: str) -> str:
        """https://<dominio>/rifa/<slug>?r=<código>"""
        if not raffle_slug:
            raise ValidationFailed("Selecciona una rifa.")
        if not _CODE.match(code or ""):
            raise ValidationFailed("Código de referido inválido.")
        return f"{self.cfg.public_base_url.rstrip('/')}/rifa/{raffle_slug}?{urlencode({'r': code})}"

    # ---------- Analítica ----------
    def _purchases(self, raffle_id: Optional[str]) -> List[Dict[str, Any]]:
        def build():
            q = self.client.table("purchases").select(_PURCHASE_COLS)
            return q.eq("raffle_id", raffle_id) if raffle_id else q

        return fetch_all(build)

    def analytics(self, raffle_id: str) -> Dict[str, Any]:
        raffle = first_row(
            self.client.table("raffles").select("id, name, price, currency").eq("id", raffle_id).limit(1).execute()
        )
        if not raffle:
            raise NotFoundError("Rifa no encontrada.")
        report = aggregate_by_source(self._purchases(raffle_id))
        return {"raffle": raffle, **report.to_dict()}

    def commissions(self, config: RuntimeConfig, raffle_id: Optional[str] = None) -> Dict[str, Any]:
        per_code = compute_commissions(self._purchases(raffle_id), config)
        names = {link["code"]: link["name"] for link in self.list_links()}
        rows = sorted(
            ({**c.to_dict(), "name": names.get(code)} for code, c in per_code.items()),
            key=lambda r: r["amount"],
            reverse=True,
        )
        return {
            "raffle_id": raffle_id,
            "commission_rate": config.commission_rate,
            "commissions": rows,
            "total": round2(sum(r["amount"] for r in rows)),
        }

    def referral_options(self, raffle_id: str) -> List[str]:
        """Nombres de referido con ventas en la rifa, más la opción de venta directa."""
        rows = fetch_all(
            lambda: self.client.table("purchases").select("referral_name").eq("raffle_id", raffle_id)
        )
        names = sorted({(r.get("referral_name") or "").strip() for r in rows} - {""})
        if any(not (r.get("referral_name") or "").strip() for r in rows):
            return [DIRECT_OPTION] + names
        return names
