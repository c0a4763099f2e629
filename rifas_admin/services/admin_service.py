from __future__ import annotations

from typing import List, Optional, Dict, Any

import pandas as pd
from supabase import Client
from werkzeug.security import generate_password_hash

from rifas_admin.core.errors import ValidationFailed, NotFoundError, ConflictError
from rifas_admin.core.logger import get_logger
from rifas_admin.core.settings import RuntimeConfig
from rifas_admin.services.utils import digits_only, fetch_all, first_row, now_utc, round2, to_float, to_iso

logger = get_logger(__name__)

PAYMENT_METHOD_FIELDS = (
    "title", "icon_url", "account_holder_name", "rif", "phone_number", "bank_name",
    "account_number", "wallet_address", "network", "email", "binance_pay_id",
    "is_active", "triggers_api_verification",
)

CUSTOMER_COLUMNS = {"buyer_name": "nombre", "buyer_email": "correo", "buyer_phone": "telefono"}


def effective_exchange_rate(client: Client, raffle_id: Optional[str], config: RuntimeConfig) -> float:
    """Tasa de la rifa si existe; si no, la tasa por defecto del snapshot."""
    if raffle_id:
        row = first_row(
            client.table("raffle_exchange_rates")
            .select("usd_to_ves_rate")
            .eq("raffle_id", raffle_id)
            .limit(1)
            .execute()
        )
        rate = to_float((row or {}).get("usd_to_ves_rate"))
        if rate > 0:
            return rate
    return config.default_exchange_rate


def customers_to_csv(purchases: List[Dict[str, Any]]) -> str:
    """
    Un cliente por email; gana la compra más reciente. Columnas nombre, correo
    y telefono. pandas cita los campos con comas, comillas o saltos de línea.
    """
    df = pd.DataFrame(purchases, columns=["buyer_name", "buyer_email", "buyer_phone", "created_at"])
    df = df[df["buyer_email"].notna() & (df["buyer_email"].astype(str).str.strip() != "")]
    df = df.assign(_email_key=df["buyer_email"].astype(str).str.strip().str.lower())
    df = df.assign(_ts=pd.to_datetime(df["created_at"], utc=True, errors="coerce"))
    df = (
        df.sort_values("_ts", ascending=False, na_position="last", kind="stable")
        .drop_duplicates(subset="_email_key", keep="first")
        .sort_values("_email_key", kind="stable")
    )
    out = df[list(CUSTOMER_COLUMNS)].rename(columns=CUSTOMER_COLUMNS)
    return out.to_csv(index=False, lineterminator="\n")


class AdminService:
    def __init__(self, client: Client):
        self.client = client

    # ---------- Métodos de pago ----------
    def _clean_method(self, data: Dict[str, Any]) -> Dict[str, Any]:
        row = {k: data.get(k) for k in PAYMENT_METHOD_FIELDS if k in data}
        title = (row.get("title") or "").strip()
        if len(title) < 3:
            raise ValidationFailed("El título es requerido.")
        row["title"] = title
        email = (row.get("email") or "").strip()
        if email and "@" not in email:
            raise ValidationFailed("Debe ser un correo válido.")
        row["email"] = email or None
        row["is_active"] = bool(row.get("is_active", True))
        row["triggers_api_verification"] = bool(row.get("triggers_api_verification", False))
        return row

    def _title_taken(self, title: str, exclude_id: Optional[str] = None) -> bool:
        rows = self.client.table("payment_methods").select("id").eq("title", title).execute().data or []
        return any(r["id"] != exclude_id for r in rows)

    def list_payment_methods(self, only_active: bool = False) -> List[Dict[str, Any]]:
        q = self.client.table("payment_methods").select("*")
        if only_active:
            q = q.eq("is_active", True)
        return q.order("title").execute().data or []

    def create_payment_method(self, data: Dict[str, Any]) -> Dict[str, Any]:
        row = self._clean_method(data)
        if self._title_taken(row["title"]):
            raise ConflictError("Ya existe un método de pago con ese título.")
        created = first_row(self.client.table("payment_methods").insert(row).execute())
        logger.info("Método de pago creado: %s", row["title"])
        return created

    def update_payment_method(self, method_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if not first_row(self.client.table("payment_methods").select("id").eq("id", method_id).limit(1).execute()):
            raise NotFoundError("Método de pago no encontrado.")
        row = self._clean_method(data)
        if self._title_taken(row["title"], exclude_id=method_id):
            raise ConflictError("Ya existe un método de pago con ese título.")
        self.client.table("payment_methods").update(row).eq("id", method_id).execute()
        return first_row(self.client.table("payment_methods").select("*").eq("id", method_id).limit(1).execute())

    def delete_payment_method(self, method_id: str) -> Dict[str, Any]:
        if not first_row(self.client.table("payment_methods").select("id").eq("id", method_id).limit(1).execute()):
            raise NotFoundError("Método de pago no encontrado.")
        self.client.table("payment_methods").delete().eq("id", method_id).execute()
        return {"ok": True, "id": method_id}

    # ---------- Configuración del sistema ----------
    def upsert_setting(self, key: str, value: str, description: Optional[str] = None) -> Dict[str, Any]:
        key = (key or "").strip()
        if not key:
            raise ValidationFailed("La clave es requerida.")
        if value is None or str(value).strip() == "":
            raise ValidationFailed("El valor es requerido.")
        row = {
            "key": key,
            "value": str(value).strip(),
            "description": description,
            "is_active": True,
            "updated_at": to_iso(now_utc()),
        }
        saved = first_row(self.client.table("system_settings").upsert(row, on_conflict="key").execute())
        logger.info("Configuración %s actualizada", key)
        return saved or row

    def list_settings(self) -> Dict[str, str]:
        rows = (
            self.client.table("system_settings")
            .select("key, value")
            .eq("is_active", True)
            .order("key")
            .execute()
        ).data or []
        return {r["key"]: r["value"] for r in rows}

    # ---------- Tasas por rifa ----------
    def set_raffle_rate(self, raffle_id: str, rate: float) -> Dict[str, Any]:
        if rate is None or float(rate) <= 0:
            raise ValidationFailed("La tasa debe ser mayor a cero.")
        if not first_row(self.client.table("raffles").select("id").eq("id", raffle_id).limit(1).execute()):
            raise NotFoundError("Rifa no encontrada.")
        row = {"raffle_id": raffle_id, "usd_to_ves_rate": round2(rate), "updated_at": to_iso(now_utc())}
        saved = first_row(self.client.table("raffle_exchange_rates").upsert(row, on_conflict="raffle_id").execute())
        return saved or row

    def get_raffle_rate(self, raffle_id: str) -> Optional[Dict[str, Any]]:
        return first_row(
            self.client.table("raffle_exchange_rates").select("*").eq("raffle_id", raffle_id).limit(1).execute()
        )

    def raffles_with_rates(self, config: RuntimeConfig) -> List[Dict[str, Any]]:
        raffles = (
            self.client.table("raffles")
            .select("id, name, status, currency")
            .order("created_at", desc=True)
            .execute()
        ).data or []
        rates = {
            r["raffle_id"]: r
            for r in self.client.table("raffle_exchange_rates").select("*").execute().data or []
        }
        out = []
        for r in raffles:
            own = rates.get(r["id"])
            out.append({
                **r,
                "usd_to_ves_rate": to_float(own["usd_to_ves_rate"]) if own else None,
                "effective_rate": to_float(own["usd_to_ves_rate"]) if own else config.default_exchange_rate,
                "updated_at": own.get("updated_at") if own else None,
            })
        return out

    # ---------- Usuarios ----------
    def create_user(self, name: str, email: str, password: str) -> Dict[str, Any]:
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if len(name) < 2:
            raise ValidationFailed("El nombre debe tener al menos 2 caracteres.")
        if "@" not in email:
            raise ValidationFailed("Email inválido.")
        if len(password or "") < 6:
            raise ValidationFailed("La contraseña debe tener al menos 6 caracteres.")
        if first_row(self.client.table("users").select("id").eq("email", email).limit(1).execute()):
            raise ConflictError("El email ya está registrado.")

        created = first_row(self.client.table("users").insert({
            "name": name,
            "email": email,
            "password": generate_password_hash(password),
            "role": "user",
            "created_at": to_iso(now_utc()),
        }).execute())
        logger.info("Usuario creado: %s", email)
        return {k: v for k, v in (created or {}).items() if k != "password"}

    def list_users(self) -> List[Dict[str, Any]]:
        return (
            self.client.table("users")
            .select("id, name, email, role, created_at")
            .order("created_at", desc=True)
            .execute()
        ).data or []

    def delete_user(self, user_id: str) -> Dict[str, Any]:
        if not first_row(self.client.table("users").select("id").eq("id", user_id).limit(1).execute()):
            raise NotFoundError("Usuario no encontrado.")
        self.client.table("users").delete().eq("id", user_id).execute()
        return {"ok": True, "id": user_id}

    # ---------- Lista de espera ----------
    def add_to_waitlist(self, name: str, email: str, whatsapp: str) -> Dict[str, Any]:
        name = (name or "").strip()
        email = (email or "").strip().lower()
        whatsapp = (whatsapp or "").strip()
        if len(name) < 2:
            raise ValidationFailed("El nombre es requerido.")
        if "@" not in email:
            raise ValidationFailed("Email inválido.")
        if len(digits_only(whatsapp)) < 10:
            raise ValidationFailed("Número de WhatsApp inválido.")

        dup_email = self.client.table("waitlist_subscribers").select("id").eq("email", email).limit(1).execute()
        dup_phone = self.client.table("waitlist_subscribers").select("id").eq("whatsapp", whatsapp).limit(1).execute()
        if first_row(dup_email) or first_row(dup_phone):
            raise ConflictError("Este correo o número de WhatsApp ya está registrado.")

        return first_row(self.client.table("waitlist_subscribers").insert({
            "name": name,
            "email": email,
            "whatsapp": whatsapp,
            "created_at": to_iso(now_utc()),
        }).execute())

    # ---------- Exportación ----------
    def export_customers_csv(self) -> str:
        rows = fetch_all(
            lambda: self.client.table("purchases").select("buyer_name, buyer_email, buyer_phone, created_at")
        )
        logger.info("Exportando clientes únicos a partir de %d compras", len(rows))
        return customers_to_csv(rows)
