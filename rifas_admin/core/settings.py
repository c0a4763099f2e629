from os import getenv, path
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from supabase import create_client, Client
from dotenv import load_dotenv

# =====================================================
# .env junto al paquete (rifas_admin/.env) o en la raíz
# =====================================================
BASE_DIR = path.dirname(path.abspath(__file__))        # rifas_admin/core
PKG_DIR = path.dirname(BASE_DIR)                       # rifas_admin/
ROOT_DIR = path.dirname(PKG_DIR)                       # <root>/
load_dotenv(path.join(PKG_DIR, ".env"))
load_dotenv(path.join(ROOT_DIR, ".env"))
# =====================================================


def _get_bool(name: str, default: bool = False) -> bool:
    value = getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(name: str, default: str = "") -> List[str]:
    raw = getenv(name, default)
    return [p.strip() for p in raw.split(",") if p.strip()]


class Settings(BaseModel):
    supabase_url: str = getenv("SUPABASE_URL", "")
    supabase_service_key: str = getenv("SUPABASE_SERVICE_KEY", "")
    admin_api_key: str = getenv("ADMIN_API_KEY", "")

    default_usdves_rate: float = float(getenv("USDVES_RATE", "36.42"))
    default_commission_rate: float = float(getenv("COMMISSION_RATE", "0.50"))
    reservation_minutes: int = int(getenv("RESERVATION_MINUTES", "10"))
    ticket_universe: int = int(getenv("TICKET_UNIVERSE", "10000"))
    public_base_url: str = getenv("PUBLIC_BASE_URL", "https://www.llevateloconjorvi.com")

    messages_enabled: bool = _get_bool("MESSAGES_ENABLED", False)
    evolution_api_url: str = getenv("EVOLUTION_API_URL", "")
    evolution_api_key: str = getenv("EVOLUTION_API_KEY", "")
    evolution_instance: str = getenv("EVOLUTION_INSTANCE", "")
    admin_whatsapp: str = getenv("ADMIN_WHATSAPP_NUMBER", "")
    # números premiados al instante; al venderse se avisa al admin
    premium_tickets: List[str] = _get_list("PREMIUM_TICKETS", "")

    pabilo_api_url: str = getenv("PABILO_API_URL", "")
    pabilo_api_key: str = getenv("PABILO_API_KEY", "")
    pabilo_timeout_seconds: int = int(getenv("PABILO_TIMEOUT_SECONDS", "65"))

    cloudinary_cloud_name: str = getenv("CLOUDINARY_CLOUD_NAME", "")
    cloudinary_api_key: str = getenv("CLOUDINARY_API_KEY", "")
    cloudinary_api_secret: str = getenv("CLOUDINARY_API_SECRET", "")

    bcv_api_url: str = getenv("BCV_API_URL", "")
    cors_origins: List[str] = _get_list("CORS_ORIGINS", "*")
    log_level: str = getenv("LOG_LEVEL", "INFO")

settings = Settings()


def make_client() -> Client:
    if not settings.supabase_url or not settings.supabase_service_key:
        raise RuntimeError("Faltan SUPABASE_URL o SUPABASE_SERVICE_KEY")
    return create_client(settings.supabase_url, settings.supabase_service_key)


# ---------- Configuración global editable desde el panel ----------
COMMISSION_RATE_KEY = "commission_rate"
DEFAULT_EXCHANGE_RATE_KEY = "default_exchange_rate"


@dataclass(frozen=True)
class RuntimeConfig:
    """Snapshot de `system_settings` que se pasa explícitamente a los cálculos."""
    commission_rate: float
    default_exchange_rate: float


def _positive_float(value: Any) -> Optional[float]:
    try:
        n = float(str(value).replace(",", "."))
    except (TypeError, ValueError):
        return None
    return n if n > 0 else None


def runtime_config_from_rows(rows: List[Dict[str, Any]]) -> RuntimeConfig:
    values = {r.get("key"): r.get("value") for r in rows if r.get("is_active", True)}
    commission = _positive_float(values.get(COMMISSION_RATE_KEY))
    rate = _positive_float(values.get(DEFAULT_EXCHANGE_RATE_KEY))
    return RuntimeConfig(
        commission_rate=commission if commission is not None else settings.default_commission_rate,
        default_exchange_rate=rate if rate is not None else settings.default_usdves_rate,
    )


def load_runtime_config(client: Client) -> RuntimeConfig:
    rows = client.table("system_settings").select("key, value, is_active").execute().data or []
    return runtime_config_from_rows(rows)
