"""Dependencias FastAPI; los tests las sustituyen con app.dependency_overrides."""
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, Request
from supabase import Client

from rifas_admin.core.auth import Principal, has_role, resolve_principal
from rifas_admin.core.errors import AdminRequired
from rifas_admin.core.settings import RuntimeConfig, load_runtime_config, make_client, settings
from rifas_admin.services.admin_service import AdminService
from rifas_admin.services.exchange_rates import BCVRateProvider, bcv_provider
from rifas_admin.services.notifier import WhatsappNotifier
from rifas_admin.services.payment_verifier import PaymentVerifier
from rifas_admin.services.purchase_service import PurchaseService
from rifas_admin.services.raffle_service import RaffleService
from rifas_admin.services.realtime import PurchaseBroadcaster, broadcaster
from rifas_admin.services.referral_service import ReferralService


@lru_cache(maxsize=1)
def get_client() -> Client:
    return make_client()


@lru_cache(maxsize=1)
def get_notifier() -> WhatsappNotifier:
    return WhatsappNotifier()


@lru_cache(maxsize=1)
def get_verifier() -> PaymentVerifier:
    return PaymentVerifier()


def get_broadcaster() -> PurchaseBroadcaster:
    return broadcaster


def get_rate_provider() -> BCVRateProvider:
    return bcv_provider


def get_runtime_config(client: Client = Depends(get_client)) -> RuntimeConfig:
    # se relee en cada petición: el panel puede cambiar la comisión en caliente
    return load_runtime_config(client)


# ---------- Servicios ----------
def get_raffle_service(
    client: Client = Depends(get_client),
    notifier: WhatsappNotifier = Depends(get_notifier),
) -> RaffleService:
    return RaffleService(client, notifier=notifier)


def get_purchase_service(
    client: Client = Depends(get_client),
    notifier: WhatsappNotifier = Depends(get_notifier),
    verifier: PaymentVerifier = Depends(get_verifier),
) -> PurchaseService:
    return PurchaseService(client, notifier=notifier, verifier=verifier)


def get_referral_service(client: Client = Depends(get_client)) -> ReferralService:
    return ReferralService(client)


def get_admin_service(client: Client = Depends(get_client)) -> AdminService:
    return AdminService(client)


# ---------- Autorización ----------
def current_user(
    x_admin_key: str = Header(default=""),
    x_user_id: str = Header(default=""),
    client: Client = Depends(get_client),
) -> Optional[Principal]:
    return resolve_principal(client, x_admin_key, x_user_id, settings.admin_api_key)


def require_admin(request: Request, user: Optional[Principal] = Depends(current_user)) -> Principal:
    if not has_role(user, "admin"):
        raise AdminRequired(next_path=request.url.path)
    return user
