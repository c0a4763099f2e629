import os
import hmac
import datetime as dt
from typing import Optional, Any, Dict, List
from urllib.parse import quote

from fastapi import (
    APIRouter, BackgroundTasks, Depends, FastAPI, File, HTTPException, Query, Request,
    UploadFile, WebSocket, WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from supabase import Client

from rifas_admin.api.deps import (
    get_admin_service, get_broadcaster, get_client, get_purchase_service, get_raffle_service,
    get_rate_provider, get_referral_service, get_runtime_config, require_admin,
)
from rifas_admin.api.schemas import (
    BuyRequest, DrawWinnerRequest, FindTicketsRequest, PaymentMethodIn, PostponeRequest,
    PurchaseInfoUpdate, PurchaseStatusRequest, RaffleCreate, RaffleRateIn, RaffleStatusRequest,
    RaffleUpdate, ReferralLinkCreate, ReserveRequest, ReserveResponse, SettingIn, UserCreate,
    WaitlistIn,
)
from rifas_admin.core.auth import Principal
from rifas_admin.core.errors import AdminRequired, ConflictError, NotFoundError, ValidationFailed
from rifas_admin.core.logger import get_logger, setup_logger
from rifas_admin.core.settings import RuntimeConfig, settings
from rifas_admin.services import cloudinary_uploader
from rifas_admin.services.admin_service import AdminService, effective_exchange_rate
from rifas_admin.services.exchange_rates import BCVRateProvider
from rifas_admin.services.purchase_service import PurchaseService
from rifas_admin.services.raffle_service import RaffleService
from rifas_admin.services.realtime import PurchaseBroadcaster
from rifas_admin.services.referral_service import ReferralService

setup_logger(level=settings.log_level)
logger = get_logger(__name__)

app = FastAPI(title="Rifas Admin API", version="1.0.0")

# ---------------- CORS ----------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------- Errores ----------------
@app.exception_handler(ValidationFailed)
async def _validation_failed(request: Request, exc: ValidationFailed):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def _conflict(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(AdminRequired)
async def _admin_required(request: Request, exc: AdminRequired):
    return RedirectResponse(url=f"/auth/login?next={quote(exc.next_path)}", status_code=303)


# ---------------- Salud ----------------
@app.get("/health")
def health():
    return {"status": "ok", "time": dt.datetime.now(dt.timezone.utc).isoformat()}


# ---------------- Público ----------------
@app.get("/raffles/{slug}/public")
def public_raffle(
    slug: str,
    client: Client = Depends(get_client),
    config: RuntimeConfig = Depends(get_runtime_config),
    svc: RaffleService = Depends(get_raffle_service),
):
    raffle = svc.get_raffle_by_slug(slug)
    rate = effective_exchange_rate(client, raffle["id"], config)
    return svc.public_raffle(raffle, exchange_rate=rate)


@app.get("/raffles/{raffle_id}/progress")
def raffle_progress(raffle_id: str, svc: RaffleService = Depends(get_raffle_service)):
    return svc.progress(raffle_id)


@app.get("/raffles/{raffle_id}/top-buyers")
def raffle_top_buyers(
    raffle_id: str,
    limit: int = Query(default=10, ge=1, le=50),
    svc: PurchaseService = Depends(get_purchase_service),
):
    return {"raffle_id": raffle_id, "top_buyers": svc.top_buyers(raffle_id, limit=limit)}


@app.get("/rate/bcv")
def bcv_rate(provider: BCVRateProvider = Depends(get_rate_provider)):
    return provider.rates()


@app.post("/tickets/reserve", response_model=ReserveResponse)
def reserve_tickets(req: ReserveRequest, svc: RaffleService = Depends(get_raffle_service)):
    return svc.reserve_tickets(req.raffle_id, req.count)


@app.post("/tickets/find")
def find_my_tickets(req: FindTicketsRequest, svc: PurchaseService = Depends(get_purchase_service)):
    return {"purchases": svc.find_my_tickets(req.email)}


@app.post("/purchases")
def buy_tickets(
    req: BuyRequest,
    background: BackgroundTasks,
    svc: PurchaseService = Depends(get_purchase_service),
    live: PurchaseBroadcaster = Depends(get_broadcaster),
):
    result = svc.buy_tickets(
        raffle_id=req.raffle_id,
        name=req.name,
        email=req.email,
        phone=req.phone,
        payment_reference=req.payment_reference,
        payment_method=req.payment_method,
        ticket_numbers=req.reserved_tickets,
        referral_code=req.r or req.ref,
        screenshot_url=req.payment_screenshot_url,
    )
    background.add_task(live.notify_new_purchase, result["purchase"])
    return result


@app.post("/uploads/evidence")
async def upload_evidence(file: UploadFile = File(...)):
    """Sube el comprobante a Cloudinary y devuelve { secure_url }."""
    if not cloudinary_uploader.is_configured():
        raise HTTPException(status_code=500, detail="Cloudinary no configurado en el servidor")
    try:
        url = await cloudinary_uploader.upload_file(file, folder=cloudinary_uploader.PURCHASES_FOLDER)
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not url:
        raise ValidationFailed("Archivo vacío")
    return {"secure_url": url}


@app.post("/waitlist", status_code=201)
def join_waitlist(req: WaitlistIn, svc: AdminService = Depends(get_admin_service)):
    svc.add_to_waitlist(req.name, req.email, req.whatsapp)
    return {"ok": True, "message": "¡Gracias por unirte! Te notificaremos de las próximas rifas."}


# ---------------- Tiempo real ----------------
@app.websocket("/ws")
async def purchases_feed(ws: WebSocket, live: PurchaseBroadcaster = Depends(get_broadcaster)):
    key = ws.query_params.get("key") or ws.headers.get("x-admin-key", "")
    if settings.admin_api_key and not hmac.compare_digest(key, settings.admin_api_key):
        await ws.close(code=1008)
        return
    await live.connect(ws)
    try:
        while True:
            await ws.receive_text()  # keepalive del panel; no se procesa
    except WebSocketDisconnect:
        live.disconnect(ws)


# ---------------- Admin ----------------
admin = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@admin.get("/me")
def whoami(user: Principal = Depends(require_admin)):
    return {"id": user.id, "email": user.email, "role": user.role}


@admin.get("/dashboard")
def dashboard(svc: PurchaseService = Depends(get_purchase_service)):
    return svc.dashboard_stats()


# ---- Rifas
@admin.get("/raffles")
def list_raffles(status: Optional[str] = Query(default=None), svc: RaffleService = Depends(get_raffle_service)):
    return {"raffles": svc.list_raffles(status)}


@admin.post("/raffles", status_code=201)
def create_raffle(req: RaffleCreate, svc: RaffleService = Depends(get_raffle_service)):
    return svc.create_raffle(
        name=req.name,
        description=req.description,
        price=req.price,
        minimum_tickets=req.minimum_tickets,
        limit_date=req.limit_date,
        currency=req.currency,
        image_urls=req.image_urls,
    )


@admin.get("/raffles/{raffle_id}")
def get_raffle(raffle_id: str, svc: RaffleService = Depends(get_raffle_service)):
    return svc.get_raffle(raffle_id)


@admin.put("/raffles/{raffle_id}")
def update_raffle(raffle_id: str, req: RaffleUpdate, svc: RaffleService = Depends(get_raffle_service)):
    return svc.update_raffle(
        raffle_id,
        name=req.name,
        description=req.description,
        price=req.price,
        minimum_tickets=req.minimum_tickets,
        limit_date=req.limit_date,
        currency=req.currency,
        new_image_urls=req.new_image_urls,
        image_ids_to_delete=req.image_ids_to_delete,
    )


@admin.post("/raffles/{raffle_id}/status")
def update_raffle_status(raffle_id: str, req: RaffleStatusRequest, svc: RaffleService = Depends(get_raffle_service)):
    return svc.update_status(raffle_id, req.status)


@admin.post("/raffles/{raffle_id}/generate-tickets")
def generate_tickets(raffle_id: str, svc: RaffleService = Depends(get_raffle_service)):
    return svc.generate_tickets(raffle_id)


@admin.post("/raffles/{raffle_id}/postpone")
def postpone_raffle(raffle_id: str, req: PostponeRequest, svc: RaffleService = Depends(get_raffle_service)):
    return svc.postpone(raffle_id, req.new_limit_date)


@admin.post("/raffles/{raffle_id}/winner")
def draw_winner(raffle_id: str, req: DrawWinnerRequest, svc: RaffleService = Depends(get_raffle_service)):
    return svc.draw_winner(raffle_id, req.lottery_number, req.proof_url)


@admin.get("/raffles/{raffle_id}/sales")
def raffle_sales(
    raffle_id: str,
    page: int = Query(default=0, ge=0),
    size: int = Query(default=10, ge=1, le=200),
    sort_by: str = Query(default="created_at"),
    desc: bool = Query(default=True),
    search: Optional[str] = Query(default=None),
    status: Optional[List[str]] = Query(default=None),
    referral: Optional[List[str]] = Query(default=None),
    date: Optional[dt.date] = Query(default=None),
    svc: PurchaseService = Depends(get_purchase_service),
):
    return svc.paginated_sales(
        raffle_id, page=page, size=size, sort_by=sort_by, descending=desc,
        search=search, statuses=status, referrals=referral, date=date,
    )


@admin.get("/raffles/{raffle_id}/referral-options")
def referral_options(raffle_id: str, svc: ReferralService = Depends(get_referral_service)):
    return {"options": svc.referral_options(raffle_id)}


@admin.get("/raffles/{raffle_id}/analytics")
def referral_analytics(raffle_id: str, svc: ReferralService = Depends(get_referral_service)):
    return svc.analytics(raffle_id)


@admin.get("/raffles/{raffle_id}/exchange-rate")
def get_raffle_rate(
    raffle_id: str,
    config: RuntimeConfig = Depends(get_runtime_config),
    svc: AdminService = Depends(get_admin_service),
):
    own = svc.get_raffle_rate(raffle_id)
    return {"raffle_id": raffle_id, "rate": own, "default_rate": config.default_exchange_rate}


@admin.put("/raffles/{raffle_id}/exchange-rate")
def set_raffle_rate(raffle_id: str, req: RaffleRateIn, svc: AdminService = Depends(get_admin_service)):
    return svc.set_raffle_rate(raffle_id, req.rate)


@admin.get("/exchange-rates")
def exchange_rates(
    config: RuntimeConfig = Depends(get_runtime_config),
    svc: AdminService = Depends(get_admin_service),
):
    return {"default_rate": config.default_exchange_rate, "raffles": svc.raffles_with_rates(config)}


@admin.get("/commissions")
def commissions(
    raffle_id: Optional[str] = Query(default=None),
    config: RuntimeConfig = Depends(get_runtime_config),
    svc: ReferralService = Depends(get_referral_service),
):
    return svc.commissions(config, raffle_id=raffle_id)


# ---- Compras
@admin.get("/purchases/new")
def new_purchases(since: str = Query(...), svc: PurchaseService = Depends(get_purchase_service)):
    return {"purchases": svc.new_purchases_since(since)}


@admin.get("/sales/{purchase_id}")
def sale_details(purchase_id: str, svc: PurchaseService = Depends(get_purchase_service)):
    return svc.sale_details(purchase_id)


@admin.post("/purchases/{purchase_id}/status")
def update_purchase_status(
    purchase_id: str,
    req: PurchaseStatusRequest,
    svc: PurchaseService = Depends(get_purchase_service),
):
    return svc.update_status(purchase_id, req.status, req.rejection_reason, req.rejection_comment)


@admin.patch("/purchases/{purchase_id}")
def update_purchase_info(
    purchase_id: str,
    req: PurchaseInfoUpdate,
    svc: PurchaseService = Depends(get_purchase_service),
):
    return svc.update_info(purchase_id, email=req.email, phone=req.phone)


@admin.post("/purchases/{purchase_id}/resend")
def resend_tickets(purchase_id: str, svc: PurchaseService = Depends(get_purchase_service)):
    return svc.resend_tickets(purchase_id)


# ---- Referidos
@admin.get("/referral-links")
def list_referral_links(svc: ReferralService = Depends(get_referral_service)):
    return {"links": svc.list_links()}


@admin.post("/referral-links", status_code=201)
def create_referral_link(req: ReferralLinkCreate, svc: ReferralService = Depends(get_referral_service)):
    return svc.create_link(req.name, req.code)


@admin.get("/referral-links/share")
def share_referral_link(
    slug: str = Query(...),
    code: str = Query(...),
    svc: ReferralService = Depends(get_referral_service),
):
    return {"url": svc.share_link(slug, code)}


@admin.delete("/referral-links/{link_id}")
def delete_referral_link(link_id: str, svc: ReferralService = Depends(get_referral_service)):
    return svc.delete_link(link_id)


# ---- Métodos de pago
@admin.get("/payment-methods")
def list_payment_methods(svc: AdminService = Depends(get_admin_service)):
    return {"payment_methods": svc.list_payment_methods()}


@admin.post("/payment-methods", status_code=201)
def create_payment_method(req: PaymentMethodIn, svc: AdminService = Depends(get_admin_service)):
    return svc.create_payment_method(req.model_dump())


@admin.put("/payment-methods/{method_id}")
def update_payment_method(method_id: str, req: PaymentMethodIn, svc: AdminService = Depends(get_admin_service)):
    return svc.update_payment_method(method_id, req.model_dump())


@admin.delete("/payment-methods/{method_id}")
def delete_payment_method(method_id: str, svc: AdminService = Depends(get_admin_service)):
    return svc.delete_payment_method(method_id)


# ---- Configuración
@admin.get("/settings")
def list_settings(svc: AdminService = Depends(get_admin_service)):
    return svc.list_settings()


@admin.put("/settings")
def upsert_setting(req: SettingIn, svc: AdminService = Depends(get_admin_service)):
    return svc.upsert_setting(req.key, req.value, req.description)


# ---- Usuarios
@admin.get("/users")
def list_users(svc: AdminService = Depends(get_admin_service)):
    return {"users": svc.list_users()}


@admin.post("/users", status_code=201)
def create_user(req: UserCreate, svc: AdminService = Depends(get_admin_service)):
    return svc.create_user(req.name, req.email, req.password)


@admin.delete("/users/{user_id}")
def delete_user(user_id: str, svc: AdminService = Depends(get_admin_service)):
    return svc.delete_user(user_id)


# ---- Exportación / archivos
@admin.get("/customers/export")
def export_customers(svc: AdminService = Depends(get_admin_service)):
    stamp = dt.date.today().isoformat()
    return Response(
        content=svc.export_customers_csv(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="clientes-{stamp}.csv"'},
    )


_UPLOAD_FOLDERS: Dict[str, str] = {
    "raffles": cloudinary_uploader.RAFFLES_FOLDER,
    "winners": cloudinary_uploader.WINNERS_FOLDER,
    "payment_methods": cloudinary_uploader.PAYMENT_METHODS_FOLDER,
}


@admin.post("/uploads/{kind}")
async def admin_upload(kind: str, file: UploadFile = File(...)) -> Dict[str, Any]:
    folder = _UPLOAD_FOLDERS.get(kind)
    if folder is None:
        raise NotFoundError(f"Tipo de archivo desconocido: {kind}")
    if not cloudinary_uploader.is_configured():
        raise HTTPException(status_code=500, detail="Cloudinary no configurado en el servidor")
    try:
        url = await cloudinary_uploader.upload_file(file, folder=folder)
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not url:
        raise ValidationFailed("Archivo vacío")
    return {"secure_url": url}


app.include_router(admin)


# --------- Ejecutable local ---------
if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("rifas_admin.app:app", host="0.0.0.0", port=port, proxy_headers=True)
