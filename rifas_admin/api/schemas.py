# rifas_admin/api/schemas.py
import datetime as dt
from typing import Optional, List
from pydantic import BaseModel, EmailStr

# -------- Rifas --------
class RaffleCreate(BaseModel):
    name: str
    description: Optional[str] = None
    price: float
    minimum_tickets: Optional[int] = None  # por defecto TICKET_UNIVERSE
    limit_date: dt.datetime
    currency: str = "USD"
    image_urls: List[str] = []


class RaffleUpdate(BaseModel):
    name: str
    description: Optional[str] = None
    price: float
    minimum_tickets: int
    limit_date: dt.datetime
    currency: str = "USD"
    new_image_urls: List[str] = []
    image_ids_to_delete: List[str] = []


class RaffleStatusRequest(BaseModel):
    status: str


class PostponeRequest(BaseModel):
    new_limit_date: dt.datetime


class DrawWinnerRequest(BaseModel):
    lottery_number: str
    proof_url: Optional[str] = None

# -------- Reservas / Compras --------
class ReserveRequest(BaseModel):
    raffle_id: str
    count: int = 1


class ReserveResponse(BaseModel):
    reserved_tickets: List[str]
    reserved_until: str


class BuyRequest(BaseModel):
    raffle_id: str
    name: str
    email: EmailStr
    phone: str
    payment_reference: str
    payment_method: str
    reserved_tickets: List[str]
    payment_screenshot_url: Optional[str] = None
    # código de referido: ?r= (actual) o ?ref= (enlaces viejos)
    r: Optional[str] = None
    ref: Optional[str] = None


class PurchaseStatusRequest(BaseModel):
    status: str
    rejection_reason: Optional[str] = None
    rejection_comment: Optional[str] = None


class PurchaseInfoUpdate(BaseModel):
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class FindTicketsRequest(BaseModel):
    email: EmailStr

# -------- Referidos --------
class ReferralLinkCreate(BaseModel):
    name: str
    code: str

# -------- Admin --------
class PaymentMethodIn(BaseModel):
    title: str
    icon_url: Optional[str] = None
    account_holder_name: Optional[str] = None
    rif: Optional[str] = None
    phone_number: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    wallet_address: Optional[str] = None
    network: Optional[str] = None
    email: Optional[str] = None
    binance_pay_id: Optional[str] = None
    is_active: bool = True
    triggers_api_verification: bool = False


class SettingIn(BaseModel):
    key: str
    value: str
    description: Optional[str] = None


class RaffleRateIn(BaseModel):
    rate: float


class UserCreate(BaseModel):
    name: str
    email: EmailStr
    password: str


class WaitlistIn(BaseModel):
    name: str
    email: EmailStr
    whatsapp: str
