import asyncio
from unittest.mock import MagicMock

import pytest
import requests

from rifas_admin.core.settings import Settings, settings
from rifas_admin.services import cloudinary_uploader
from rifas_admin.services.exchange_rates import BCVRateProvider, extract_rate
from rifas_admin.services.notifier import WhatsappNotifier
from rifas_admin.services.payment_verifier import PaymentVerifier
from rifas_admin.services.realtime import NEW_PURCHASE, PurchaseBroadcaster


def _response(payload, status=200):
    r = MagicMock()
    r.ok = status < 400
    r.status_code = status
    r.content = b"{}"
    r.json.return_value = payload
    if status >= 400:
        r.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status}")
    return r


# ---------- WhatsApp ----------
def _evolution_cfg(**kw):
    base = dict(
        messages_enabled=True,
        evolution_api_url="https://evo.local/",
        evolution_api_key="k",
        evolution_instance="rifas",
    )
    base.update(kw)
    return Settings(**base)


def test_notifier_disabled_is_skipped():
    http = MagicMock()
    out = WhatsappNotifier(_evolution_cfg(messages_enabled=False), session=http).send("04141234567", "hola")
    assert out.success and out.skipped
    http.post.assert_not_called()


def test_notifier_rejects_short_phone():
    http = MagicMock()
    out = WhatsappNotifier(_evolution_cfg(), session=http).send("123", "hola")
    assert not out.success
    http.post.assert_not_called()


def test_notifier_sends_text():
    http = MagicMock()
    http.post.return_value = _response({"key": {"id": "abc"}})
    out = WhatsappNotifier(_evolution_cfg(), session=http).send("+58 414-123-4567", "hola")
    assert out.success
    url = http.post.call_args.args[0]
    assert url == "https://evo.local/message/sendText/rifas"
    assert http.post.call_args.kwargs["json"] == {"number": "584141234567", "text": "hola"}


def test_notifier_sends_image_with_caption():
    http = MagicMock()
    http.post.return_value = _response({"key": {"id": "img"}})
    out = WhatsappNotifier(_evolution_cfg(), session=http).send(
        "04141234567", "Tus tickets", media_base64="data:image/png;base64,iVBORw0KGgo="
    )
    assert out.success
    assert http.post.call_args.args[0] == "https://evo.local/message/sendMedia/rifas"
    assert http.post.call_args.kwargs["json"] == {
        "number": "04141234567",
        "mediatype": "image",
        "media": "iVBORw0KGgo=",
        "caption": "Tus tickets",
    }
    assert http.post.call_args.kwargs["headers"] == {"apikey": "k"}

    WhatsappNotifier(_evolution_cfg(), session=http).send("04141234567", "otra", media_base64="QUJD")
    assert http.post.call_args.kwargs["json"]["media"] == "QUJD"


def test_notifier_network_error_is_reported_not_raised():
    http = MagicMock()
    http.post.side_effect = requests.ConnectionError("sin red")
    out = WhatsappNotifier(_evolution_cfg(), session=http).send("04141234567", "hola")
    assert not out.success
    assert "sin red" in out.error


# ---------- Pabilo ----------
def _pabilo_cfg():
    return Settings(pabilo_api_url="https://pabilo.local/verify", pabilo_api_key="app")


def test_verifier_paid():
    http = MagicMock()
    http.post.return_value = _response({"data": {"user_bank_payment": {"status": "paid"}}})
    assert PaymentVerifier(_pabilo_cfg(), session=http).verify(24.6, "0001239876")
    assert http.post.call_args.kwargs["json"] == {"amount": 25, "bank_reference": "9876"}


def test_verifier_not_found_or_timeout():
    http = MagicMock()
    http.post.return_value = _response({"data": {}}, status=404)
    assert not PaymentVerifier(_pabilo_cfg(), session=http).verify(10, "1234")

    http.post.side_effect = requests.Timeout()
    assert not PaymentVerifier(_pabilo_cfg(), session=http).verify(10, "1234")


def test_verifier_without_config():
    http = MagicMock()
    assert not PaymentVerifier(Settings(pabilo_api_url="", pabilo_api_key=""), session=http).verify(10, "1234")
    http.post.assert_not_called()


# ---------- Tasa BCV ----------
def test_extract_rate_known_shapes():
    assert extract_rate({"promedio": 201.47}) == 201.47
    assert extract_rate({"monitors": {"bcv": {"price": "199,5"}}}) == 199.5
    assert extract_rate({"price": 0}) is None
    assert extract_rate(["nope"]) is None


def test_bcv_rates_fallback_and_cache():
    http = MagicMock()
    http.get.side_effect = requests.ConnectionError("caído")
    provider = BCVRateProvider(Settings(bcv_api_url="", default_usdves_rate=40.0), session=http)

    out = provider.rates()
    assert out["usd"] == {"rate": 40.0, "last_update": None, "is_error": True}
    assert out["eur"]["rate"] == 43.2
    calls = http.get.call_count
    assert provider.rates() is out
    assert http.get.call_count == calls


def test_bcv_rates_ok():
    http = MagicMock()
    http.get.side_effect = [
        _response({"promedio": 200.0, "fechaActualizacion": "2025-10-20T00:00:00Z"}),
        _response({"rates": {"USD": 1.1}}),
    ]
    out = BCVRateProvider(Settings(bcv_api_url=""), session=http).rates()
    assert out["usd"]["rate"] == 200.0
    assert out["usd"]["last_update"] == "2025-10-20T00:00:00Z"
    assert out["eur"] == {"rate": 220.0, "last_update": "2025-10-20T00:00:00Z", "is_error": False}


# ---------- Tiempo real ----------
class _Socket:
    def __init__(self, broken=False):
        self.broken = broken
        self.sent = []

    async def accept(self):
        pass

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("closed")
        self.sent.append(message)


def test_broadcast_drops_dead_sockets():
    live = PurchaseBroadcaster()
    ok, dead = _Socket(), _Socket(broken=True)

    async def scenario():
        await live.connect(ok)
        await live.connect(dead)
        return await live.notify_new_purchase({"id": "p1"})

    assert asyncio.run(scenario()) == 1
    assert ok.sent == [{"event": NEW_PURCHASE, "data": {"id": "p1"}}]
    assert live.connections == {ok}


# ---------- Cloudinary ----------
@pytest.fixture
def cloudinary_env(monkeypatch):
    monkeypatch.setattr(settings, "cloudinary_cloud_name", "demo")
    monkeypatch.setattr(settings, "cloudinary_api_key", "key")
    monkeypatch.setattr(settings, "cloudinary_api_secret", "secret")
    upload = MagicMock(return_value={"secure_url": "https://res.cloudinary.com/demo/x.png"})
    monkeypatch.setattr(cloudinary_uploader, "cloudinary_upload", upload)
    return upload


def test_upload_bytes(cloudinary_env):
    url = cloudinary_uploader.upload_bytes(b"\x89PNG", cloudinary_uploader.WINNERS_FOLDER)
    assert url == "https://res.cloudinary.com/demo/x.png"
    assert cloudinary_env.call_args.kwargs["folder"] == "rifas/winners"


def test_upload_bytes_too_large(cloudinary_env):
    with pytest.raises(RuntimeError):
        cloudinary_uploader.upload_bytes(b"0" * (cloudinary_uploader.MAX_IMAGE_BYTES + 1), "rifas/raffles")
    cloudinary_env.assert_not_called()


def test_upload_bytes_provider_error(cloudinary_env):
    cloudinary_env.side_effect = ValueError("bad signature")
    with pytest.raises(RuntimeError):
        cloudinary_uploader.upload_bytes(b"\x89PNG", "rifas/raffles")
