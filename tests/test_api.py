import csv
import io
import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import ADMIN_KEY, make_raffle


def _buy_payload(raffle_id, numbers, **extra):
    body = {
        "raffle_id": raffle_id,
        "name": "Ana Pérez",
        "email": "ana@gmail.com",
        "phone": "04141234567",
        "payment_reference": "123456",
        "payment_method": "Pago Móvil",
        "reserved_tickets": numbers,
    }
    body.update(extra)
    return body


def test_health(api):
    assert api.get("/health").json()["status"] == "ok"


# ---------- Autorización ----------
def test_admin_route_without_credentials_redirects_to_login(api):
    r = api.get("/admin/dashboard", follow_redirects=False)
    assert r.status_code == 303
    assert r.headers["location"] == "/auth/login?next=/admin/dashboard"


def test_wrong_admin_key_redirects(api):
    r = api.get("/admin/raffles", headers={"X-Admin-Key": "nope"}, follow_redirects=False)
    assert r.status_code == 303


def test_user_role_is_not_admin(api, db):
    user, boss = db.seed("users", [
        {"email": "u@gmail.com", "role": "user"},
        {"email": "boss@gmail.com", "role": "admin"},
    ])
    r = api.get("/admin/me", headers={"X-User-Id": user["id"]}, follow_redirects=False)
    assert r.status_code == 303
    r = api.get("/admin/me", headers={"X-User-Id": boss["id"]})
    assert r.status_code == 200
    assert r.json()["role"] == "admin"


def test_admin_key_grants_access(api, admin_headers):
    r = api.get("/admin/me", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["id"] == "service-admin"


# ---------- Flujo público ----------
def test_reserve_and_buy_flow(api, db, live):
    raffle = make_raffle(db, universe=10, price=5.0)
    db.seed("referral_links", [{"name": "Campaña IG", "code": "IG2025"}])
    sent = []

    async def spy(purchase):
        sent.append(purchase)
        return 0

    live.notify_new_purchase = spy

    reserved = api.post("/tickets/reserve", json={"raffle_id": raffle["id"], "count": 2})
    assert reserved.status_code == 200
    numbers = reserved.json()["reserved_tickets"]
    assert len(numbers) == 2

    bought = api.post("/purchases", json=_buy_payload(raffle["id"], numbers, ref="IG2025"))
    assert bought.status_code == 200
    body = bought.json()
    assert body["status"] == "pending"
    assert body["purchase"]["amount"] == 10.0
    assert body["purchase"]["referral_code"] == "IG2025"
    assert [p["id"] for p in sent] == [body["purchase"]["id"]]

    progress = api.get(f"/raffles/{raffle['id']}/progress").json()
    assert progress["taken"] == 2
    assert progress["available"] == 8

    found = api.post("/tickets/find", json={"email": "ana@gmail.com"}).json()["purchases"]
    assert sorted(found[0]["tickets"]) == sorted(numbers)


def test_buy_without_reservation_is_conflict(api, db):
    raffle = make_raffle(db, universe=10)
    r = api.post("/purchases", json=_buy_payload(raffle["id"], ["0001"]))
    assert r.status_code == 409
    assert "expiró" in r.json()["detail"]


def test_error_mapping(api, db):
    assert api.post("/tickets/reserve", json={"raffle_id": "missing", "count": 1}).status_code == 404
    raffle = make_raffle(db, universe=10)
    assert api.post("/tickets/reserve", json={"raffle_id": raffle["id"], "count": 0}).status_code == 422
    assert api.post("/tickets/reserve", json={"raffle_id": raffle["id"], "count": 11}).status_code == 409


def test_public_raffle_uses_raffle_rate(api, db, admin_headers):
    raffle = make_raffle(db, universe=10, slug="moto-2025")
    api.put(f"/admin/raffles/{raffle['id']}/exchange-rate", json={"rate": 212.5}, headers=admin_headers)
    own = api.get(f"/admin/raffles/{raffle['id']}/exchange-rate", headers=admin_headers).json()
    assert own["rate"]["usd_to_ves_rate"] == 212.5
    out = api.get("/raffles/moto-2025/public").json()
    assert out["exchange_rate"] == 212.5
    assert out["progress"]["total"] == 10
    assert api.get("/raffles/no-existe/public").status_code == 404


def test_public_raffle_reads_raffle_row_once(api, db):
    make_raffle(db, universe=10, slug="moto-2025")
    db.calls.clear()
    assert api.get("/raffles/moto-2025/public").status_code == 200
    assert db.calls.count("raffles") == 1


def test_waitlist_duplicates(api):
    body = {"name": "Ana", "email": "ana@gmail.com", "whatsapp": "04141234567"}
    assert api.post("/waitlist", json=body).status_code == 201
    assert api.post("/waitlist", json=body).status_code == 409


def test_websocket_rejects_wrong_key(api):
    with pytest.raises(WebSocketDisconnect):
        with api.websocket_connect("/ws?key=nope") as ws:
            ws.receive_text()


def test_websocket_receives_new_purchase(api, db):
    raffle = make_raffle(db, universe=10)
    numbers = api.post("/tickets/reserve", json={"raffle_id": raffle["id"], "count": 1}).json()["reserved_tickets"]
    with api.websocket_connect(f"/ws?key={ADMIN_KEY}") as ws:
        purchase = api.post("/purchases", json=_buy_payload(raffle["id"], numbers)).json()["purchase"]
        msg = ws.receive_json()
    assert msg["event"] == "new-purchase"
    assert msg["data"]["id"] == purchase["id"]


# ---------- Panel ----------
def test_admin_raffle_lifecycle(api, db, admin_headers):
    created = api.post("/admin/raffles", headers=admin_headers, json={
        "name": "Rifa del iPhone", "price": 3, "minimum_tickets": 12, "limit_date": "2030-01-01T00:00:00Z",
    })
    assert created.status_code == 201
    raffle_id = created.json()["id"]

    active = api.post(f"/admin/raffles/{raffle_id}/status", json={"status": "active"}, headers=admin_headers)
    assert active.json()["tickets_generated"] == 12
    again = api.post(f"/admin/raffles/{raffle_id}/generate-tickets", headers=admin_headers)
    assert again.status_code == 409


def test_admin_confirm_and_reject(api, db, admin_headers, notifier):
    raffle = make_raffle(db, universe=10)
    numbers = api.post("/tickets/reserve", json={"raffle_id": raffle["id"], "count": 1}).json()["reserved_tickets"]
    purchase = api.post("/purchases", json=_buy_payload(raffle["id"], numbers)).json()["purchase"]

    r = api.post(f"/admin/purchases/{purchase['id']}/status", headers=admin_headers,
                 json={"status": "rejected"})
    assert r.status_code == 422
    r = api.post(f"/admin/purchases/{purchase['id']}/status", headers=admin_headers,
                 json={"status": "confirmed"})
    assert r.status_code == 200
    r = api.post(f"/admin/purchases/{purchase['id']}/status", headers=admin_headers,
                 json={"status": "rejected", "rejection_reason": "malicious"})
    assert r.status_code == 409

    sales = api.get(f"/admin/raffles/{raffle['id']}/sales", headers=admin_headers).json()
    assert sales["statistics"]["total_revenue"] == 10.0
    assert sales["rows"][0]["tickets"] == numbers


def test_referral_endpoints(api, db, admin_headers):
    raffle = make_raffle(db, universe=10)
    created = api.post("/admin/referral-links", json={"name": "Meta Ads", "code": "META1"}, headers=admin_headers)
    assert created.status_code == 201
    dup = api.post("/admin/referral-links", json={"name": "Otra", "code": "META1"}, headers=admin_headers)
    assert dup.status_code == 409
    bad = api.post("/admin/referral-links", json={"name": "Otra", "code": "a b"}, headers=admin_headers)
    assert bad.status_code == 422

    db.seed("purchases", [
        {"raffle_id": raffle["id"], "status": "confirmed", "ticket_count": 2, "amount": 20,
         "buyer_email": "a@gmail.com", "referral_code": "META1", "referral_name": "Meta Ads"},
        {"raffle_id": raffle["id"], "status": "confirmed", "ticket_count": 1, "amount": 10,
         "buyer_email": "b@gmail.com", "referral_code": None, "referral_name": None},
    ])
    analytics = api.get(f"/admin/raffles/{raffle['id']}/analytics", headers=admin_headers).json()
    assert analytics["grand_total_confirmed_revenue"] == 30.0

    options = api.get(f"/admin/raffles/{raffle['id']}/referral-options", headers=admin_headers).json()
    assert options["options"] == ["Direct", "Meta Ads"]

    db.seed("system_settings", [{"key": "commission_rate", "value": "1.25", "is_active": True}])
    out = api.get("/admin/commissions", headers=admin_headers).json()
    assert out["commission_rate"] == 1.25
    assert out["commissions"][0]["name"] == "Meta Ads"
    assert out["total"] == 1.25

    share = api.get("/admin/referral-links/share", params={"slug": raffle["slug"], "code": "META1"},
                    headers=admin_headers).json()
    assert share["url"].endswith(f"/rifa/{raffle['slug']}?r=META1")


def test_settings_and_users(api, db, admin_headers):
    api.put("/admin/settings", json={"key": "default_exchange_rate", "value": "39.9"}, headers=admin_headers)
    assert api.get("/admin/settings", headers=admin_headers).json() == {"default_exchange_rate": "39.9"}
    assert api.get("/admin/exchange-rates", headers=admin_headers).json()["default_rate"] == 39.9

    user = api.post("/admin/users", json={"name": "Operador", "email": "op@gmail.com", "password": "secreto1"},
                    headers=admin_headers)
    assert user.status_code == 201
    assert "password" not in user.json()
    assert db.rows("users")[0]["password"] != "secreto1"
    dup = api.post("/admin/users", json={"name": "Operador", "email": "op@gmail.com", "password": "secreto1"},
                   headers=admin_headers)
    assert dup.status_code == 409
    assert api.delete("/admin/users/missing", headers=admin_headers).status_code == 404


def test_customers_export(api, db, admin_headers):
    db.seed("purchases", [
        {"buyer_name": "Pérez, Ana", "buyer_email": "ana@gmail.com", "buyer_phone": "0414",
         "created_at": "2025-10-01T10:00:00Z"},
    ])
    r = api.get("/admin/customers/export", headers=admin_headers)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "attachment" in r.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(r.text)))
    assert rows == [["nombre", "correo", "telefono"], ["Pérez, Ana", "ana@gmail.com", "0414"]]
