import datetime as dt
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from fake_supabase import FakeSupabase
from rifas_admin.api import deps
from rifas_admin.app import app
from rifas_admin.core.settings import settings
from rifas_admin.services.notifier import SendResult, WhatsappNotifier
from rifas_admin.services.payment_verifier import PaymentVerifier
from rifas_admin.services.realtime import PurchaseBroadcaster
from rifas_admin.services.utils import format_ticket_number, to_iso

ADMIN_KEY = "test-admin-key"
NOW = dt.datetime(2025, 10, 20, 15, 0, tzinfo=dt.timezone.utc)


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def notifier():
    m = MagicMock(spec=WhatsappNotifier)
    m.send.return_value = SendResult(success=True)
    return m


@pytest.fixture
def verifier():
    m = MagicMock(spec=PaymentVerifier)
    m.verify.return_value = False
    return m


@pytest.fixture
def live():
    return PurchaseBroadcaster()


@pytest.fixture
def api(db, notifier, verifier, live, monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", ADMIN_KEY)
    app.dependency_overrides[deps.get_client] = lambda: db
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[deps.get_verifier] = lambda: verifier
    app.dependency_overrides[deps.get_broadcaster] = lambda: live
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


def make_raffle(db, status="active", universe=20, price=10.0, slug="rifa-moto", with_tickets=True, **extra):
    raffle = db.seed("raffles", [{
        "name": "Rifa de la moto",
        "slug": slug,
        "price": price,
        "currency": "USD",
        "minimum_tickets": universe,
        "status": status,
        "limit_date": to_iso(NOW + dt.timedelta(days=7)),
        **extra,
    }])[0]
    if with_tickets:
        db.seed("tickets", [
            {"raffle_id": raffle["id"], "ticket_number": format_ticket_number(n, universe), "status": "available"}
            for n in range(universe)
        ])
    return raffle


def reserve(db, raffle_id, numbers, until):
    for t in db.rows("tickets", raffle_id=raffle_id):
        if t["ticket_number"] in numbers:
            t.update({"status": "reserved", "reserved_until": to_iso(until), "purchase_id": None})
