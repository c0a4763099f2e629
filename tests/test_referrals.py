from rifas_admin.core.settings import RuntimeConfig, runtime_config_from_rows, settings
from rifas_admin.domain.referrals import (
    DIRECT_SALES, aggregate_by_source, commission_eligible_customers, compute_commissions,
)
from rifas_admin.services.referral_service import ReferralService

CONFIG = RuntimeConfig(commission_rate=0.5, default_exchange_rate=40.0)


def _p(status, tickets, amount, name=None, code=None, email="a@x.com"):
    return {
        "status": status,
        "ticket_count": tickets,
        "amount": amount,
        "referral_name": name,
        "referral_code": code,
        "buyer_email": email,
    }


def test_meta1_scenario():
    purchases = [
        _p("confirmed", 2, 20, "META1", "META1"),
        _p("confirmed", 3, 30, "META1", "META1"),
        _p("pending", 1, 10, "META1", "META1"),
    ]
    stats = aggregate_by_source(purchases).sources["META1"]
    assert stats.confirmed_sales == 2
    assert stats.total_sales == 3
    assert stats.confirmed_tickets == 5
    assert stats.total_tickets == 6
    assert stats.confirmed_revenue == 50.0


def test_rejected_counts_only_in_totals():
    stats = aggregate_by_source([_p("rejected", 4, 40, "IG")]).sources["IG"]
    assert stats.total_sales == 1
    assert stats.total_tickets == 4
    assert stats.confirmed_sales == 0
    assert stats.confirmed_tickets == 0
    assert stats.confirmed_revenue == 0.0


def test_direct_sales_sentinel():
    report = aggregate_by_source([_p("confirmed", 1, 10), _p("confirmed", 1, 10, name="  ")])
    assert list(report.sources) == [DIRECT_SALES]
    assert report.sources[DIRECT_SALES].confirmed_sales == 2


def test_grand_total_matches_sources():
    purchases = [
        _p("confirmed", 1, 10.1, "A"),
        _p("confirmed", 2, 20.2, "B"),
        _p("pending", 5, 50, "B"),
        _p("confirmed", 3, "30.30"),  # numeric llega como string desde Postgres
    ]
    report = aggregate_by_source(purchases)
    assert report.grand_total_confirmed_revenue == round(sum(s.confirmed_revenue for s in report.sources.values()), 2)
    assert report.grand_total_confirmed_revenue == 60.6
    assert [s.source for s in report.sorted_sources()] == [DIRECT_SALES, "B", "A"]


def test_commission_counts_unique_emails_per_code():
    purchases = [
        _p("confirmed", 1, 10, "Meta", "META1", "ana@x.com"),
        _p("confirmed", 2, 20, "Meta", "META1", "ANA@x.com"),
        _p("confirmed", 1, 10, "Meta", "META1", "luis@x.com"),
        _p("pending", 1, 10, "Meta", "META1", "sara@x.com"),
        _p("confirmed", 1, 10, "TikTok", "TT", "ana@x.com"),
        _p("confirmed", 1, 10, None, None, "pedro@x.com"),
    ]
    assert commission_eligible_customers(purchases) == {
        ("META1", "ana@x.com"), ("META1", "luis@x.com"), ("TT", "ana@x.com"),
    }
    out = compute_commissions(purchases, CONFIG)
    assert out["META1"].unique_customers == 2
    assert out["META1"].amount == 1.0
    assert out["TT"].amount == 0.5
    assert "None" not in out


def test_runtime_config_from_settings_rows():
    cfg = runtime_config_from_rows([
        {"key": "commission_rate", "value": "0,75", "is_active": True},
        {"key": "default_exchange_rate", "value": "41.5", "is_active": False},
    ])
    assert cfg.commission_rate == 0.75
    assert cfg.default_exchange_rate == settings.default_usdves_rate


def test_runtime_config_ignores_bad_values():
    cfg = runtime_config_from_rows([{"key": "commission_rate", "value": "-1"}])
    assert cfg.commission_rate == settings.default_commission_rate


def test_commission_total_is_rounded_to_cents(db):
    db.seed("referral_links", [{"name": n, "code": c} for n, c in [("Meta", "M1"), ("TikTok", "T1"), ("IG", "I1")]])
    db.seed("purchases", [
        _p("confirmed", 1, 10, n, c, f"{c.lower()}@x.com") for n, c in [("Meta", "M1"), ("TikTok", "T1"), ("IG", "I1")]
    ])
    out = ReferralService(db).commissions(RuntimeConfig(commission_rate=0.1, default_exchange_rate=40.0))
    assert [c["amount"] for c in out["commissions"]] == [0.1, 0.1, 0.1]
    assert out["total"] == 0.3
