"""Atribución de ventas por referido y comisiones por cliente único."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Mapping, Set, Tuple

from rifas_admin.core.settings import RuntimeConfig
from rifas_admin.services.utils import round2, to_float

DIRECT_SALES = "Direct Sales"
DIRECT_OPTION = "Direct"  # etiqueta de filtro para ventas sin referido
CONFIRMED = "confirmed"


@dataclass
class SourceStats:
    source: str
    total_sales: int = 0
    confirmed_sales: int = 0
    total_tickets: int = 0
    confirmed_tickets: int = 0
    total_revenue: float = 0.0
    confirmed_revenue: float = 0.0

    def add(self, purchase: Mapping[str, Any]) -> None:
        tickets = int(purchase.get("ticket_count") or 0)
        amount = to_float(purchase.get("amount"))

        self.total_sales += 1
        self.total_tickets += tickets
        self.total_revenue = round2(self.total_revenue + amount)

        if purchase.get("status") == CONFIRMED:
            self.confirmed_sales += 1
            self.confirmed_tickets += tickets
            self.confirmed_revenue = round2(self.confirmed_revenue + amount)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReferralReport:
    sources: Dict[str, SourceStats] = field(default_factory=dict)

    @property
    def grand_total_confirmed_revenue(self) -> float:
        return round2(sum(s.confirmed_revenue for s in self.sources.values()))

    def sorted_sources(self) -> List[SourceStats]:
        return sorted(self.sources.values(), key=lambda s: s.confirmed_revenue, reverse=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sources": [s.to_dict() for s in self.sorted_sources()],
            "grand_total_confirmed_revenue": self.grand_total_confirmed_revenue,
        }


def source_name(purchase: Mapping[str, Any]) -> str:
    name = (purchase.get("referral_name") or "").strip()
    return name or DIRECT_SALES


def aggregate_by_source(purchases: Iterable[Mapping[str, Any]]) -> ReferralReport:
    report = ReferralReport()
    for p in purchases:
        key = source_name(p)
        stats = report.sources.get(key)
        if stats is None:
            stats = report.sources[key] = SourceStats(source=key)
        stats.add(p)
    return report


# ---------- Comisiones ----------
def commission_eligible_customers(purchases: Iterable[Mapping[str, Any]]) -> Set[Tuple[str, str]]:
    """Pares (código, email) únicos entre compras confirmadas con código de referido."""
    eligible: Set[Tuple[str, str]] = set()
    for p in purchases:
        if p.get("status") != CONFIRMED:
            continue
        code = (p.get("referral_code") or "").strip()
        email = (p.get("buyer_email") or "").strip().lower()
        if code and email:
            eligible.add((code, email))
    return eligible


@dataclass(frozen=True)
class Commission:
    referral_code: str
    unique_customers: int
    rate: float
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_commissions(purchases: Iterable[Mapping[str, Any]], config: RuntimeConfig) -> Dict[str, Commission]:
    per_code: Dict[str, int] = {}
    for code, _email in commission_eligible_customers(purchases):
        per_code[code] = per_code.get(code, 0) + 1

    return {
        code: Commission(
            referral_code=code,
            unique_customers=count,
            rate=config.commission_rate,
            amount=round2(count * config.commission_rate),
        )
        for code, count in per_code.items()
    }
