from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from rifas_admin.core.settings import Settings, settings as default_settings
from rifas_admin.core.logger import get_logger
from rifas_admin.services.utils import round2

logger = get_logger(__name__)

_HTTP_TIMEOUT = 10  # seg
_CACHE_SECONDS = 3600

DOLARAPI_USD_URL = "https://ve.dolarapi.com/v1/dolares/oficial"
FRANKFURTER_EUR_USD_URL = "https://api.frankfurter.app/latest?from=EUR&to=USD"
FALLBACK_EUR_USD = 1.08


def _num_or_none(x: Any) -> Optional[float]:
    try:
        n = float(str(x).replace(",", "."))
        return n if n > 0 else None
    except (TypeError, ValueError):
        return None


def extract_rate(j: Any) -> Optional[float]:
    """Busca la tasa en los formatos conocidos de las APIs de dólar oficial."""
    if not isinstance(j, dict):
        return None
    try_keys = [
        ("promedio",),
        ("monitors", "bcv", "price"),
        ("bcv", "price"),
        ("bcv",),
        ("oficial", "price"),
        ("rates", "VES"),
        ("rates", "USD"),
        ("price",),
        ("valor",),
    ]
    for key_path in try_keys:
        node = j
        for k in key_path:
            if isinstance(node, dict) and k in node:
                node = node[k]
            else:
                node = None
                break
        val = _num_or_none(node)
        if val:
            return val
    return None


class BCVRateProvider:
    """Tasa de referencia BCV (USD y EUR cruzado) con caché en memoria de una hora."""

    def __init__(self, cfg: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.cfg = cfg or default_settings
        self.http = session or requests.Session()
        self._cache: Optional[Dict[str, Any]] = None
        self._fetched_at: float = 0.0

    def _get_json(self, url: str) -> Optional[Dict[str, Any]]:
        try:
            r = self.http.get(url, timeout=_HTTP_TIMEOUT)
            r.raise_for_status()
            return r.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("Error consultando %s: %s", url, e)
            return None

    def _fetch_usd(self) -> Tuple[Optional[float], Optional[str]]:
        sources: List[str] = [u for u in (self.cfg.bcv_api_url, DOLARAPI_USD_URL) if u]
        for url in sources:
            j = self._get_json(url)
            rate = extract_rate(j)
            if rate:
                return rate, (j or {}).get("fechaActualizacion")
        return None, None

    def rates(self) -> Dict[str, Any]:
        if self._cache and time.monotonic() - self._fetched_at < _CACHE_SECONDS:
            return self._cache

        usd, updated = self._fetch_usd()
        usd_error = usd is None
        if usd_error:
            usd = self.cfg.default_usdves_rate

        eur_usd = _num_or_none((((self._get_json(FRANKFURTER_EUR_USD_URL) or {}).get("rates")) or {}).get("USD"))
        eur_error = eur_usd is None
        eur = round2(usd * (eur_usd or FALLBACK_EUR_USD))

        self._cache = {
            "usd": {"rate": usd, "last_update": updated if not usd_error else None, "is_error": usd_error},
            "eur": {"rate": eur, "last_update": updated if not eur_error else None, "is_error": eur_error or usd_error},
        }
        self._fetched_at = time.monotonic()
        return self._cache


bcv_provider = BCVRateProvider()
