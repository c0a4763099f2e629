from __future__ import annotations

from typing import Optional

import requests

from rifas_admin.core.settings import Settings, settings as default_settings
from rifas_admin.core.logger import get_logger

logger = get_logger(__name__)


class PaymentVerifier:
    """
    Verificación automática de pagos móviles contra Pabilo.
    Solo los últimos 4 dígitos de la referencia y el monto redondeado viajan a
    la API. Cualquier error o timeout deja la compra en verificación manual.
    """

    def __init__(self, cfg: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.cfg = cfg or default_settings
        self.http = session or requests.Session()

    def configured(self) -> bool:
        return bool(self.cfg.pabilo_api_url and self.cfg.pabilo_api_key)

    def verify(self, amount: float, reference: str) -> bool:
        if not self.configured():
            logger.warning("PABILO_API_URL/PABILO_API_KEY no configurados; verificación manual")
            return False

        payload = {"amount": int(round(amount)), "bank_reference": (reference or "")[-4:]}
        logger.info("Verificando pago con Pabilo: %s", payload)
        try:
            r = self.http.post(
                self.cfg.pabilo_api_url,
                json=payload,
                headers={"appKey": self.cfg.pabilo_api_key},
                timeout=self.cfg.pabilo_timeout_seconds,
            )
            data = r.json() if r.content else {}
        except requests.Timeout:
            logger.error("Pabilo tardó demasiado (timeout); verificación manual")
            return False
        except (requests.RequestException, ValueError) as e:
            logger.error("Error de conexión con Pabilo: %s", e)
            return False

        status = (((data or {}).get("data") or {}).get("user_bank_payment") or {}).get("status")
        if r.ok and status == "paid":
            logger.info("Pabilo confirmó el pago")
            return True

        logger.warning("Pabilo no encontró el pago (HTTP %s); verificación manual", r.status_code)
        return False
