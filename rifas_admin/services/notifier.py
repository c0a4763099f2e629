from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from rifas_admin.core.settings import Settings, settings as default_settings
from rifas_admin.core.logger import get_logger
from rifas_admin.services.utils import digits_only

logger = get_logger(__name__)

_HTTP_TIMEOUT = 15  # seg
_DATA_URL_PREFIX = re.compile(r"^data:image/(png|jpeg|jpg);base64,")


@dataclass
class SendResult:
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class WhatsappNotifier:
    """
    Cliente de Evolution API. Nunca lanza: los fallos se registran y se
    devuelven como SendResult(success=False) para no bloquear la compra.
    """

    def __init__(self, cfg: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.cfg = cfg or default_settings
        self.http = session or requests.Session()

    def _configured(self) -> bool:
        return bool(self.cfg.evolution_api_url and self.cfg.evolution_api_key and self.cfg.evolution_instance)

    def _post(self, endpoint: str, body: Dict[str, Any]) -> SendResult:
        url = f"{self.cfg.evolution_api_url.rstrip('/')}/message/{endpoint}/{self.cfg.evolution_instance}"
        try:
            r = self.http.post(
                url,
                json=body,
                headers={"apikey": self.cfg.evolution_api_key},
                timeout=_HTTP_TIMEOUT,
            )
            r.raise_for_status()
            try:
                payload = r.json()
            except ValueError:
                payload = {}
            return SendResult(success=True, data=payload if isinstance(payload, dict) else {"response": payload})
        except requests.RequestException as e:
            logger.error("Fallo enviando WhatsApp a %s: %s", body.get("number"), e)
            return SendResult(success=False, error=str(e))

    def send(self, phone: Optional[str], text: str, media_base64: Optional[str] = None) -> SendResult:
        if not self.cfg.messages_enabled:
            logger.info("Mensajes de WhatsApp deshabilitados por configuración")
            return SendResult(success=True, skipped=True)

        number = digits_only(phone or "")
        if len(number) < 8:
            logger.warning("Número de WhatsApp inválido u omitido: %r", phone)
            return SendResult(success=False, skipped=True, error="invalid phone number")
        if not text:
            return SendResult(success=False, skipped=True, error="empty text")

        if not self._configured():
            logger.error("Falta configuración de Evolution API")
            return SendResult(success=False, error="Missing Evolution API configuration")

        if media_base64:
            body = {
                "number": number,
                "mediatype": "image",
                "media": _DATA_URL_PREFIX.sub("", media_base64),
                "caption": text,
            }
            return self._post("sendMedia", body)

        logger.info("Enviando WhatsApp a %s", number)
        return self._post("sendText", {"number": number, "text": text})
