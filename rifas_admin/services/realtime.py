from __future__ import annotations

from typing import Any, Dict, Set

from fastapi import WebSocket

from rifas_admin.core.logger import get_logger

logger = get_logger(__name__)

NEW_PURCHASE = "new-purchase"


class PurchaseBroadcaster:
    """
    Difusión en vivo para el panel. Cada evento se envía una sola vez a quien
    esté conectado en ese momento, sin reintentos ni historial.
    """

    def __init__(self) -> None:
        self.connections: Set[WebSocket] = set()

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self.connections.add(ws)
        logger.info("Cliente WS conectado (%d activos)", len(self.connections))

    def disconnect(self, ws: WebSocket) -> None:
        self.connections.discard(ws)
        logger.info("Cliente WS desconectado (%d activos)", len(self.connections))

    async def broadcast(self, event: str, payload: Dict[str, Any]) -> int:
        message = {"event": event, "data": payload}
        delivered = 0
        for ws in list(self.connections):
            try:
                await ws.send_json(message)
                delivered += 1
            except Exception as e:  # socket muerto: se descarta
                logger.warning("No se pudo emitir %s a un cliente: %s", event, e)
                self.connections.discard(ws)
        return delivered

    async def notify_new_purchase(self, purchase: Dict[str, Any]) -> int:
        return await self.broadcast(NEW_PURCHASE, purchase)


broadcaster = PurchaseBroadcaster()
