import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from config.settings import AriSettings


logger = logging.getLogger(__name__)


class AriWebSocketClient:
    """
    Listens on the ARI events WebSocket and feeds decoded events to `handler`.

    Events are handed over one at a time in arrival order; per-entity ordering
    is whatever Asterisk emitted. When the connection drops and reconnect is
    disabled, `on_disconnect` is awaited once and the listener stops.
    `connected` is set while the socket is open.
    """

    def __init__(
        self,
        settings: AriSettings,
        handler: Callable[[dict], Awaitable[None]],
        on_disconnect: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.settings = settings
        self.handler = handler
        self.on_disconnect = on_disconnect
        self._stop_event: Optional[asyncio.Event] = None
        self._websocket = None
        self.connected = asyncio.Event()

    @property
    def url(self) -> str:
        api_key = f"{quote(self.settings.username)}:{quote(self.settings.password)}"
        return f"{self.settings.ws_url}?app={quote(self.settings.app_name)}&api_key={api_key}"

    async def run(self, stop_event: asyncio.Event) -> None:
        self._stop_event = stop_event
        while not stop_event.is_set():
            try:
                async with websockets.connect(self.url) as websocket:
                    self._websocket = websocket
                    self.connected.set()
                    logger.info("Connected to ARI events for app %s", self.settings.app_name)
                    await self._listen(websocket)
            except (OSError, ConnectionClosed, InvalidHandshake) as exc:
                logger.warning("ARI WebSocket error: %s", exc)
            finally:
                self._websocket = None
                self.connected.clear()

            if stop_event.is_set():
                break
            if not self.settings.reconnect:
                logger.error("ARI WebSocket lost and reconnect is disabled")
                if self.on_disconnect:
                    await self.on_disconnect()
                break
            logger.info("Reconnecting to ARI in %.1fs", self.settings.reconnect_delay)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.reconnect_delay)
            except asyncio.TimeoutError:
                pass
        logger.info("ARI WebSocket listener stopped")

    async def _listen(self, websocket) -> None:
        async for message in websocket:
            await self.dispatch(message)

    async def dispatch(self, message) -> None:
        try:
            event = json.loads(message)
        except (TypeError, ValueError):
            logger.warning("Dropping undecodable ARI frame: %r", message)
            return
        if not isinstance(event, dict):
            logger.warning("Dropping non-object ARI frame: %r", message)
            return
        try:
            await self.handler(event)
        except Exception:
            logger.exception("ARI event handler failed for %s", event.get("type"))

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._websocket is not None:
            await self._websocket.close()
