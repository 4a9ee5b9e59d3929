import logging
from typing import Any, Dict, Optional

import httpx

from config.settings import AriSettings


logger = logging.getLogger(__name__)


class AriClient:
    """
    Thin async wrapper around the Asterisk ARI HTTP endpoints.
    """

    def __init__(
        self,
        settings: AriSettings,
        timeout: float = 10.0,
        max_connections: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = settings.base_url.rstrip("/")
        self.app_name = settings.app_name
        self.auth = (settings.username, settings.password)
        limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_connections,
        )
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=self.auth,
            headers={"Accept": "application/json"},
            timeout=timeout,
            limits=limits,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        logger.debug("ARI %s %s params=%s json=%s", method, path, params, json)
        response = await self.client.request(
            method=method,
            url=path,
            params=params,
            json=json,
        )
        response.raise_for_status()
        if response.content:
            return response.json()
        return {}

    async def create_channel(
        self, endpoint: str, app_args: Optional[str] = None
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"endpoint": endpoint, "app": self.app_name}
        if app_args:
            params["appArgs"] = app_args
        return await self._request("POST", "/channels/create", params=params)

    async def dial(self, channel_id: str, timeout: Optional[int] = None) -> None:
        params: Dict[str, Any] = {}
        if timeout:
            params["timeout"] = timeout
        await self._request("POST", f"/channels/{channel_id}/dial", params=params or None)

    async def hangup_channel(self, channel_id: str, reason: str = "normal") -> None:
        await self._request(
            "DELETE", f"/channels/{channel_id}", params={"reason": reason}
        )

    async def create_bridge(self, bridge_type: str = "mixing", name: Optional[str] = None) -> Dict[str, Any]:
        params = {"type": bridge_type}
        if name:
            params["name"] = name
        return await self._request("POST", "/bridges", params=params)

    async def delete_bridge(self, bridge_id: str) -> None:
        await self._request("DELETE", f"/bridges/{bridge_id}")

    async def add_channel_to_bridge(
        self, bridge_id: str, channel_id: str, role: Optional[str] = None
    ) -> None:
        params = {"channel": channel_id}
        if role:
            params["role"] = role
        await self._request("POST", f"/bridges/{bridge_id}/addChannel", params=params)

    async def start_moh(self, bridge_id: str, moh_class: Optional[str] = None) -> None:
        params = {"mohClass": moh_class} if moh_class else None
        await self._request("POST", f"/bridges/{bridge_id}/moh", params=params)

    async def stop_moh(self, bridge_id: str) -> None:
        await self._request("DELETE", f"/bridges/{bridge_id}/moh")

    async def play_on_channel_with_id(
        self, channel_id: str, playback_id: str, media: str, lang: Optional[str] = None
    ) -> Dict[str, Any]:
        # media: sound:xxx, tone:xxx, digits:xxx, sound:http://xxx
        params: Dict[str, Any] = {"media": media}
        if lang:
            params["lang"] = lang
        return await self._request(
            "POST", f"/channels/{channel_id}/play/{playback_id}", params=params
        )

    async def record_bridge(
        self,
        bridge_id: str,
        name: str,
        fmt: str = "wav",
        beep: bool = False,
        max_duration: int = 0,
        if_exists: str = "fail",
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "name": name,
            "format": fmt,
            "ifExists": if_exists,
            "beep": "true" if beep else "false",
        }
        if max_duration:
            params["maxDurationSeconds"] = max_duration
        return await self._request("POST", f"/bridges/{bridge_id}/record", params=params)
