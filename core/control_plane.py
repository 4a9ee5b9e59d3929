"""
Command surface the call flow drives.

Every command returns a CommandResult instead of raising, so callers branch on
`ok` rather than unwinding. Only transport, HTTP and response-decoding
failures are converted; anything else is a bug and propagates.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Optional

import httpx

from core.ari_client import AriClient


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    ok: bool
    value: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Optional[str] = None) -> "CommandResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "CommandResult":
        return cls(ok=False, error=error)


# A 2xx reply with an undecodable body surfaces as ValueError from response.json().
COMMAND_ERRORS = (httpx.HTTPError, ValueError)


def _is_not_found(exc: Exception) -> bool:
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 404


class ControlPlane:
    def __init__(self, ari_client: AriClient):
        self.ari_client = ari_client

    async def _run(
        self,
        label: str,
        call: Awaitable[Any],
        value: Optional[str] = None,
        missing_ok: bool = False,
    ) -> CommandResult:
        try:
            await call
        except COMMAND_ERRORS as exc:
            if missing_ok and _is_not_found(exc):
                logger.debug("%s: entity already gone (%s)", label, exc)
                return CommandResult.success(value)
            logger.warning("%s failed: %s", label, exc)
            return CommandResult.failure(str(exc) or exc.__class__.__name__)
        return CommandResult.success(value)

    async def create_channel(self, endpoint: str, app_args: Optional[str] = None) -> CommandResult:
        try:
            channel = await self.ari_client.create_channel(endpoint, app_args=app_args)
        except COMMAND_ERRORS as exc:
            logger.warning("create_channel %s failed: %s", endpoint, exc)
            return CommandResult.failure(str(exc) or exc.__class__.__name__)
        channel_id = channel.get("id")
        if not channel_id:
            return CommandResult.failure(f"no channel id returned for {endpoint}")
        return CommandResult.success(channel_id)

    async def dial(self, channel_id: str, timeout: Optional[int] = None) -> CommandResult:
        return await self._run(
            f"dial {channel_id}", self.ari_client.dial(channel_id, timeout=timeout), channel_id
        )

    async def hangup(self, channel_id: str) -> CommandResult:
        return await self._run(
            f"hangup {channel_id}",
            self.ari_client.hangup_channel(channel_id),
            channel_id,
            missing_ok=True,
        )

    async def create_bridge(self, bridge_type: str) -> CommandResult:
        try:
            bridge = await self.ari_client.create_bridge(bridge_type)
        except COMMAND_ERRORS as exc:
            logger.warning("create_bridge %s failed: %s", bridge_type, exc)
            return CommandResult.failure(str(exc) or exc.__class__.__name__)
        bridge_id = bridge.get("id")
        if not bridge_id:
            return CommandResult.failure("no bridge id returned")
        return CommandResult.success(bridge_id)

    async def add_channel_to_bridge(self, bridge_id: str, channel_id: str) -> CommandResult:
        return await self._run(
            f"add {channel_id} to bridge {bridge_id}",
            self.ari_client.add_channel_to_bridge(bridge_id, channel_id),
            channel_id,
        )

    async def start_hold_music(self, bridge_id: str, moh_class: Optional[str] = None) -> CommandResult:
        return await self._run(
            f"start moh on {bridge_id}",
            self.ari_client.start_moh(bridge_id, moh_class=moh_class),
            bridge_id,
        )

    async def stop_hold_music(self, bridge_id: str) -> CommandResult:
        return await self._run(
            f"stop moh on {bridge_id}", self.ari_client.stop_moh(bridge_id), bridge_id
        )

    async def destroy_bridge(self, bridge_id: str) -> CommandResult:
        return await self._run(
            f"destroy bridge {bridge_id}",
            self.ari_client.delete_bridge(bridge_id),
            bridge_id,
            missing_ok=True,
        )

    async def play_media(
        self, channel_id: str, media: str, playback_id: Optional[str] = None
    ) -> CommandResult:
        playback_id = playback_id or str(uuid.uuid4())
        return await self._run(
            f"play {media} on {channel_id}",
            self.ari_client.play_on_channel_with_id(channel_id, playback_id, media),
            playback_id,
        )

    async def start_recording(
        self,
        bridge_id: str,
        fmt: str,
        name: Optional[str] = None,
        beep: bool = False,
        max_duration: int = 0,
        if_exists: str = "fail",
    ) -> CommandResult:
        # Asterisk answers 500 here when its recording spool is not writable.
        name = name or uuid.uuid4().hex
        return await self._run(
            f"record bridge {bridge_id}",
            self.ari_client.record_bridge(
                bridge_id,
                name,
                fmt=fmt,
                beep=beep,
                max_duration=max_duration,
                if_exists=if_exists,
            ),
            name,
        )
