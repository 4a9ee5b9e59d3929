"""Tests for session routing and lifecycle across concurrent calls."""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from config.settings import (
    AriSettings,
    CallSettings,
    RecordingSettings,
    Settings,
    TimeoutSettings,
)
from core.control_plane import CommandResult
from logic.orchestrator import CallOrchestrator
from sessions.registry import EntityRegistry
from sessions.session import CallState
from sessions.supervisor import SessionSupervisor


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _settings() -> Settings:
    return Settings(
        ari=AriSettings(
            base_url="http://ari.test/ari",
            ws_url="ws://ari.test/ari/events",
            app_name="outbound_cc",
            username="u",
            password="p",
        ),
        call=CallSettings(
            customer_endpoint="SIP/4448",
            agent_endpoint="SIP/4449",
            welcome_media="sound:dir-welcome",
            bridge_type="mixing,proxy_media",
            moh_class=None,
            customer_dial_timeout=30,
            agent_dial_timeout=30,
            agent_dial_retries=0,
        ),
        recording=RecordingSettings(format="wav", beep=True, max_duration=0, if_exists="fail"),
        timeouts=TimeoutSettings(ari_timeout=5.0),
        log_level="INFO",
        log_file=None,
    )


def _make_control_plane():
    """Control plane whose channel ids follow the dialed endpoint."""
    cp = AsyncMock()
    counters = {}

    def create_channel(endpoint, app_args=None):
        counters[endpoint] = counters.get(endpoint, 0) + 1
        return CommandResult.success(f"{endpoint.replace('/', '-')}-{counters[endpoint]}")

    bridges = iter(["bridge-1", "bridge-2", "bridge-3"])
    cp.create_channel.side_effect = create_channel
    cp.create_bridge.side_effect = lambda bridge_type: CommandResult.success(next(bridges))
    cp.play_media.side_effect = (
        lambda channel_id, media, playback_id=None: CommandResult.success(playback_id)
    )
    cp.start_recording.side_effect = (
        lambda bridge_id, fmt, name=None, **kwargs: CommandResult.success(name)
    )
    for name in (
        "dial",
        "hangup",
        "add_channel_to_bridge",
        "start_hold_music",
        "stop_hold_music",
        "destroy_bridge",
    ):
        getattr(cp, name).return_value = CommandResult.success()
    return cp


def _build():
    cp = _make_control_plane()
    registry = EntityRegistry()
    return SessionSupervisor(cp, registry, _settings()), cp, registry


def _dial_event(channel_id: str, status: str = "ANSWER") -> dict:
    return {
        "type": "Dial",
        "dialstatus": status,
        "dialstring": "4448",
        "peer": {"id": channel_id, "state": "Up"},
    }


def _playback_finished(playback_id: str) -> dict:
    return {"type": "PlaybackFinished", "playback": {"id": playback_id, "state": "done"}}


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

class TestStartSession:
    @pytest.mark.asyncio
    async def test_returns_id_and_tracks_session(self):
        supervisor, cp, registry = _build()

        session_id = await supervisor.start_session("SIP/100", "SIP/200")

        orchestrator = await supervisor.get_session(session_id)
        assert orchestrator.customer_endpoint == "SIP/100"
        assert orchestrator.agent_endpoint == "SIP/200"
        assert orchestrator.state == CallState.DIALING_CUSTOMER
        assert await supervisor.active_sessions_count() == 1
        assert await registry.resolve("SIP-100-1") == session_id

    @pytest.mark.asyncio
    async def test_defaults_to_configured_endpoints(self):
        supervisor, cp, _ = _build()

        await supervisor.start_session()

        cp.create_channel.assert_awaited_once()
        assert cp.create_channel.call_args[0][0] == "SIP/4448"

    @pytest.mark.asyncio
    async def test_failed_start_is_removed(self):
        supervisor, cp, _ = _build()
        cp.create_channel.side_effect = None
        cp.create_channel.return_value = CommandResult.failure("503")

        session_id = await supervisor.start_session()

        assert await supervisor.get_session(session_id) is None
        assert await supervisor.active_sessions_count() == 0

    @pytest.mark.asyncio
    async def test_start_raising_is_removed(self):
        supervisor, _, registry = _build()

        with patch.object(CallOrchestrator, "start", side_effect=RuntimeError("boom")):
            session_id = await supervisor.start_session()

        assert await supervisor.get_session(session_id) is None
        assert await supervisor.active_sessions_count() == 0
        assert await registry.count() == 0

    @pytest.mark.asyncio
    async def test_undecodable_create_reply_is_removed(self):
        supervisor, cp, _ = _build()
        cp.create_channel.side_effect = ValueError("Expecting value")

        session_id = await supervisor.start_session()

        assert await supervisor.get_session(session_id) is None
        assert await supervisor.active_sessions_count() == 0


class TestEventRouting:
    @pytest.mark.asyncio
    async def test_full_call_through_raw_events(self):
        supervisor, cp, _ = _build()
        session_id = await supervisor.start_session()
        orchestrator = await supervisor.get_session(session_id)

        await supervisor.handle_event(_dial_event("SIP-4448-1"))
        await orchestrator.join()
        await supervisor.handle_event(_playback_finished(orchestrator.welcome.playback_id))
        await orchestrator.join()
        await supervisor.handle_event(_dial_event("SIP-4449-1"))
        await orchestrator.join()

        assert orchestrator.state == CallState.RECORDING
        cp.add_channel_to_bridge.assert_any_await("bridge-1", "SIP-4449-1")
        cp.stop_hold_music.assert_awaited_once_with("bridge-1")

    @pytest.mark.asyncio
    async def test_unknown_entity_is_dropped_with_warning(self, caplog):
        supervisor, cp, _ = _build()
        await supervisor.start_session()

        with caplog.at_level(logging.WARNING, logger="sessions.supervisor"):
            await supervisor.handle_event(_dial_event("stranger"))

        assert "No session owns stranger" in caplog.text
        cp.play_media.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unconsumed_event_types_are_ignored(self):
        supervisor, cp, _ = _build()
        await supervisor.start_session()

        await supervisor.handle_event({"type": "StasisStart", "channel": {"id": "SIP-4448-1"}})
        await supervisor.handle_event({"no": "type"})

        cp.play_media.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self):
        supervisor, cp, _ = _build()
        first_id = await supervisor.start_session("SIP/100", "SIP/200")
        second_id = await supervisor.start_session("SIP/101", "SIP/201")
        first = await supervisor.get_session(first_id)
        second = await supervisor.get_session(second_id)

        await supervisor.handle_event(_dial_event("SIP-101-1"))
        await second.join()

        assert second.state == CallState.PLAYING_WELCOME
        assert first.state == CallState.DIALING_CUSTOMER
        cp.play_media.assert_awaited_once()
        assert cp.play_media.call_args[0][0] == "SIP-101-1"


class TestTermination:
    @pytest.mark.asyncio
    async def test_terminate_session_removes_it(self):
        supervisor, cp, registry = _build()
        session_id = await supervisor.start_session()

        report = await supervisor.terminate_session(session_id)

        assert report.ok
        assert await supervisor.get_session(session_id) is None
        assert await registry.count() == 0
        cp.hangup.assert_awaited_once_with("SIP-4448-1")

    @pytest.mark.asyncio
    async def test_terminate_unknown_session(self):
        supervisor, _, _ = _build()

        assert await supervisor.terminate_session("missing") is None

    @pytest.mark.asyncio
    async def test_remote_hangup_removes_session(self):
        supervisor, _, _ = _build()
        session_id = await supervisor.start_session()
        orchestrator = await supervisor.get_session(session_id)

        await supervisor.handle_event({"type": "ChannelDestroyed", "cause": 16, "channel": {"id": "SIP-4448-1"}})
        await orchestrator.join()

        assert orchestrator.state == CallState.TERMINATED
        assert await supervisor.active_sessions_count() == 0

    @pytest.mark.asyncio
    async def test_shutdown_terminates_everything(self):
        supervisor, cp, registry = _build()
        await supervisor.start_session("SIP/100", "SIP/200")
        await supervisor.start_session("SIP/101", "SIP/201")

        reports = await supervisor.shutdown()

        assert len(reports) == 2
        assert await supervisor.active_sessions_count() == 0
        assert await registry.count() == 0
        assert cp.hangup.await_count == 2

    @pytest.mark.asyncio
    async def test_shutdown_with_failing_hangups_still_completes(self):
        supervisor, cp, _ = _build()
        cp.hangup.return_value = CommandResult.failure("timeout")
        await supervisor.start_session()

        reports = await supervisor.shutdown()

        assert len(reports[0].failures) == 1
        assert await supervisor.active_sessions_count() == 0

    @pytest.mark.asyncio
    async def test_disconnect_terminates_all_sessions(self):
        supervisor, _, _ = _build()
        session_id = await supervisor.start_session()
        orchestrator = await supervisor.get_session(session_id)

        await supervisor.handle_disconnect()

        assert orchestrator.state == CallState.TERMINATED
        assert orchestrator.termination_reason == "control plane disconnected"
