import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, Dict, Optional

from config.settings import CallSettings, RecordingSettings
from core.control_plane import CommandResult, ControlPlane
from core.events import (
    PLAYBACK_DONE,
    CallEvent,
    ChannelHangupEvent,
    ChannelStateChangeEvent,
    DialStatusEvent,
    PlaybackStateEvent,
    RecordingStateEvent,
)
from sessions.registry import EntityRegistry
from sessions.session import (
    FINAL_STATES,
    BridgeInfo,
    CallLeg,
    CallState,
    LegRole,
    LegState,
    Playback,
    PlaybackState,
    Recording,
    RecordingState,
    TeardownFailure,
    TeardownReport,
)


logger = logging.getLogger(__name__)
call_log = logging.getLogger("calls")

_STOP = object()


class CallOrchestrator:
    """
    Outbound contact-center flow for one call:
    1) Dial the customer.
    2) On answer, play the welcome message to the customer.
    3) When the welcome message is done: create a bridge, put the customer in it,
       start music on hold and dial the agent.
    4) On agent answer: add the agent to the bridge, stop the music and record
       the conversation through the bridge.
    5) On termination hang up both legs and destroy the bridge.

    Events are matched by exact entity id against the ids this session stored;
    anything else is ignored. All mutation happens under `self.lock`.
    """

    def __init__(
        self,
        session_id: str,
        customer_endpoint: str,
        agent_endpoint: str,
        control_plane: ControlPlane,
        registry: EntityRegistry,
        call_settings: CallSettings,
        recording_settings: RecordingSettings,
        on_terminated: Optional[Callable[["CallOrchestrator"], Awaitable[None]]] = None,
    ):
        self.session_id = session_id
        self.customer_endpoint = customer_endpoint
        self.agent_endpoint = agent_endpoint
        self.control_plane = control_plane
        self.registry = registry
        self.call_settings = call_settings
        self.recording_settings = recording_settings
        self.on_terminated = on_terminated

        self.state = CallState.IDLE
        self.customer_leg: Optional[CallLeg] = None
        self.agent_leg: Optional[CallLeg] = None
        self.bridge: Optional[BridgeInfo] = None
        self.welcome: Optional[Playback] = None
        self.recording: Optional[Recording] = None
        self.agent_attempts = 0
        self.failed_agent_legs: list[CallLeg] = []
        self.unreleased_channels: list[str] = []
        self.termination_reason: Optional[str] = None
        self.teardown_report: Optional[TeardownReport] = None
        self._bridge_requested = False
        self.started_at = time.monotonic()
        self.ended_at: Optional[float] = None

        self.lock = asyncio.Lock()
        self.inbox: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    # Entry points ----------------------------------------------------------
    async def start(self) -> None:
        self._ensure_worker()
        async with self.lock:
            if self.state != CallState.IDLE:
                logger.debug("Session %s already started (%s)", self.session_id, self.state.value)
                return
            logger.info(
                "Session %s: dialing customer %s (agent %s)",
                self.session_id,
                self.customer_endpoint,
                self.agent_endpoint,
            )
            try:
                dialed = await self._dial_leg(LegRole.CUSTOMER)
            except Exception:
                logger.exception("Session %s: unexpected error dialing customer", self.session_id)
                await self._teardown("internal error")
                return
            if not dialed:
                await self._teardown("customer dial command failed")
                return
            self._transition(CallState.DIALING_CUSTOMER)

    def submit(self, event: CallEvent) -> None:
        """Queue an event for the session worker; events are handled one at a time."""
        if self._closed:
            logger.debug("Session %s closed; dropping %s", self.session_id, type(event).__name__)
            return
        self._ensure_worker()
        self.inbox.put_nowait(event)

    async def join(self) -> None:
        await self.inbox.join()

    async def handle_event(self, event: CallEvent) -> None:
        try:
            async with self.lock:
                try:
                    await self._dispatch(event)
                except Exception:
                    logger.exception(
                        "Session %s failed to handle %s in state %s",
                        self.session_id,
                        type(event).__name__,
                        self.state.value,
                    )
                    # A half-applied transition cannot be resumed by later events.
                    await self._teardown("internal error")
        except Exception:
            logger.exception("Session %s: teardown after handler error failed", self.session_id)

    async def terminate(self, reason: str = "operator request") -> TeardownReport:
        async with self.lock:
            return await self._teardown(reason)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._worker is not None:
            self.inbox.put_nowait(_STOP)

    @property
    def is_terminated(self) -> bool:
        return self.state == CallState.TERMINATED

    def snapshot(self) -> Dict[str, object]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "customer": self._leg_snapshot(self.customer_leg),
            "agent": self._leg_snapshot(self.agent_leg),
            "agent_attempts": self.agent_attempts,
            "bridge": {
                "id": self.bridge.bridge_id,
                "members": sorted(self.bridge.members),
                "moh_active": self.bridge.moh_active,
            } if self.bridge else None,
            "welcome": {
                "id": self.welcome.playback_id,
                "state": self.welcome.state.value,
            } if self.welcome else None,
            "recording": {
                "name": self.recording.name,
                "state": self.recording.state.value,
                "cause": self.recording.cause,
            } if self.recording else None,
            "termination_reason": self.termination_reason,
        }

    # Worker ----------------------------------------------------------------
    def _ensure_worker(self) -> None:
        if self._worker is None and not self._closed:
            self._worker = asyncio.get_running_loop().create_task(
                self._drain(), name=f"session-{self.session_id}"
            )

    async def _drain(self) -> None:
        while True:
            event = await self.inbox.get()
            try:
                if event is _STOP:
                    return
                await self.handle_event(event)
            finally:
                self.inbox.task_done()

    # Dispatch --------------------------------------------------------------
    async def _dispatch(self, event: CallEvent) -> None:
        if self.state in FINAL_STATES:
            logger.debug(
                "Session %s is %s; ignoring %s for %s",
                self.session_id,
                self.state.value,
                type(event).__name__,
                event.entity_id,
            )
            return
        if isinstance(event, DialStatusEvent):
            await self._on_dial(event)
        elif isinstance(event, PlaybackStateEvent):
            await self._on_playback(event)
        elif isinstance(event, RecordingStateEvent):
            self._on_recording(event)
        elif isinstance(event, ChannelStateChangeEvent):
            self._on_channel_state(event)
        elif isinstance(event, ChannelHangupEvent):
            await self._on_hangup(event)
        else:
            logger.debug("Session %s: unhandled event %r", self.session_id, event)

    async def _on_dial(self, event: DialStatusEvent) -> None:
        leg = self._leg_for(event.peer_channel_id)
        logger.info(
            "Session %s dial event dialstring=%s status=%s peer=%s",
            self.session_id,
            event.dialstring,
            event.status or "-",
            event.peer_channel_id,
        )
        if leg is None:
            logger.debug(
                "Session %s: dial event for unknown peer %s", self.session_id, event.peer_channel_id
            )
            return
        leg.dial_status = event.status

        if event.is_progress:
            if leg.state == LegState.DIALING and event.status:
                leg.state = LegState.RINGING
            return

        if event.is_answer:
            if leg.role == LegRole.CUSTOMER and self.state == CallState.DIALING_CUSTOMER:
                leg.state = LegState.ANSWERED
                self._transition(CallState.CUSTOMER_ANSWERED)
                await self._play_welcome()
            elif leg.role == LegRole.AGENT and self.state == CallState.DIALING_AGENT:
                leg.state = LegState.ANSWERED
                self._transition(CallState.AGENT_ANSWERED)
                await self._join_agent()
            else:
                logger.debug(
                    "Session %s: %s answer ignored in state %s",
                    self.session_id,
                    leg.role.value,
                    self.state.value,
                )
            return

        if leg.role == LegRole.CUSTOMER and self.state == CallState.DIALING_CUSTOMER:
            leg.state = LegState.FAILED
            logger.warning(
                "Session %s: customer %s not reached (%s)",
                self.session_id,
                leg.endpoint,
                event.status,
            )
            await self._teardown(f"customer dial failed: {event.status}")
        elif leg.role == LegRole.AGENT and self.state == CallState.DIALING_AGENT:
            leg.state = LegState.FAILED
            await self._on_agent_failed(f"agent dial failed: {event.status}")
        else:
            logger.debug(
                "Session %s: %s dial status %s ignored in state %s",
                self.session_id,
                leg.role.value,
                event.status,
                self.state.value,
            )

    async def _on_playback(self, event: PlaybackStateEvent) -> None:
        if self.welcome is None or event.playback_id != self.welcome.playback_id:
            logger.debug(
                "Session %s: playback %s is not the welcome message", self.session_id, event.playback_id
            )
            return
        if event.state not in (PLAYBACK_DONE, "failed", "cancelled"):
            self.welcome.state = PlaybackState.PLAYING
            return
        if self.state != CallState.PLAYING_WELCOME:
            logger.debug(
                "Session %s: welcome finished in state %s; ignoring", self.session_id, self.state.value
            )
            return

        if event.state == PLAYBACK_DONE:
            self.welcome.state = PlaybackState.DONE
        else:
            # The customer is on the line either way; carry on without the greeting.
            self.welcome.state = PlaybackState.FAILED
            logger.warning(
                "Session %s: welcome playback %s ended as %s",
                self.session_id,
                event.playback_id,
                event.state,
            )
        await self.registry.unregister(self.welcome.playback_id)
        await self._setup_bridge()

    def _on_recording(self, event: RecordingStateEvent) -> None:
        recording = self.recording
        if recording is None or event.recording_name != recording.name:
            logger.debug(
                "Session %s: recording %s is not ours", self.session_id, event.recording_name
            )
            return
        if event.state in ("recording", "started"):
            recording.state = RecordingState.ACTIVE
            logger.info("Session %s: recording %s active", self.session_id, recording.name)
        elif event.state == "failed":
            recording.cause = event.cause
            if recording.state == RecordingState.REQUESTED:
                recording.state = RecordingState.FAILED_TO_START
                logger.warning(
                    "Session %s: recording %s failed to start (%s); continuing unrecorded",
                    self.session_id,
                    recording.name,
                    event.cause,
                )
                if self.state == CallState.RECORDING:
                    self._transition(CallState.BRIDGED)
            else:
                recording.state = RecordingState.FINISHED
                logger.warning(
                    "Session %s: recording %s stopped with error (%s)",
                    self.session_id,
                    recording.name,
                    event.cause,
                )
        elif event.state in ("done", "finished", "canceled"):
            recording.state = RecordingState.FINISHED
            logger.info("Session %s: recording %s finished", self.session_id, recording.name)

    def _on_channel_state(self, event: ChannelStateChangeEvent) -> None:
        leg = self._leg_for(event.channel_id)
        if leg is None:
            logger.debug("Session %s: state change for unknown channel %s", self.session_id, event.channel_id)
            return
        logger.info(
            "Session %s %s channel %s state %s",
            self.session_id,
            leg.role.value,
            event.channel_id,
            event.state,
        )
        if event.state == "Ringing" and leg.state == LegState.DIALING:
            leg.state = LegState.RINGING
        elif event.state == "Up" and leg.state in (LegState.DIALING, LegState.RINGING):
            leg.state = LegState.ANSWERED

    async def _on_hangup(self, event: ChannelHangupEvent) -> None:
        leg = self._leg_for(event.channel_id)
        if leg is None or leg.state == LegState.HUNGUP:
            return
        leg.state = LegState.HUNGUP
        logger.info(
            "Session %s: %s channel %s hung up (cause=%s)",
            self.session_id,
            leg.role.value,
            event.channel_id,
            event.cause,
        )
        if leg.role == LegRole.CUSTOMER:
            await self._teardown("customer hung up")
        elif self.state in (CallState.AGENT_ANSWERED, CallState.BRIDGED, CallState.RECORDING):
            await self._teardown("agent hung up")

    # Flow steps ------------------------------------------------------------
    async def _dial_leg(self, role: LegRole) -> bool:
        endpoint = self.customer_endpoint if role == LegRole.CUSTOMER else self.agent_endpoint
        timeout = (
            self.call_settings.customer_dial_timeout
            if role == LegRole.CUSTOMER
            else self.call_settings.agent_dial_timeout
        )
        created = await self.control_plane.create_channel(
            endpoint, app_args=f"{role.value},{self.session_id}"
        )
        if not created.ok:
            logger.error(
                "Session %s: could not create %s channel to %s: %s",
                self.session_id,
                role.value,
                endpoint,
                created.error,
            )
            return False

        leg = CallLeg(channel_id=created.value, role=role, endpoint=endpoint)
        if role == LegRole.CUSTOMER:
            self.customer_leg = leg
        else:
            self.agent_leg = leg
        await self.registry.register(leg.channel_id, self.session_id)

        logger.info("Session %s: dialing %s %s on channel %s", self.session_id, role.value, endpoint, leg.channel_id)
        dialed = await self.control_plane.dial(leg.channel_id, timeout=timeout)
        if not dialed.ok:
            leg.state = LegState.FAILED
            logger.error(
                "Session %s: dial of %s channel %s failed: %s",
                self.session_id,
                role.value,
                leg.channel_id,
                dialed.error,
            )
            return False
        return True

    async def _play_welcome(self) -> None:
        customer = self.customer_leg
        playback_id = str(uuid.uuid4())
        self.welcome = Playback(
            playback_id=playback_id,
            target=customer.channel_id,
            media=self.call_settings.welcome_media,
        )
        # Registered before the command so the PlaybackFinished event can be routed back.
        await self.registry.register(playback_id, self.session_id)
        logger.info(
            "Session %s: playing %s to customer channel %s",
            self.session_id,
            self.welcome.media,
            customer.channel_id,
        )
        result = await self.control_plane.play_media(
            customer.channel_id, self.welcome.media, playback_id=playback_id
        )
        if not result.ok:
            self.welcome.state = PlaybackState.FAILED
            await self._teardown(f"welcome playback failed: {result.error}")
            return
        self._transition(CallState.PLAYING_WELCOME)

    async def _setup_bridge(self) -> None:
        if self._bridge_requested:
            logger.warning("Session %s: bridge already requested; not creating another", self.session_id)
            return
        self._bridge_requested = True
        self._transition(CallState.BRIDGE_SETUP)

        bridge_type = self.call_settings.bridge_type
        created = await self.control_plane.create_bridge(bridge_type)
        if not created.ok:
            await self._teardown(f"bridge creation failed: {created.error}")
            return
        self.bridge = BridgeInfo(bridge_id=created.value, bridge_type=bridge_type)
        await self.registry.register(self.bridge.bridge_id, self.session_id)
        logger.info("Session %s: bridge %s (%s) created", self.session_id, self.bridge.bridge_id, bridge_type)

        customer_id = self.customer_leg.channel_id
        added = await self.control_plane.add_channel_to_bridge(self.bridge.bridge_id, customer_id)
        if not added.ok:
            await self._teardown(f"could not bridge customer: {added.error}")
            return
        self.bridge.members.add(customer_id)

        moh = await self.control_plane.start_hold_music(
            self.bridge.bridge_id, moh_class=self.call_settings.moh_class
        )
        if moh.ok:
            self.bridge.moh_active = True
        else:
            logger.warning(
                "Session %s: hold music on bridge %s failed: %s",
                self.session_id,
                self.bridge.bridge_id,
                moh.error,
            )
        self._transition(CallState.CUSTOMER_ON_HOLD)
        await self._dial_agent()

    async def _dial_agent(self) -> None:
        self.agent_attempts += 1
        if await self._dial_leg(LegRole.AGENT):
            self._transition(CallState.DIALING_AGENT)
            return
        await self._on_agent_failed("agent dial command failed")

    async def _on_agent_failed(self, reason: str) -> None:
        leg = self.agent_leg
        if leg is not None:
            self.agent_leg = None
            leg.state = LegState.FAILED
            self.failed_agent_legs.append(leg)
            released = await self._release(
                "channel",
                leg.channel_id,
                self.control_plane.hangup,
                report=None,
            )
            if released:
                await self.registry.unregister(leg.channel_id)
            else:
                self.unreleased_channels.append(leg.channel_id)
            if self.bridge:
                self.bridge.members.discard(leg.channel_id)

        self._transition(CallState.CUSTOMER_ON_HOLD)
        retries = self.call_settings.agent_dial_retries
        if self.agent_attempts <= retries:
            logger.warning(
                "Session %s: %s; retrying agent (attempt %d of %d)",
                self.session_id,
                reason,
                self.agent_attempts + 1,
                retries + 1,
            )
            await self._dial_agent()
        else:
            logger.warning(
                "Session %s: %s; customer stays on hold until the call is terminated",
                self.session_id,
                reason,
            )

    async def _join_agent(self) -> None:
        bridge = self.bridge
        agent_id = self.agent_leg.channel_id
        added = await self.control_plane.add_channel_to_bridge(bridge.bridge_id, agent_id)
        if not added.ok:
            await self._on_agent_failed(f"could not bridge agent: {added.error}")
            return
        bridge.members.add(agent_id)

        if bridge.moh_active:
            bridge.moh_active = False
            stopped = await self.control_plane.stop_hold_music(bridge.bridge_id)
            if not stopped.ok:
                logger.warning(
                    "Session %s: stopping hold music on %s failed: %s",
                    self.session_id,
                    bridge.bridge_id,
                    stopped.error,
                )
        self._transition(CallState.BRIDGED)
        await self._start_recording()

    async def _start_recording(self) -> None:
        if self.recording is not None:
            return
        settings = self.recording_settings
        self.recording = Recording(
            name=uuid.uuid4().hex,
            format=settings.format,
            bridge_id=self.bridge.bridge_id,
        )
        await self.registry.register(self.recording.name, self.session_id)
        result = await self.control_plane.start_recording(
            self.bridge.bridge_id,
            settings.format,
            name=self.recording.name,
            beep=settings.beep,
            max_duration=settings.max_duration,
            if_exists=settings.if_exists,
        )
        if not result.ok:
            # Asterisk needs a writable recording spool (/var/spool/asterisk/recording).
            self.recording.state = RecordingState.FAILED_TO_START
            self.recording.cause = result.error
            await self.registry.unregister(self.recording.name)
            logger.warning(
                "Session %s: recording on bridge %s failed to start: %s",
                self.session_id,
                self.bridge.bridge_id,
                result.error,
            )
            return
        logger.info("Session %s: recording requested with name %s", self.session_id, self.recording.name)
        self._transition(CallState.RECORDING)

    # Teardown --------------------------------------------------------------
    async def _teardown(self, reason: str) -> TeardownReport:
        if self.teardown_report is not None:
            return self.teardown_report
        report = TeardownReport(session_id=self.session_id)
        self.teardown_report = report
        self.termination_reason = reason
        self._transition(CallState.TERMINATING)
        logger.info("Session %s: terminating (%s)", self.session_id, reason)

        for leg in (self.customer_leg, self.agent_leg):
            if leg is not None:
                await self._release("channel", leg.channel_id, self.control_plane.hangup, report)
        for channel_id in self.unreleased_channels:
            await self._release("channel", channel_id, self.control_plane.hangup, report)
        if self.bridge is not None:
            await self._release("bridge", self.bridge.bridge_id, self.control_plane.destroy_bridge, report)

        await self.registry.release_session(self.session_id)
        self.ended_at = time.monotonic()
        self._transition(CallState.TERMINATED)
        self._log_summary()

        if self.on_terminated is not None:
            try:
                await self.on_terminated(self)
            except Exception:
                logger.exception("Session %s: termination callback failed", self.session_id)
        return report

    async def _release(
        self,
        kind: str,
        entity_id: str,
        command: Callable[[str], Awaitable[CommandResult]],
        report: Optional[TeardownReport],
    ) -> bool:
        if report is not None:
            report.attempted.append(entity_id)
        try:
            result = await command(entity_id)
            error = None if result.ok else result.error
        except Exception as exc:
            logger.exception("Session %s: releasing %s %s raised", self.session_id, kind, entity_id)
            error = str(exc) or exc.__class__.__name__
        if error is None:
            logger.debug("Session %s: released %s %s", self.session_id, kind, entity_id)
            return True
        logger.warning("Session %s: failed to release %s %s: %s", self.session_id, kind, entity_id, error)
        if report is not None:
            report.failures.append(TeardownFailure(kind=kind, entity_id=entity_id, error=error))
        return False

    # Helpers ---------------------------------------------------------------
    def _transition(self, new_state: CallState) -> None:
        if new_state == self.state:
            return
        logger.info("Session %s: %s -> %s", self.session_id, self.state.value, new_state.value)
        self.state = new_state

    def _leg_for(self, channel_id: Optional[str]) -> Optional[CallLeg]:
        for leg in (self.customer_leg, self.agent_leg):
            if leg is not None and leg.channel_id == channel_id:
                return leg
        return None

    @staticmethod
    def _leg_snapshot(leg: Optional[CallLeg]) -> Optional[Dict[str, Optional[str]]]:
        if leg is None:
            return None
        return {
            "channel_id": leg.channel_id,
            "endpoint": leg.endpoint,
            "state": leg.state.value,
            "dial_status": leg.dial_status,
        }

    def _log_summary(self) -> None:
        duration = (self.ended_at or time.monotonic()) - self.started_at
        report = self.teardown_report
        failures = ",".join(f"{f.kind}:{f.entity_id}" for f in report.failures) if report else ""
        call_log.info(
            "session=%s customer=%s agent=%s reason=%s agent_attempts=%d recording=%s recording_state=%s "
            "duration=%.1fs teardown_failures=%s",
            self.session_id,
            self.customer_endpoint,
            self.agent_endpoint,
            self.termination_reason,
            self.agent_attempts,
            self.recording.name if self.recording else "-",
            self.recording.state.value if self.recording else "-",
            duration,
            failures or "-",
        )
