"""
Typed views over the ARI events the call flow consumes.

Each event carries exactly one entity id (`entity_id`) which is what the
session registry routes on.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union


logger = logging.getLogger(__name__)

DIAL_ANSWER = "ANSWER"
DIAL_PROGRESS_STATUSES = {"", "RINGING", "PROGRESS"}

PLAYBACK_DONE = "done"
PLAYBACK_FAILED = "failed"


@dataclass
class DialStatusEvent:
    dialstring: str
    status: str
    peer_channel_id: str

    @property
    def entity_id(self) -> str:
        return self.peer_channel_id

    @property
    def is_answer(self) -> bool:
        return self.status == DIAL_ANSWER

    @property
    def is_progress(self) -> bool:
        return self.status in DIAL_PROGRESS_STATUSES

    @property
    def is_failure(self) -> bool:
        # BUSY, NOANSWER, CONGESTION, CHANUNAVAIL, CANCEL, DONTCALL, TORTURE, INVALIDARGS
        return not self.is_answer and not self.is_progress


@dataclass
class ChannelStateChangeEvent:
    channel_id: str
    state: str

    @property
    def entity_id(self) -> str:
        return self.channel_id


@dataclass
class PlaybackStateEvent:
    playback_id: str
    state: str

    @property
    def entity_id(self) -> str:
        return self.playback_id


@dataclass
class RecordingStateEvent:
    recording_name: str
    state: str
    cause: Optional[str] = None

    @property
    def entity_id(self) -> str:
        return self.recording_name


@dataclass
class ChannelHangupEvent:
    channel_id: str
    cause: Optional[int] = None

    @property
    def entity_id(self) -> str:
        return self.channel_id


CallEvent = Union[
    DialStatusEvent,
    ChannelStateChangeEvent,
    PlaybackStateEvent,
    RecordingStateEvent,
    ChannelHangupEvent,
]


def parse_event(raw: dict) -> Optional[CallEvent]:
    """Build a typed event from an ARI JSON event, or None if it is not one we use."""
    event_type = raw.get("type")
    if not event_type:
        return None

    if event_type == "Dial":
        peer_id = (raw.get("peer") or {}).get("id")
        if not peer_id:
            return None
        return DialStatusEvent(
            dialstring=raw.get("dialstring", ""),
            status=(raw.get("dialstatus") or "").upper(),
            peer_channel_id=peer_id,
        )

    if event_type == "ChannelStateChange":
        channel = raw.get("channel") or {}
        if not channel.get("id"):
            return None
        return ChannelStateChangeEvent(channel_id=channel["id"], state=channel.get("state", ""))

    if event_type in ("PlaybackStarted", "PlaybackFinished"):
        playback = raw.get("playback") or {}
        if not playback.get("id"):
            return None
        default_state = "playing" if event_type == "PlaybackStarted" else PLAYBACK_DONE
        return PlaybackStateEvent(
            playback_id=playback["id"],
            state=playback.get("state") or default_state,
        )

    if event_type in ("RecordingStarted", "RecordingFinished", "RecordingFailed"):
        recording = raw.get("recording") or {}
        if not recording.get("name"):
            return None
        return RecordingStateEvent(
            recording_name=recording["name"],
            state=recording.get("state") or event_type[len("Recording"):].lower(),
            cause=recording.get("cause"),
        )

    if event_type in ("ChannelHangupRequest", "ChannelDestroyed"):
        channel = raw.get("channel") or {}
        if not channel.get("id"):
            return None
        return ChannelHangupEvent(channel_id=channel["id"], cause=raw.get("cause"))

    logger.debug("Ignoring ARI event type %s", event_type)
    return None
