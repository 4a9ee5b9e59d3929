from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set


class LegRole(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"


class LegState(str, Enum):
    DIALING = "dialing"
    RINGING = "ringing"
    ANSWERED = "answered"
    HUNGUP = "hungup"
    FAILED = "failed"


class PlaybackState(str, Enum):
    QUEUED = "queued"
    PLAYING = "playing"
    DONE = "done"
    FAILED = "failed"


class RecordingState(str, Enum):
    REQUESTED = "requested"
    ACTIVE = "active"
    FAILED_TO_START = "failed_to_start"
    FINISHED = "finished"


class CallState(str, Enum):
    IDLE = "idle"
    DIALING_CUSTOMER = "dialing_customer"
    CUSTOMER_ANSWERED = "customer_answered"
    PLAYING_WELCOME = "playing_welcome"
    BRIDGE_SETUP = "bridge_setup"
    CUSTOMER_ON_HOLD = "customer_on_hold"
    DIALING_AGENT = "dialing_agent"
    AGENT_ANSWERED = "agent_answered"
    BRIDGED = "bridged"
    RECORDING = "recording"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


FINAL_STATES = {CallState.TERMINATING, CallState.TERMINATED}


@dataclass
class CallLeg:
    channel_id: str
    role: LegRole
    endpoint: str
    state: LegState = LegState.DIALING
    dial_status: Optional[str] = None


@dataclass
class BridgeInfo:
    bridge_id: str
    bridge_type: str = "mixing"
    members: Set[str] = field(default_factory=set)
    moh_active: bool = False


@dataclass
class Playback:
    playback_id: str
    target: str
    media: str
    state: PlaybackState = PlaybackState.QUEUED


@dataclass
class Recording:
    name: str
    format: str
    bridge_id: str
    state: RecordingState = RecordingState.REQUESTED
    cause: Optional[str] = None


@dataclass
class TeardownFailure:
    kind: str
    entity_id: str
    error: str


@dataclass
class TeardownReport:
    session_id: str
    attempted: List[str] = field(default_factory=list)
    failures: List[TeardownFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures
