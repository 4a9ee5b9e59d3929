import os
from dataclasses import dataclass
from typing import Optional


def _load_dotenv(path: str = ".env") -> None:
    """
    Minimal .env loader using only the standard library.
    Existing environment variables are not overridden.
    """
    if not os.path.exists(path):
        return

    with open(path, encoding="utf-8") as env_file:
        for raw_line in env_file:
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            if key not in os.environ:
                os.environ[key] = value


def _parse_int(value: str, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_float(value: str, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    return default


@dataclass
class AriSettings:
    base_url: str
    ws_url: str
    app_name: str
    username: str
    password: str
    reconnect: bool = True
    reconnect_delay: float = 2.0


@dataclass
class CallSettings:
    """
    Outbound contact-center call flow.

    The customer is dialed first and hears `welcome_media`; after that they are
    parked on a bridge of `bridge_type` with music on hold while the agent is
    dialed. `agent_dial_retries` extra attempts are made when the agent leg
    fails; with 0 the customer stays on hold until an operator ends the call.
    """
    customer_endpoint: str
    agent_endpoint: str
    welcome_media: str
    bridge_type: str
    moh_class: Optional[str]
    customer_dial_timeout: int
    agent_dial_timeout: int
    agent_dial_retries: int


@dataclass
class RecordingSettings:
    format: str
    beep: bool
    max_duration: int
    if_exists: str


@dataclass
class TimeoutSettings:
    ari_timeout: float


@dataclass
class Settings:
    ari: AriSettings
    call: CallSettings
    recording: RecordingSettings
    timeouts: TimeoutSettings
    log_level: str
    log_file: Optional[str]


def get_settings() -> Settings:
    _load_dotenv()

    ari = AriSettings(
        base_url=os.getenv("ARI_BASE_URL", "http://127.0.0.1:8088/ari"),
        ws_url=os.getenv("ARI_WS_URL", "ws://127.0.0.1:8088/ari/events"),
        app_name=os.getenv("ARI_APP_NAME", "outbound_cc"),
        username=os.getenv("ARI_USERNAME", "outbound"),
        password=os.getenv("ARI_PASSWORD", "changeme"),
        reconnect=_parse_bool(os.getenv("ARI_RECONNECT"), True),
        reconnect_delay=_parse_float(os.getenv("ARI_RECONNECT_DELAY", "2"), 2.0),
    )

    call = CallSettings(
        customer_endpoint=os.getenv("CUSTOMER_ENDPOINT", "SIP/4448"),
        agent_endpoint=os.getenv("AGENT_ENDPOINT", "SIP/4449"),
        welcome_media=os.getenv("WELCOME_MEDIA", "sound:dir-welcome"),
        bridge_type=os.getenv("BRIDGE_TYPE", "mixing,proxy_media"),
        moh_class=os.getenv("MOH_CLASS") or None,
        customer_dial_timeout=_parse_int(os.getenv("CUSTOMER_DIAL_TIMEOUT", "30"), 30),
        agent_dial_timeout=_parse_int(os.getenv("AGENT_DIAL_TIMEOUT", "30"), 30),
        agent_dial_retries=max(_parse_int(os.getenv("AGENT_DIAL_RETRIES", "0"), 0), 0),
    )

    recording = RecordingSettings(
        format=os.getenv("RECORDING_FORMAT", "wav"),
        beep=_parse_bool(os.getenv("RECORDING_BEEP"), True),
        max_duration=_parse_int(os.getenv("RECORDING_MAX_DURATION", "0"), 0),
        if_exists=os.getenv("RECORDING_IF_EXISTS", "fail"),
    )

    timeouts = TimeoutSettings(
        ari_timeout=_parse_float(os.getenv("ARI_TIMEOUT", "10"), 10.0),
    )

    log_level = os.getenv("LOG_LEVEL", "INFO")
    log_file = os.getenv("LOG_FILE") or None

    return Settings(
        ari=ari,
        call=call,
        recording=recording,
        timeouts=timeouts,
        log_level=log_level,
        log_file=log_file,
    )
