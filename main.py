import argparse
import asyncio
import logging
import signal
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from config import get_settings
from core.ari_client import AriClient
from core.ari_ws import AriWebSocketClient
from core.control_plane import ControlPlane
from sessions.registry import EntityRegistry
from sessions.supervisor import SessionSupervisor


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str, log_file: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=5 * 1024 * 1024, backupCount=5)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
    _build_call_log()


def _build_call_log() -> logging.Logger:
    # One summary line per finished call.
    lg = logging.getLogger("calls")
    if not lg.handlers:
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)
        handler = RotatingFileHandler(log_dir / "calls.log", maxBytes=2 * 1024 * 1024, backupCount=3)
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        lg.addHandler(handler)
        lg.setLevel(logging.INFO)
        lg.propagate = False
    return lg


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Dial a customer, greet them, hold them on a bridge and connect an agent."
    )
    parser.add_argument("customer", nargs="?", help="customer endpoint, e.g. SIP/4448")
    parser.add_argument("agent", nargs="?", help="agent endpoint, e.g. SIP/4449")
    return parser.parse_args(argv)


async def wait_until_connected(ws_client: AriWebSocketClient, stop_event: asyncio.Event) -> bool:
    connected = asyncio.create_task(ws_client.connected.wait())
    stopped = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({connected, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        connected.cancel()
        stopped.cancel()
    return ws_client.connected.is_set() and not stop_event.is_set()


async def run(args: argparse.Namespace) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_file)
    logger = logging.getLogger("app")

    ari_client = AriClient(settings.ari, timeout=settings.timeouts.ari_timeout)
    registry = EntityRegistry()
    supervisor = SessionSupervisor(ControlPlane(ari_client), registry, settings)
    ws_client = AriWebSocketClient(
        settings.ari, supervisor.handle_event, on_disconnect=supervisor.handle_disconnect
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    logger.info("Starting ARI WebSocket listener")
    listener = asyncio.create_task(ws_client.run(stop_event))
    listener.add_done_callback(lambda _: stop_event.set())
    try:
        # Channels are created for the Stasis app, which only exists while the events socket is open.
        if await wait_until_connected(ws_client, stop_event):
            session_id = await supervisor.start_session(args.customer, args.agent)
            logger.info("Outbound call started as session %s; Ctrl-C to hang up", session_id)
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await supervisor.shutdown()
        await ws_client.stop()
        await listener
        await ari_client.close()


def main() -> None:
    try:
        asyncio.run(run(parse_args()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
