import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from config.settings import Settings
from core.control_plane import ControlPlane
from core.events import parse_event
from logic.orchestrator import CallOrchestrator
from sessions.registry import EntityRegistry
from sessions.session import TeardownReport


logger = logging.getLogger(__name__)


class SessionSupervisor:
    """
    Owns the live CallOrchestrator instances and routes ARI events to them.
    """

    def __init__(self, control_plane: ControlPlane, registry: EntityRegistry, settings: Settings):
        self.control_plane = control_plane
        self.registry = registry
        self.settings = settings
        self.sessions: Dict[str, CallOrchestrator] = {}
        self.lock = asyncio.Lock()

    async def start_session(
        self,
        customer_endpoint: Optional[str] = None,
        agent_endpoint: Optional[str] = None,
    ) -> str:
        session_id = str(uuid.uuid4())
        orchestrator = CallOrchestrator(
            session_id=session_id,
            customer_endpoint=customer_endpoint or self.settings.call.customer_endpoint,
            agent_endpoint=agent_endpoint or self.settings.call.agent_endpoint,
            control_plane=self.control_plane,
            registry=self.registry,
            call_settings=self.settings.call,
            recording_settings=self.settings.recording,
            on_terminated=self._on_terminated,
        )
        async with self.lock:
            self.sessions[session_id] = orchestrator
        logger.info(
            "Created session %s customer=%s agent=%s",
            session_id,
            orchestrator.customer_endpoint,
            orchestrator.agent_endpoint,
        )
        try:
            await orchestrator.start()
        except Exception:
            logger.exception("Session %s failed to start", session_id)
            async with self.lock:
                self.sessions.pop(session_id, None)
            orchestrator.close()
            await self.registry.release_session(session_id)
        return session_id

    async def get_session(self, session_id: str) -> Optional[CallOrchestrator]:
        async with self.lock:
            return self.sessions.get(session_id)

    async def active_sessions_count(self) -> int:
        async with self.lock:
            return len(self.sessions)

    async def terminate_session(
        self, session_id: str, reason: str = "operator request"
    ) -> Optional[TeardownReport]:
        orchestrator = await self.get_session(session_id)
        if orchestrator is None:
            logger.warning("Terminate requested for unknown session %s", session_id)
            return None
        return await orchestrator.terminate(reason)

    async def handle_event(self, raw: dict) -> None:
        try:
            event = parse_event(raw)
            if event is None:
                return
            session_id = await self.registry.resolve(event.entity_id)
            if session_id is None:
                logger.warning(
                    "No session owns %s (%s); dropping event", event.entity_id, raw.get("type")
                )
                return
            orchestrator = await self.get_session(session_id)
            if orchestrator is None:
                logger.warning("Session %s for %s is gone; dropping event", session_id, event.entity_id)
                return
            orchestrator.submit(event)
        except Exception:
            logger.exception("Error routing ARI event %s", raw.get("type"))

    async def shutdown(self, reason: str = "shutdown") -> List[TeardownReport]:
        async with self.lock:
            orchestrators = list(self.sessions.values())
        if not orchestrators:
            return []
        logger.info("Terminating %d active session(s): %s", len(orchestrators), reason)
        results = await asyncio.gather(
            *(orchestrator.terminate(reason) for orchestrator in orchestrators),
            return_exceptions=True,
        )
        reports = []
        for orchestrator, result in zip(orchestrators, results):
            if isinstance(result, BaseException):
                logger.error("Session %s failed to terminate: %s", orchestrator.session_id, result)
                continue
            reports.append(result)
        return reports

    async def handle_disconnect(self) -> None:
        logger.error("Lost the ARI event stream; terminating all sessions")
        await self.shutdown("control plane disconnected")

    async def _on_terminated(self, orchestrator: CallOrchestrator) -> None:
        async with self.lock:
            self.sessions.pop(orchestrator.session_id, None)
        orchestrator.close()
        logger.info("Cleaned session %s", orchestrator.session_id)
