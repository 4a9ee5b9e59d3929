import asyncio
import logging
from typing import Dict, Optional


logger = logging.getLogger(__name__)


class EntityRegistry:
    """
    Maps control-plane entity ids (channels, bridges, playbacks, recordings)
    to the session that owns them.

    The lock guards only the map operation itself; callers never hold it
    across a control-plane command.
    """

    def __init__(self):
        self._owners: Dict[str, str] = {}
        self.lock = asyncio.Lock()

    async def register(self, entity_id: str, session_id: str) -> None:
        async with self.lock:
            previous = self._owners.get(entity_id)
            self._owners[entity_id] = session_id
        if previous and previous != session_id:
            logger.warning(
                "Entity %s moved from session %s to %s", entity_id, previous, session_id
            )

    async def resolve(self, entity_id: str) -> Optional[str]:
        async with self.lock:
            return self._owners.get(entity_id)

    async def unregister(self, entity_id: str) -> None:
        async with self.lock:
            self._owners.pop(entity_id, None)

    async def release_session(self, session_id: str) -> int:
        async with self.lock:
            owned = [eid for eid, sid in self._owners.items() if sid == session_id]
            for entity_id in owned:
                del self._owners[entity_id]
        return len(owned)

    async def count(self) -> int:
        async with self.lock:
            return len(self._owners)
