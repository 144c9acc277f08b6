"""Display-name lookup for message and typing labels."""
import asyncio
import logging
from typing import Callable, Dict, Optional

from roomsync.datasource.base import DataService
from roomsync.errors import TransientFetchError

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown"

ResolvedCallback = Callable[[str, str], None]


class ProfileDirectory:
    """Caches user_id -> display name, fetching misses in the background.

    Failed lookups are not cached; the next request tries again.
    """

    def __init__(self, data_service: DataService) -> None:
        self._data = data_service
        self._names: Dict[str, str] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    def remember(self, user_id: str, name: str) -> None:
        if name:
            self._names[user_id] = name

    def name_for(self, user_id: str) -> str:
        return self._names.get(user_id, UNKNOWN_NAME)

    async def resolve(self, user_id: str) -> str:
        if user_id in self._names:
            return self._names[user_id]
        try:
            name = await self._data.fetch_profile_name(user_id)
        except TransientFetchError as e:
            logger.warning(f"[Profiles] Lookup failed for {user_id}: {e.message}")
            return UNKNOWN_NAME
        if not name:
            return UNKNOWN_NAME
        self._names[user_id] = name
        return name

    def prefetch(self, user_id: str, on_resolved: Optional[ResolvedCallback] = None) -> None:
        """Resolve a name without blocking the caller.

        ``on_resolved(user_id, name)`` runs once the lookup finishes, unless
        the name was already cached (nothing to relabel then).
        """
        if user_id in self._names:
            return
        task = self._pending.get(user_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self.resolve(user_id))
            self._pending[user_id] = task
            task.add_done_callback(lambda _t, uid=user_id: self._pending.pop(uid, None))
        if on_resolved is not None:
            def _done(t: asyncio.Task) -> None:
                if not t.cancelled() and t.exception() is None:
                    on_resolved(user_id, t.result())
            task.add_done_callback(_done)

    async def close(self) -> None:
        """Cancel outstanding lookups."""
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
