"""In-process keyed store for movement memories.

All mutation goes through ``recompute``, serialised per (user, exercise) by
an asyncio.Lock. Different keys never block each other. Each recompute
re-derives from the history it is handed, so last-write-wins is safe.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable
from datetime import date

from .config import DEFAULT_SETTINGS, EngineSettings
from .memory import recompute_movement_memory
from .metrics import record_recompute
from .models import MovementMemory, SetRecord

logger = logging.getLogger(__name__)

MemoryKey = tuple[str, str]


class MovementMemoryStore:
    def __init__(self, settings: EngineSettings = DEFAULT_SETTINGS) -> None:
        self.settings = settings
        self._memories: dict[MemoryKey, MovementMemory] = {}
        self._locks: dict[MemoryKey, asyncio.Lock] = {}

    def _lock_for(self, key: MemoryKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def get(self, user_id: str, exercise_id: str) -> MovementMemory | None:
        return self._memories.get((user_id, exercise_id))

    def keys(self) -> list[MemoryKey]:
        return sorted(self._memories)

    async def recompute(
        self,
        user_id: str,
        exercise_id: str,
        sets: Iterable[SetRecord],
        *,
        as_of: date,
    ) -> MovementMemory | None:
        """Re-derive and store the memory for one key from its full history."""
        key = (user_id, exercise_id)
        history = list(sets)
        async with self._lock_for(key):
            start = time.monotonic()
            memory = recompute_movement_memory(
                user_id,
                exercise_id,
                history,
                as_of=as_of,
                previous=self._memories.get(key),
                settings=self.settings,
            )
            if memory is not None:
                self._memories[key] = memory
            record_recompute(
                exercise_id,
                written=memory is not None,
                duration_ms=(time.monotonic() - start) * 1000,
            )
        logger.debug(
            "Recomputed movement memory user=%s exercise=%s sets=%d",
            user_id,
            exercise_id,
            len(history),
        )
        return memory
