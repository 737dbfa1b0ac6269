"""
Keyed registry of running background tasks.

One handle per key (session id or requester id). Replacing a handle
always goes through the per-key lock so two live loops never share a key.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Generic, Hashable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

H = TypeVar("H")


class KeyedRegistry(Generic[H]):
    """
    Concurrency-safe mapping from key to handle.

    Used from a single event loop; the locks serialize start/stop
    sequences that await in between.
    """

    def __init__(self, name: str):
        self.name = name
        self._handles: Dict[Hashable, H] = {}
        self._locks: Dict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, key: Hashable) -> asyncio.Lock:
        """Lock guarding create/replace for one key."""
        return self._locks[key]

    def create(self, key: Hashable, handle: H) -> None:
        """Register a handle; the key must be free."""
        if key in self._handles:
            raise KeyError(f"{self.name}: {key} already has a live handle")
        self._handles[key] = handle
        logger.debug(f"{self.name}: registered {key}")

    def get(self, key: Hashable) -> Optional[H]:
        return self._handles.get(key)

    def remove(self, key: Hashable) -> Optional[H]:
        """Remove and return the handle for a key."""
        handle = self._handles.pop(key, None)
        if handle is not None:
            logger.debug(f"{self.name}: removed {key}")
        return handle

    def discard(self, key: Hashable, handle: H) -> bool:
        """Remove the handle only if it is still the registered one."""
        if self._handles.get(key) is handle:
            del self._handles[key]
            logger.debug(f"{self.name}: discarded {key}")
            return True
        return False

    def keys(self) -> List[Hashable]:
        return list(self._handles.keys())

    def __contains__(self, key: Hashable) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)
