import inspect
import logging
import uuid
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

Observer = Callable[[], Any]

class ObserverRegistry:
    """Fan-out of "state changed" to listeners. Callbacks may be sync or async."""

    def __init__(self):
        self._observers: Dict[uuid.UUID, Observer] = {}

    def __len__(self):
        return len(self._observers)

    def add(self, callback: Observer) -> uuid.UUID:
        handle = uuid.uuid4()
        self._observers[handle] = callback
        logger.debug(f"Observer {handle} added, total={len(self._observers)}")
        return handle

    def remove(self, handle: uuid.UUID):
        if self._observers.pop(handle, None) is not None:
            logger.debug(f"Observer {handle} removed, total={len(self._observers)}")

    async def notify(self):
        snapshot = list(self._observers.items())
        logger.debug(f"Notifying {len(snapshot)} observers")
        for handle, callback in snapshot:
            # Removed by an earlier callback in this broadcast
            if handle not in self._observers:
                continue
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Observer {handle} failed: {e}", exc_info=True)
