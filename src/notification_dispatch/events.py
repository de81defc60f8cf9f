"""
Lifecycle Event Emitter
Listener registry used by every pipeline component to publish lifecycle events
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventEmitter:
    """Observer registry with isolated listener failures

    Listeners run in registration order. A listener that raises is logged and
    skipped, so emission to the remaining listeners always completes.
    Coroutine listeners are scheduled on the running event loop.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._pending: set = set()

    def on(self, event: str, listener: Callable) -> Callable:
        """Register listener for event

        Args:
            event: Event name, e.g. ``notification:sent``
            listener: Callable invoked with the event arguments

        Returns:
            The listener, so ``on`` can be used as a decorator
        """
        self._listeners[event].append(listener)
        return listener

    def once(self, event: str, listener: Callable) -> Callable:
        """Register listener that is removed after its first call"""
        def wrapper(*args):
            self.off(event, wrapper)
            return listener(*args)

        wrapper.__wrapped__ = listener
        return self.on(event, wrapper)

    def off(self, event: str, listener: Callable) -> bool:
        """Remove listener, returns False when it was not registered"""
        listeners = self._listeners.get(event, [])
        for registered in list(listeners):
            if registered is listener or getattr(registered, '__wrapped__', None) is listener:
                listeners.remove(registered)
                return True
        return False

    def remove_all_listeners(self, event: str = None):
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: Any) -> bool:
        """Emit event to all listeners

        Returns:
            True if the event had listeners
        """
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                result = listener(*args)
                if asyncio.iscoroutine(result):
                    self._schedule(event, result)
            except Exception as e:
                logger.error(f"Listener for '{event}' failed: {str(e)}", exc_info=True)
        return bool(listeners)

    def _schedule(self, event: str, coroutine):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coroutine.close()
            logger.warning(f"Async listener for '{event}' dropped: no running event loop")
            return

        task = loop.create_task(coroutine)
        self._pending.add(task)

        def _done(t: asyncio.Task):
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Async listener for '{event}' failed: {t.exception()}")

        task.add_done_callback(_done)
