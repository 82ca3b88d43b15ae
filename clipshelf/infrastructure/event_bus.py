import logging
from typing import Type, Callable, List, Dict, Any, Optional
from clipshelf.domain.events import Event

logger = logging.getLogger(__name__)


class EventBus:
    """A simple synchronous event bus for decoupled communication.

    Delivery is fan-out and at-most-once: each publish reaches the callbacks
    subscribed at that moment. A subscriber that raises is logged and skipped.
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}

    def subscribe(self, event_type: Type[Event], callback: Optional[Callable[[Any], None]] = None):
        """Subscribes a callback to a specific event type. Can be used as a decorator.

        Returns a zero-argument callable that removes the subscription
        (the decorator form returns the function itself).
        """
        if callback is None:
            def decorator(func: Callable[[Any], None]):
                self.subscribe(event_type, func)
                return func
            return decorator

        if event_type not in self._subscribers:
            self._subscribers[event_type] = []
        self._subscribers[event_type].append(callback)

        def unsubscribe():
            self.unsubscribe(event_type, callback)
        return unsubscribe

    def unsubscribe(self, event_type: Type[Event], callback: Callable[[Any], None]):
        callbacks = self._subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        event_type = type(event)
        if event_type in self._subscribers:
            # Copy so callbacks may unsubscribe while being notified
            for callback in list(self._subscribers[event_type]):
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"EVENT_SUBSCRIBER_ERROR: {event_type.__name__} -> {callback!r}")
