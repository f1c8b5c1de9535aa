"""Status broadcaster - in-process publish/subscribe for sync state."""

import logging
from typing import Any, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNSET = object()


class StatusBroadcaster(Generic[T]):
    """Synchronous fan-out of published values to subscribers.

    Listeners run in subscription order, inside ``publish``, in the order
    values are published. A failing listener is logged and skipped; it never
    breaks delivery to the others or the publisher. Nothing is persisted.
    """

    def __init__(self, name: str = "sync-status"):
        self.name = name
        self._listeners: list[Callable[[T], None]] = []
        self._last: Any = _UNSET

    @property
    def last(self) -> Optional[T]:
        """Most recently published value, or None before the first publish."""
        return None if self._last is _UNSET else self._last

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register a listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_enter(self, value: T, callback: Callable[[], None]) -> Callable[[], None]:
        """Call ``callback`` on each transition into ``value``.

        Repeated publishes of the same value do not fire again. Typical use
        is re-reading cached data when the status enters idle after a sync.
        """
        previous = {"value": self._last}

        def listener(current: T) -> None:
            before = previous["value"]
            previous["value"] = current
            if current == value and before != value:
                callback()

        return self.subscribe(listener)

    def publish(self, value: T) -> None:
        """Deliver ``value`` to every current listener."""
        self._last = value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception(f"Error in {self.name} listener")

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
