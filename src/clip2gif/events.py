"""
Subscription-based event delivery.

Producers own an EventChannel; consumers subscribe and keep the returned
Subscription to stop listening.
"""

import logging
from typing import Any, Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Token returned by EventChannel.subscribe()."""

    def __init__(self, channel: "EventChannel[Any]", callback: Callable[[Any], None]):
        self._channel = channel
        self._callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._channel._remove(self._callback)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.unsubscribe()


class EventChannel(Generic[T]):
    """Fan-out of values to subscribed callbacks, in subscription order."""

    def __init__(self, name: str = ""):
        self.name = name
        self._callbacks: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(self, callback)

    def _remove(self, callback: Callable[[T], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def emit(self, value: T) -> None:
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                # A failing listener does not stop delivery to the others
                logger.exception("Listener on %s channel failed", self.name or "event")

    def __len__(self) -> int:
        return len(self._callbacks)
