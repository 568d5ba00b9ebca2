"""Observer registry used for connectivity and sync status notifications."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class EventChannel(Generic[T]):
    """Deliver events to subscribers in registration order.

    A subscriber that raises is logged and skipped; delivery continues
    with the next one.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: Dict[int, Callable[[T], None]] = {}
        self._next_token = 0

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    def unsubscribe(self, callback: Callable[[T], None]) -> None:
        for token, cb in list(self._subscribers.items()):
            if cb == callback:
                del self._subscribers[token]

    def publish(self, event: T) -> None:
        callbacks: List[Callable[[T], None]] = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("%s subscriber %r failed", self.name, callback)

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)
