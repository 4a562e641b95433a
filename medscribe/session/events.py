from __future__ import annotations

import copy
import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventChannel(Generic[T]):
    """
    Synchronous observer list, delivered in subscription order.

    Each subscriber gets its own deep copy of the payload unless `copy_payload` is off
    (exceptions are passed through as-is).
    """

    def __init__(self, name: str, *, copy_payload: bool = True) -> None:
        self.name = name
        self._copy_payload = copy_payload
        self._subscribers: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: Callable[[T], None]) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def emit(self, payload: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(copy.deepcopy(payload) if self._copy_payload else payload)
            except Exception:
                logger.exception("event_subscriber failed channel=%s", self.name)

    def clear(self) -> None:
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)
