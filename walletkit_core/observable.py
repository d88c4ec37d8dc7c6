"""Minimal observable value holder for UI-facing state."""

from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger("walletkit.observable")


class Observable(Generic[T]):
    """
    Holds a value and notifies subscribers when it is replaced.

    ``update`` skips notification when the updater returns the very same
    object, which is how callers signal "nothing changed".
    """

    def __init__(self, value: T):
        self._value = value
        self._subscribers: list[Callable[[T], None]] = []

    def get(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        self._notify()

    def update(self, updater: Callable[[T], T]) -> bool:
        new_value = updater(self._value)
        if new_value is self._value:
            return False
        self.set(new_value)
        return True

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register *callback*; it is called immediately with the current value."""
        self._subscribers.append(callback)
        callback(self._value)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback(self._value)
            except Exception:
                logger.exception("Subscriber raised while handling update")
