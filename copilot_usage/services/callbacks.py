"""Observer registry that isolates subscriber failures."""
from __future__ import annotations

import logging
from typing import Callable, Generic, TypeVar

logger = logging.getLogger("copilot_usage.unified")

PayloadT = TypeVar("PayloadT")


class CallbackRegistry(Generic[PayloadT]):
    def __init__(self, name: str):
        self.name = name
        self._callbacks: list[Callable[[PayloadT], object]] = []

    def add(self, callback: Callable[[PayloadT], object]) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def remove(self, callback: Callable[[PayloadT], object]) -> bool:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)

    def emit(self, payload: PayloadT) -> int:
        """Call every subscriber with ``payload``; returns how many raised."""
        failures = 0
        # Snapshot so subscribers may unsubscribe while being notified.
        for callback in list(self._callbacks):
            try:
                callback(payload)
            except Exception:
                failures += 1
                logger.exception("%s subscriber %r failed", self.name, callback)
        return failures
