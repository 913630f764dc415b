"""
Readiness Gate - Defers work until prerequisite kinds are ready.

A Gate tracks a readiness flag per condition (usually a ResourceKind) and a
list of callbacks, each waiting on a set of conditions. A callback runs
exactly once, the first time all of its conditions are ready at the same
time, and is then forgotten.

The gate is safe to use from multiple threads and event loops. Callbacks are
always invoked after the internal lock has been released, so they may call
back into the gate.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Hashable, List, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)


@dataclass
class _Registration(Generic[T]):
    conditions: Tuple[T, ...]
    callback: Callable[[], None]
    released: bool = False


class Gate(Generic[T]):
    """Runs registered callbacks once all of their conditions are ready."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ready: Dict[T, bool] = {}
        self._registrations: List[_Registration[T]] = []

    def register(self, callback: Callable[[], None], *conditions: T) -> None:
        """
        Register a callback to run once every condition is ready.

        Unknown conditions are tracked as not ready. If every condition is
        already ready the callback runs before register() returns.

        Args:
            callback: Called with no arguments, at most once.
            *conditions: The conditions that must all be ready.
        """
        with self._lock:
            for c in conditions:
                self._ready.setdefault(c, False)
            self._registrations.append(_Registration(tuple(conditions), callback))

        self._process()

    def set(self, condition: T, ready: bool) -> bool:
        """
        Mark a condition ready or not ready.

        Args:
            condition: The condition to update.
            ready: Its new readiness.

        Returns:
            True if the readiness of the condition changed.
        """
        with self._lock:
            old, known = self._ready.get(condition, False), condition in self._ready
            self._ready[condition] = ready
            changed = not known or old != ready

        if changed:
            logger.debug(f"Gate condition {condition} ready={ready}")
            self._process()

        return changed

    def is_ready(self, condition: T) -> bool:
        with self._lock:
            return self._ready.get(condition, False)

    def pending(self) -> int:
        """Return the number of callbacks still waiting."""
        with self._lock:
            return len(self._registrations)

    def _process(self) -> None:
        released: List[_Registration[T]] = []
        with self._lock:
            waiting = []
            for r in self._registrations:
                if r.released:
                    continue
                if all(self._ready.get(c, False) for c in r.conditions):
                    r.released = True
                    released.append(r)
                else:
                    waiting.append(r)
            self._registrations = waiting

        for r in released:
            logger.info(f"Gate released callback waiting on {list(r.conditions)}")
            r.callback()
