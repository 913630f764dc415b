"""
Reconciler Base - Abstract interface for reconcilers.

A reconciler drives one object, identified by a Request, toward its desired
state. It is invoked by a Controller whenever a watched object changes or a
previous invocation asked to be retried, and must be idempotent: invoking it
again against converged state does nothing.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from objects import Object, ObjectKey


@dataclass(frozen=True)
class Request:
    """Identifies the object to reconcile."""

    namespace: str
    name: str

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)

    @classmethod
    def for_object(cls, obj: Object) -> "Request":
        return cls(namespace=obj.metadata.namespace, name=obj.metadata.name)

    def __str__(self) -> str:
        return str(self.key)


@dataclass
class Result:
    """
    Result from a reconciler's reconcile() call.

    An empty Result means done: nothing happens until the next watch event.
    requeue_after (seconds) asks to be invoked again after a delay; requeue
    asks to be invoked again with the controller's backoff.
    """

    requeue: bool = False
    requeue_after: Optional[float] = None


class Reconciler(ABC):
    """Abstract base class for reconcilers."""

    @abstractmethod
    async def reconcile(self, request: Request) -> Result:
        """
        Reconcile a single object.

        Args:
            request: The object to reconcile.

        Returns:
            A Result saying whether, and when, to reconcile again.

        Raises:
            Exception: Any error is logged and retried with backoff.
        """
        pass
