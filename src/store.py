"""
Object Store - Versioned CRUD with optimistic concurrency.

The Store interface is what every reconciler talks to. Each object carries a
resource_version token; writes against a stale token fail with ConflictError
and writes against a missing object fail with NotFoundError.

Kinds registered with a status subresource persist status separately:
update() keeps the stored status and update_status() replaces only the
status. Deleting an object that still has finalizers only marks it for
deletion; it is removed once an update leaves it without finalizers.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from errors import AlreadyExistsError, ConflictError, NotFoundError, StoreError
from events import EventBus, EventType, ObjectEvent
from objects import (
    Object,
    ObjectKey,
    ResourceKind,
    Scheme,
    generate_name_suffix,
    utc_now,
)

logger = logging.getLogger(__name__)


def _not_found(kind: ResourceKind, key: ObjectKey) -> NotFoundError:
    return NotFoundError(f'{kind.kind} "{key}" not found')


class Store(ABC):
    """Abstract object store. Mutating calls update the passed object's metadata."""

    def __init__(self, scheme: Scheme, event_bus: Optional[EventBus] = None):
        self.scheme = scheme
        self.event_bus = event_bus

    @abstractmethod
    async def get(self, kind: ResourceKind, key: ObjectKey) -> Object:
        """Get an object by kind and key. Raises NotFoundError."""
        pass

    @abstractmethod
    async def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        match_labels: Optional[Dict[str, str]] = None,
    ) -> List[Object]:
        """
        List objects of a kind in store order.

        Args:
            kind: The kind to list.
            namespace: Only list objects in this namespace (None = all).
            match_labels: Only list objects carrying all of these labels.
        """
        pass

    @abstractmethod
    async def create(self, obj: Object) -> None:
        """Create an object. Raises AlreadyExistsError."""
        pass

    @abstractmethod
    async def update(self, obj: Object) -> None:
        """Update an object. Raises NotFoundError or ConflictError."""
        pass

    @abstractmethod
    async def update_status(self, obj: Object) -> None:
        """Update only an object's status. Raises NotFoundError or ConflictError."""
        pass

    @abstractmethod
    async def delete(self, obj: Object) -> None:
        """Delete (or mark for deletion) an object. Raises NotFoundError."""
        pass

    async def close(self) -> None:
        """Release any resources held by the store."""
        pass

    # ==================== Shared write semantics ====================

    def _prepare_create(self, obj: Object) -> None:
        if not self.scheme.is_registered(obj.resource_kind):
            raise StoreError(f"Kind {obj.resource_kind} is not registered")
        if not obj.metadata.name and not obj.metadata.generate_name:
            raise StoreError("name or generate_name is required")
        if not obj.metadata.name:
            obj.metadata.name = obj.metadata.generate_name + generate_name_suffix()
        obj.metadata.uid = str(uuid.uuid4())
        obj.metadata.resource_version = 1
        obj.metadata.creation_timestamp = utc_now()
        obj.metadata.deletion_timestamp = None

    def _check_version(self, current: Object, obj: Object) -> None:
        if obj.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError()

    def _merged_for_update(self, current: Object, obj: Object) -> Object:
        """Return the object to persist for update(obj) over current."""
        new = obj.model_copy(deep=True)
        new.metadata.uid = current.metadata.uid
        new.metadata.creation_timestamp = current.metadata.creation_timestamp
        new.metadata.deletion_timestamp = current.metadata.deletion_timestamp
        if self.scheme.has_status_subresource(current.resource_kind) and hasattr(
            current, "status"
        ):
            new.status = current.status.model_copy(deep=True)
        new.metadata.resource_version = current.metadata.resource_version + 1
        return new

    def _merged_for_status(self, current: Object, obj: Object) -> Object:
        """Return the object to persist for update_status(obj) over current."""
        new = current.model_copy(deep=True)
        if hasattr(obj, "status"):
            new.status = obj.status.model_copy(deep=True)
        new.metadata.resource_version = current.metadata.resource_version + 1
        return new

    @staticmethod
    def _is_finalized(obj: Object) -> bool:
        return obj.metadata.deletion_timestamp is not None and not obj.metadata.finalizers

    async def _publish(
        self, event_type: EventType, obj: Object, old: Optional[Object] = None
    ) -> None:
        if self.event_bus is None:
            return
        event = ObjectEvent(
            event_type=event_type,
            kind=obj.resource_kind,
            object=obj.model_copy(deep=True),
            old_object=old,
        )
        logger.debug(f"Publishing {event.to_log()}")
        await self.event_bus.publish(event)


class MemoryStore(Store):
    """
    In-process Store backed by an insertion-ordered dict.

    Reads return deep copies, so callers can never mutate stored state
    without going through a write.
    """

    def __init__(self, scheme: Scheme, event_bus: Optional[EventBus] = None):
        super().__init__(scheme, event_bus)
        self._objects: Dict[Tuple[ResourceKind, str, str], Object] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(kind: ResourceKind, namespace: str, name: str):
        return (kind, namespace, name)

    async def get(self, kind: ResourceKind, key: ObjectKey) -> Object:
        async with self._lock:
            current = self._objects.get(self._key(kind, key.namespace, key.name))
            if current is None:
                raise _not_found(kind, key)
            return current.model_copy(deep=True)

    async def list(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        match_labels: Optional[Dict[str, str]] = None,
    ) -> List[Object]:
        match_labels = match_labels or {}
        async with self._lock:
            items = []
            for (k, ns, _), obj in self._objects.items():
                if k != kind:
                    continue
                if namespace is not None and ns != namespace:
                    continue
                labels = obj.metadata.labels
                if any(labels.get(lk) != lv for lk, lv in match_labels.items()):
                    continue
                items.append(obj.model_copy(deep=True))
            return items

    async def create(self, obj: Object) -> None:
        async with self._lock:
            generated = not obj.metadata.name
            self._prepare_create(obj)
            kind = obj.resource_kind
            while generated and (
                self._key(kind, obj.metadata.namespace, obj.metadata.name)
                in self._objects
            ):
                obj.metadata.name = obj.metadata.generate_name + generate_name_suffix()
            k = self._key(kind, obj.metadata.namespace, obj.metadata.name)
            if k in self._objects:
                raise AlreadyExistsError(
                    f'{obj.kind} "{obj.key}" already exists'
                )
            self._objects[k] = obj.model_copy(deep=True)

        await self._publish(EventType.CREATED, obj)

    async def update(self, obj: Object) -> None:
        kind = obj.resource_kind
        k = self._key(kind, obj.metadata.namespace, obj.metadata.name)
        async with self._lock:
            current = self._objects.get(k)
            if current is None:
                raise _not_found(kind, obj.key)
            self._check_version(current, obj)
            new = self._merged_for_update(current, obj)
            finalized = self._is_finalized(new)
            if finalized:
                del self._objects[k]
            else:
                self._objects[k] = new

        obj.metadata.resource_version = new.metadata.resource_version
        event_type = EventType.DELETED if finalized else EventType.MODIFIED
        await self._publish(event_type, new, old=current)

    async def update_status(self, obj: Object) -> None:
        kind = obj.resource_kind
        k = self._key(kind, obj.metadata.namespace, obj.metadata.name)
        async with self._lock:
            current = self._objects.get(k)
            if current is None:
                raise _not_found(kind, obj.key)
            self._check_version(current, obj)
            new = self._merged_for_status(current, obj)
            self._objects[k] = new

        obj.metadata.resource_version = new.metadata.resource_version
        await self._publish(EventType.MODIFIED, new, old=current)

    async def delete(self, obj: Object) -> None:
        kind = obj.resource_kind
        k = self._key(kind, obj.metadata.namespace, obj.metadata.name)
        async with self._lock:
            current = self._objects.get(k)
            if current is None:
                raise _not_found(kind, obj.key)
            if obj.metadata.resource_version is not None:
                self._check_version(current, obj)

            if current.metadata.finalizers:
                new = current.model_copy(deep=True)
                if new.metadata.deletion_timestamp is None:
                    new.metadata.deletion_timestamp = utc_now()
                    new.metadata.resource_version += 1
                self._objects[k] = new
                event_type = EventType.MODIFIED
            else:
                new = current
                del self._objects[k]
                event_type = EventType.DELETED

        obj.metadata.deletion_timestamp = new.metadata.deletion_timestamp
        obj.metadata.resource_version = new.metadata.resource_version
        await self._publish(event_type, new, old=current)
