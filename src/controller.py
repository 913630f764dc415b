"""
Controller Runtime - Watch-driven reconciliation loops.

Similar to Kubernetes controllers, a Controller watches object events on the
EventBus, maps each event to reconcile Requests and feeds them to a
Reconciler. Requests are de-duplicated per key and at most one reconcile per
key is in flight at a time; different keys are reconciled concurrently up to
max_concurrent_reconciles. Failed reconciles are retried with exponential
backoff and jitter.

The Manager owns the store, event bus and readiness gate shared by all
controllers in a process, and starts each controller once the kinds it
depends on are ready.
"""

import asyncio
import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from config import ControllerConfig
from events import EventBus, ObjectEvent
from gate import Gate
from objects import (
    ANNOTATION_DELIMITER,
    ANNOTATION_PROPAGATE_TO_PREFIX,
    ClaimReferencer,
    ClassReferencer,
    ClassSelector,
    ManagedResourceReferencer,
    Object,
    ResourceKind,
)
from reconcilers.base import Reconciler, Request
from store import Store

logger = logging.getLogger(__name__)

Mapper = Callable[[Object], List[Request]]
Predicate = Callable[[Object], bool]


# ==================== Enqueue mappers ====================


def enqueue_for_object(obj: Object) -> List[Request]:
    """Enqueue a request for the object itself."""
    return [Request.for_object(obj)]


def enqueue_for_claim(obj: Object) -> List[Request]:
    """Enqueue a request for the claim an object references, if any."""
    if not isinstance(obj, ClaimReferencer):
        return []
    ref = obj.get_claim_reference()
    if ref is None:
        return []
    return [Request(namespace=ref.namespace, name=ref.name)]


def enqueue_for_propagated(obj: Object) -> List[Request]:
    """Enqueue a request for every secret an object propagates to."""
    requests = []
    for key, value in obj.metadata.annotations.items():
        if not key.startswith(ANNOTATION_PROPAGATE_TO_PREFIX):
            continue
        parts = value.split(ANNOTATION_DELIMITER)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            continue
        requests.append(Request(namespace=parts[0], name=parts[1]))
    return requests


# ==================== Predicates ====================


def _reference_kind_matches(ref, kind: ResourceKind) -> bool:
    if ref is None:
        return False
    return ResourceKind.from_api_version(ref.api_version, ref.kind) == kind


def has_class_reference_kind(kind: ResourceKind) -> Predicate:
    """Accept objects that reference a class of the supplied kind."""

    def predicate(obj: Object) -> bool:
        if not isinstance(obj, ClassReferencer):
            return False
        return _reference_kind_matches(obj.get_class_reference(), kind)

    return predicate


def has_managed_resource_reference_kind(kind: ResourceKind) -> Predicate:
    """Accept objects that reference a managed resource of the supplied kind."""

    def predicate(obj: Object) -> bool:
        if not isinstance(obj, ManagedResourceReferencer):
            return False
        return _reference_kind_matches(obj.get_resource_reference(), kind)

    return predicate


def has_no_managed_resource_reference() -> Predicate:
    """Accept objects that do not reference a managed resource."""

    def predicate(obj: Object) -> bool:
        if not isinstance(obj, ManagedResourceReferencer):
            return False
        return obj.get_resource_reference() is None

    return predicate


def has_no_class_reference() -> Predicate:
    def predicate(obj: Object) -> bool:
        if not isinstance(obj, ClassReferencer):
            return False
        return obj.get_class_reference() is None

    return predicate


def has_class_selector() -> Predicate:
    def predicate(obj: Object) -> bool:
        if not isinstance(obj, ClassSelector):
            return False
        return obj.get_class_selector() is not None

    return predicate


def has_no_class_selector() -> Predicate:
    def predicate(obj: Object) -> bool:
        if not isinstance(obj, ClassSelector):
            return False
        return obj.get_class_selector() is None

    return predicate


def any_of(*predicates: Predicate) -> Predicate:
    return lambda obj: any(p(obj) for p in predicates)


def all_of(*predicates: Predicate) -> Predicate:
    return lambda obj: all(p(obj) for p in predicates)


# ==================== Controller ====================


@dataclass
class Watch:
    """Maps events for one kind to reconcile requests."""

    kind: ResourceKind
    mapper: Mapper = enqueue_for_object
    predicate: Optional[Predicate] = None

    def requests_for_object(self, obj: Object) -> List[Request]:
        if self.predicate is not None and not self.predicate(obj):
            return []
        return list(self.mapper(obj))

    def requests_for(self, event: ObjectEvent) -> List[Request]:
        if self.predicate is not None and not self.predicate(event.object):
            return []
        requests = list(self.mapper(event.object))
        if event.old_object is not None:
            for r in self.mapper(event.old_object):
                if r not in requests:
                    requests.append(r)
        return requests


class Controller:
    """
    Runs a Reconciler for requests produced by its watches.

    A request that is added while it is being reconciled is marked dirty and
    reconciled again once the in-flight reconcile finishes.
    """

    def __init__(
        self,
        name: str,
        reconciler: Reconciler,
        event_bus: EventBus,
        config: Optional[ControllerConfig] = None,
        store: Optional[Store] = None,
    ):
        self.name = name
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.running = False
        self._event_bus = event_bus
        self._store = store
        self._watches: List[Watch] = []

        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[Request] = set()
        self._processing: Set[Request] = set()
        self._dirty: Set[Request] = set()
        self._failures: Dict[Request, int] = {}
        self._timers: Dict[Request, asyncio.TimerHandle] = {}

        self._subscriptions: List[str] = []
        self._tasks: List[asyncio.Task] = []

    def watch(
        self,
        kind: ResourceKind,
        mapper: Mapper = enqueue_for_object,
        predicate: Optional[Predicate] = None,
    ) -> "Controller":
        """Add a watch; must be called before start()."""
        self._watches.append(Watch(kind=kind, mapper=mapper, predicate=predicate))
        return self

    def add(self, request: Request) -> None:
        """Enqueue a request for immediate reconciliation."""
        if request in self._queued:
            return
        if request in self._processing:
            self._dirty.add(request)
            return
        self._queued.add(request)
        self._queue.put_nowait(request)

    def add_after(self, request: Request, delay: float) -> None:
        """Enqueue a request after a delay in seconds."""
        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._timers.get(request)
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()
        self._timers[request] = loop.call_at(when, self._fire_timer, request)

    def _fire_timer(self, request: Request) -> None:
        self._timers.pop(request, None)
        if self.running:
            self.add(request)

    def backoff_delay(self, failures: int) -> float:
        """
        Return the retry delay after a number of consecutive failures.

        Args:
            failures: Consecutive failures before this one (0 for the first).

        Returns:
            min(base * 2^failures, max) with ±jitter applied.
        """
        delay = min(
            self.config.backoff_base_delay * (2**failures),
            self.config.backoff_max_delay,
        )
        jitter = delay * self.config.backoff_jitter_factor
        return max(0.0, delay + random.uniform(-jitter, jitter))

    def queue_length(self) -> int:
        return len(self._queued)

    async def start(self) -> None:
        """Subscribe to watched kinds and start the workers."""
        if self.running:
            return
        logger.info(f"Starting controller {self.name}")
        self.running = True

        for w in self._watches:
            subscriber_id, subscription = await self._event_bus.subscribe(
                lambda event, kind=w.kind: event.kind == kind
            )
            self._subscriptions.append(subscriber_id)
            self._tasks.append(asyncio.create_task(self._watch_loop(w, subscription)))

        if self._store is not None:
            await self._sync()
            if self.config.resync_interval > 0:
                self._tasks.append(asyncio.create_task(self._resync_loop()))

        for _ in range(self.config.max_concurrent_reconciles):
            self._tasks.append(asyncio.create_task(self._worker()))

    async def stop(self) -> None:
        """Stop watching and cancel in-flight work."""
        if not self.running:
            return
        logger.info(f"Stopping controller {self.name}")
        self.running = False

        for subscriber_id in self._subscriptions:
            await self._event_bus.unsubscribe(subscriber_id)
        self._subscriptions.clear()

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _sync(self) -> None:
        """Enqueue requests for every existing object of the watched kinds."""
        for w in self._watches:
            for obj in await self._store.list(w.kind):
                for request in w.requests_for_object(obj):
                    self.add(request)

    async def _resync_loop(self) -> None:
        """
        Periodically re-list every watched kind.

        Catches writes whose events never reach this process's event bus,
        such as objects applied from another process sharing the database.
        """
        while self.running:
            await asyncio.sleep(self.config.resync_interval)
            try:
                await self._sync()
            except Exception as e:
                logger.error(f"{self.name}: error resyncing: {e}", exc_info=True)

    async def _watch_loop(self, w: Watch, subscription) -> None:
        async for event in subscription:
            for request in w.requests_for(event):
                logger.debug(f"{self.name}: {event.to_log()} enqueued {request}")
                self.add(request)

    async def _worker(self) -> None:
        while self.running:
            request = await self._queue.get()
            self._queued.discard(request)
            self._processing.add(request)
            try:
                await self.reconcile_request(request)
            finally:
                self._processing.discard(request)
                if request in self._dirty:
                    self._dirty.discard(request)
                    self.add(request)

    async def reconcile_request(self, request: Request) -> None:
        """Reconcile one request and schedule any requeue it asks for."""
        try:
            result = await asyncio.wait_for(
                self.reconciler.reconcile(request),
                timeout=self.config.reconcile_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"{self.name}: reconcile of {request} timed out after "
                f"{self.config.reconcile_timeout}s"
            )
            self._retry(request)
            return
        except Exception as e:
            logger.error(f"{self.name}: error reconciling {request}: {e}", exc_info=True)
            self._retry(request)
            return

        self._failures.pop(request, None)
        if result.requeue_after:
            self.add_after(request, result.requeue_after)
        elif result.requeue:
            self._retry(request)

    def _retry(self, request: Request) -> None:
        failures = self._failures.get(request, 0)
        self._failures[request] = failures + 1
        delay = self.backoff_delay(failures)
        logger.debug(f"{self.name}: retrying {request} in {delay:.2f}s")
        self.add_after(request, delay)


# ==================== Manager ====================


class Manager:
    """
    Owns the components shared by every controller in a process.

    Controllers added with required kinds are started only once the gate
    reports all of those kinds ready.
    """

    def __init__(
        self,
        store: Store,
        event_bus: EventBus,
        gate: Optional[Gate] = None,
        config: Optional[ControllerConfig] = None,
    ):
        self.store = store
        self.scheme = store.scheme
        self.event_bus = event_bus
        self.gate = gate if gate is not None else Gate()
        self.config = config or ControllerConfig()
        self.running = False

        self._controllers: Dict[str, Controller] = {}
        self._startable: List[Controller] = []
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._start_tasks: List[asyncio.Task] = []

    def new_controller(
        self, name: str, reconciler: Reconciler, *requires: ResourceKind
    ) -> Controller:
        """
        Create and add a controller.

        Args:
            name: Unique controller name.
            reconciler: The reconciler the controller runs.
            *requires: Kinds that must be ready before the controller starts.

        Returns:
            The controller, so watches can be added to it.

        Raises:
            ValueError: If a controller with the same name already exists.
        """
        if name in self._controllers:
            raise ValueError(f"Controller '{name}' already exists")
        controller = Controller(
            name, reconciler, self.event_bus, self.config, store=self.store
        )
        self._controllers[name] = controller
        if requires:
            logger.info(f"Controller {name} waiting on {[str(k) for k in requires]}")
            self.gate.register(lambda: self._release(controller), *requires)
        else:
            self._release(controller)
        return controller

    def get_controller(self, name: str) -> Optional[Controller]:
        return self._controllers.get(name)

    def list_controllers(self) -> List[str]:
        return list(self._controllers)

    def _release(self, controller: Controller) -> None:
        # May be called from any thread by the gate.
        with self._lock:
            loop = self._loop
            if loop is None:
                self._startable.append(controller)
                return
        loop.call_soon_threadsafe(self._spawn_start, controller)

    def _spawn_start(self, controller: Controller) -> None:
        self._start_tasks.append(asyncio.create_task(controller.start()))

    async def start(self) -> None:
        """Start every controller whose required kinds are ready."""
        logger.info("Starting controller manager")
        with self._lock:
            self._loop = asyncio.get_running_loop()
            startable, self._startable = self._startable, []
        self.running = True
        for controller in startable:
            await controller.start()

    async def stop(self) -> None:
        """Stop every controller."""
        logger.info("Stopping controller manager")
        self.running = False
        with self._lock:
            self._loop = None
        for task in self._start_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._start_tasks, return_exceptions=True)
        self._start_tasks.clear()
        for controller in self._controllers.values():
            try:
                await controller.stop()
            except Exception as e:
                logger.error(f"Error stopping controller '{controller.name}': {e}")
