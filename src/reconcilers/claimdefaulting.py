"""
Claim Defaulting Reconciler - Assigns a default class to claims.

Claims created without a class reference or a class selector get one of
the classes annotated as default. Several defaulting reconcilers (one per
claim kind and class kind pair) may race to default the same claim; each
picks at random among its defaults and waits a random jitter before
writing, so competing reconcilers rarely write at the same time. Whichever
write lands first wins and the losers see a version conflict, which is not
an error: the claim has a class.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional

from controller import (
    Controller,
    Manager,
    all_of,
    has_no_class_reference,
    has_no_class_selector,
    has_no_managed_resource_reference,
)
from errors import is_conflict, is_not_found, wrap
from objects import Claim, Object, ResourceKind, is_default_class, reference_to
from reconcilers.base import Reconciler, Request, Result
from store import Store

logger = logging.getLogger(__name__)

MAX_JITTER_MS = 1500
SHORT_WAIT = 30.0

ERR_GET_CLAIM = "cannot get resource claim"
ERR_UPDATE_CLAIM = "cannot update resource claim"
ERR_LIST_CLASSES = "cannot list resource classes"

Jitterer = Callable[[], Awaitable[None]]


def controller_name(kind: str) -> str:
    return "claimdefaulting/" + kind.lower()


class ClaimDefaultingReconciler(Reconciler):
    """Sets the class reference of claims that have none to a default class."""

    def __init__(
        self,
        store: Store,
        claim_kind: ResourceKind,
        class_kind: ResourceKind,
        jitterer: Optional[Jitterer] = None,
        rng: Optional[random.Random] = None,
        max_jitter_ms: int = MAX_JITTER_MS,
        short_wait: float = SHORT_WAIT,
    ):
        self.store = store
        store.scheme.model_for(claim_kind)
        store.scheme.model_for(class_kind)
        self.claim_kind = claim_kind
        self.class_kind = class_kind
        self.random = rng or random.Random()
        self.max_jitter_ms = max_jitter_ms
        self.jitter = jitterer or self._sleep_jitter
        self.short_wait = short_wait

    async def _sleep_jitter(self) -> None:
        await asyncio.sleep(self.random.uniform(0, self.max_jitter_ms) / 1000)

    async def candidates(self, claim: Claim) -> List[Object]:
        """Return the classes the claim may be assigned."""
        try:
            classes = await self.store.list(self.class_kind)
        except Exception as e:
            raise wrap(e, ERR_LIST_CLASSES)
        return [c for c in classes if is_default_class(c)]

    def no_candidates(self, request: Request) -> Result:
        logger.debug(f"No default {self.class_kind.kind} found for {request}")
        return Result(requeue_after=self.short_wait)

    async def reconcile(self, request: Request) -> Result:
        logger.debug(f"Reconciling claim {request}")

        try:
            claim = await self.store.get(self.claim_kind, request.key)
        except Exception as e:
            if is_not_found(e):
                return Result()
            raise wrap(e, ERR_GET_CLAIM)

        if claim.get_class_reference() is not None:
            logger.debug(f"Class of claim {request} is already set")
            return Result()
        if claim.get_resource_reference() is not None:
            logger.debug(f"Claim {request} already references a managed resource")
            return Result()

        classes = await self.candidates(claim)
        if not classes:
            return self.no_candidates(request)

        selected = self.random.choice(classes)
        claim.set_class_reference(reference_to(selected))

        await self.jitter()

        try:
            await self.store.update(claim)
        except Exception as e:
            if is_conflict(e):
                logger.debug(f"Claim {request} was changed by another writer")
                return Result()
            raise wrap(e, ERR_UPDATE_CLAIM)

        logger.info(
            f"Set class of claim {request} to {self.class_kind.kind} "
            f"{selected.metadata.name}"
        )
        return Result()


def setup(
    manager: Manager,
    claim_kind: ResourceKind,
    class_kind: ResourceKind,
    requires=(),
    **options,
) -> Controller:
    """Add a claim defaulting controller to the manager."""
    options.setdefault("short_wait", manager.config.short_wait)
    options.setdefault("max_jitter_ms", manager.config.defaulting_max_jitter_ms)
    r = ClaimDefaultingReconciler(manager.store, claim_kind, class_kind, **options)
    name = f"{controller_name(claim_kind.kind)}/{class_kind.kind.lower()}"
    return manager.new_controller(name, r, *requires).watch(
        claim_kind,
        predicate=all_of(
            has_no_class_reference(),
            has_no_class_selector(),
            has_no_managed_resource_reference(),
        ),
    )
