"""
Claim Scheduling Reconciler - Assigns a class to claims by label selector.

Claims that carry a class selector but no class reference are assigned a
class chosen at random among those matching the selector. Like defaulting,
several schedulers may race for a claim; the first write wins.
"""

import logging
from typing import List

from controller import (
    Controller,
    Manager,
    all_of,
    has_class_selector,
    has_no_class_reference,
    has_no_managed_resource_reference,
)
from errors import wrap
from objects import Claim, Object, ResourceKind
from reconcilers.base import Request, Result
from reconcilers.claimdefaulting import ERR_LIST_CLASSES, ClaimDefaultingReconciler

logger = logging.getLogger(__name__)


def controller_name(kind: str) -> str:
    return "claimscheduling/" + kind.lower()


class ClaimSchedulingReconciler(ClaimDefaultingReconciler):
    """Sets the class reference of claims to a class matching their selector."""

    async def candidates(self, claim: Claim) -> List[Object]:
        selector = claim.get_class_selector()
        match_labels = selector.match_labels if selector is not None else {}
        try:
            return await self.store.list(self.class_kind, match_labels=match_labels)
        except Exception as e:
            raise wrap(e, ERR_LIST_CLASSES)

    def no_candidates(self, request: Request) -> Result:
        # The claim is reconciled again when it, or its selector, changes.
        logger.debug(f"No {self.class_kind.kind} matches the selector of {request}")
        return Result()


def setup(
    manager: Manager,
    claim_kind: ResourceKind,
    class_kind: ResourceKind,
    requires=(),
    **options,
) -> Controller:
    """Add a claim scheduling controller to the manager."""
    options.setdefault("max_jitter_ms", manager.config.defaulting_max_jitter_ms)
    r = ClaimSchedulingReconciler(manager.store, claim_kind, class_kind, **options)
    name = f"{controller_name(claim_kind.kind)}/{class_kind.kind.lower()}"
    return manager.new_controller(name, r, *requires).watch(
        claim_kind,
        predicate=all_of(
            has_class_selector(),
            has_no_class_reference(),
            has_no_managed_resource_reference(),
        ),
    )
