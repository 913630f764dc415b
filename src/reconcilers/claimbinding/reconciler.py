"""
Claim Binding Reconciler - Binds resource claims to managed resources.

Each reconcile re-evaluates one (claim, managed resource) pair from scratch:
it dynamically provisions a managed resource from the claim's class when
none exists yet, binds the claim once the managed resource is bindable,
propagates its connection secret, and unbinds (and possibly deletes) the
managed resource when the claim is deleted.

Every path reports progress through the claim's conditions. The claim's
status is only written when it changed, so reconciling a converged pair
performs no writes at all.
"""

import logging
from typing import List, Optional

from errors import is_not_found, wrap
from objects import (
    BindingStatus,
    Claim,
    Managed,
    ResourceKind,
    available,
    binding,
    creating,
    deleting,
    is_bindable,
    is_bound,
    reconcile_error,
    reconcile_success,
    was_created,
    was_deleted,
)
from reconcilers.base import Reconciler, Request, Result
from reconcilers.claimbinding.api import (
    APIClaimFinalizer,
    APIManagedConnectionPropagator,
    APIManagedCreator,
    APIStatusBinder,
)
from reconcilers.claimbinding.configurator import (
    ConfiguratorChain,
    ManagedConfigurator,
    default_configurators,
)
from store import Store

logger = logging.getLogger(__name__)

CLAIM_FINALIZER_NAME = "finalizer.resourceclaim.tether.io"

# Requeue delay for claims waiting on something we do not watch
SHORT_WAIT = 30.0

ERR_GET_CLAIM = "cannot get resource claim"
ERR_UPDATE_CLAIM_STATUS = "cannot update resource claim status"


def controller_name(claim_kind: str, managed_kind: str) -> str:
    """Return the name of the controller binding claim_kind to managed_kind."""
    return f"claimbinding/{claim_kind.lower()}/{managed_kind.lower()}"


class ClaimBindingReconciler(Reconciler):
    """
    Reconciles claims of one kind by binding them to managed resources of
    one kind, dynamically provisioned using classes of one kind.

    Each claim kind needs one reconciler per managed resource kind it can
    bind to; watch predicates keep each reconciler to its own subset of
    claims.
    """

    def __init__(
        self,
        store: Store,
        claim_kind: ResourceKind,
        class_kind: ResourceKind,
        managed_kind: ResourceKind,
        managed_configurators: Optional[List[ManagedConfigurator]] = None,
        managed_creator=None,
        connection_propagator=None,
        binder=None,
        claim_finalizer=None,
        short_wait: float = SHORT_WAIT,
    ):
        self.store = store
        self.scheme = store.scheme

        # Fail early for kinds the scheme does not know about.
        for kind in (claim_kind, class_kind, managed_kind):
            self.scheme.model_for(kind)

        self.claim_kind = claim_kind
        self.class_kind = class_kind
        self.managed_kind = managed_kind
        self.short_wait = short_wait

        if managed_configurators is None:
            managed_configurators = default_configurators()
        self.configure = ConfiguratorChain(managed_configurators)
        self.creator = managed_creator or APIManagedCreator(store)
        self.propagator = connection_propagator or APIManagedConnectionPropagator(
            store
        )
        self.binder = binder or APIStatusBinder(store)
        self.finalizer = claim_finalizer or APIClaimFinalizer(
            store, CLAIM_FINALIZER_NAME
        )

    async def _update_status(
        self, claim: Claim, observed: BindingStatus, result: Result
    ) -> Result:
        if claim.status == observed:
            return result
        try:
            await self.store.update_status(claim)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_CLAIM_STATUS)
        return result

    async def reconcile(self, request: Request) -> Result:
        logger.debug(f"Reconciling claim {request}")

        try:
            claim = await self.store.get(self.claim_kind, request.key)
        except Exception as e:
            if is_not_found(e):
                return Result()
            raise wrap(e, ERR_GET_CLAIM)

        observed = claim.status.model_copy(deep=True)
        wait = Result(requeue_after=self.short_wait)

        managed: Managed = self.scheme.new(self.managed_kind)
        managed_found = False
        ref = claim.get_resource_reference()
        if ref is not None:
            try:
                managed = await self.store.get(self.managed_kind, ref.key)
                managed_found = True
            except Exception as e:
                if not is_not_found(e):
                    logger.debug(f"Cannot get managed resource of {request}: {e}")
                    claim.set_conditions(reconcile_error(e))
                    return await self._update_status(claim, observed, wait)
                if not was_deleted(claim):
                    # Referenced resources may not exist yet; nothing enqueues
                    # this claim when they appear, so poll.
                    logger.debug(f"Managed resource {ref.key} of {request} not found")
                    claim.set_conditions(binding(), reconcile_success())
                    return await self._update_status(claim, observed, wait)

        if was_deleted(claim):
            if managed_found:
                try:
                    await self.binder.unbind(claim, managed)
                except Exception as e:
                    logger.debug(f"Cannot unbind claim {request}: {e}")
                    claim.set_conditions(deleting(), reconcile_error(e))
                    return await self._update_status(claim, observed, wait)
                logger.info(f"Unbound claim {request} from {managed.kind} {managed.key}")

            try:
                await self.finalizer.remove_finalizer(claim)
            except Exception as e:
                logger.debug(f"Cannot remove finalizer of claim {request}: {e}")
                claim.set_conditions(deleting(), reconcile_error(e))
                return await self._update_status(claim, observed, wait)

            # Without its finalizer the claim is gone; there is no status to write.
            logger.debug(f"Finalized claim {request}")
            return Result()

        class_ref = claim.get_class_reference()
        if not was_created(managed) and class_ref is not None:
            try:
                cls = await self.store.get(self.class_kind, class_ref.key)
                self.configure(claim, cls, managed)
                await self.creator.create(claim, cls, managed)
                await self.finalizer.add_finalizer(claim)
            except Exception as e:
                logger.debug(f"Cannot create managed resource for {request}: {e}")
                claim.set_conditions(creating(), reconcile_error(e))
                return await self._update_status(claim, observed, wait)
            logger.info(
                f"Created {managed.kind} {managed.key} for claim {request} "
                f"using class {class_ref.name}"
            )

        if not is_bindable(managed) and not is_bound(managed):
            logger.debug(f"Managed resource of {request} is not yet bindable")
            claim.set_conditions(binding(), reconcile_success())
            if managed.get_claim_reference() is None:
                # Static provisioning: the managed resource cannot enqueue this
                # claim until binding sets its claim reference.
                return await self._update_status(claim, observed, wait)
            return await self._update_status(claim, observed, Result())

        if is_bindable(managed):
            try:
                await self.propagator.propagate_connection(claim, managed)
            except Exception as e:
                logger.warning(f"Cannot propagate connection of {request}: {e}")
                claim.set_conditions(binding(), reconcile_error(e))
                return await self._update_status(claim, observed, wait)

            try:
                await self.finalizer.add_finalizer(claim)
            except Exception as e:
                logger.debug(f"Cannot add finalizer to claim {request}: {e}")
                claim.set_conditions(creating(), reconcile_error(e))
                return await self._update_status(claim, observed, wait)

            try:
                await self.binder.bind(claim, managed)
            except Exception as e:
                logger.warning(f"Cannot bind claim {request}: {e}")
                claim.set_conditions(binding(), reconcile_error(e))
                return await self._update_status(claim, observed, wait)

            logger.info(f"Bound claim {request} to {managed.kind} {managed.key}")

        claim.set_conditions(available(), reconcile_success())
        return await self._update_status(claim, observed, Result())
