"""
Store-backed collaborators of the claim binding reconciler.

Each collaborator performs one step of binding a claim to a managed
resource and wraps any failure under a static message naming that step.
"""

import logging

from errors import (
    BindControlledError,
    BindMismatchError,
    SecretConflictError,
    UnbindMismatchError,
    ignore_not_found,
    is_not_found,
    wrap,
)
from objects import (
    SECRET_KIND,
    BindingPhase,
    Claim,
    Managed,
    ObjectKey,
    ObjectMeta,
    ReclaimPolicy,
    ResourceClass,
    Secret,
    add_finalizer,
    allow_propagation,
    as_controller,
    get_controller_of,
    get_external_name,
    reference_to,
    references_equal,
    remove_finalizer,
    set_external_name,
)
from store import Store

logger = logging.getLogger(__name__)

ERR_CREATE_MANAGED = "cannot create managed resource"
ERR_UPDATE_CLAIM = "cannot update resource claim"
ERR_UPDATE_MANAGED = "cannot update managed resource"
ERR_UPDATE_MANAGED_STATUS = "cannot update managed resource status"
ERR_DELETE_MANAGED = "cannot delete managed resource"
ERR_UPDATE_OBJECT = "cannot update object"
ERR_GET_SECRET = "cannot get managed resource's connection secret"
ERR_CREATE_OR_UPDATE_SECRET = "cannot create or update connection secret"
ERR_UPDATE_SECRET = "cannot update connection secret"


class APIManagedCreator:
    """Creates a managed resource and points its claim at it."""

    def __init__(self, store: Store):
        self.store = store

    async def create(self, claim: Claim, cls: ResourceClass, mg: Managed) -> None:
        mg.set_claim_reference(reference_to(claim))
        mg.set_class_reference(reference_to(cls))
        try:
            await self.store.create(mg)
        except Exception as e:
            raise wrap(e, ERR_CREATE_MANAGED)

        claim.set_resource_reference(reference_to(mg))
        try:
            await self.store.update(claim)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_CLAIM)


class APIBinder:
    """
    Binds and unbinds claims and managed resources, persisting the managed
    resource's binding phase along with the rest of the object.
    """

    def __init__(self, store: Store):
        self.store = store

    def _check_bind(self, claim: Claim, mg: Managed) -> None:
        if get_controller_of(mg) is not None:
            raise BindControlledError()
        ref = mg.get_claim_reference()
        if ref is not None and not references_equal(reference_to(claim), ref):
            raise BindMismatchError()

    async def _propagate_external_name(self, claim: Claim, mg: Managed) -> None:
        if not get_external_name(mg):
            return
        set_external_name(claim, get_external_name(mg))
        try:
            await self.store.update(claim)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_CLAIM)

    async def _delete_if_reclaimed(self, mg: Managed) -> None:
        # An unset policy defaults to Delete.
        if (mg.get_reclaim_policy() or ReclaimPolicy.DELETE) != ReclaimPolicy.DELETE:
            return
        try:
            await self.store.delete(mg)
        except Exception as e:
            if ignore_not_found(e) is not None:
                raise wrap(e, ERR_DELETE_MANAGED)
            return
        logger.info(f"Deleted released {mg.kind} {mg.key}")

    async def bind(self, claim: Claim, mg: Managed) -> None:
        """
        Bind a claim to a managed resource.

        Raises:
            BindControlledError: If the managed resource has a controller.
            BindMismatchError: If it references a different claim.
            TetherError: If either object cannot be persisted.
        """
        self._check_bind(claim, mg)

        claim.set_binding_phase(BindingPhase.BOUND)
        mg.set_claim_reference(reference_to(claim))
        mg.set_binding_phase(BindingPhase.BOUND)
        try:
            await self.store.update(mg)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_MANAGED)

        await self._propagate_external_name(claim, mg)

    async def unbind(self, claim: Claim, mg: Managed) -> None:
        """
        Release a managed resource from its claim, deleting it if its
        reclaim policy is Delete.

        Raises:
            UnbindMismatchError: If it does not reference the claim.
            TetherError: If the managed resource cannot be persisted.
        """
        if not references_equal(reference_to(claim), mg.get_claim_reference()):
            raise UnbindMismatchError()

        mg.set_binding_phase(BindingPhase.RELEASED)
        mg.set_claim_reference(None)
        try:
            await self.store.update(mg)
        except Exception as e:
            if is_not_found(e):
                return
            raise wrap(e, ERR_UPDATE_MANAGED)

        await self._delete_if_reclaimed(mg)


class APIStatusBinder(APIBinder):
    """
    Binds and unbinds claims and managed resources whose kind persists
    status separately, writing the binding phase with a second status-only
    update.
    """

    async def bind(self, claim: Claim, mg: Managed) -> None:
        self._check_bind(claim, mg)

        claim.set_binding_phase(BindingPhase.BOUND)
        mg.set_claim_reference(reference_to(claim))
        try:
            await self.store.update(mg)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_MANAGED)

        mg.set_binding_phase(BindingPhase.BOUND)
        try:
            await self.store.update_status(mg)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_MANAGED_STATUS)

        await self._propagate_external_name(claim, mg)

    async def unbind(self, claim: Claim, mg: Managed) -> None:
        if not references_equal(reference_to(claim), mg.get_claim_reference()):
            raise UnbindMismatchError()

        mg.set_claim_reference(None)
        try:
            await self.store.update(mg)
        except Exception as e:
            if is_not_found(e):
                return
            raise wrap(e, ERR_UPDATE_MANAGED)

        mg.set_binding_phase(BindingPhase.RELEASED)
        try:
            await self.store.update_status(mg)
        except Exception as e:
            if is_not_found(e):
                return
            raise wrap(e, ERR_UPDATE_MANAGED_STATUS)

        await self._delete_if_reclaimed(mg)


class APIClaimFinalizer:
    """Adds and removes a finalizer on claims."""

    def __init__(self, store: Store, finalizer: str):
        self.store = store
        self.finalizer = finalizer

    async def add_finalizer(self, claim: Claim) -> None:
        if not add_finalizer(claim, self.finalizer):
            return
        try:
            await self.store.update(claim)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_OBJECT)

    async def remove_finalizer(self, claim: Claim) -> None:
        if not remove_finalizer(claim, self.finalizer):
            return
        try:
            await self.store.update(claim)
        except Exception as e:
            if ignore_not_found(e) is not None:
                raise wrap(e, ERR_UPDATE_OBJECT)


class APIManagedConnectionPropagator:
    """
    Propagates a managed resource's connection secret to the secret its
    claim asks to be written to.

    The managed resource must control its secret and the claim controls the
    propagated copy. Both secrets are annotated so the secret reconciler
    keeps the copy in sync afterwards.
    """

    def __init__(self, store: Store):
        self.store = store

    async def propagate_connection(self, claim: Claim, mg: Managed) -> None:
        to_ref = claim.get_write_connection_secret_to_reference()
        from_ref = mg.get_write_connection_secret_to_reference()
        if to_ref is None or from_ref is None:
            return

        try:
            from_secret = await self.store.get(
                SECRET_KIND, ObjectKey(namespace=from_ref.namespace, name=from_ref.name)
            )
        except Exception as e:
            raise wrap(e, ERR_GET_SECRET)

        controller = get_controller_of(from_secret)
        if controller is None or controller.uid != mg.metadata.uid:
            raise SecretConflictError()

        try:
            to_secret = await self._apply_claim_secret(claim, to_ref.name, from_secret)
        except Exception as e:
            raise wrap(e, ERR_CREATE_OR_UPDATE_SECRET)

        before_to = dict(to_secret.metadata.annotations)
        before_from = dict(from_secret.metadata.annotations)
        allow_propagation(from_secret, to_secret)

        try:
            if to_secret.metadata.annotations != before_to:
                await self.store.update(to_secret)
            if from_secret.metadata.annotations != before_from:
                await self.store.update(from_secret)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_SECRET)

        logger.debug(
            f"Propagated connection secret {from_secret.key} to {to_secret.key}"
        )

    async def _apply_claim_secret(
        self, claim: Claim, name: str, from_secret: Secret
    ) -> Secret:
        """Create or update the claim's secret, refusing to take over another's."""
        key = ObjectKey(namespace=claim.metadata.namespace, name=name)
        owner = as_controller(reference_to(claim))
        try:
            existing = await self.store.get(SECRET_KIND, key)
        except Exception as e:
            if not is_not_found(e):
                raise
            secret = Secret(
                api_version=SECRET_KIND.api_version,
                kind=SECRET_KIND.kind,
                metadata=ObjectMeta(
                    namespace=key.namespace, name=key.name, owner_references=[owner]
                ),
                type=from_secret.type,
                data=dict(from_secret.data),
            )
            await self.store.create(secret)
            return secret

        controller = get_controller_of(existing)
        if controller is not None and controller.uid != claim.metadata.uid:
            raise SecretConflictError()

        changed = False
        if controller is None:
            existing.metadata.owner_references.append(owner)
            changed = True
        if existing.data != from_secret.data:
            existing.data = dict(from_secret.data)
            changed = True
        if changed:
            await self.store.update(existing)
        return existing
