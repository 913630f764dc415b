"""
Secret Propagation Reconciler - Keeps propagated secrets in sync.

A propagated (target) secret names its source by namespace, name and uid
in its propagate-from annotations. A propagating (source) secret lists each
of its consumers by uid in its propagate-to annotations. Data is copied
only when both sides agree; otherwise propagation is refused and the
reconciler waits for the annotations to be fixed.
"""

import logging

from controller import Controller, Manager, enqueue_for_object, enqueue_for_propagated
from errors import (
    PropagationNotAllowedError,
    UnexpectedFromUIDError,
    UnexpectedToUIDError,
    is_not_found,
    wrap,
)
from objects import (
    ANNOTATION_PROPAGATE_FROM_NAME,
    ANNOTATION_PROPAGATE_FROM_NAMESPACE,
    ANNOTATION_PROPAGATE_FROM_UID,
    SECRET_KIND,
    Object,
    ObjectKey,
    Secret,
    propagate_to_annotation_key,
)
from reconcilers.base import Reconciler, Request, Result
from store import Store

logger = logging.getLogger(__name__)

ERR_GET_SECRET = "cannot get managed resource's connection secret"
ERR_UPDATE_SECRET = "cannot update connection secret"


def controller_name(kind: str) -> str:
    return "secretpropagating/" + kind.lower()


def check_propagation(from_secret: Secret, to_secret: Secret) -> None:
    """
    Verify that from_secret may propagate its data to to_secret.

    Raises:
        UnexpectedFromUIDError: If to_secret names a different source uid.
        UnexpectedToUIDError: If from_secret does not list to_secret.
    """
    if to_secret.metadata.annotations.get(ANNOTATION_PROPAGATE_FROM_UID) != (
        from_secret.metadata.uid
    ):
        raise UnexpectedFromUIDError()

    key = propagate_to_annotation_key(to_secret.metadata.uid)
    if key not in from_secret.metadata.annotations:
        raise UnexpectedToUIDError()


def is_propagated(obj: Object) -> bool:
    """Return True if obj names a source to propagate from."""
    annotations = obj.metadata.annotations
    return bool(
        annotations.get(ANNOTATION_PROPAGATE_FROM_NAMESPACE)
        and annotations.get(ANNOTATION_PROPAGATE_FROM_NAME)
    )


class SecretPropagatingReconciler(Reconciler):
    """Reconciles propagated secrets by copying their source's data."""

    def __init__(self, store: Store):
        self.store = store

    async def reconcile(self, request: Request) -> Result:
        logger.debug(f"Reconciling secret {request}")

        try:
            to_secret = await self.store.get(SECRET_KIND, request.key)
        except Exception as e:
            if is_not_found(e):
                return Result()
            raise wrap(e, ERR_GET_SECRET)

        annotations = to_secret.metadata.annotations
        from_key = ObjectKey(
            namespace=annotations.get(ANNOTATION_PROPAGATE_FROM_NAMESPACE, ""),
            name=annotations.get(ANNOTATION_PROPAGATE_FROM_NAME, ""),
        )
        try:
            from_secret = await self.store.get(SECRET_KIND, from_key)
        except Exception as e:
            if is_not_found(e):
                logger.debug(f"Source secret {from_key} of {request} not found")
                return Result()
            raise wrap(e, ERR_GET_SECRET)

        try:
            check_propagation(from_secret, to_secret)
        except PropagationNotAllowedError as e:
            # Stop until the annotations change.
            logger.warning(f"Refusing to propagate {from_key} to {request}: {e}")
            return Result()

        if to_secret.data == from_secret.data:
            return Result()

        to_secret.data = dict(from_secret.data)
        try:
            await self.store.update(to_secret)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_SECRET)

        logger.info(f"Propagated secret data from {from_key} to {request}")
        return Result()


def setup(manager: Manager, requires=()) -> Controller:
    """
    Add a secret propagating controller to the manager.

    Propagated secrets are reconciled when they change, and when the
    secret they propagate from changes.
    """
    r = SecretPropagatingReconciler(manager.store)
    return (
        manager.new_controller(controller_name(SECRET_KIND.kind), r, *requires)
        .watch(SECRET_KIND, mapper=enqueue_for_object, predicate=is_propagated)
        .watch(SECRET_KIND, mapper=enqueue_for_propagated)
    )
