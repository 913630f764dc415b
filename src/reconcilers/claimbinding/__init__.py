"""
Claim binding - binds resource claims to managed resources.
"""

from controller import (
    Controller,
    Manager,
    any_of,
    enqueue_for_claim,
    has_class_reference_kind,
    has_managed_resource_reference_kind,
)
from objects import ResourceKind
from reconcilers.claimbinding.api import (
    APIBinder,
    APIClaimFinalizer,
    APIManagedConnectionPropagator,
    APIManagedCreator,
    APIStatusBinder,
)
from reconcilers.claimbinding.configurator import (
    ConfiguratorChain,
    configure_connection_secret,
    configure_names,
    configure_provider_reference,
    configure_reclaim_policy,
    configure_spec_from_template,
    default_configurators,
    template_configurators,
)
from reconcilers.claimbinding.reconciler import (
    CLAIM_FINALIZER_NAME,
    ClaimBindingReconciler,
    controller_name,
)


def setup(
    manager: Manager,
    claim_kind: ResourceKind,
    class_kind: ResourceKind,
    managed_kind: ResourceKind,
    requires=(),
    **options,
) -> Controller:
    """
    Add a claim binding controller to the manager.

    The controller reconciles claims that reference a class or a managed
    resource of the supplied kinds, and the claims of changed managed
    resources.

    Args:
        manager: The manager to add the controller to.
        claim_kind: The kind of claim to bind.
        class_kind: The kind of class used for dynamic provisioning.
        managed_kind: The kind of managed resource to bind to.
        requires: Kinds that must be ready before the controller starts.
        **options: Passed to ClaimBindingReconciler.

    Returns:
        The new controller.
    """
    options.setdefault("short_wait", manager.config.short_wait)
    r = ClaimBindingReconciler(
        manager.store, claim_kind, class_kind, managed_kind, **options
    )
    return (
        manager.new_controller(
            controller_name(claim_kind.kind, managed_kind.kind), r, *requires
        )
        .watch(
            claim_kind,
            predicate=any_of(
                has_class_reference_kind(class_kind),
                has_managed_resource_reference_kind(managed_kind),
            ),
        )
        .watch(managed_kind, mapper=enqueue_for_claim)
    )


__all__ = [
    "APIBinder",
    "APIClaimFinalizer",
    "APIManagedConnectionPropagator",
    "APIManagedCreator",
    "APIStatusBinder",
    "CLAIM_FINALIZER_NAME",
    "ClaimBindingReconciler",
    "ConfiguratorChain",
    "configure_connection_secret",
    "configure_names",
    "configure_provider_reference",
    "configure_reclaim_policy",
    "configure_spec_from_template",
    "controller_name",
    "default_configurators",
    "setup",
    "template_configurators",
]
