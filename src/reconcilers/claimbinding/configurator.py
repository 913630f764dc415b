"""
Managed resource configurators.

A configurator fills in part of a new managed resource from the claim that
requested it and the class that parameterizes it, before the resource is
created. Configurators run in order; the first to raise stops the chain.
"""

import copy
from typing import Callable, List

from objects import (
    Claim,
    Managed,
    ReclaimPolicy,
    ResourceClass,
    SecretReference,
    get_external_name,
    set_external_name,
)

ManagedConfigurator = Callable[[Claim, ResourceClass, Managed], None]


class ConfiguratorChain:
    """Runs a list of configurators in order."""

    def __init__(self, configurators: List[ManagedConfigurator]):
        self.configurators = list(configurators)

    def __call__(self, claim: Claim, cls: ResourceClass, mg: Managed) -> None:
        for configure in self.configurators:
            configure(claim, cls, mg)


def configure_names(claim: Claim, cls: ResourceClass, mg: Managed) -> None:
    """
    Derive the managed resource's name from its claim, and copy the claim's
    external name if it has one.
    """
    mg.metadata.generate_name = f"{claim.metadata.namespace}-{claim.metadata.name}-"
    if get_external_name(claim):
        set_external_name(mg, get_external_name(claim))


def configure_reclaim_policy(claim: Claim, cls: ResourceClass, mg: Managed) -> None:
    """
    Set the reclaim policy. A policy already set on the managed resource
    wins, then the class's; the default is Delete.
    """
    if mg.get_reclaim_policy() is not None:
        return
    mg.set_reclaim_policy(cls.get_reclaim_policy() or ReclaimPolicy.DELETE)


def configure_provider_reference(
    claim: Claim, cls: ResourceClass, mg: Managed
) -> None:
    """Use the class's provider unless the managed resource names one."""
    if mg.get_provider_reference() is not None:
        return
    mg.set_provider_reference(cls.get_provider_reference())


def configure_connection_secret(
    claim: Claim, cls: ResourceClass, mg: Managed
) -> None:
    """
    Write the managed resource's connection secret to the class's secret
    namespace, named after the claim's uid.
    """
    if mg.get_write_connection_secret_to_reference() is not None:
        return
    namespace = cls.get_write_connection_secrets_to_namespace()
    if not namespace:
        return
    mg.set_write_connection_secret_to_reference(
        SecretReference(name=claim.metadata.uid, namespace=namespace)
    )


def configure_spec_from_template(
    claim: Claim, cls: ResourceClass, mg: Managed
) -> None:
    """
    Copy the kind-specific parameters of the class's spec template onto the
    managed resource's spec. Fields the managed resource already sets are
    left alone.
    """
    for name, value in (cls.spec_template.model_extra or {}).items():
        if getattr(mg.spec, name, None) is None:
            setattr(mg.spec, name, copy.deepcopy(value))


def default_configurators() -> List[ManagedConfigurator]:
    return [configure_names, configure_reclaim_policy]


def template_configurators() -> List[ManagedConfigurator]:
    """Configurators for kinds whose class carries its parameters as a template."""
    return [
        configure_names,
        configure_spec_from_template,
        configure_reclaim_policy,
        configure_provider_reference,
        configure_connection_secret,
    ]
