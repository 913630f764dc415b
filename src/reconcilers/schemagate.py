"""
Schema Gate Reconciler - Drives the readiness gate from schema definitions.

Each served version of an established SchemaDefinition marks its kind
ready. A definition that is not established, or is being deleted, marks
every one of its kinds not ready.
"""

import logging
from typing import Dict

from controller import Controller, Manager
from errors import is_not_found, wrap
from gate import Gate
from objects import (
    SCHEMA_DEFINITION_KIND,
    TYPE_ESTABLISHED,
    ConditionStatus,
    ResourceKind,
    SchemaDefinition,
    was_deleted,
)
from reconcilers.base import Reconciler, Request, Result
from store import Store

logger = logging.getLogger(__name__)

ERR_GET_DEFINITION = "cannot get schema definition"


def controller_name() -> str:
    return "schemagate"


def is_established(sd: SchemaDefinition) -> bool:
    return sd.status.get_condition(TYPE_ESTABLISHED).status == ConditionStatus.TRUE


def kinds_of(sd: SchemaDefinition) -> Dict[ResourceKind, bool]:
    """Map each kind the definition declares to whether it is served."""
    return {
        ResourceKind(group=sd.spec.group, version=v.name, kind=sd.spec.names.kind): (
            v.served
        )
        for v in sd.spec.versions
    }


class SchemaGateReconciler(Reconciler):
    def __init__(self, store: Store, gate: Gate):
        self.store = store
        self.gate = gate

    async def reconcile(self, request: Request) -> Result:
        try:
            sd = await self.store.get(SCHEMA_DEFINITION_KIND, request.key)
        except Exception as e:
            if is_not_found(e):
                return Result()
            raise wrap(e, ERR_GET_DEFINITION)

        kinds = kinds_of(sd)

        if not is_established(sd) or was_deleted(sd):
            for kind in kinds:
                if self.gate.set(kind, False):
                    logger.info(f"Kind {kind} is not ready")
            return Result()

        for kind, served in kinds.items():
            if served and self.gate.set(kind, True):
                logger.info(f"Kind {kind} is ready")
        return Result()


def setup(manager: Manager) -> Controller:
    """Add the schema gate controller to the manager."""
    r = SchemaGateReconciler(manager.store, manager.gate)
    return manager.new_controller(controller_name(), r).watch(SCHEMA_DEFINITION_KIND)
