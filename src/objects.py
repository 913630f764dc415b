"""
Object Model - Declarative resource kinds shared by all reconcilers.

Defines the persisted kinds (claims, resource classes, managed resources,
connection secrets and schema definitions), the capability protocols that
reconcilers are written against, and the Scheme that maps a ResourceKind to
the model used to represent it.
"""

import random
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Set,
    Type,
    runtime_checkable,
)

from pydantic import BaseModel, ConfigDict, Field

# Annotation keys
ANNOTATION_EXTERNAL_NAME = "tether.io/external-name"
ANNOTATION_DEFAULT_CLASS_KEY = "tether.io/default-class"
ANNOTATION_DEFAULT_CLASS_VALUE = "true"

ANNOTATION_PROPAGATE_TO_PREFIX = "to.propagate.tether.io"
ANNOTATION_PROPAGATE_FROM_NAMESPACE = "from.propagate.tether.io/namespace"
ANNOTATION_PROPAGATE_FROM_NAME = "from.propagate.tether.io/name"
ANNOTATION_PROPAGATE_FROM_UID = "from.propagate.tether.io/uid"
ANNOTATION_DELIMITER = "/"


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResourceKind:
    """Identity of a kind of object: API group, version and kind name."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "ResourceKind":
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        if not self.group:
            return f"{self.kind}.{self.version}"
        return f"{self.kind}.{self.version}.{self.group}"


@dataclass(frozen=True)
class ObjectKey:
    """Namespace and name identifying an object of a known kind."""

    namespace: str
    name: str

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"


class BindingPhase(str, Enum):
    """Lifecycle stage of a claim or managed resource with respect to binding."""

    UNSET = ""
    UNBINDABLE = "Unbindable"
    UNBOUND = "Unbound"
    BOUND = "Bound"
    RELEASED = "Released"


class ReclaimPolicy(str, Enum):
    """What happens to a managed resource when its claim is removed."""

    RETAIN = "Retain"
    DELETE = "Delete"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


# Condition types
TYPE_READY = "Ready"
TYPE_SYNCED = "Synced"
TYPE_REFERENCES_RESOLVED = "ReferencesResolved"
TYPE_SECRET_PROPAGATED = "ConnectionSecretPropagated"
TYPE_ESTABLISHED = "Established"

# Condition reasons
REASON_AVAILABLE = "Resource is available for use"
REASON_UNAVAILABLE = "Resource is not available for use"
REASON_CREATING = "Resource is being created"
REASON_DELETING = "Resource is being deleted"
REASON_BINDING = "Managed claim is waiting for managed resource to become bindable"
REASON_RECONCILE_SUCCESS = "Successfully reconciled resource"
REASON_RECONCILE_ERROR = "Encountered an error during resource reconciliation"
REASON_REFERENCE_RESOLVE_SUCCESS = (
    "Successfully resolved resource references to other resources"
)
REASON_RESOLVE_REFERENCES_BLOCKED = (
    "One or more referenced resources do not exist, or are not yet Ready"
)
REASON_SECRET_PROPAGATION_SUCCESS = (
    "Successfully propagated connection data to referenced secret"
)
REASON_SECRET_PROPAGATION_ERROR = "Unable to propagate connection data to referenced secret"


# ==================== Reference types ====================


class ObjectReference(BaseModel):
    """A reference to an object of any kind."""

    model_config = ConfigDict(frozen=True)

    api_version: str = ""
    kind: str = ""
    namespace: str = ""
    name: str = ""
    uid: str = ""

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)


class OwnerReference(BaseModel):
    """A reference from an object to an object that owns it."""

    model_config = ConfigDict(frozen=True)

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False


class SecretReference(BaseModel):
    name: str
    namespace: str = ""


class LocalSecretReference(BaseModel):
    name: str


class LabelSelector(BaseModel):
    match_labels: Dict[str, str] = Field(default_factory=dict)

    def matches(self, labels: Dict[str, str]) -> bool:
        return all(labels.get(k) == v for k, v in self.match_labels.items())


# ==================== Conditions ====================


class Condition(BaseModel):
    """A condition that may apply to a resource."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utc_now)

    def equal(self, other: "Condition") -> bool:
        """Equality ignoring the last transition time."""
        return (
            self.type == other.type
            and self.status == other.status
            and self.reason == other.reason
            and self.message == other.message
        )


def _condition(type_: str, status: ConditionStatus, reason: str, message: str = ""):
    return Condition(type=type_, status=status, reason=reason, message=message)


def creating() -> Condition:
    return _condition(TYPE_READY, ConditionStatus.FALSE, REASON_CREATING)


def deleting() -> Condition:
    return _condition(TYPE_READY, ConditionStatus.FALSE, REASON_DELETING)


def available() -> Condition:
    return _condition(TYPE_READY, ConditionStatus.TRUE, REASON_AVAILABLE)


def unavailable() -> Condition:
    return _condition(TYPE_READY, ConditionStatus.FALSE, REASON_UNAVAILABLE)


def binding() -> Condition:
    """The claim is waiting for its managed resource to become bindable."""
    return _condition(TYPE_READY, ConditionStatus.FALSE, REASON_BINDING)


def reconcile_success() -> Condition:
    return _condition(TYPE_SYNCED, ConditionStatus.TRUE, REASON_RECONCILE_SUCCESS)


def reconcile_error(err: BaseException) -> Condition:
    return _condition(
        TYPE_SYNCED, ConditionStatus.FALSE, REASON_RECONCILE_ERROR, str(err)
    )


def reference_resolution_success() -> Condition:
    return _condition(
        TYPE_REFERENCES_RESOLVED,
        ConditionStatus.TRUE,
        REASON_REFERENCE_RESOLVE_SUCCESS,
    )


def reference_resolution_blocked(err: BaseException) -> Condition:
    return _condition(
        TYPE_REFERENCES_RESOLVED,
        ConditionStatus.FALSE,
        REASON_RESOLVE_REFERENCES_BLOCKED,
        str(err),
    )


def secret_propagation_success() -> Condition:
    return _condition(
        TYPE_SECRET_PROPAGATED,
        ConditionStatus.TRUE,
        REASON_SECRET_PROPAGATION_SUCCESS,
    )


def secret_propagation_error(err: BaseException) -> Condition:
    return _condition(
        TYPE_SECRET_PROPAGATED,
        ConditionStatus.FALSE,
        REASON_SECRET_PROPAGATION_ERROR,
        str(err),
    )


class ConditionedStatus(BaseModel):
    """Status carrying a set of conditions, at most one per type."""

    conditions: List[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: str) -> Condition:
        for c in self.conditions:
            if c.type == condition_type:
                return c
        return Condition(type=condition_type, status=ConditionStatus.UNKNOWN)

    def set_conditions(self, *conditions: Condition) -> None:
        """
        Set the supplied conditions, replacing any existing condition of the
        same type. A condition equal to the existing one (ignoring its
        transition time) is left untouched.
        """
        for new in conditions:
            for i, existing in enumerate(self.conditions):
                if existing.type != new.type:
                    continue
                if not existing.equal(new):
                    self.conditions[i] = new
                break
            else:
                self.conditions.append(new)


class BindingStatus(ConditionedStatus):
    binding_phase: BindingPhase = BindingPhase.UNSET


# ==================== Object metadata ====================


class ObjectMeta(BaseModel):
    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: Optional[int] = None
    generate_name: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None


class Object(BaseModel):
    """Base for every persisted kind."""

    model_config = ConfigDict(ser_json_bytes="base64", val_json_bytes="base64")

    api_version: str = ""
    kind: str = ""
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @property
    def resource_kind(self) -> ResourceKind:
        return ResourceKind.from_api_version(self.api_version, self.kind)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace, name=self.metadata.name)

    def get_name(self) -> str:
        return self.metadata.name

    def get_namespace(self) -> str:
        return self.metadata.namespace

    def get_uid(self) -> str:
        return self.metadata.uid

    def get_annotations(self) -> Dict[str, str]:
        return self.metadata.annotations


# ==================== Capability protocols ====================


@runtime_checkable
class Bindable(Protocol):
    def get_binding_phase(self) -> BindingPhase: ...

    def set_binding_phase(self, phase: BindingPhase) -> None: ...


@runtime_checkable
class Conditioned(Protocol):
    def get_condition(self, condition_type: str) -> Condition: ...

    def set_conditions(self, *conditions: Condition) -> None: ...


@runtime_checkable
class ClaimReferencer(Protocol):
    def get_claim_reference(self) -> Optional[ObjectReference]: ...

    def set_claim_reference(self, ref: Optional[ObjectReference]) -> None: ...


@runtime_checkable
class ClassReferencer(Protocol):
    def get_class_reference(self) -> Optional[ObjectReference]: ...

    def set_class_reference(self, ref: Optional[ObjectReference]) -> None: ...


@runtime_checkable
class ClassSelector(Protocol):
    def get_class_selector(self) -> Optional[LabelSelector]: ...

    def set_class_selector(self, selector: Optional[LabelSelector]) -> None: ...


@runtime_checkable
class ManagedResourceReferencer(Protocol):
    def get_resource_reference(self) -> Optional[ObjectReference]: ...

    def set_resource_reference(self, ref: Optional[ObjectReference]) -> None: ...


@runtime_checkable
class Reclaimer(Protocol):
    def get_reclaim_policy(self) -> Optional[ReclaimPolicy]: ...

    def set_reclaim_policy(self, policy: Optional[ReclaimPolicy]) -> None: ...


@runtime_checkable
class ProviderReferencer(Protocol):
    def get_provider_reference(self) -> Optional[ObjectReference]: ...

    def set_provider_reference(self, ref: Optional[ObjectReference]) -> None: ...


@runtime_checkable
class LocalConnectionSecretWriterTo(Protocol):
    def get_write_connection_secret_to_reference(
        self,
    ) -> Optional[LocalSecretReference]: ...


@runtime_checkable
class ConnectionSecretWriterTo(Protocol):
    def get_write_connection_secret_to_reference(
        self,
    ) -> Optional[SecretReference]: ...


# ==================== Kinds ====================


class ClaimSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    class_selector: Optional[LabelSelector] = None
    class_ref: Optional[ObjectReference] = None
    resource_ref: Optional[ObjectReference] = None
    write_connection_secret_to_ref: Optional[LocalSecretReference] = None


class Claim(Object):
    """A request for a provisioned capability, bound to one managed resource."""

    spec: ClaimSpec = Field(default_factory=ClaimSpec)
    status: BindingStatus = Field(default_factory=BindingStatus)

    def get_class_selector(self) -> Optional[LabelSelector]:
        return self.spec.class_selector

    def set_class_selector(self, selector: Optional[LabelSelector]) -> None:
        self.spec.class_selector = selector

    def get_class_reference(self) -> Optional[ObjectReference]:
        return self.spec.class_ref

    def set_class_reference(self, ref: Optional[ObjectReference]) -> None:
        self.spec.class_ref = ref

    def get_resource_reference(self) -> Optional[ObjectReference]:
        return self.spec.resource_ref

    def set_resource_reference(self, ref: Optional[ObjectReference]) -> None:
        self.spec.resource_ref = ref

    def get_write_connection_secret_to_reference(
        self,
    ) -> Optional[LocalSecretReference]:
        return self.spec.write_connection_secret_to_ref

    def set_write_connection_secret_to_reference(
        self, ref: Optional[LocalSecretReference]
    ) -> None:
        self.spec.write_connection_secret_to_ref = ref

    def get_binding_phase(self) -> BindingPhase:
        return self.status.binding_phase

    def set_binding_phase(self, phase: BindingPhase) -> None:
        self.status.binding_phase = phase

    def get_condition(self, condition_type: str) -> Condition:
        return self.status.get_condition(condition_type)

    def set_conditions(self, *conditions: Condition) -> None:
        self.status.set_conditions(*conditions)


class ClassSpecTemplate(BaseModel):
    # Kind-specific parameters are kept as extra fields
    model_config = ConfigDict(extra="allow")

    reclaim_policy: Optional[ReclaimPolicy] = None
    provider_ref: Optional[ObjectReference] = None
    write_connection_secrets_to_namespace: str = ""


class ResourceClass(Object):
    """A template used to dynamically provision managed resources for claims."""

    spec_template: ClassSpecTemplate = Field(default_factory=ClassSpecTemplate)

    def get_reclaim_policy(self) -> Optional[ReclaimPolicy]:
        return self.spec_template.reclaim_policy

    def set_reclaim_policy(self, policy: Optional[ReclaimPolicy]) -> None:
        self.spec_template.reclaim_policy = policy

    def get_provider_reference(self) -> Optional[ObjectReference]:
        return self.spec_template.provider_ref

    def set_provider_reference(self, ref: Optional[ObjectReference]) -> None:
        self.spec_template.provider_ref = ref

    def get_write_connection_secrets_to_namespace(self) -> str:
        return self.spec_template.write_connection_secrets_to_namespace


class ManagedSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    claim_ref: Optional[ObjectReference] = None
    class_ref: Optional[ObjectReference] = None
    provider_ref: Optional[ObjectReference] = None
    write_connection_secret_to_ref: Optional[SecretReference] = None
    reclaim_policy: Optional[ReclaimPolicy] = None


class Managed(Object):
    """A provisioned unit, bindable to at most one claim."""

    spec: ManagedSpec = Field(default_factory=ManagedSpec)
    status: BindingStatus = Field(default_factory=BindingStatus)

    def get_claim_reference(self) -> Optional[ObjectReference]:
        return self.spec.claim_ref

    def set_claim_reference(self, ref: Optional[ObjectReference]) -> None:
        self.spec.claim_ref = ref

    def get_class_reference(self) -> Optional[ObjectReference]:
        return self.spec.class_ref

    def set_class_reference(self, ref: Optional[ObjectReference]) -> None:
        self.spec.class_ref = ref

    def get_provider_reference(self) -> Optional[ObjectReference]:
        return self.spec.provider_ref

    def set_provider_reference(self, ref: Optional[ObjectReference]) -> None:
        self.spec.provider_ref = ref

    def get_write_connection_secret_to_reference(self) -> Optional[SecretReference]:
        return self.spec.write_connection_secret_to_ref

    def set_write_connection_secret_to_reference(
        self, ref: Optional[SecretReference]
    ) -> None:
        self.spec.write_connection_secret_to_ref = ref

    def get_reclaim_policy(self) -> Optional[ReclaimPolicy]:
        return self.spec.reclaim_policy

    def set_reclaim_policy(self, policy: Optional[ReclaimPolicy]) -> None:
        self.spec.reclaim_policy = policy

    def get_binding_phase(self) -> BindingPhase:
        return self.status.binding_phase

    def set_binding_phase(self, phase: BindingPhase) -> None:
        self.status.binding_phase = phase

    def get_condition(self, condition_type: str) -> Condition:
        return self.status.get_condition(condition_type)

    def set_conditions(self, *conditions: Condition) -> None:
        self.status.set_conditions(*conditions)

    async def resolve_references(self, resolver: Any) -> None:
        """
        Resolve this resource's references to other resources.

        Kinds with reference or selector fields override this to fill the
        fields they resolve, using the supplied reference.APIResolver.
        """
        return None


class Secret(Object):
    """Connection credentials: an opaque map of keys to bytes."""

    type: str = "Opaque"
    data: Dict[str, bytes] = Field(default_factory=dict)


class SchemaNames(BaseModel):
    kind: str
    plural: str = ""


class SchemaVersion(BaseModel):
    name: str
    served: bool = True
    storage: bool = False


class SchemaDefinitionSpec(BaseModel):
    group: str = ""
    names: SchemaNames = Field(default_factory=lambda: SchemaNames(kind=""))
    versions: List[SchemaVersion] = Field(default_factory=list)


class SchemaDefinition(Object):
    """Declares a kind (and its versions) that the store can serve."""

    spec: SchemaDefinitionSpec = Field(default_factory=SchemaDefinitionSpec)
    status: ConditionedStatus = Field(default_factory=ConditionedStatus)


SECRET_KIND = ResourceKind(group="", version="v1", kind="Secret")
SCHEMA_DEFINITION_KIND = ResourceKind(
    group="apiextensions.tether.io", version="v1", kind="SchemaDefinition"
)


# ==================== Scheme ====================


class Scheme:
    """
    Maps each ResourceKind to the model class representing it.

    Also records which kinds persist their status separately from the rest
    of the object (a status subresource).
    """

    def __init__(self):
        self._types: Dict[ResourceKind, Type[Object]] = {}
        self._status_subresource: Set[ResourceKind] = set()

    def register(
        self,
        kind: ResourceKind,
        model: Type[Object],
        status_subresource: bool = False,
    ) -> None:
        self._types[kind] = model
        if status_subresource:
            self._status_subresource.add(kind)
        else:
            self._status_subresource.discard(kind)

    def is_registered(self, kind: ResourceKind) -> bool:
        return kind in self._types

    def model_for(self, kind: ResourceKind) -> Type[Object]:
        try:
            return self._types[kind]
        except KeyError:
            raise KeyError(f"Kind {kind} is not registered with the scheme") from None

    def new(self, kind: ResourceKind) -> Object:
        """Return an empty object of the supplied kind."""
        return self.model_for(kind)(api_version=kind.api_version, kind=kind.kind)

    def from_dict(self, data: Dict[str, Any]) -> Object:
        """Build an object from a plain dict carrying api_version and kind."""
        kind = ResourceKind.from_api_version(
            data.get("api_version", ""), data.get("kind", "")
        )
        return self.model_for(kind).model_validate(data)

    def has_status_subresource(self, kind: ResourceKind) -> bool:
        return kind in self._status_subresource

    def kinds(self) -> List[ResourceKind]:
        return list(self._types)


def new_scheme() -> Scheme:
    """Return a Scheme with the built-in kinds registered."""
    scheme = Scheme()
    scheme.register(SECRET_KIND, Secret)
    scheme.register(SCHEMA_DEFINITION_KIND, SchemaDefinition, status_subresource=True)
    return scheme


# ==================== Helpers ====================


def was_deleted(obj: Object) -> bool:
    return obj.metadata.deletion_timestamp is not None


def was_created(obj: Object) -> bool:
    return obj.metadata.creation_timestamp is not None


def reference_to(obj: Object) -> ObjectReference:
    return ObjectReference(
        api_version=obj.api_version,
        kind=obj.kind,
        namespace=obj.metadata.namespace,
        name=obj.metadata.name,
        uid=obj.metadata.uid,
    )


def references_equal(
    a: Optional[ObjectReference], b: Optional[ObjectReference]
) -> bool:
    """Compare two references by kind, namespace and name (not uid)."""
    if a is None or b is None:
        return a is b
    return (
        a.api_version == b.api_version
        and a.kind == b.kind
        and a.namespace == b.namespace
        and a.name == b.name
    )


def as_controller(ref: ObjectReference) -> OwnerReference:
    return OwnerReference(
        api_version=ref.api_version,
        kind=ref.kind,
        name=ref.name,
        uid=ref.uid,
        controller=True,
    )


def get_controller_of(obj: Object) -> Optional[OwnerReference]:
    for ref in obj.metadata.owner_references:
        if ref.controller:
            return ref
    return None


def have_same_controller(a: Object, b: Object) -> bool:
    ca = get_controller_of(a)
    cb = get_controller_of(b)
    if ca is None or cb is None:
        return False
    return ca.uid == cb.uid


def get_external_name(obj: Object) -> str:
    return obj.metadata.annotations.get(ANNOTATION_EXTERNAL_NAME, "")


def set_external_name(obj: Object, name: str) -> None:
    obj.metadata.annotations[ANNOTATION_EXTERNAL_NAME] = name


def is_default_class(obj: Object) -> bool:
    return (
        obj.metadata.annotations.get(ANNOTATION_DEFAULT_CLASS_KEY)
        == ANNOTATION_DEFAULT_CLASS_VALUE
    )


def has_finalizer(obj: Object, finalizer: str) -> bool:
    return finalizer in obj.metadata.finalizers


def add_finalizer(obj: Object, finalizer: str) -> bool:
    """Add a finalizer; returns False if it was already present."""
    if finalizer in obj.metadata.finalizers:
        return False
    obj.metadata.finalizers.append(finalizer)
    return True


def remove_finalizer(obj: Object, finalizer: str) -> bool:
    """Remove a finalizer; returns False if it was not present."""
    if finalizer not in obj.metadata.finalizers:
        return False
    obj.metadata.finalizers = [f for f in obj.metadata.finalizers if f != finalizer]
    return True


def set_bindable(b: Bindable) -> None:
    """Mark b as ready to bind, unless it is already bound or released."""
    if b.get_binding_phase() in (BindingPhase.BOUND, BindingPhase.RELEASED):
        return
    b.set_binding_phase(BindingPhase.UNBOUND)


def is_bindable(b: Bindable) -> bool:
    return b.get_binding_phase() == BindingPhase.UNBOUND


def is_bound(b: Bindable) -> bool:
    return b.get_binding_phase() == BindingPhase.BOUND


def propagate_to_annotation_key(uid: str) -> str:
    return ANNOTATION_DELIMITER.join([ANNOTATION_PROPAGATE_TO_PREFIX, uid])


def allow_propagation(source: Object, target: Object) -> None:
    """
    Record mutual consent for data to flow from source to target.

    The target names its source by namespace, name and uid; the source names
    the target (by uid) among its consumers. Both objects must already exist
    so that their uids are known.
    """
    target.metadata.annotations.update(
        {
            ANNOTATION_PROPAGATE_FROM_NAMESPACE: source.metadata.namespace,
            ANNOTATION_PROPAGATE_FROM_NAME: source.metadata.name,
            ANNOTATION_PROPAGATE_FROM_UID: source.metadata.uid,
        }
    )
    source.metadata.annotations[propagate_to_annotation_key(target.metadata.uid)] = (
        ANNOTATION_DELIMITER.join([target.metadata.namespace, target.metadata.name])
    )


def generate_name_suffix(length: int = 5) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))
