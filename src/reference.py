"""
Reference Resolver - Resolves references and selectors to field values.

A managed resource may name another resource either directly, with a
Reference, or indirectly, with a Selector matching labels. Resolution fetches
the target and extracts a value from it (by default its external name).

Resolution is cache-like: once a value has been captured it is never
re-fetched unless the reference or selector opts into the Always resolve
policy. Unresolvable references are fatal unless their resolution policy is
Optional.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from errors import (
    NoMatchesError,
    NoValueError,
    TetherError,
    is_not_found,
    wrap,
)
from objects import (
    Managed,
    Object,
    ObjectKey,
    ResourceKind,
    get_external_name,
    have_same_controller,
    was_deleted,
)
from store import Store

logger = logging.getLogger(__name__)

ERR_GET_MANAGED = "cannot get managed resource"
ERR_LIST_MANAGED = "cannot get managed resources"
ERR_RESOLVE_REFERENCES = "cannot resolve references"
ERR_UPDATE_MANAGED = "cannot update managed resource"


class ResolvePolicy(str, Enum):
    """Whether a previously resolved value is resolved again."""

    ONCE_ONLY = "OnceOnly"
    ALWAYS = "Always"


class ResolutionPolicy(str, Enum):
    """Whether failing to resolve is an error."""

    REQUIRED = "Required"
    OPTIONAL = "Optional"


class Policy(BaseModel):
    resolve: Optional[ResolvePolicy] = None
    resolution: Optional[ResolutionPolicy] = None

    def is_resolve_policy_always(self) -> bool:
        return self.resolve == ResolvePolicy.ALWAYS

    def is_resolution_policy_optional(self) -> bool:
        return self.resolution == ResolutionPolicy.OPTIONAL


class Reference(BaseModel):
    """Names the target of a reference. An empty namespace means the owner's."""

    name: str
    namespace: str = ""
    policy: Optional[Policy] = None


class Selector(BaseModel):
    """Selects the target of a reference by labels."""

    match_labels: Dict[str, str] = Field(default_factory=dict)
    match_controller_ref: Optional[bool] = None
    namespace: str = ""
    policy: Optional[Policy] = None

    def controllers_must_match(self) -> bool:
        return bool(self.match_controller_ref)


ExtractValueFn = Callable[[Object], str]


def external_name() -> ExtractValueFn:
    """Extract the external name annotation of the target."""
    return get_external_name


def _is_always(policy: Optional[Policy]) -> bool:
    return policy is not None and policy.is_resolve_policy_always()


def _resolution_error(
    policy: Optional[Policy], err: Optional[BaseException]
) -> Optional[BaseException]:
    """Return err unless the policy makes resolution optional."""
    if policy is not None and policy.is_resolution_policy_optional():
        return None
    return err


@dataclass
class ResolutionRequest:
    """A request to resolve a single reference or selector."""

    to: ResourceKind
    current_value: str = ""
    reference: Optional[Reference] = None
    selector: Optional[Selector] = None
    extract: ExtractValueFn = field(default_factory=external_name)

    def is_noop(self) -> bool:
        """
        Return True if resolution would not change the current value.

        A selector with the Always resolve policy takes over from any
        reference, which is dropped from the request.
        """
        always = False
        if self.selector is not None:
            if _is_always(self.selector.policy):
                self.reference = None
                always = True
        elif self.reference is not None:
            always = _is_always(self.reference.policy)

        if self.current_value and not always:
            return True
        return self.reference is None and self.selector is None


@dataclass
class ResolutionResponse:
    resolved_value: str = ""
    resolved_reference: Optional[Reference] = None

    def validate(self) -> Optional[BaseException]:
        if not self.resolved_value:
            return NoValueError()
        return None


@dataclass
class MultiResolutionRequest:
    """A request to resolve a list of references, or a selector matching many."""

    to: ResourceKind
    current_values: List[str] = field(default_factory=list)
    references: List[Reference] = field(default_factory=list)
    selector: Optional[Selector] = None
    extract: ExtractValueFn = field(default_factory=external_name)

    def is_noop(self) -> bool:
        always = False
        if self.selector is not None:
            if _is_always(self.selector.policy):
                self.references = []
                always = True
        else:
            always = any(_is_always(r.policy) for r in self.references)

        if self.current_values and not always:
            return True
        return not self.references and self.selector is None


@dataclass
class MultiResolutionResponse:
    resolved_values: List[str] = field(default_factory=list)
    resolved_references: List[Reference] = field(default_factory=list)


def _sorted_by_value(values: Dict[str, Reference]) -> MultiResolutionResponse:
    keys = sorted(values)
    return MultiResolutionResponse(
        resolved_values=keys, resolved_references=[values[k] for k in keys]
    )


class APIResolver:
    """Resolves references on behalf of one object using the Store."""

    def __init__(self, store: Store, from_object: Object):
        self.store = store
        self.from_object = from_object

    def _namespace(self, namespace: str) -> str:
        return namespace or self.from_object.metadata.namespace

    async def _candidates(self, kind: ResourceKind, selector: Selector) -> List[Object]:
        try:
            items = await self.store.list(
                kind,
                namespace=self._namespace(selector.namespace),
                match_labels=selector.match_labels,
            )
        except Exception as e:
            raise wrap(e, ERR_LIST_MANAGED)

        return [
            to
            for to in items
            if not was_deleted(to)
            and (
                not selector.controllers_must_match()
                or have_same_controller(self.from_object, to)
            )
        ]

    async def resolve(self, req: ResolutionRequest) -> ResolutionResponse:
        """
        Resolve a single reference or selector.

        Args:
            req: The resolution request.

        Returns:
            The resolved value and the reference it was resolved from. An
            unresolved Optional request returns an empty response.

        Raises:
            TetherError: If a Required reference cannot be resolved, or the
                Store fails for a reason other than not-found.
        """
        if was_deleted(self.from_object) or req.is_noop():
            return ResolutionResponse(
                resolved_value=req.current_value, resolved_reference=req.reference
            )

        if req.reference is not None:
            ns = self._namespace(req.reference.namespace)
            try:
                to = await self.store.get(
                    req.to, ObjectKey(namespace=ns, name=req.reference.name)
                )
            except Exception as e:
                err = wrap(e, ERR_GET_MANAGED)
                if not is_not_found(e):
                    raise err
                err = _resolution_error(req.reference.policy, err)
                if err is not None:
                    raise err
                return ResolutionResponse()

            rsp = ResolutionResponse(
                resolved_value=req.extract(to), resolved_reference=req.reference
            )
            err = _resolution_error(req.reference.policy, rsp.validate())
            if err is not None:
                raise err
            return rsp

        ns = self._namespace(req.selector.namespace)
        for to in await self._candidates(req.to, req.selector):
            rsp = ResolutionResponse(
                resolved_value=req.extract(to),
                resolved_reference=Reference(name=to.metadata.name, namespace=ns),
            )
            err = _resolution_error(req.selector.policy, rsp.validate())
            if err is not None:
                raise err
            return rsp

        err = _resolution_error(req.selector.policy, NoMatchesError())
        if err is not None:
            raise err
        return ResolutionResponse()

    async def resolve_multiple(
        self, req: MultiResolutionRequest
    ) -> MultiResolutionResponse:
        """
        Resolve a list of references, or every match of a selector.

        Values are de-duplicated and returned sorted, with the reference
        each was resolved from at the same index.

        Raises:
            TetherError: As for resolve(), or NoMatchesError if nothing
                resolved and resolution is not Optional.
        """
        if was_deleted(self.from_object) or req.is_noop():
            return MultiResolutionResponse(
                resolved_values=list(req.current_values),
                resolved_references=list(req.references),
            )

        values: Dict[str, Reference] = {}

        if req.references:
            for ref in req.references:
                try:
                    key = ObjectKey(namespace=self._namespace(ref.namespace), name=ref.name)
                    to = await self.store.get(req.to, key)
                except Exception as e:
                    err = wrap(e, ERR_GET_MANAGED)
                    if not is_not_found(e):
                        raise err
                    err = _resolution_error(ref.policy, err)
                    if err is not None:
                        raise err
                    continue

                value = req.extract(to)
                if not value:
                    err = _resolution_error(ref.policy, NoValueError())
                    if err is not None:
                        raise err
                    continue
                values[value] = ref

            if not values and not all(
                r.policy is not None and r.policy.is_resolution_policy_optional()
                for r in req.references
            ):
                raise NoMatchesError()
            return _sorted_by_value(values)

        ns = self._namespace(req.selector.namespace)
        for to in await self._candidates(req.to, req.selector):
            value = req.extract(to)
            if not value:
                err = _resolution_error(req.selector.policy, NoValueError())
                if err is not None:
                    raise err
                continue
            values[value] = Reference(name=to.metadata.name, namespace=ns)

        if not values:
            err = _resolution_error(req.selector.policy, NoMatchesError())
            if err is not None:
                raise err
        return _sorted_by_value(values)


class APISimpleReferenceResolver:
    """
    Resolves a managed resource's references by calling its own
    resolve_references() hook, persisting the resource only if that
    changed it.
    """

    def __init__(self, store: Store):
        self.store = store

    async def resolve_references(self, mg: Managed) -> None:
        existing = mg.model_copy(deep=True)

        try:
            await mg.resolve_references(APIResolver(self.store, mg))
        except TetherError as e:
            raise wrap(e, ERR_RESOLVE_REFERENCES)

        if mg == existing:
            return

        logger.debug(f"Resolved references of {mg.kind} {mg.key}")
        try:
            await self.store.update(mg)
        except Exception as e:
            raise wrap(e, ERR_UPDATE_MANAGED)
