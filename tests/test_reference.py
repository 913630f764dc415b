"""Unit tests for reference.py - Reference and selector resolution."""

import pytest

from conftest import MANAGED_KIND, ExampleResource, new_managed, ref
from errors import (
    NoMatchesError,
    NoValueError,
    NotFoundError,
    StoreError,
    TetherError,
    is_not_found,
)
from objects import ObjectMeta, as_controller, set_external_name, utc_now
from reference import (
    APIResolver,
    APISimpleReferenceResolver,
    MultiResolutionRequest,
    Policy,
    Reference,
    ResolutionPolicy,
    ResolutionRequest,
    ResolvePolicy,
    Selector,
)

OPTIONAL = Policy(resolution=ResolutionPolicy.OPTIONAL)
ALWAYS = Policy(resolve=ResolvePolicy.ALWAYS)


async def create_target(store, name, external_name="", labels=None, controller_uid=""):
    mg = new_managed(name)
    if external_name:
        set_external_name(mg, external_name)
    mg.metadata.labels = labels or {}
    if controller_uid:
        mg.metadata.owner_references = [as_controller(ref(uid=controller_uid))]
    await store.create(mg)
    return mg


def owner(controller_uid=""):
    mg = new_managed("owner")
    if controller_uid:
        mg.metadata.owner_references = [as_controller(ref(uid=controller_uid))]
    return mg


class TestResolutionRequest:
    """Tests for deciding whether resolution is needed."""

    def test_noop_without_reference_or_selector(self):
        assert ResolutionRequest(to=MANAGED_KIND).is_noop()

    def test_noop_when_value_already_resolved(self):
        req = ResolutionRequest(
            to=MANAGED_KIND, current_value="v", reference=Reference(name="a")
        )
        assert req.is_noop()

    def test_always_policy_resolves_again(self):
        req = ResolutionRequest(
            to=MANAGED_KIND,
            current_value="v",
            reference=Reference(name="a", policy=ALWAYS),
        )
        assert not req.is_noop()

    def test_always_selector_drops_reference(self):
        req = ResolutionRequest(
            to=MANAGED_KIND,
            current_value="v",
            reference=Reference(name="a"),
            selector=Selector(policy=ALWAYS),
        )
        assert not req.is_noop()
        assert req.reference is None

    def test_multi_always_on_any_reference(self):
        req = MultiResolutionRequest(
            to=MANAGED_KIND,
            current_values=["v"],
            references=[Reference(name="a"), Reference(name="b", policy=ALWAYS)],
        )
        assert not req.is_noop()


@pytest.mark.asyncio
class TestResolve:
    """Tests for APIResolver.resolve."""

    async def test_noop_does_not_read(self, mock_store):
        resolver = APIResolver(mock_store, owner())
        rsp = await resolver.resolve(
            ResolutionRequest(
                to=MANAGED_KIND, current_value="v", reference=Reference(name="a")
            )
        )
        assert rsp.resolved_value == "v"
        assert rsp.resolved_reference == Reference(name="a")
        mock_store.get.assert_not_called()

    async def test_deleted_owner_returns_current(self, mock_store):
        mg = owner()
        mg.metadata.deletion_timestamp = utc_now()
        rsp = await APIResolver(mock_store, mg).resolve(
            ResolutionRequest(to=MANAGED_KIND, reference=Reference(name="a"))
        )
        assert rsp.resolved_value == ""
        mock_store.get.assert_not_called()

    async def test_reference(self, store):
        await create_target(store, "net", external_name="net-123")
        rsp = await APIResolver(store, owner()).resolve(
            ResolutionRequest(to=MANAGED_KIND, reference=Reference(name="net"))
        )
        assert rsp.resolved_value == "net-123"
        assert rsp.resolved_reference.name == "net"

    async def test_always_reference_replaces_value(self, store):
        await create_target(store, "net", external_name="new")
        rsp = await APIResolver(store, owner()).resolve(
            ResolutionRequest(
                to=MANAGED_KIND,
                current_value="old",
                reference=Reference(name="net", policy=ALWAYS),
            )
        )
        assert rsp.resolved_value == "new"

    async def test_custom_extract(self, store):
        await create_target(store, "net")
        rsp = await APIResolver(store, owner()).resolve(
            ResolutionRequest(
                to=MANAGED_KIND,
                reference=Reference(name="net"),
                extract=lambda obj: obj.metadata.uid,
            )
        )
        assert rsp.resolved_value

    async def test_required_reference_not_found(self, store):
        with pytest.raises(TetherError) as exc_info:
            await APIResolver(store, owner()).resolve(
                ResolutionRequest(to=MANAGED_KIND, reference=Reference(name="nope"))
            )
        assert is_not_found(exc_info.value)

    async def test_optional_reference_not_found(self, store):
        rsp = await APIResolver(store, owner()).resolve(
            ResolutionRequest(
                to=MANAGED_KIND, reference=Reference(name="nope", policy=OPTIONAL)
            )
        )
        assert rsp.resolved_value == ""
        assert rsp.resolved_reference is None

    async def test_optional_reference_store_error_raises(self, mock_store):
        mock_store.get.side_effect = StoreError()
        with pytest.raises(TetherError) as exc_info:
            await APIResolver(mock_store, owner()).resolve(
                ResolutionRequest(
                    to=MANAGED_KIND, reference=Reference(name="a", policy=OPTIONAL)
                )
            )
        assert not is_not_found(exc_info.value)

    async def test_required_reference_empty_value(self, store):
        await create_target(store, "net")
        with pytest.raises(NoValueError):
            await APIResolver(store, owner()).resolve(
                ResolutionRequest(to=MANAGED_KIND, reference=Reference(name="net"))
            )

    async def test_selector_picks_first_match(self, store):
        await create_target(store, "a", "ext-a", labels={"net": "x"})
        await create_target(store, "b", "ext-b", labels={"net": "x"})
        await create_target(store, "c", "ext-c", labels={"net": "y"})

        rsp = await APIResolver(store, owner()).resolve(
            ResolutionRequest(
                to=MANAGED_KIND, selector=Selector(match_labels={"net": "x"})
            )
        )
        assert rsp.resolved_value == "ext-a"
        assert rsp.resolved_reference == Reference(name="a", namespace="")

    async def test_selector_skips_deleted(self, store):
        deleted = new_managed("a")
        set_external_name(deleted, "ext-a")
        deleted.metadata.finalizers = ["keep"]
        await store.create(deleted)
        await store.delete(deleted)
        await create_target(store, "b", "ext-b")

        rsp = await APIResolver(store, owner()).resolve(
            ResolutionRequest(to=MANAGED_KIND, selector=Selector())
        )
        assert rsp.resolved_value == "ext-b"

    async def test_selector_matching_controller(self, store):
        await create_target(store, "a", "ext-a", controller_uid="other")
        await create_target(store, "b", "ext-b", controller_uid="mine")

        rsp = await APIResolver(store, owner("mine")).resolve(
            ResolutionRequest(
                to=MANAGED_KIND, selector=Selector(match_controller_ref=True)
            )
        )
        assert rsp.resolved_value == "ext-b"

    async def test_selector_without_matches(self, store):
        with pytest.raises(NoMatchesError):
            await APIResolver(store, owner()).resolve(
                ResolutionRequest(to=MANAGED_KIND, selector=Selector())
            )

    async def test_optional_selector_without_matches(self, store):
        rsp = await APIResolver(store, owner()).resolve(
            ResolutionRequest(to=MANAGED_KIND, selector=Selector(policy=OPTIONAL))
        )
        assert rsp.resolved_value == ""

    async def test_selector_list_error(self, mock_store):
        mock_store.list.side_effect = StoreError()
        with pytest.raises(TetherError):
            await APIResolver(mock_store, owner()).resolve(
                ResolutionRequest(to=MANAGED_KIND, selector=Selector())
            )


@pytest.mark.asyncio
class TestResolveMultiple:
    """Tests for APIResolver.resolve_multiple."""

    async def test_references_sorted_and_deduplicated(self, store):
        await create_target(store, "a", "zeta")
        await create_target(store, "b", "alpha")
        await create_target(store, "c", "alpha")

        rsp = await APIResolver(store, owner()).resolve_multiple(
            MultiResolutionRequest(
                to=MANAGED_KIND,
                references=[Reference(name=n) for n in ("a", "b", "c")],
            )
        )
        assert rsp.resolved_values == ["alpha", "zeta"]
        assert [r.name for r in rsp.resolved_references] == ["c", "a"]

    async def test_optional_missing_reference_skipped(self, store):
        await create_target(store, "a", "ext-a")
        rsp = await APIResolver(store, owner()).resolve_multiple(
            MultiResolutionRequest(
                to=MANAGED_KIND,
                references=[
                    Reference(name="a"),
                    Reference(name="missing", policy=OPTIONAL),
                ],
            )
        )
        assert rsp.resolved_values == ["ext-a"]

    async def test_all_optional_missing(self, store):
        rsp = await APIResolver(store, owner()).resolve_multiple(
            MultiResolutionRequest(
                to=MANAGED_KIND,
                references=[Reference(name="missing", policy=OPTIONAL)],
            )
        )
        assert rsp.resolved_values == []
        assert rsp.resolved_references == []

    async def test_required_missing_reference(self, store):
        await create_target(store, "a", "ext-a")
        with pytest.raises(TetherError) as exc_info:
            await APIResolver(store, owner()).resolve_multiple(
                MultiResolutionRequest(
                    to=MANAGED_KIND,
                    references=[Reference(name="a"), Reference(name="missing")],
                )
            )
        assert is_not_found(exc_info.value)

    async def test_noop_returns_current(self, mock_store):
        rsp = await APIResolver(mock_store, owner()).resolve_multiple(
            MultiResolutionRequest(
                to=MANAGED_KIND,
                current_values=["x"],
                references=[Reference(name="a")],
            )
        )
        assert rsp.resolved_values == ["x"]
        mock_store.get.assert_not_called()

    async def test_selector(self, store):
        await create_target(store, "a", "two", labels={"net": "x"})
        await create_target(store, "b", "one", labels={"net": "x"})
        await create_target(store, "c", "", labels={"net": "x"})

        rsp = await APIResolver(store, owner()).resolve_multiple(
            MultiResolutionRequest(
                to=MANAGED_KIND,
                selector=Selector(match_labels={"net": "x"}, policy=OPTIONAL),
            )
        )
        assert rsp.resolved_values == ["one", "two"]
        assert [r.name for r in rsp.resolved_references] == ["b", "a"]

    async def test_selector_without_matches(self, store):
        with pytest.raises(NoMatchesError):
            await APIResolver(store, owner()).resolve_multiple(
                MultiResolutionRequest(to=MANAGED_KIND, selector=Selector())
            )


class NetworkedResource(ExampleResource):
    """Resolves a network reference into spec.network_id."""

    async def resolve_references(self, resolver):
        rsp = await resolver.resolve(
            ResolutionRequest(
                to=MANAGED_KIND,
                current_value=getattr(self.spec, "network_id", ""),
                reference=Reference(name="net"),
            )
        )
        self.spec.network_id = rsp.resolved_value


def networked(network_id=""):
    mg = NetworkedResource(
        api_version=MANAGED_KIND.api_version,
        kind=MANAGED_KIND.kind,
        metadata=ObjectMeta(name="consumer"),
    )
    mg.spec.network_id = network_id
    return mg


@pytest.mark.asyncio
class TestAPISimpleReferenceResolver:
    """Tests for resolving and persisting managed resource references."""

    async def test_no_references_no_update(self, mock_store):
        await APISimpleReferenceResolver(mock_store).resolve_references(new_managed())
        mock_store.update.assert_not_called()

    async def test_resolved_value_persisted(self, mock_store):
        target = new_managed("net")
        set_external_name(target, "net-123")
        mock_store.get.return_value = target

        mg = networked()
        await APISimpleReferenceResolver(mock_store).resolve_references(mg)

        assert mg.spec.network_id == "net-123"
        mock_store.update.assert_called_once_with(mg)

    async def test_unchanged_not_persisted(self, mock_store):
        mg = networked(network_id="net-123")
        await APISimpleReferenceResolver(mock_store).resolve_references(mg)
        mock_store.update.assert_not_called()

    async def test_resolution_error_wrapped(self, mock_store):
        mock_store.get.side_effect = NotFoundError()
        with pytest.raises(TetherError) as exc_info:
            await APISimpleReferenceResolver(mock_store).resolve_references(networked())
        assert "cannot resolve references" in str(exc_info.value)

    async def test_update_error_wrapped(self, mock_store):
        target = new_managed("net")
        set_external_name(target, "net-123")
        mock_store.get.return_value = target
        mock_store.update.side_effect = StoreError()

        with pytest.raises(TetherError) as exc_info:
            await APISimpleReferenceResolver(mock_store).resolve_references(networked())
        assert "cannot update managed resource" in str(exc_info.value)
