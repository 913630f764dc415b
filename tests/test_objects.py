"""Unit tests for objects.py - Object model, scheme and helpers."""

import json

import pytest

from conftest import (
    CLAIM_KIND,
    MANAGED_KIND,
    ExampleClaim,
    new_class,
    new_claim,
    new_managed,
    new_secret,
    ref,
)
from objects import (
    ANNOTATION_PROPAGATE_FROM_NAME,
    ANNOTATION_PROPAGATE_FROM_NAMESPACE,
    ANNOTATION_PROPAGATE_FROM_UID,
    SECRET_KIND,
    BindingPhase,
    ConditionStatus,
    ConditionedStatus,
    ObjectKey,
    OwnerReference,
    ResourceKind,
    Secret,
    TYPE_READY,
    add_finalizer,
    allow_propagation,
    available,
    binding,
    get_controller_of,
    have_same_controller,
    is_bindable,
    is_bound,
    is_default_class,
    propagate_to_annotation_key,
    reconcile_error,
    reference_to,
    references_equal,
    remove_finalizer,
    set_bindable,
)


class TestResourceKind:
    """Tests for ResourceKind."""

    def test_api_version_with_group(self):
        assert CLAIM_KIND.api_version == "example.tether.io/v1"

    def test_api_version_core(self):
        assert SECRET_KIND.api_version == "v1"

    def test_from_api_version_round_trip(self):
        kind = ResourceKind.from_api_version("example.tether.io/v1", "ExampleClaim")
        assert kind == CLAIM_KIND
        assert ResourceKind.from_api_version("v1", "Secret") == SECRET_KIND

    def test_str(self):
        assert str(CLAIM_KIND) == "ExampleClaim.v1.example.tether.io"

    def test_hashable(self):
        assert {CLAIM_KIND: 1}[ResourceKind("example.tether.io", "v1", "ExampleClaim")]


class TestObjectKey:
    def test_str_namespaced(self):
        assert str(ObjectKey(namespace="ns", name="n")) == "ns/n"

    def test_str_cluster_scoped(self):
        assert str(ObjectKey(namespace="", name="n")) == "n"


class TestConditions:
    """Tests for ConditionedStatus.set_conditions."""

    def test_unknown_when_missing(self):
        status = ConditionedStatus()
        assert status.get_condition(TYPE_READY).status == ConditionStatus.UNKNOWN

    def test_set_replaces_same_type(self):
        status = ConditionedStatus()
        status.set_conditions(binding())
        status.set_conditions(available())
        assert len(status.conditions) == 1
        assert status.get_condition(TYPE_READY).status == ConditionStatus.TRUE

    def test_equal_condition_keeps_transition_time(self):
        status = ConditionedStatus()
        first = available()
        status.set_conditions(first)
        status.set_conditions(available())
        assert status.conditions[0] is first

    def test_error_message_recorded(self):
        status = ConditionedStatus()
        status.set_conditions(reconcile_error(ValueError("boom")))
        assert status.conditions[0].message == "boom"


class TestBindingPhase:
    """Tests for the bindable helpers."""

    def test_set_bindable_from_unset(self):
        mg = new_managed()
        set_bindable(mg)
        assert mg.get_binding_phase() == BindingPhase.UNBOUND
        assert is_bindable(mg)

    @pytest.mark.parametrize("phase", [BindingPhase.BOUND, BindingPhase.RELEASED])
    def test_set_bindable_keeps_bound_and_released(self, phase):
        mg = new_managed()
        mg.set_binding_phase(phase)
        set_bindable(mg)
        assert mg.get_binding_phase() == phase

    def test_is_bound(self):
        claim = new_claim()
        assert not is_bound(claim)
        claim.set_binding_phase(BindingPhase.BOUND)
        assert is_bound(claim)


class TestReferences:
    """Tests for reference helpers."""

    def test_reference_to(self):
        claim = new_claim("c", "ns")
        claim.metadata.uid = "uid-1"
        r = reference_to(claim)
        assert r.api_version == CLAIM_KIND.api_version
        assert r.kind == CLAIM_KIND.kind
        assert r.key == ObjectKey("ns", "c")
        assert r.uid == "uid-1"

    def test_references_equal_ignores_uid(self):
        a = ref("v1", "K", "ns", "n", uid="1")
        b = ref("v1", "K", "ns", "n", uid="2")
        assert references_equal(a, b)
        assert not references_equal(a, ref("v1", "K", "ns", "other"))
        assert references_equal(None, None)
        assert not references_equal(a, None)

    def test_controller_helpers(self):
        a = new_secret("a")
        b = new_secret("b")
        assert get_controller_of(a) is None
        assert not have_same_controller(a, b)

        owner = OwnerReference(
            api_version="v1", kind="K", name="o", uid="u", controller=True
        )
        a.metadata.owner_references.append(owner)
        b.metadata.owner_references.append(owner)
        assert get_controller_of(a) == owner
        assert have_same_controller(a, b)

    def test_is_default_class(self):
        assert is_default_class(new_class(default=True))
        assert not is_default_class(new_class())


class TestFinalizers:
    def test_add_is_idempotent(self):
        claim = new_claim()
        assert add_finalizer(claim, "f")
        assert not add_finalizer(claim, "f")
        assert claim.metadata.finalizers == ["f"]

    def test_remove(self):
        claim = new_claim()
        add_finalizer(claim, "f")
        assert remove_finalizer(claim, "f")
        assert not remove_finalizer(claim, "f")
        assert claim.metadata.finalizers == []


class TestAllowPropagation:
    def test_sets_annotations_on_both(self):
        source = new_secret("from", "a")
        source.metadata.uid = "from-uid"
        target = new_secret("to", "b")
        target.metadata.uid = "to-uid"

        allow_propagation(source, target)

        assert target.metadata.annotations == {
            ANNOTATION_PROPAGATE_FROM_NAMESPACE: "a",
            ANNOTATION_PROPAGATE_FROM_NAME: "from",
            ANNOTATION_PROPAGATE_FROM_UID: "from-uid",
        }
        key = propagate_to_annotation_key("to-uid")
        assert key == "to.propagate.tether.io/to-uid"
        assert source.metadata.annotations == {key: "b/to"}


class TestScheme:
    """Tests for the Scheme registry."""

    def test_model_for_unregistered(self, scheme):
        with pytest.raises(KeyError):
            scheme.model_for(ResourceKind("nope.io", "v1", "Nope"))

    def test_new(self, scheme):
        obj = scheme.new(CLAIM_KIND)
        assert isinstance(obj, ExampleClaim)
        assert obj.resource_kind == CLAIM_KIND

    def test_from_dict(self, scheme):
        obj = scheme.from_dict(
            {
                "api_version": CLAIM_KIND.api_version,
                "kind": CLAIM_KIND.kind,
                "metadata": {"name": "c", "namespace": "ns"},
                "spec": {"class_ref": {"name": "cls"}, "engine_version": "9.6"},
            }
        )
        assert isinstance(obj, ExampleClaim)
        assert obj.get_class_reference().name == "cls"
        # Kind-specific fields are kept
        assert obj.spec.engine_version == "9.6"

    def test_status_subresource(self, scheme):
        assert scheme.has_status_subresource(CLAIM_KIND)
        assert scheme.has_status_subresource(MANAGED_KIND)
        assert not scheme.has_status_subresource(SECRET_KIND)

    def test_secret_data_json_is_base64(self):
        secret = new_secret(data={"password": b"hunter2"})
        dumped = json.loads(secret.model_dump_json())
        assert dumped["data"]["password"] == "aHVudGVyMg=="
        assert Secret.model_validate_json(secret.model_dump_json()).data == {
            "password": b"hunter2"
        }
