"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import ControllerConfig
from controller import Manager
from events import EventBus
from gate import Gate
from objects import (
    ANNOTATION_DEFAULT_CLASS_KEY,
    ANNOTATION_DEFAULT_CLASS_VALUE,
    Claim,
    Managed,
    ObjectMeta,
    ObjectReference,
    ResourceClass,
    ResourceKind,
    Secret,
    new_scheme,
)
from store import MemoryStore

CLAIM_KIND = ResourceKind(group="example.tether.io", version="v1", kind="ExampleClaim")
CLASS_KIND = ResourceKind(group="example.tether.io", version="v1", kind="ExampleClass")
MANAGED_KIND = ResourceKind(
    group="example.tether.io", version="v1", kind="ExampleResource"
)


class ExampleClaim(Claim):
    pass


class ExampleClass(ResourceClass):
    pass


class ExampleResource(Managed):
    pass


def new_claim(name="cool-claim", namespace="default", **spec) -> ExampleClaim:
    claim = ExampleClaim(
        api_version=CLAIM_KIND.api_version,
        kind=CLAIM_KIND.kind,
        metadata=ObjectMeta(name=name, namespace=namespace),
    )
    for field, value in spec.items():
        setattr(claim.spec, field, value)
    return claim


def new_class(name="cool-class", default=False, labels=None) -> ExampleClass:
    annotations = {}
    if default:
        annotations[ANNOTATION_DEFAULT_CLASS_KEY] = ANNOTATION_DEFAULT_CLASS_VALUE
    return ExampleClass(
        api_version=CLASS_KIND.api_version,
        kind=CLASS_KIND.kind,
        metadata=ObjectMeta(name=name, annotations=annotations, labels=labels or {}),
    )


def new_managed(name="cool-resource", **spec) -> ExampleResource:
    mg = ExampleResource(
        api_version=MANAGED_KIND.api_version,
        kind=MANAGED_KIND.kind,
        metadata=ObjectMeta(name=name),
    )
    for field, value in spec.items():
        setattr(mg.spec, field, value)
    return mg


def new_secret(name="cool-secret", namespace="default", data=None) -> Secret:
    return Secret(
        api_version="v1",
        kind="Secret",
        metadata=ObjectMeta(name=name, namespace=namespace),
        data=data or {},
    )


def ref(api_version="", kind="", namespace="", name="", uid="") -> ObjectReference:
    return ObjectReference(
        api_version=api_version, kind=kind, namespace=namespace, name=name, uid=uid
    )


@pytest.fixture
def scheme():
    """Scheme with the built-in kinds and the example claim kinds."""
    s = new_scheme()
    s.register(CLAIM_KIND, ExampleClaim, status_subresource=True)
    s.register(CLASS_KIND, ExampleClass)
    s.register(MANAGED_KIND, ExampleResource, status_subresource=True)
    return s


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store(scheme):
    """In-memory store without an event bus."""
    return MemoryStore(scheme)


@pytest.fixture
def controller_config():
    """Controller config with short delays for tests."""
    return ControllerConfig(
        max_concurrent_reconciles=2,
        reconcile_timeout=5.0,
        short_wait=0.05,
        defaulting_max_jitter_ms=0,
        backoff_base_delay=0.01,
        backoff_max_delay=0.05,
        backoff_jitter_factor=0.0,
    )


@pytest.fixture
def manager(scheme, event_bus, controller_config):
    store = MemoryStore(scheme, event_bus)
    return Manager(store, event_bus, Gate(), controller_config)


@pytest.fixture
def mock_store(scheme):
    """A store whose methods are AsyncMocks."""
    s = MagicMock()
    s.scheme = scheme
    s.get = AsyncMock()
    s.list = AsyncMock(return_value=[])
    s.create = AsyncMock()
    s.update = AsyncMock()
    s.update_status = AsyncMock()
    s.delete = AsyncMock()
    s.close = AsyncMock()
    return s


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn
