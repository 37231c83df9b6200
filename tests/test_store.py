import pytest

from conftest import stateful_spec
from reconciler.errors import InvalidSpecError
from reconciler.events import EventType
from reconciler.state import AccessMode, ExposureType, StorageRequirement, WorkloadSpec


def test_direct_tcp_requires_public_ip(store, events):
    spec = WorkloadSpec(name="minecraft", exposure=ExposureType.DIRECT_TCP)
    with pytest.raises(InvalidSpecError):
        store.put(spec)
    assert store.get("minecraft") is None
    assert events.drain() == []


def test_tunnel_workload_needs_no_public_ip(store):
    assert store.put(WorkloadSpec(name="dashboard", exposure=ExposureType.HTTP_TUNNEL)) is True


@pytest.mark.parametrize(
    "spec",
    [
        WorkloadSpec(name=""),
        WorkloadSpec(name="web", replicas=0),
        WorkloadSpec(name="db", storage=StorageRequirement(size_gb=0)),
        WorkloadSpec(name="db", storage=StorageRequirement(size_gb=5), replicas=2, anti_affinity=True),
    ],
)
def test_invalid_specs_are_rejected(store, spec):
    with pytest.raises(InvalidSpecError):
        store.put(spec)


def test_identical_put_is_a_noop(store, events):
    spec = stateful_spec()
    assert store.put(spec) is True
    assert store.put(stateful_spec()) is False

    emitted = events.drain()
    assert [e.event_type for e in emitted] == [EventType.SPEC_CHANGED]
    assert emitted[0].data == {"created": True}

    assert store.put(stateful_spec(replicas=2)) is True
    assert events.drain()[0].data == {"created": False}


def test_list_and_delete(store, events):
    store.put(WorkloadSpec(name="b"))
    store.put(WorkloadSpec(name="a"))
    assert [s.name for s in store.list()] == ["a", "b"]
    events.drain()

    deleted = store.delete("a")
    assert deleted.name == "a"
    assert [e.event_type for e in events.drain()] == [EventType.SPEC_DELETED]

    with pytest.raises(KeyError):
        store.delete("a")


def test_default_volume_id():
    assert stateful_spec(name="db").volume_id == "pvc-db"
    custom = WorkloadSpec(name="db", storage=StorageRequirement(size_gb=5, volume_id="data-0"))
    assert custom.volume_id == "data-0"
    assert WorkloadSpec(name="web").volume_id is None


def test_multi_writer_volume_may_spread(store):
    spec = WorkloadSpec(
        name="shared",
        storage=StorageRequirement(size_gb=5, access_mode=AccessMode.MULTI_WRITER),
        replicas=2,
        anti_affinity=True,
    )
    assert store.put(spec) is True
