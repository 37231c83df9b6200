from types import SimpleNamespace

from reconciler.events import EventType
from reconciler.state import NodeStatus
from reconciler.watcher import NodeWatcher, capability_labels, node_from_k8s, ready_status


def k8s_node(name, labels=None, ready="True"):
    conditions = [
        SimpleNamespace(type="MemoryPressure", status="False"),
        SimpleNamespace(type="Ready", status=ready),
    ]
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels or {}),
        status=SimpleNamespace(conditions=conditions),
    )


def test_capability_labels_use_prefix_and_true_value():
    labels = {
        "reconciler.io/public-IP": "true",
        "reconciler.io/ssd": "false",
        "kubernetes.io/hostname": "worker",
        "reconciler.io/gpu": "True",
    }
    assert capability_labels(labels) == frozenset({"public-IP", "gpu"})
    assert capability_labels(labels, prefix="other/") == frozenset()


def test_ready_condition_mapping():
    assert ready_status(k8s_node("a").status.conditions) == NodeStatus.READY
    assert ready_status(k8s_node("a", ready="False").status.conditions) == NodeStatus.NOT_READY
    assert ready_status(k8s_node("a", ready="Unknown").status.conditions) == NodeStatus.UNKNOWN
    assert ready_status(None) == NodeStatus.UNKNOWN


def test_node_from_k8s_reads_zone_and_public_flag():
    node = node_from_k8s(k8s_node("worker", {
        "reconciler.io/public-IP": "true",
        "topology.kubernetes.io/zone": "cloud",
    }))
    assert node.zone == "cloud"
    assert node.public is True
    assert node.labels == frozenset({"public-IP"})


def test_watch_events_drive_registry(registry, events):
    watcher = NodeWatcher(registry)
    labels = {"reconciler.io/public-IP": "true"}

    watcher.handle_event("ADDED", k8s_node("worker", labels))
    assert registry.get("worker").status == NodeStatus.READY

    watcher.handle_event("MODIFIED", k8s_node("worker", labels))
    watcher.handle_event("MODIFIED", k8s_node("worker", labels, ready="False"))
    assert registry.get("worker").status == NodeStatus.NOT_READY
    assert registry.snapshot().is_suspect("worker")

    watcher.handle_event("DELETED", k8s_node("worker", labels))
    assert registry.get("worker") is None

    types = [e.event_type for e in events.drain()]
    assert types == [
        EventType.NODE_REGISTERED,
        EventType.LIVENESS_CHANGED,
        EventType.LIVENESS_CHANGED,
        EventType.NODE_REMOVED,
    ]


def test_zone_change_is_logged_not_raised(registry, caplog):
    watcher = NodeWatcher(registry)
    watcher.handle_event("ADDED", k8s_node("worker", {"topology.kubernetes.io/zone": "cloud"}))
    watcher.handle_event("MODIFIED", k8s_node("worker", {"topology.kubernetes.io/zone": "home"}, ready="False"))

    assert registry.get("worker").zone == "cloud"
    assert registry.get("worker").status == NodeStatus.READY
    assert "registration rejected" in caplog.text
