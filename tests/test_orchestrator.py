from types import SimpleNamespace

import pytest
from kubernetes.client.exceptions import ApiException

from reconciler import orchestrator as orch
from reconciler.errors import AttachTimeoutError, OrchestratorError
from reconciler.orchestrator import InMemoryOrchestrator, KubernetesOrchestrator


def attachment(name, node, pv, attached=True):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        spec=SimpleNamespace(node_name=node, source=SimpleNamespace(persistent_volume_name=pv)),
        status=SimpleNamespace(attached=attached),
    )


class FakeApps:
    def __init__(self, error=None):
        self.patches = []
        self.error = error

    def patch_namespaced_stateful_set(self, name, namespace, body):
        if self.error is not None:
            raise self.error
        self.patches.append((name, namespace, body))


class FakeCore:
    def __init__(self, volume_name=None):
        self.volume_name = volume_name

    def read_namespaced_persistent_volume_claim(self, name, namespace):
        if self.volume_name is None:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(spec=SimpleNamespace(volume_name=self.volume_name))


class FakeStorage:
    def __init__(self, items):
        self.items = list(items)
        self.deleted = []
        self.detach_on_delete = True

    def list_volume_attachment(self):
        return SimpleNamespace(items=list(self.items))

    def delete_volume_attachment(self, name):
        self.deleted.append(name)
        if self.detach_on_delete:
            self.items = [va for va in self.items if va.metadata.name != name]


@pytest.fixture
def k8s(monkeypatch):
    monkeypatch.setattr(orch.config, "load_incluster_config", lambda: None)
    adapter = KubernetesOrchestrator(namespace="games", poll_interval_s=0, sleep=lambda s: None)
    adapter.apps = FakeApps()
    adapter.core = FakeCore(volume_name="pv-123")
    adapter.storage = FakeStorage([])
    return adapter


def test_in_memory_fault_injection():
    mem = InMemoryOrchestrator()
    mem.fail_attach("worker", times=1)
    with pytest.raises(AttachTimeoutError):
        mem.attach_volume("pvc-db", "worker", 1)
    mem.attach_volume("pvc-db", "worker", 1)
    assert mem.attachments["pvc-db"] == {"worker"}

    mem.stick_release("worker")
    with pytest.raises(AttachTimeoutError):
        mem.release_volume("pvc-db", "worker", 1)
    assert mem.attachments["pvc-db"] == {"worker"}
    assert mem.count("attach") == 2 and mem.count("release") == 1


def test_bind_pins_statefulset_to_nodes(k8s):
    k8s.bind_workload("minecraft", ["worker-2", "worker-1"])

    name, namespace, body = k8s.apps.patches[0]
    assert (name, namespace) == ("minecraft", "games")
    assert body["spec"]["replicas"] == 2
    pod_spec = body["spec"]["template"]["spec"]
    term = pod_spec["affinity"]["nodeAffinity"]["requiredDuringSchedulingIgnoredDuringExecution"]["nodeSelectorTerms"][0]
    assert term["matchExpressions"][0]["values"] == ["worker-1", "worker-2"]
    assert pod_spec["topologySpreadConstraints"][0]["labelSelector"] == {"matchLabels": {"app": "minecraft"}}


def test_bind_stacked_replicas_has_no_spread_constraint(k8s):
    k8s.bind_workload("web", ["worker", "worker"])
    pod_spec = k8s.apps.patches[0][2]["spec"]["template"]["spec"]
    assert "topologySpreadConstraints" not in pod_spec


def test_api_errors_become_orchestrator_errors(k8s):
    k8s.apps = FakeApps(error=ApiException(status=500, reason="boom"))
    with pytest.raises(OrchestratorError):
        k8s.bind_workload("web", ["worker"])


def test_unbind_of_missing_statefulset_is_ignored(k8s):
    k8s.apps = FakeApps(error=ApiException(status=404, reason="Not Found"))
    k8s.unbind_workload("web")


def test_release_deletes_attachment(k8s):
    k8s.storage = FakeStorage([attachment("va-1", "worker-1", "pv-123"), attachment("va-2", "worker-2", "pv-999")])
    k8s.release_volume("pvc-db", "worker-1", timeout_s=5)
    assert k8s.storage.deleted == ["va-1"]


def test_release_times_out_when_attachment_lingers(k8s):
    k8s.storage = FakeStorage([attachment("va-1", "worker-1", "pv-123")])
    k8s.storage.detach_on_delete = False
    with pytest.raises(AttachTimeoutError):
        k8s.release_volume("pvc-db", "worker-1", timeout_s=0)


def test_attach_waits_for_attached_status(k8s):
    k8s.storage = FakeStorage([attachment("va-3", "worker-2", "pv-123")])
    k8s.attach_volume("pvc-db", "worker-2", timeout_s=5)

    k8s.storage = FakeStorage([attachment("va-3", "worker-2", "pv-123", attached=False)])
    with pytest.raises(AttachTimeoutError):
        k8s.attach_volume("pvc-db", "worker-2", timeout_s=0)


def test_volume_id_may_name_a_persistent_volume(k8s):
    k8s.core = FakeCore(volume_name=None)
    k8s.storage = FakeStorage([attachment("va-4", "worker", "pv-direct")])
    k8s.attach_volume("pv-direct", "worker", timeout_s=0)
