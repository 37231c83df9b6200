"""Cluster orchestrator adapters: where bind/release/attach intents are executed."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException

from reconciler.errors import AttachTimeoutError, OrchestratorError

logger = logging.getLogger(__name__)

HOSTNAME_LABEL = "kubernetes.io/hostname"


class ClusterOrchestrator(ABC):
    """
    Declarative intents issued by the failover controller.

    Every intent is idempotent: repeating it with the same arguments leaves
    the cluster in the same state.
    """

    @abstractmethod
    def bind_workload(self, workload: str, nodes: Sequence[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def unbind_workload(self, workload: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def release_volume(self, volume_id: str, node: str, timeout_s: float) -> None:
        raise NotImplementedError

    @abstractmethod
    def attach_volume(self, volume_id: str, node: str, timeout_s: float) -> None:
        raise NotImplementedError


class InMemoryOrchestrator(ClusterOrchestrator):
    """Records intents without touching a cluster. Used for dry runs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.actions: List[Tuple] = []
        self.bindings: Dict[str, Tuple[str, ...]] = {}
        self.attachments: Dict[str, Set[str]] = {}
        self._attach_failures: Dict[str, int] = {}
        self._stuck_nodes: Set[str] = set()

    # -------- fault injection --------

    def fail_attach(self, node: str, times: int = 1) -> None:
        """Make the next `times` attach requests on `node` time out (-1 for always)."""
        with self._lock:
            self._attach_failures[node] = times

    def stick_release(self, node: str, stuck: bool = True) -> None:
        """Make releases from `node` time out, leaving the attachment in place."""
        with self._lock:
            if stuck:
                self._stuck_nodes.add(node)
            else:
                self._stuck_nodes.discard(node)

    def count(self, kind: str) -> int:
        with self._lock:
            return sum(1 for a in self.actions if a[0] == kind)

    # -------- intents --------

    def bind_workload(self, workload: str, nodes: Sequence[str]) -> None:
        with self._lock:
            self.actions.append(("bind", workload, tuple(nodes)))
            self.bindings[workload] = tuple(nodes)

    def unbind_workload(self, workload: str) -> None:
        with self._lock:
            self.actions.append(("unbind", workload))
            self.bindings.pop(workload, None)

    def release_volume(self, volume_id: str, node: str, timeout_s: float) -> None:
        with self._lock:
            self.actions.append(("release", volume_id, node))
            if node in self._stuck_nodes:
                raise AttachTimeoutError("release", volume_id, node, timeout_s)
            self.attachments.get(volume_id, set()).discard(node)

    def attach_volume(self, volume_id: str, node: str, timeout_s: float) -> None:
        with self._lock:
            self.actions.append(("attach", volume_id, node))
            remaining = self._attach_failures.get(node, 0)
            if remaining != 0:
                if remaining > 0:
                    self._attach_failures[node] = remaining - 1
                raise AttachTimeoutError("attach", volume_id, node, timeout_s)
            self.attachments.setdefault(volume_id, set()).add(node)


class KubernetesOrchestrator(ClusterOrchestrator):
    """
    Executes intents against the Kubernetes API.

    Workloads map to StatefulSets in one namespace. Binding pins the pod
    template to the decided hostnames; volume release/attach is observed
    through storage.k8s.io VolumeAttachment objects.
    """

    def __init__(
        self,
        namespace: str = "default",
        app_label: str = "app",
        poll_interval_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize the orchestrator with Kubernetes clients.

        Args:
            namespace: Namespace holding the managed StatefulSets and PVCs
            app_label: Pod label used to spread replicas across nodes
            poll_interval_s: Interval between VolumeAttachment polls
            sleep: Sleep function (overridable in tests)
        """
        self.namespace = namespace
        self.app_label = app_label
        self.poll_interval_s = poll_interval_s
        self._sleep = sleep

        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        except Exception:
            try:
                config.load_kube_config()
                logger.info("Loaded kubeconfig")
            except Exception as e:
                logger.warning(f"Could not load Kubernetes config: {e}")

        self.core = client.CoreV1Api()
        self.apps = client.AppsV1Api()
        self.storage = client.StorageV1Api()

    def _pod_spec_patch(self, workload: str, nodes: Sequence[str]) -> dict:
        hostnames = sorted(set(nodes))
        spec: dict = {
            "affinity": {
                "nodeAffinity": {
                    "requiredDuringSchedulingIgnoredDuringExecution": {
                        "nodeSelectorTerms": [{
                            "matchExpressions": [{
                                "key": HOSTNAME_LABEL,
                                "operator": "In",
                                "values": hostnames,
                            }]
                        }]
                    }
                }
            }
        }
        if len(nodes) > 1 and len(hostnames) == len(nodes):
            spec["topologySpreadConstraints"] = [{
                "maxSkew": 1,
                "topologyKey": HOSTNAME_LABEL,
                "whenUnsatisfiable": "DoNotSchedule",
                "labelSelector": {"matchLabels": {self.app_label: workload}},
            }]
        return spec

    def bind_workload(self, workload: str, nodes: Sequence[str]) -> None:
        body = {
            "spec": {
                "replicas": len(nodes),
                "template": {"spec": self._pod_spec_patch(workload, nodes)},
            }
        }
        try:
            self.apps.patch_namespaced_stateful_set(workload, self.namespace, body)
            logger.info(f"Bound StatefulSet {self.namespace}/{workload} to nodes {list(nodes)}")
        except ApiException as e:
            raise OrchestratorError(
                f"Failed to bind {workload}: status={e.status}, reason={e.reason}"
            ) from e

    def unbind_workload(self, workload: str) -> None:
        body = {"spec": {"replicas": 0}}
        try:
            self.apps.patch_namespaced_stateful_set(workload, self.namespace, body)
            logger.info(f"Scaled StatefulSet {self.namespace}/{workload} to 0 (no eligible node)")
        except ApiException as e:
            if e.status == 404:
                return
            raise OrchestratorError(
                f"Failed to unbind {workload}: status={e.status}, reason={e.reason}"
            ) from e

    def _resolve_pv(self, volume_id: str) -> str:
        """Accept either a PVC name in the namespace or a PV name."""
        try:
            pvc = self.core.read_namespaced_persistent_volume_claim(volume_id, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return volume_id
            raise OrchestratorError(f"Failed to read PVC {volume_id}: {e.reason}") from e
        return pvc.spec.volume_name or volume_id

    def _attachments(self, pv_name: str, node: str) -> list:
        try:
            items = self.storage.list_volume_attachment().items
        except ApiException as e:
            raise OrchestratorError(f"Failed to list VolumeAttachments: {e.reason}") from e
        return [
            va for va in items
            if va.spec.node_name == node
            and va.spec.source is not None
            and va.spec.source.persistent_volume_name == pv_name
        ]

    def release_volume(self, volume_id: str, node: str, timeout_s: float) -> None:
        pv_name = self._resolve_pv(volume_id)
        deadline = time.monotonic() + timeout_s
        for va in self._attachments(pv_name, node):
            try:
                self.storage.delete_volume_attachment(va.metadata.name)
                logger.info(f"Requested detach of {pv_name} from {node} ({va.metadata.name})")
            except ApiException as e:
                if e.status != 404:
                    raise OrchestratorError(f"Failed to delete {va.metadata.name}: {e.reason}") from e

        while self._attachments(pv_name, node):
            if time.monotonic() >= deadline:
                raise AttachTimeoutError("release", volume_id, node, timeout_s)
            self._sleep(self.poll_interval_s)

    def attach_volume(self, volume_id: str, node: str, timeout_s: float) -> None:
        pv_name = self._resolve_pv(volume_id)
        deadline = time.monotonic() + timeout_s
        while True:
            attached = [
                va for va in self._attachments(pv_name, node)
                if va.status is not None and va.status.attached
            ]
            if attached:
                logger.info(f"Volume {pv_name} attached on {node}")
                return
            if time.monotonic() >= deadline:
                raise AttachTimeoutError("attach", volume_id, node, timeout_s)
            self._sleep(self.poll_interval_s)
