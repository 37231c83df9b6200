"""Kubernetes node watcher: feeds node registration and liveness into the registry."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, FrozenSet, Optional

from kubernetes import client, config, watch

from reconciler.errors import DuplicateNodeError
from reconciler.registry import NodeRegistry
from reconciler.state import PUBLIC_IP_LABEL, Node, NodeStatus

logger = logging.getLogger(__name__)

ZONE_LABEL = "topology.kubernetes.io/zone"
DEFAULT_LABEL_PREFIX = "reconciler.io/"


def capability_labels(labels: Dict[str, str], prefix: str = DEFAULT_LABEL_PREFIX) -> FrozenSet[str]:
	"""Capabilities are node labels `<prefix><capability>=true`."""
	caps = set()
	for key, value in (labels or {}).items():
		if key.startswith(prefix) and str(value).lower() == "true":
			caps.add(key[len(prefix):])
	return frozenset(caps)


def ready_status(conditions: Optional[list]) -> NodeStatus:
	"""Map the kubelet Ready condition to a liveness status."""
	for condition in conditions or []:
		if condition.type == "Ready":
			if condition.status == "True":
				return NodeStatus.READY
			if condition.status == "False":
				return NodeStatus.NOT_READY
			return NodeStatus.UNKNOWN
	return NodeStatus.UNKNOWN


def node_from_k8s(obj: Any, prefix: str = DEFAULT_LABEL_PREFIX) -> Node:
	labels = obj.metadata.labels or {}
	caps = capability_labels(labels, prefix)
	return Node(
		name=obj.metadata.name,
		labels=caps,
		zone=labels.get(ZONE_LABEL, "default"),
		status=NodeStatus.UNKNOWN,
		public=PUBLIC_IP_LABEL in caps,
	)


class NodeWatcher:
	"""
	Watches Kubernetes nodes and mirrors them into the node registry.

	Uses the watch API on `list_node`; ADDED/MODIFIED events register the
	node and update liveness from its Ready condition, DELETED events
	decommission it.
	"""

	def __init__(
		self,
		registry: NodeRegistry,
		label_prefix: str = DEFAULT_LABEL_PREFIX,
		core_api: Optional[client.CoreV1Api] = None,
		watch_timeout_s: int = 30,
		retry_delay_s: float = 5.0,
	) -> None:
		self.registry = registry
		self.label_prefix = label_prefix
		self.core_api = core_api
		self.watch_timeout_s = watch_timeout_s
		self.retry_delay_s = retry_delay_s

		self._running = False
		self._thread: Optional[threading.Thread] = None
		self._stop_event = threading.Event()

	def start(self) -> None:
		if self._running:
			logger.warning("NodeWatcher already running")
			return
		self._running = True
		self._stop_event.clear()
		self._thread = threading.Thread(target=self._watch_nodes_loop, name="node-watcher", daemon=True)
		self._thread.start()
		logger.info("NodeWatcher started")

	def stop(self) -> None:
		if not self._running:
			return
		self._running = False
		self._stop_event.set()
		if self._thread:
			self._thread.join(timeout=5.0)
		logger.info("NodeWatcher stopped")

	def handle_event(self, event_type: str, obj: Any) -> None:
		"""Apply one watch event to the registry."""
		name = obj.metadata.name
		if event_type == "DELETED":
			self.registry.remove(name)
			return

		try:
			self.registry.register(node_from_k8s(obj, self.label_prefix))
		except DuplicateNodeError as e:
			logger.error(f"Node registration rejected: {e}")
			return

		status = ready_status(obj.status.conditions if obj.status else None)
		self.registry.update_liveness(name, status)

	def _load_client(self) -> Optional[client.CoreV1Api]:
		if self.core_api is not None:
			return self.core_api
		try:
			config.load_incluster_config()
		except config.ConfigException:
			try:
				config.load_kube_config()
			except Exception as e:
				logger.error(f"Failed to load Kubernetes config: {e}")
				return None
		self.core_api = client.CoreV1Api()
		return self.core_api

	def _watch_nodes_loop(self) -> None:
		"""Watch node status changes."""
		core_client = self._load_client()
		if core_client is None:
			self._running = False
			return

		w = watch.Watch()
		while not self._stop_event.is_set():
			try:
				for event in w.stream(core_client.list_node, timeout_seconds=self.watch_timeout_s):
					if self._stop_event.is_set():
						break
					self.handle_event(event["type"], event["object"])
			except Exception as e:
				logger.error(f"Error watching nodes: {e}")
				self._stop_event.wait(self.retry_delay_s)
		w.stop()
