"""Node registry: capability labels, zones and liveness for every cluster node."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional

from reconciler.errors import DuplicateNodeError
from reconciler.events import Event, EventBus, EventType
from reconciler.state import Node, NodeStatus, RegistrySnapshot

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_S = 300.0


class EligibleNodes:
    """
    Lazy view over the Ready nodes carrying a set of labels.

    Each iteration walks the same point-in-time snapshot, so the sequence is
    finite and can be iterated again with identical results.
    """

    def __init__(self, snapshot: RegistrySnapshot, required_labels: Iterable[str]) -> None:
        self._snapshot = snapshot
        self.required_labels: FrozenSet[str] = frozenset(required_labels)

    def __iter__(self) -> Iterator[Node]:
        for node in self._snapshot.nodes:
            if node.status == NodeStatus.READY and node.has_labels(self.required_labels):
                yield node

    def names(self) -> List[str]:
        return [n.name for n in self]


class NodeRegistry:
    def __init__(
        self,
        events: Optional[EventBus] = None,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.events = events or EventBus()
        self.grace_period_s = max(0.0, float(grace_period_s))
        self._clock = clock

        self._lock = threading.RLock()
        self._nodes: Dict[str, Node] = {}
        # name -> time the node left Ready; cleared on the next Ready transition
        self._not_ready_since: Dict[str, float] = {}
        self._lost: set = set()

    # -------- registration --------

    def register(self, node: Node) -> Node:
        """Add a node or update its labels and public flag. Zone is immutable."""
        with self._lock:
            existing = self._nodes.get(node.name)
            if existing is None:
                self._nodes[node.name] = node
                logger.info(
                    f"Registered node '{node.name}' zone={node.zone} "
                    f"labels={sorted(node.labels)} status={node.status.value}"
                )
                self._emit(EventType.NODE_REGISTERED, node.name, {"labels": sorted(node.labels)})
                return node

            if existing.zone != node.zone:
                logger.warning(
                    f"Ignoring registration of '{node.name}': zone {node.zone} conflicts with {existing.zone}"
                )
                raise DuplicateNodeError(node.name, existing.zone, node.zone)

            updated = dataclasses.replace(existing, labels=node.labels, public=node.public)
            if updated != existing:
                self._nodes[node.name] = updated
                logger.info(f"Updated node '{node.name}' labels={sorted(updated.labels)} public={updated.public}")
                self._emit(
                    EventType.NODE_REGISTERED,
                    node.name,
                    {"labels": sorted(updated.labels), "updated": True},
                )
            return updated

    def remove(self, name: str) -> bool:
        """Decommission a node. Returns False if it was not registered."""
        with self._lock:
            if self._nodes.pop(name, None) is None:
                return False
            self._not_ready_since.pop(name, None)
            self._lost.discard(name)
            logger.info(f"Removed node '{name}'")
            self._emit(EventType.NODE_REMOVED, name)
            return True

    # -------- liveness --------

    def update_liveness(self, name: str, status: NodeStatus, now: Optional[float] = None) -> bool:
        """
        Record a liveness observation for a node.

        Only transitions emit a liveness-change event; repeated heartbeats
        with an unchanged status are absorbed. Returns True on a transition.

        Raises:
            KeyError: If the node is not registered
        """
        now = self._clock() if now is None else now
        status = NodeStatus(status)
        with self._lock:
            node = self._nodes.get(name)
            if node is None:
                raise KeyError(f"Unknown node '{name}'")
            if node.status == status:
                return False

            previous = node.status
            self._nodes[name] = dataclasses.replace(node, status=status)

            if status == NodeStatus.READY:
                self._not_ready_since.pop(name, None)
                if name in self._lost:
                    self._lost.discard(name)
                    logger.info(f"Node '{name}' rejoined after being marked lost")
            elif previous == NodeStatus.READY:
                self._not_ready_since[name] = now
                logger.warning(
                    f"Node '{name}' is {status.value}; grace period of {self.grace_period_s:.0f}s started"
                )

            self._emit(
                EventType.LIVENESS_CHANGED,
                name,
                {"previous": previous.value, "status": status.value},
            )
            return True

    def expire_grace_periods(self, now: Optional[float] = None) -> List[str]:
        """Mark nodes lost whose grace period elapsed without a Ready transition."""
        now = self._clock() if now is None else now
        expired: List[str] = []
        with self._lock:
            for name, since in sorted(self._not_ready_since.items()):
                if name in self._lost:
                    continue
                if now - since >= self.grace_period_s:
                    self._lost.add(name)
                    expired.append(name)
                    logger.warning(
                        f"Node '{name}' not Ready for {now - since:.0f}s; treating it as lost"
                    )
                    self._emit(EventType.NODE_LOST, name, {"not_ready_since": since})
        return expired

    # -------- reads --------

    def get(self, name: str) -> Optional[Node]:
        with self._lock:
            return self._nodes.get(name)

    def list_nodes(self) -> List[Node]:
        with self._lock:
            return [self._nodes[k] for k in sorted(self._nodes)]

    def is_lost(self, name: str) -> bool:
        with self._lock:
            return name in self._lost

    def snapshot(self, now: Optional[float] = None) -> RegistrySnapshot:
        """Return a copy-on-read view; later registry mutations never show through."""
        now = self._clock() if now is None else now
        with self._lock:
            nodes = tuple(self._nodes[k] for k in sorted(self._nodes))
            suspect = frozenset(n for n in self._not_ready_since if n not in self._lost)
            lost = frozenset(self._lost)
        return RegistrySnapshot(nodes=nodes, suspect=suspect, lost=lost, taken_at=now)

    def list_eligible(self, required_labels: Iterable[str] = ()) -> EligibleNodes:
        return EligibleNodes(self.snapshot(), required_labels)

    def _emit(self, event_type: EventType, subject: str, data: Optional[dict] = None) -> None:
        self.events.emit(Event(event_type=event_type, subject=subject, data=data or {}))
