from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple
import time


PUBLIC_IP_LABEL = "public-IP"


def utc_ms() -> int:
    return int(time.time() * 1000)


def safe_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except Exception:
        return default


def safe_float(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except Exception:
        return default


# ----------------------------- enums -----------------------------

class NodeStatus(str, Enum):
    READY = "Ready"
    NOT_READY = "NotReady"
    UNKNOWN = "Unknown"


class ExposureType(str, Enum):
    HTTP_TUNNEL = "http-tunnel"    # cloudflared, no inbound reachability needed
    DIRECT_TCP = "direct-tcp"      # NodePort / hostNetwork on a public address
    INTERNAL = "internal"


class AccessMode(str, Enum):
    SINGLE_WRITER = "single-writer"  # ReadWriteOnce
    MULTI_WRITER = "multi-writer"    # ReadWriteMany


class DecisionStatus(str, Enum):
    COMPLETE = "Complete"
    PARTIAL = "Partial"
    UNSCHEDULABLE = "Unschedulable"


class ReasonCode(str, Enum):
    PLACED = "placed"
    INSUFFICIENT_NODES = "insufficient-nodes"
    NO_ELIGIBLE_NODE = "no-eligible-node"


class WorkloadPhase(str, Enum):
    STABLE = "Stable"
    EVALUATING = "Evaluating"
    REBINDING = "Rebinding"
    DEGRADED = "Degraded"


# ----------------------------- data classes -----------------------------

@dataclass(frozen=True)
class Node:
    name: str
    labels: FrozenSet[str] = field(default_factory=frozenset)
    zone: str = "default"
    status: NodeStatus = NodeStatus.UNKNOWN
    public: bool = False

    def has_labels(self, required: Iterable[str]) -> bool:
        return set(required) <= self.labels

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "labels": sorted(self.labels),
            "zone": self.zone,
            "status": self.status.value,
            "public": self.public,
        }


@dataclass(frozen=True)
class StorageRequirement:
    size_gb: float
    access_mode: AccessMode = AccessMode.SINGLE_WRITER
    volume_id: Optional[str] = None


@dataclass(frozen=True)
class WorkloadSpec:
    name: str
    exposure: ExposureType = ExposureType.INTERNAL
    required_labels: FrozenSet[str] = field(default_factory=frozenset)
    storage: Optional[StorageRequirement] = None
    replicas: int = 1
    anti_affinity: bool = False

    @property
    def volume_id(self) -> Optional[str]:
        if self.storage is None:
            return None
        return self.storage.volume_id or f"pvc-{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "exposureType": self.exposure.value,
            "requiredLabels": sorted(self.required_labels),
            "replicaCount": self.replicas,
            "antiAffinity": self.anti_affinity,
        }
        if self.storage is not None:
            data["storageSize"] = f"{self.storage.size_gb:g}Gi"
            data["accessMode"] = self.storage.access_mode.value
            data["volumeId"] = self.volume_id
        return data


@dataclass(frozen=True)
class PlacementDecision:
    workload: str
    nodes: Tuple[str, ...]
    status: DecisionStatus
    reason: ReasonCode
    decided_at: int = field(default_factory=utc_ms, compare=False)

    @property
    def primary(self) -> Optional[str]:
        return self.nodes[0] if self.nodes else None

    def same_placement(self, other: "PlacementDecision") -> bool:
        """Same primary and same node multiset; replica order beyond the primary is irrelevant."""
        return (
            self.status == other.status
            and self.reason == other.reason
            and self.primary == other.primary
            and sorted(self.nodes) == sorted(other.nodes)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workload": self.workload,
            "nodes": list(self.nodes),
            "status": self.status.value,
            "reason": self.reason.value,
            "decided_at": self.decided_at,
        }


@dataclass
class VolumeBinding:
    workload: str
    volume_id: str
    access_mode: AccessMode
    node: Optional[str] = None
    stuck_node: Optional[str] = None  # previous node whose release timed out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workload": self.workload,
            "volume_id": self.volume_id,
            "access_mode": self.access_mode.value,
            "node": self.node,
            "stuck_node": self.stuck_node,
        }


@dataclass
class WorkloadStatus:
    """Observable state of one workload's failover state machine."""
    workload: str
    phase: WorkloadPhase = WorkloadPhase.STABLE
    attempts: int = 0
    next_retry_at: Optional[float] = None
    target_node: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workload": self.workload,
            "phase": self.phase.value,
            "attempts": self.attempts,
            "next_retry_at": self.next_retry_at,
            "target_node": self.target_node,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class RegistrySnapshot:
    """Point-in-time view of the node registry."""
    nodes: Tuple[Node, ...]
    suspect: FrozenSet[str] = field(default_factory=frozenset)
    lost: FrozenSet[str] = field(default_factory=frozenset)
    taken_at: float = 0.0

    def is_suspect(self, name: str) -> bool:
        return name in self.suspect

    def ready_count(self) -> int:
        return sum(1 for n in self.nodes if n.status == NodeStatus.READY)
