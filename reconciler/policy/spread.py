from typing import Dict, List, Mapping, Optional, Tuple

from reconciler.policy.base import Policy
from reconciler.registry import EligibleNodes
from reconciler.state import (
    AccessMode,
    DecisionStatus,
    Node,
    PlacementDecision,
    ReasonCode,
    RegistrySnapshot,
    VolumeBinding,
    WorkloadSpec,
    utc_ms,
)


class SpreadPlacementPolicy(Policy):
    """
    Label-constrained placement that keeps data where it is and spreads load.

    Candidates are the Ready nodes carrying every required label. The primary
    replica goes to the best node by (bound volume node first, fewest assigned
    replicas, name); further replicas are ranked by load and name only. A
    single-writer volume without anti-affinity keeps every replica on the
    primary. The node list is canonical (primary first, the rest sorted), so
    the result depends only on the inputs and never on evaluation order.
    """

    def _candidate_nodes(self, spec: WorkloadSpec, snapshot: RegistrySnapshot) -> List[Node]:
        return sorted(EligibleNodes(snapshot, spec.required_labels), key=lambda n: n.name)

    @staticmethod
    def _rank(node: Node, bound_node: Optional[str], load: Mapping[str, int]) -> Tuple[int, int, str]:
        return (0 if node.name == bound_node else 1, load.get(node.name, 0), node.name)

    @staticmethod
    def _pinned(spec: WorkloadSpec) -> bool:
        return (
            spec.storage is not None
            and spec.storage.access_mode == AccessMode.SINGLE_WRITER
            and not spec.anti_affinity
        )

    def evaluate(
        self,
        spec: WorkloadSpec,
        snapshot: RegistrySnapshot,
        binding: Optional[VolumeBinding] = None,
        load: Optional[Mapping[str, int]] = None,
        now: Optional[int] = None,
    ) -> PlacementDecision:
        decided_at = utc_ms() if now is None else now
        candidates = self._candidate_nodes(spec, snapshot)
        if not candidates:
            return PlacementDecision(
                workload=spec.name,
                nodes=(),
                status=DecisionStatus.UNSCHEDULABLE,
                reason=ReasonCode.NO_ELIGIBLE_NODE,
                decided_at=decided_at,
            )

        bound_node = binding.node if binding is not None else None
        running: Dict[str, int] = dict(load or {})
        assigned: List[str] = []

        for _ in range(spec.replicas):
            if assigned and self._pinned(spec):
                best_name = assigned[0]
            else:
                pool = candidates
                if spec.anti_affinity:
                    pool = [n for n in candidates if n.name not in assigned]
                    if not pool:
                        break
                prefer = bound_node if not assigned else None
                best_name = min(pool, key=lambda n: self._rank(n, prefer, running)).name
            assigned.append(best_name)
            running[best_name] = running.get(best_name, 0) + 1

        if len(assigned) < spec.replicas:
            status, reason = DecisionStatus.PARTIAL, ReasonCode.INSUFFICIENT_NODES
        else:
            status, reason = DecisionStatus.COMPLETE, ReasonCode.PLACED

        # the primary carries the volume; without storage no replica is special
        if spec.storage is not None:
            nodes = (assigned[0],) + tuple(sorted(assigned[1:]))
        else:
            nodes = tuple(sorted(assigned))

        return PlacementDecision(
            workload=spec.name,
            nodes=nodes,
            status=status,
            reason=reason,
            decided_at=decided_at,
        )
