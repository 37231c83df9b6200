"""Failover controller: per-workload placement and volume rebinding state machines."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

from reconciler.errors import AttachTimeoutError, OrchestratorError
from reconciler.orchestrator import ClusterOrchestrator
from reconciler.policy.base import Policy
from reconciler.policy.spread import SpreadPlacementPolicy
from reconciler.registry import NodeRegistry
from reconciler.state import (
    AccessMode,
    DecisionStatus,
    NodeStatus,
    PlacementDecision,
    VolumeBinding,
    WorkloadPhase,
    WorkloadSpec,
    WorkloadStatus,
)
from reconciler.store import WorkloadSpecStore

logger = logging.getLogger(__name__)

DEFAULT_ATTACH_TIMEOUT_S = 120.0
DEFAULT_BACKOFF_BASE_S = 10.0
DEFAULT_BACKOFF_CAP_S = 300.0


class Trigger(Enum):
    """Why a workload is being reconciled."""
    SWEEP = "sweep"
    NODE_EVENT = "node_event"
    SPEC_CHANGED = "spec_changed"
    RETRY = "retry"


def backoff_delay(attempt: int, base_s: float = DEFAULT_BACKOFF_BASE_S, cap_s: float = DEFAULT_BACKOFF_CAP_S) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
    if attempt < 1:
        return 0.0
    # 2**n overflows float math long before the cap matters
    exponent = min(attempt - 1, 32)
    return min(cap_s, base_s * (2 ** exponent))


@dataclasses.dataclass
class _Runtime:
    """Mutable per-workload bookkeeping. Guarded by its own lock."""
    status: WorkloadStatus
    lock: threading.Lock = dataclasses.field(default_factory=threading.Lock)
    cancelled: threading.Event = dataclasses.field(default_factory=threading.Event)
    bound_nodes: Tuple[str, ...] = ()
    released: bool = False


class FailoverController:
    def __init__(
        self,
        registry: NodeRegistry,
        store: WorkloadSpecStore,
        orchestrator: ClusterOrchestrator,
        policy: Optional[Policy] = None,
        attach_timeout_s: float = DEFAULT_ATTACH_TIMEOUT_S,
        backoff_base_s: float = DEFAULT_BACKOFF_BASE_S,
        backoff_cap_s: float = DEFAULT_BACKOFF_CAP_S,
        clock: Callable[[], float] = time.time,
        history: int = 256,
    ) -> None:
        self.registry = registry
        self.store = store
        self.orchestrator = orchestrator
        self.policy = policy or SpreadPlacementPolicy()
        self.attach_timeout_s = attach_timeout_s
        self.backoff_base_s = backoff_base_s
        self.backoff_cap_s = backoff_cap_s
        self._clock = clock

        self._lock = threading.RLock()
        self._decisions: Dict[str, PlacementDecision] = {}
        self._bindings: Dict[str, VolumeBinding] = {}
        self._runtimes: Dict[str, _Runtime] = {}
        # (workload, from_phase, to_phase)
        self.transitions: Deque[Tuple[str, str, str]] = deque(maxlen=history)

    # -------- public reads --------

    def decision(self, name: str) -> Optional[PlacementDecision]:
        with self._lock:
            return self._decisions.get(name)

    def decisions(self) -> Dict[str, PlacementDecision]:
        with self._lock:
            return dict(self._decisions)

    def binding(self, name: str) -> Optional[VolumeBinding]:
        with self._lock:
            binding = self._bindings.get(name)
            return dataclasses.replace(binding) if binding else None

    def bindings(self) -> Dict[str, VolumeBinding]:
        with self._lock:
            return {k: dataclasses.replace(v) for k, v in self._bindings.items()}

    def status(self, name: str) -> Optional[WorkloadStatus]:
        with self._lock:
            rt = self._runtimes.get(name)
            return dataclasses.replace(rt.status) if rt else None

    def statuses(self) -> Dict[str, WorkloadStatus]:
        with self._lock:
            return {k: dataclasses.replace(rt.status) for k, rt in self._runtimes.items()}

    def workloads_on(self, node: str) -> List[str]:
        """Workloads whose current decision places a replica on `node`."""
        with self._lock:
            return sorted(name for name, d in self._decisions.items() if node in d.nodes)

    def unsettled(self) -> List[str]:
        """Workloads that are not Stable with a Complete decision."""
        with self._lock:
            names = set()
            for name, rt in self._runtimes.items():
                decision = self._decisions.get(name)
                if rt.status.phase != WorkloadPhase.STABLE:
                    names.add(name)
                elif decision is None or decision.status != DecisionStatus.COMPLETE:
                    names.add(name)
            return sorted(names)

    def due_retries(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        with self._lock:
            return sorted(
                name for name, rt in self._runtimes.items()
                if rt.status.phase == WorkloadPhase.REBINDING
                and rt.status.next_retry_at is not None
                and rt.status.next_retry_at <= now
            )

    # -------- state machine --------

    def reconcile(self, name: str, trigger: Trigger = Trigger.SWEEP, now: Optional[float] = None) -> Optional[WorkloadStatus]:
        """
        Drive one workload toward its desired placement.

        Returns the resulting status, or None when the workload has no spec
        (in which case any leftover state is cancelled).
        """
        now = self._clock() if now is None else now
        spec = self.store.get(name)
        if spec is None:
            self.cancel(name)
            return None

        rt = self._runtime(name)
        with rt.lock:
            if rt.cancelled.is_set():
                return dataclasses.replace(rt.status)
            self._reconcile_locked(spec, rt, trigger, now)
            result = dataclasses.replace(rt.status)
        if rt.cancelled.is_set():
            self._finalize_cancel(name, rt)
        return result

    def advance(self, now: Optional[float] = None) -> List[str]:
        """Run every rebind retry whose backoff delay has elapsed."""
        now = self._clock() if now is None else now
        due = self.due_retries(now)
        for name in due:
            self.reconcile(name, Trigger.RETRY, now)
        return due

    def _reconcile_locked(self, spec: WorkloadSpec, rt: _Runtime, trigger: Trigger, now: float) -> None:
        name = spec.name
        snapshot = self.registry.snapshot(now)
        current = self.decision(name)

        if trigger != Trigger.SPEC_CHANGED and current is not None:
            suspect = [n for n in current.nodes if snapshot.is_suspect(n)]
            if suspect:
                logger.debug(f"Holding placement of '{name}': {suspect} still inside grace period")
                return

        previous_phase = rt.status.phase
        previous_target = rt.status.target_node
        self._set_phase(rt, WorkloadPhase.EVALUATING)

        binding = self._binding_for(spec)
        decision = self.policy.evaluate(
            spec,
            snapshot,
            binding,
            load=self._load(exclude=name),
            now=int(now * 1000),
        )
        with self._lock:
            # keep the stored record and its timestamp when nothing changed
            if current is None or not current.same_placement(decision):
                self._decisions[name] = decision
                logger.info(
                    f"Placement for '{name}': nodes={list(decision.nodes)} "
                    f"status={decision.status.value} reason={decision.reason.value}"
                )
            else:
                decision = current

        if not decision.nodes:
            self._degrade(spec, rt)
            return

        target = decision.primary
        if binding is not None and binding.node != target:
            waiting = (
                previous_phase == WorkloadPhase.REBINDING
                and previous_target == target
                and rt.status.next_retry_at is not None
                and now < rt.status.next_retry_at
            )
            if previous_phase != WorkloadPhase.REBINDING or previous_target != target:
                rt.status.attempts = 0
                rt.status.next_retry_at = None
                rt.status.last_error = None
                rt.released = False
            rt.status.target_node = target
            self._set_phase(rt, WorkloadPhase.REBINDING)
            if waiting:
                return
            self._attempt_rebind(spec, rt, binding, decision, now)
            return

        if sorted(rt.bound_nodes) != sorted(decision.nodes):
            try:
                self.orchestrator.bind_workload(name, decision.nodes)
                rt.bound_nodes = decision.nodes
                rt.status.last_error = None
            except OrchestratorError as e:
                rt.status.last_error = str(e)
                logger.error(f"Failed to bind '{name}' to {list(decision.nodes)}: {e}")
        if binding is not None and binding.stuck_node is not None:
            self._retry_stuck_release(binding)
        rt.status.attempts = 0
        rt.status.next_retry_at = None
        rt.status.target_node = None
        self._set_phase(rt, WorkloadPhase.STABLE)

    def _attempt_rebind(
        self,
        spec: WorkloadSpec,
        rt: _Runtime,
        binding: VolumeBinding,
        decision: PlacementDecision,
        now: float,
    ) -> None:
        name = spec.name
        target = rt.status.target_node
        if rt.cancelled.is_set() or target is None:
            return

        old = binding.node
        if not rt.released and old is not None and old != target:
            if binding.access_mode == AccessMode.SINGLE_WRITER:
                try:
                    self.orchestrator.release_volume(binding.volume_id, old, self.attach_timeout_s)
                    logger.info(f"Released volume '{binding.volume_id}' from '{old}'")
                    if binding.stuck_node == old:
                        with self._lock:
                            binding.stuck_node = None
                except OrchestratorError as e:
                    # best-effort: the old node is usually unreachable
                    with self._lock:
                        binding.stuck_node = old
                    logger.warning(f"Release of '{binding.volume_id}' from '{old}' did not complete: {e}")
            rt.released = True

        if rt.cancelled.is_set():
            return

        try:
            self.orchestrator.bind_workload(name, decision.nodes)
            rt.bound_nodes = decision.nodes
            self.orchestrator.attach_volume(binding.volume_id, target, self.attach_timeout_s)
        except OrchestratorError as e:
            rt.status.attempts += 1
            delay = backoff_delay(rt.status.attempts, self.backoff_base_s, self.backoff_cap_s)
            rt.status.next_retry_at = now + delay
            rt.status.last_error = str(e)
            level = logging.WARNING if isinstance(e, AttachTimeoutError) else logging.ERROR
            logger.log(
                level,
                f"Attach of '{binding.volume_id}' on '{target}' failed (attempt {rt.status.attempts}); "
                f"retrying in {delay:.0f}s: {e}",
            )
            return

        if rt.cancelled.is_set():
            return

        with self._lock:
            binding.node = target
        logger.info(f"Volume '{binding.volume_id}' of '{name}' now attached on '{target}' (was {old})")
        rt.status.attempts = 0
        rt.status.next_retry_at = None
        rt.status.target_node = None
        rt.status.last_error = None
        rt.released = False
        self._set_phase(rt, WorkloadPhase.STABLE)

    def _retry_stuck_release(self, binding: VolumeBinding) -> None:
        """Release a leftover attachment once the node it is stuck on is Ready again."""
        stuck = binding.stuck_node
        node = self.registry.get(stuck)
        if stuck == binding.node:
            with self._lock:
                binding.stuck_node = None
            return
        if node is not None and node.status != NodeStatus.READY:
            return
        try:
            self.orchestrator.release_volume(binding.volume_id, stuck, self.attach_timeout_s)
        except OrchestratorError as e:
            logger.warning(f"Release of '{binding.volume_id}' from '{stuck}' still pending: {e}")
            return
        with self._lock:
            binding.stuck_node = None
        logger.info(f"Released leftover attachment of '{binding.volume_id}' on '{stuck}'")

    def _degrade(self, spec: WorkloadSpec, rt: _Runtime) -> None:
        logger.warning(f"No eligible node for '{spec.name}' (requires {sorted(spec.required_labels)}); degraded")
        if rt.bound_nodes:
            try:
                self.orchestrator.unbind_workload(spec.name)
                rt.bound_nodes = ()
            except OrchestratorError as e:
                rt.status.last_error = str(e)
                logger.error(f"Failed to unbind '{spec.name}': {e}")
        rt.status.attempts = 0
        rt.status.next_retry_at = None
        rt.status.target_node = None
        rt.released = False
        self._set_phase(rt, WorkloadPhase.DEGRADED)

    # -------- cancellation --------

    def cancel(self, name: str) -> bool:
        """
        Stop managing a workload whose spec was deleted.

        Pending retries are dropped at once. If an attempt is in flight, the
        cleanup runs as soon as it returns and no further attach is issued.
        """
        with self._lock:
            rt = self._runtimes.get(name)
            if rt is None and name not in self._bindings and name not in self._decisions:
                return False
            if rt is None:
                rt = _Runtime(status=WorkloadStatus(workload=name))
                self._runtimes[name] = rt
        rt.cancelled.set()
        logger.info(f"Cancelling reconciliation of '{name}'")
        if rt.lock.acquire(blocking=False):
            rt.lock.release()
            self._finalize_cancel(name, rt)
        return True

    def _finalize_cancel(self, name: str, rt: _Runtime) -> None:
        with self._lock:
            if self._runtimes.get(name) is not rt:
                return
            del self._runtimes[name]
            binding = self._bindings.pop(name, None)
            self._decisions.pop(name, None)

        if binding is not None and binding.node is not None:
            try:
                self.orchestrator.release_volume(binding.volume_id, binding.node, self.attach_timeout_s)
            except OrchestratorError as e:
                logger.warning(f"Release of '{binding.volume_id}' during cancel failed: {e}")
        try:
            self.orchestrator.unbind_workload(name)
        except OrchestratorError as e:
            logger.warning(f"Unbind of '{name}' during cancel failed: {e}")
        logger.info(f"Workload '{name}' released")

    # -------- helpers --------

    def _runtime(self, name: str) -> _Runtime:
        with self._lock:
            rt = self._runtimes.get(name)
            if rt is None:
                rt = _Runtime(status=WorkloadStatus(workload=name))
                self._runtimes[name] = rt
            return rt

    def _binding_for(self, spec: WorkloadSpec) -> Optional[VolumeBinding]:
        with self._lock:
            existing = self._bindings.get(spec.name)
            if spec.storage is None:
                self._bindings.pop(spec.name, None)
                return None
            if existing is None or existing.volume_id != spec.volume_id:
                existing = VolumeBinding(
                    workload=spec.name,
                    volume_id=spec.volume_id,
                    access_mode=spec.storage.access_mode,
                )
                self._bindings[spec.name] = existing
            elif existing.access_mode != spec.storage.access_mode:
                existing.access_mode = spec.storage.access_mode
            return existing

    def _load(self, exclude: str) -> Dict[str, int]:
        load: Dict[str, int] = {}
        with self._lock:
            for name, decision in self._decisions.items():
                if name == exclude:
                    continue
                for node in decision.nodes:
                    load[node] = load.get(node, 0) + 1
        return load

    def _set_phase(self, rt: _Runtime, phase: WorkloadPhase) -> None:
        previous = rt.status.phase
        if previous == phase:
            return
        rt.status.phase = phase
        self.transitions.append((rt.status.workload, previous.value, phase.value))
        logger.debug(f"'{rt.status.workload}': {previous.value} -> {phase.value}")
