import threading
import time

from conftest import ready_node, stateful_spec
from reconciler.controller import FailoverController
from reconciler.orchestrator import InMemoryOrchestrator
from reconciler.reconcile import ReconciliationLoop
from reconciler.state import NodeStatus, WorkloadPhase, WorkloadSpec


def test_spec_event_dispatches_workload(registry, store, loop, controller, orchestrator):
    registry.register(ready_node("worker", "public-IP"))
    store.put(stateful_spec())

    summary = loop.run_once(0)

    assert summary["dispatched"] == ["db"]
    assert summary["swept"] is True
    assert controller.status("db").phase == WorkloadPhase.STABLE
    assert orchestrator.count("attach") == 1


def test_sweeps_without_events_issue_no_actions(registry, store, loop, orchestrator):
    registry.register(ready_node("worker-1", "public-IP"))
    registry.register(ready_node("worker-2", "public-IP"))
    store.put(stateful_spec())
    store.put(WorkloadSpec(name="web", replicas=2, anti_affinity=True))
    loop.run_once(0)
    actions = list(orchestrator.actions)

    assert loop.sweep(60) == ["db", "web"]
    assert loop.sweep(120) == ["db", "web"]
    assert orchestrator.actions == actions


def test_node_leaving_ready_waits_for_grace_period(registry, store, loop, controller):
    registry.register(ready_node("worker-1", "public-IP"))
    registry.register(ready_node("worker-2", "public-IP"))
    store.put(stateful_spec())
    loop.run_once(0)
    assert controller.binding("db").node == "worker-1"

    registry.update_liveness("worker-1", NodeStatus.NOT_READY, now=10)
    summary = loop.run_once(10)
    assert summary["dispatched"] == []
    assert controller.binding("db").node == "worker-1"

    summary = loop.run_once(310)
    assert summary["lost"] == ["worker-1"]
    assert summary["dispatched"] == ["db"]
    assert controller.binding("db").node == "worker-2"
    assert controller.status("db").phase == WorkloadPhase.STABLE


def test_node_rejoin_reconciles_degraded_workloads(registry, store, loop, controller, orchestrator):
    store.put(stateful_spec())
    loop.run_once(0)
    assert controller.status("db").phase == WorkloadPhase.DEGRADED

    registry.register(ready_node("worker", "public-IP"))
    summary = loop.run_once(5)

    assert summary["dispatched"] == ["db"]
    assert controller.status("db").phase == WorkloadPhase.STABLE
    assert orchestrator.bindings["db"] == ("worker",)


def test_spec_deletion_cancels_workload(registry, store, loop, controller, orchestrator):
    registry.register(ready_node("worker", "public-IP"))
    store.put(stateful_spec())
    loop.run_once(0)

    store.delete("db")
    summary = loop.run_once(1)

    assert summary["cancelled"] == ["db"]
    assert controller.status("db") is None
    assert "db" not in orchestrator.bindings


def test_due_retries_run_each_iteration(registry, store, loop, controller, orchestrator):
    registry.register(ready_node("worker", "public-IP"))
    orchestrator.fail_attach("worker", times=1)
    store.put(stateful_spec())

    loop.run_once(0)
    assert controller.status("db").phase == WorkloadPhase.REBINDING

    summary = loop.run_once(10)
    assert summary["retried"] == ["db"]
    assert controller.status("db").phase == WorkloadPhase.STABLE


def test_one_failing_workload_does_not_stop_the_loop(registry, store, events, clock):
    class BrokenOrchestrator(InMemoryOrchestrator):
        def bind_workload(self, workload, nodes):
            if workload == "broken":
                raise RuntimeError("boom")
            super().bind_workload(workload, nodes)

    orchestrator = BrokenOrchestrator()
    controller = FailoverController(registry, store, orchestrator, clock=clock)
    loop = ReconciliationLoop(registry, store, controller, events, max_workers=2, clock=clock)

    registry.register(ready_node("worker"))
    store.put(WorkloadSpec(name="broken"))
    store.put(WorkloadSpec(name="web"))
    loop.run_once(0)

    assert loop.failures >= 1
    assert orchestrator.bindings == {"web": ("worker",)}


def test_background_thread_reacts_to_events(registry, store, events, orchestrator):
    controller = FailoverController(registry, store, orchestrator)
    loop = ReconciliationLoop(registry, store, controller, events, tick_interval_s=0.05, max_workers=1)
    registry.register(ready_node("worker"))

    loop.start()
    try:
        assert loop.running
        store.put(WorkloadSpec(name="web"))
        deadline = time.time() + 5
        while "web" not in orchestrator.bindings and time.time() < deadline:
            time.sleep(0.02)
    finally:
        loop.stop()

    assert orchestrator.bindings["web"] == ("worker",)
    assert not loop.running
    assert not any(t.name == "reconciliation-loop" and t.is_alive() for t in threading.enumerate())


def test_replica_order_changes_alone_do_not_rebind(registry, store, loop, controller, orchestrator):
    registry.register(ready_node("n1"))
    registry.register(ready_node("n2"))
    store.put(WorkloadSpec(name="a", replicas=2))
    store.put(WorkloadSpec(name="b"))
    loop.run_once(0)
    assert sorted(controller.decision("a").nodes) == ["n1", "n2"]
    actions = list(orchestrator.actions)

    loop.sweep(60)
    loop.sweep(120)

    assert orchestrator.actions == actions


def test_due_retries_run_concurrently(registry, store, events, clock):
    class BarrierOrchestrator(InMemoryOrchestrator):
        barrier = None

        def attach_volume(self, volume_id, node, timeout_s):
            if self.barrier is not None:
                # every retry must be in flight at once to get past this
                self.barrier.wait()
            super().attach_volume(volume_id, node, timeout_s)

    orchestrator = BarrierOrchestrator()
    controller = FailoverController(registry, store, orchestrator, backoff_base_s=10, clock=clock)
    loop = ReconciliationLoop(registry, store, controller, events, max_workers=4, clock=clock)
    registry.register(ready_node("worker", "public-IP"))
    orchestrator.fail_attach("worker", times=3)
    for name in ("db-1", "db-2", "db-3"):
        store.put(stateful_spec(name=name))

    try:
        loop.run_once(0)
        assert controller.unsettled() == ["db-1", "db-2", "db-3"]

        orchestrator.barrier = threading.Barrier(3, timeout=5)
        summary = loop.run_once(10)
    finally:
        loop.stop()

    assert summary["retried"] == ["db-1", "db-2", "db-3"]
    assert loop.failures == 0
    for name in ("db-1", "db-2", "db-3"):
        assert controller.status(name).phase == WorkloadPhase.STABLE
