"""
Workload placement and failover reconciler package.

Modules:
- errors: reconciler exception types
- events: ordered event bus with a bounded history
- config: settings and YAML node/workload files
- state: nodes, workload specs, placement decisions and volume bindings
- registry: node registry with edge-triggered liveness and grace periods
- store: workload spec store with static validation
- policy: placement evaluators (spread)
- controller: per-workload failover state machine
- orchestrator: cluster orchestrator adapters (in-memory, Kubernetes)
- reconcile: event-driven reconciliation loop with periodic sweeps
- watcher: Kubernetes node watcher feeding liveness
- api: REST surface for snapshot/observe/workloads/health
"""
