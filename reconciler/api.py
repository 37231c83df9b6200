from __future__ import annotations

from typing import Any, Dict

from flask import Flask, jsonify, request

from reconciler.config import workload_from_dict
from reconciler.errors import ConfigError, InvalidSpecError
from reconciler.reconcile import ReconciliationLoop
from reconciler.state import DecisionStatus, NodeStatus, WorkloadPhase, utc_ms


_OBSERVATIONS = {
	"node_up": NodeStatus.READY,
	"node_down": NodeStatus.NOT_READY,
	"node_unknown": NodeStatus.UNKNOWN,
}


def create_app(loop: ReconciliationLoop) -> Flask:
	app = Flask(__name__)
	# Store the loop in app config so it's accessible in all endpoints
	app.config['reconciler_loop'] = loop

	registry = loop.registry
	store = loop.store
	controller = loop.controller

	@app.get("/snapshot")
	def snapshot() -> Any:
		snap = registry.snapshot()
		nodes = []
		for node in snap.nodes:
			entry = node.to_dict()
			entry["suspect"] = node.name in snap.suspect
			entry["lost"] = node.name in snap.lost
			nodes.append(entry)
		return jsonify({"ts": utc_ms(), "nodes": nodes})

	@app.post("/observe")
	def observe() -> Any:
		body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
		etype = body.get("type")
		node = body.get("node")

		if not etype or not node:
			return jsonify({"error": "missing 'type' or 'node' field"}), 400
		status = _OBSERVATIONS.get(etype)
		if status is None:
			return jsonify({"error": f"unknown event type: {etype}"}), 400

		try:
			changed = registry.update_liveness(node, status)
		except KeyError:
			return jsonify({"error": f"unknown node: {node}"}), 404
		return jsonify({"status": "ok", "node": node, "event": etype, "changed": changed})

	@app.get("/workloads")
	def list_workloads() -> Any:
		statuses = controller.statuses()
		items = []
		for spec in store.list():
			entry = spec.to_dict()
			status = statuses.get(spec.name)
			entry["phase"] = status.phase.value if status else None
			items.append(entry)
		return jsonify({"workloads": items})

	@app.put("/workloads/<name>")
	def put_workload(name: str) -> Any:
		body: Dict[str, Any] = request.get_json(force=True, silent=True)
		if not isinstance(body, dict):
			return jsonify({"error": "body must be a JSON object"}), 400
		try:
			spec = workload_from_dict(name, body)
			changed = store.put(spec)
		except (ConfigError, InvalidSpecError) as e:
			return jsonify({"error": str(e)}), 400
		return jsonify({"workload": spec.to_dict(), "changed": changed})

	@app.delete("/workloads/<name>")
	def delete_workload(name: str) -> Any:
		try:
			store.delete(name)
		except KeyError:
			return jsonify({"error": f"unknown workload: {name}"}), 404
		return jsonify({"status": "deleted", "workload": name})

	@app.get("/workloads/<name>/status")
	def workload_status(name: str) -> Any:
		spec = store.get(name)
		if spec is None:
			return jsonify({"error": f"unknown workload: {name}"}), 404
		decision = controller.decision(name)
		binding = controller.binding(name)
		status = controller.status(name)
		return jsonify({
			"workload": spec.to_dict(),
			"decision": decision.to_dict() if decision else None,
			"binding": binding.to_dict() if binding else None,
			"status": status.to_dict() if status else None,
		})

	@app.get("/decisions")
	def decisions() -> Any:
		return jsonify({
			"decisions": {name: d.to_dict() for name, d in sorted(controller.decisions().items())},
			"bindings": {name: b.to_dict() for name, b in sorted(controller.bindings().items())},
		})

	@app.get("/events")
	def events() -> Any:
		limit = request.args.get("limit", default=100, type=int)
		since_id = request.args.get("since_id", default=None, type=int)
		return jsonify({"events": [e.to_dict() for e in loop.events.recent(limit=limit, since_id=since_id)]})

	@app.get("/health")
	def health() -> Any:
		return jsonify(health_report(loop))

	return app


def health_report(loop: ReconciliationLoop) -> Dict[str, Any]:
	"""Cluster health summary: node readiness and workload placement state."""
	snap = loop.registry.snapshot()
	statuses = loop.controller.statuses()
	decisions = loop.controller.decisions()
	bindings = loop.controller.bindings()

	not_ready = [n.name for n in snap.nodes if n.status != NodeStatus.READY]
	degraded = sorted(n for n, s in statuses.items() if s.phase == WorkloadPhase.DEGRADED)
	rebinding = sorted(n for n, s in statuses.items() if s.phase == WorkloadPhase.REBINDING)
	partial = sorted(n for n, d in decisions.items() if d.status == DecisionStatus.PARTIAL)
	stuck = sorted(n for n, b in bindings.items() if b.stuck_node)
	pending = sorted(spec.name for spec in loop.store.list() if spec.name not in statuses)

	healthy = not (not_ready or pending or loop.controller.unsettled())
	return {
		"status": "healthy" if healthy else "degraded",
		"loop_running": loop.running,
		"nodes": {
			"total": len(snap.nodes),
			"ready": snap.ready_count(),
			"not_ready": not_ready,
			"suspect": sorted(snap.suspect),
			"lost": sorted(snap.lost),
		},
		"workloads": {
			"total": len(loop.store.list()),
			"pending": pending,
			"degraded": degraded,
			"rebinding": rebinding,
			"partial": partial,
			"stuck_attachments": stuck,
		},
	}
